import json
import logging
from collections.abc import AsyncIterator

import httpx

from homedoc.errors import ChatError, ConfigurationError, ProviderError, TransportError
from homedoc.llm.http import DEFAULT_TIMEOUT, open_client, request_json, stream_lines
from homedoc.llm.types import (
    CompletionEvent,
    ErrorEvent,
    LLMMessage,
    LLMResponse,
    ProviderConfig,
    ProviderName,
    StreamEvent,
    TokenEvent,
    Usage,
    validate_messages,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:11434"


class OllamaProvider:
    """Local Ollama server. No credentials; system messages stay in the array."""

    name = ProviderName.OLLAMA
    SUPPORTED_MODELS = [
        "llama2",
        "llama3.1:8b",
        "llama3.2:3b",
        "mistral:7b",
        "codellama:7b",
        "qwen2.5:7b",
        "phi3:mini",
    ]

    def __init__(
        self,
        config: ProviderConfig,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.config = config
        base_url = config.base_url or DEFAULT_BASE_URL
        if not base_url.startswith(("http://", "https://")):
            raise ConfigurationError(f"Ollama base URL must be http(s): {base_url}")
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._http_client = http_client

    @property
    def endpoint(self) -> str:
        return f"{self._base_url}/api/chat"

    def build_request(self, messages: list[LLMMessage], stream: bool = False) -> dict:
        validate_messages(messages)
        return {
            "model": self.config.model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "stream": stream,
            "options": {
                "temperature": self.config.temperature,
                "num_predict": self.config.max_tokens,
            },
        }

    async def generate_response(self, messages: list[LLMMessage]) -> LLMResponse:
        request = self.build_request(messages)
        async with open_client(self._http_client, self._timeout) as client:
            data = await request_json(client, "ollama", "POST", self.endpoint, payload=request)

        content = (data.get("message") or {}).get("content")
        if not content:
            raise ProviderError("ollama", "no response content received", body=str(data))

        return LLMResponse(
            content=content,
            model=self.config.model,
            usage=_usage(data),
            finish_reason=_finish_reason(data),
        )

    async def stream_response(self, messages: list[LLMMessage]) -> AsyncIterator[StreamEvent]:
        request = self.build_request(messages, stream=True)
        content = ""
        final = None
        try:
            async with open_client(self._http_client, self._timeout) as client:
                async for line in stream_lines(client, "ollama", self.endpoint, payload=request):
                    try:
                        chunk = json.loads(line)
                    except json.JSONDecodeError:
                        raise ProviderError("ollama", "malformed stream line", body=line)
                    if chunk.get("error"):
                        raise ProviderError("ollama", chunk["error"], body=line)
                    text = (chunk.get("message") or {}).get("content")
                    if text:
                        content += text
                        yield TokenEvent(text)
                    if chunk.get("done"):
                        final = chunk
        except ChatError as e:
            yield ErrorEvent(e)
            return

        if final is None:
            yield ErrorEvent(TransportError("ollama", "stream ended before completion"))
            return
        if not content:
            yield ErrorEvent(ProviderError("ollama", "no response content received"))
            return
        yield CompletionEvent(
            LLMResponse(
                content=content,
                model=self.config.model,
                usage=_usage(final),
                finish_reason=_finish_reason(final),
            )
        )

    async def list_local_models(self) -> list[str]:
        async with open_client(self._http_client, self._timeout) as client:
            data = await request_json(client, "ollama", "GET", f"{self._base_url}/api/tags")
        return [m["name"] for m in data.get("models") or [] if m.get("name")]

    def validate_config(self) -> bool:
        return bool(self.config.model and self._base_url)

    async def validate_key(self) -> bool:
        """Ollama has no keys: check the server is up and has the model pulled."""
        try:
            models = await self.list_local_models()
        except ChatError as e:
            logger.info("Ollama server check failed: %s", e)
            return False
        if not model_available(self.config.model, models):
            logger.info("Ollama model %s is not available locally", self.config.model)
            return False
        return True


def model_available(model: str, names: list[str]) -> bool:
    """Tags report "llama2:latest" for a model pulled as "llama2"."""
    if model in names:
        return True
    return ":" not in model and f"{model}:latest" in names


def _usage(data: dict) -> Usage | None:
    if "prompt_eval_count" not in data and "eval_count" not in data:
        return None
    prompt = data.get("prompt_eval_count") or 0
    completion = data.get("eval_count") or 0
    return Usage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=prompt + completion)


def _finish_reason(data: dict) -> str:
    if data.get("done_reason"):
        return data["done_reason"]
    return "stop" if data.get("done") else "length"
