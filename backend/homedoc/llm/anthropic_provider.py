import logging
from collections.abc import AsyncIterator

import httpx

from homedoc.errors import ChatError, ProviderError, TransportError
from homedoc.llm.http import (
    DEFAULT_TIMEOUT,
    iter_sse_json,
    open_client,
    request_json,
    stream_lines,
)
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
    require_api_key,
    split_system_messages,
    validate_messages,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.anthropic.com"
ANTHROPIC_VERSION = "2023-06-01"
KEY_CHECK_MODEL = "claude-3-haiku-20240307"


class AnthropicProvider:
    """Anthropic Messages API. System text travels in the top-level ``system`` field."""

    name = ProviderName.ANTHROPIC
    SUPPORTED_MODELS = [
        "claude-3-5-sonnet-20241022",
        "claude-3-5-haiku-20241022",
        "claude-3-opus-20240229",
        "claude-3-sonnet-20240229",
        "claude-3-haiku-20240307",
    ]

    def __init__(
        self,
        config: ProviderConfig,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        http_client: httpx.AsyncClient | None = None,
        api_version: str = ANTHROPIC_VERSION,
    ):
        self.config = config
        self._api_key = require_api_key("Anthropic", config.api_key)
        self._base_url = (config.base_url or DEFAULT_BASE_URL).rstrip("/")
        self._timeout = timeout
        self._http_client = http_client
        self._api_version = api_version

    @property
    def endpoint(self) -> str:
        return f"{self._base_url}/v1/messages"

    def _headers(self) -> dict:
        return {
            "x-api-key": self._api_key,
            "anthropic-version": self._api_version,
            "content-type": "application/json",
        }

    def build_request(self, messages: list[LLMMessage]) -> dict:
        validate_messages(messages)
        system, conversation = split_system_messages(messages)
        if not conversation:
            raise ValueError("Anthropic requires at least one user or assistant message")
        request = {
            "model": self.config.model,
            "messages": [{"role": m.role, "content": m.content} for m in conversation],
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
        }
        if system:
            request["system"] = system
        return request

    async def generate_response(self, messages: list[LLMMessage]) -> LLMResponse:
        request = self.build_request(messages)
        async with open_client(self._http_client, self._timeout) as client:
            data = await request_json(
                client, "anthropic", "POST", self.endpoint, payload=request, headers=self._headers()
            )

        text = "".join(
            block.get("text", "") for block in data.get("content") or [] if block.get("type") == "text"
        )
        if not text:
            raise ProviderError("anthropic", "no text content received", body=str(data))

        return LLMResponse(
            content=text,
            model=data.get("model") or self.config.model,
            usage=_usage(data.get("usage")),
            finish_reason=data.get("stop_reason"),
        )

    async def stream_response(self, messages: list[LLMMessage]) -> AsyncIterator[StreamEvent]:
        request = self.build_request(messages)
        request["stream"] = True
        content = ""
        model = self.config.model
        input_tokens = 0
        output_tokens = 0
        finish_reason = None
        completed = False
        try:
            async with open_client(self._http_client, self._timeout) as client:
                lines = stream_lines(
                    client, "anthropic", self.endpoint, payload=request, headers=self._headers()
                )
                async for event in iter_sse_json(lines, "anthropic"):
                    kind = event.get("type")
                    if kind == "message_start":
                        message = event.get("message") or {}
                        model = message.get("model") or model
                        input_tokens = (message.get("usage") or {}).get("input_tokens", 0)
                    elif kind == "content_block_delta":
                        delta = event.get("delta") or {}
                        if delta.get("type") == "text_delta" and delta.get("text"):
                            content += delta["text"]
                            yield TokenEvent(delta["text"])
                    elif kind == "message_delta":
                        finish_reason = (event.get("delta") or {}).get("stop_reason") or finish_reason
                        output_tokens = (event.get("usage") or {}).get("output_tokens", output_tokens)
                    elif kind == "message_stop":
                        completed = True
                    elif kind == "error":
                        detail = (event.get("error") or {}).get("message", "stream error")
                        raise ProviderError("anthropic", detail, body=str(event))
        except ChatError as e:
            yield ErrorEvent(e)
            return

        if not completed:
            yield ErrorEvent(TransportError("anthropic", "stream ended before completion"))
            return
        if not content:
            yield ErrorEvent(ProviderError("anthropic", "no response content received"))
            return
        usage = Usage(
            prompt_tokens=input_tokens,
            completion_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens,
        )
        yield CompletionEvent(
            LLMResponse(content=content, model=model, usage=usage, finish_reason=finish_reason)
        )

    def validate_config(self) -> bool:
        return bool(self.config.api_key and self.config.model)

    async def validate_key(self) -> bool:
        """Issue a one-token completion; any failure means the key is unusable."""
        request = {
            "model": KEY_CHECK_MODEL,
            "max_tokens": 1,
            "messages": [{"role": "user", "content": "Hi"}],
        }
        try:
            async with open_client(self._http_client, self._timeout) as client:
                await request_json(
                    client, "anthropic", "POST", self.endpoint, payload=request, headers=self._headers()
                )
            return True
        except ChatError as e:
            logger.info("Anthropic key validation failed: %s", e.__class__.__name__)
            return False


def _usage(raw: dict | None) -> Usage | None:
    if not raw:
        return None
    input_tokens = raw.get("input_tokens", 0)
    output_tokens = raw.get("output_tokens", 0)
    return Usage(
        prompt_tokens=input_tokens,
        completion_tokens=output_tokens,
        total_tokens=input_tokens + output_tokens,
    )
