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

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com"

SAFETY_SETTINGS = [
    {"category": category, "threshold": "BLOCK_MEDIUM_AND_ABOVE"}
    for category in (
        "HARM_CATEGORY_HARASSMENT",
        "HARM_CATEGORY_HATE_SPEECH",
        "HARM_CATEGORY_SEXUALLY_EXPLICIT",
        "HARM_CATEGORY_DANGEROUS_CONTENT",
    )
]


class GeminiProvider:
    name = ProviderName.GEMINI
    SUPPORTED_MODELS = [
        "gemini-1.5-pro",
        "gemini-1.5-flash",
        "gemini-1.0-pro",
    ]

    def __init__(
        self,
        config: ProviderConfig,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.config = config
        self._api_key = require_api_key("Gemini", config.api_key)
        self._base_url = (config.base_url or DEFAULT_BASE_URL).rstrip("/")
        self._timeout = timeout
        self._http_client = http_client

    def _model_url(self, method: str) -> str:
        return f"{self._base_url}/v1beta/models/{self.config.model}:{method}"

    def build_request(self, messages: list[LLMMessage]) -> dict:
        """Map messages onto ``contents``; assistant turns use the role ``model``."""
        validate_messages(messages)
        system, conversation = split_system_messages(messages)
        if not conversation:
            raise ValueError("Gemini requires at least one user or assistant message")
        request = {
            "contents": [
                {
                    "role": "model" if m.role == "assistant" else "user",
                    "parts": [{"text": m.content}],
                }
                for m in conversation
            ],
            "generationConfig": {
                "temperature": self.config.temperature,
                "maxOutputTokens": self.config.max_tokens,
            },
            "safetySettings": SAFETY_SETTINGS,
        }
        if system:
            request["systemInstruction"] = {"parts": [{"text": system}]}
        return request

    async def generate_response(self, messages: list[LLMMessage]) -> LLMResponse:
        request = self.build_request(messages)
        async with open_client(self._http_client, self._timeout) as client:
            data = await request_json(
                client,
                "gemini",
                "POST",
                self._model_url("generateContent"),
                payload=request,
                params={"key": self._api_key},
            )

        candidates = data.get("candidates") or []
        if not candidates:
            raise ProviderError("gemini", "no candidates returned", body=str(data))
        candidate = candidates[0]
        if candidate.get("finishReason") == "SAFETY":
            raise ProviderError("gemini", "response blocked by safety filters")

        text = _candidate_text(candidate)
        if not text:
            raise ProviderError("gemini", "no response content received", body=str(data))

        return LLMResponse(
            content=text,
            model=self.config.model,
            usage=_usage(data.get("usageMetadata")),
            finish_reason=candidate.get("finishReason"),
        )

    async def stream_response(self, messages: list[LLMMessage]) -> AsyncIterator[StreamEvent]:
        request = self.build_request(messages)
        content = ""
        usage = None
        finish_reason = None
        try:
            async with open_client(self._http_client, self._timeout) as client:
                lines = stream_lines(
                    client,
                    "gemini",
                    self._model_url("streamGenerateContent"),
                    payload=request,
                    params={"alt": "sse", "key": self._api_key},
                )
                async for chunk in iter_sse_json(lines, "gemini"):
                    if chunk.get("usageMetadata"):
                        usage = _usage(chunk["usageMetadata"])
                    candidates = chunk.get("candidates") or []
                    if not candidates:
                        continue
                    candidate = candidates[0]
                    text = _candidate_text(candidate)
                    if text:
                        content += text
                        yield TokenEvent(text)
                    if candidate.get("finishReason"):
                        finish_reason = candidate["finishReason"]
        except ChatError as e:
            yield ErrorEvent(e)
            return

        if finish_reason is None:
            yield ErrorEvent(TransportError("gemini", "stream ended before completion"))
            return
        if finish_reason == "SAFETY":
            yield ErrorEvent(ProviderError("gemini", "response blocked by safety filters"))
            return
        if not content:
            yield ErrorEvent(ProviderError("gemini", "no response content received"))
            return
        yield CompletionEvent(
            LLMResponse(
                content=content, model=self.config.model, usage=usage, finish_reason=finish_reason
            )
        )

    def validate_config(self) -> bool:
        return bool(self._api_key and self.config.model)

    async def validate_key(self) -> bool:
        try:
            async with open_client(self._http_client, self._timeout) as client:
                await request_json(
                    client,
                    "gemini",
                    "GET",
                    f"{self._base_url}/v1beta/models",
                    params={"key": self._api_key},
                )
            return True
        except ChatError as e:
            logger.info("Gemini key validation failed: %s", e.__class__.__name__)
            return False


def _candidate_text(candidate: dict) -> str:
    parts = (candidate.get("content") or {}).get("parts") or []
    return "".join(part.get("text", "") for part in parts)


def _usage(raw: dict | None) -> Usage | None:
    if not raw:
        return None
    prompt = raw.get("promptTokenCount", 0)
    completion = raw.get("candidatesTokenCount", 0)
    return Usage(
        prompt_tokens=prompt,
        completion_tokens=completion,
        total_tokens=raw.get("totalTokenCount", prompt + completion),
    )
