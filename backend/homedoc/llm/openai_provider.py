import logging
from collections.abc import AsyncIterator

import httpx
import openai
from openai import AsyncOpenAI

from homedoc.errors import ChatError, ProviderError, TransportError
from homedoc.llm.http import DEFAULT_TIMEOUT
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
    validate_messages,
)

logger = logging.getLogger(__name__)


class OpenAIProvider:
    """Chat completions against OpenAI or any OpenAI-compatible endpoint."""

    name = ProviderName.OPENAI
    SUPPORTED_MODELS = [
        "gpt-4o",
        "gpt-4o-mini",
        "gpt-4-turbo",
        "gpt-4",
        "gpt-3.5-turbo",
    ]

    def __init__(
        self,
        config: ProviderConfig,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.config = config
        api_key = require_api_key("OpenAI", config.api_key)
        # The SDK retries by default; turns are never retried automatically.
        self.client = AsyncOpenAI(
            api_key=api_key,
            base_url=config.base_url,
            timeout=timeout,
            max_retries=0,
            http_client=http_client,
        )

    def build_request(self, messages: list[LLMMessage]) -> dict:
        validate_messages(messages)
        return {
            "model": self.config.model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_tokens,
        }

    async def generate_response(self, messages: list[LLMMessage]) -> LLMResponse:
        request = self.build_request(messages)
        try:
            response = await self.client.chat.completions.create(**request)
        except openai.APIStatusError as e:
            raise ProviderError("openai", "API error", status_code=e.status_code, body=_body_text(e))
        except openai.APITimeoutError:
            raise TransportError("openai", "request timed out")
        except openai.APIConnectionError as e:
            raise TransportError("openai", f"connection failed ({e.__class__.__name__})")

        if not response.choices or not response.choices[0].message.content:
            raise ProviderError("openai", "no response content received")

        choice = response.choices[0]
        usage = None
        if response.usage:
            usage = Usage(
                prompt_tokens=response.usage.prompt_tokens,
                completion_tokens=response.usage.completion_tokens,
                total_tokens=response.usage.total_tokens,
            )
        return LLMResponse(
            content=choice.message.content,
            model=response.model or self.config.model,
            usage=usage,
            finish_reason=choice.finish_reason,
        )

    async def stream_response(self, messages: list[LLMMessage]) -> AsyncIterator[StreamEvent]:
        request = self.build_request(messages)
        content = ""
        model = self.config.model
        finish_reason = None
        usage = None
        try:
            stream = await self.client.chat.completions.create(
                **request, stream=True, stream_options={"include_usage": True}
            )
            async for chunk in stream:
                if chunk.model:
                    model = chunk.model
                if chunk.usage:
                    usage = Usage(
                        prompt_tokens=chunk.usage.prompt_tokens,
                        completion_tokens=chunk.usage.completion_tokens,
                        total_tokens=chunk.usage.total_tokens,
                    )
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                if choice.delta and choice.delta.content:
                    content += choice.delta.content
                    yield TokenEvent(choice.delta.content)
                if choice.finish_reason:
                    finish_reason = choice.finish_reason
        except openai.APIStatusError as e:
            yield ErrorEvent(
                ProviderError("openai", "API error", status_code=e.status_code, body=_body_text(e))
            )
            return
        except openai.APITimeoutError:
            yield ErrorEvent(TransportError("openai", "stream timed out"))
            return
        except openai.APIConnectionError as e:
            yield ErrorEvent(TransportError("openai", f"stream failed ({e.__class__.__name__})"))
            return
        except ChatError as e:
            yield ErrorEvent(e)
            return

        if finish_reason is None:
            yield ErrorEvent(TransportError("openai", "stream ended before completion"))
            return
        if not content:
            yield ErrorEvent(ProviderError("openai", "no response content received"))
            return
        yield CompletionEvent(
            LLMResponse(content=content, model=model, usage=usage, finish_reason=finish_reason)
        )

    def validate_config(self) -> bool:
        return bool(self.config.api_key and self.config.model)

    async def validate_key(self) -> bool:
        try:
            await self.client.models.list()
            return True
        except openai.OpenAIError as e:
            logger.info("OpenAI key validation failed: %s", e.__class__.__name__)
            return False


def _body_text(error: openai.APIStatusError) -> str:
    try:
        return error.response.text
    except httpx.ResponseNotRead:
        return str(error.body)
