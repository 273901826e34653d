import math
from collections.abc import AsyncIterator
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Protocol

from homedoc.errors import ChatError, ConfigurationError

DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 1000

VALID_ROLES = ("system", "user", "assistant")


class ProviderName(str, Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"
    OLLAMA = "ollama"


@dataclass(frozen=True)
class LLMMessage:
    role: str
    content: str


@dataclass
class Usage:
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class LLMResponse:
    content: str
    model: str
    usage: Usage | None = None
    finish_reason: str | None = None


@dataclass(frozen=True)
class ProviderConfig:
    provider: str
    model: str
    api_key: str | None = field(default=None, repr=False)
    base_url: str | None = None
    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: int = DEFAULT_MAX_TOKENS


# Streaming events. A stream is zero or more TokenEvents followed by exactly
# one CompletionEvent or ErrorEvent.


@dataclass
class TokenEvent:
    text: str


@dataclass
class CompletionEvent:
    response: LLMResponse


@dataclass
class ErrorEvent:
    error: ChatError


StreamEvent = TokenEvent | CompletionEvent | ErrorEvent


class ProviderAdapter(Protocol):
    name: ProviderName
    config: ProviderConfig

    async def generate_response(self, messages: list[LLMMessage]) -> LLMResponse: ...

    def stream_response(self, messages: list[LLMMessage]) -> AsyncIterator[StreamEvent]: ...

    async def validate_key(self) -> bool: ...

    def validate_config(self) -> bool: ...


def estimate_tokens(text: str) -> int:
    """Rough token estimate: one token per four characters."""
    return math.ceil(len(text) / 4)


def estimate_usage(messages: list[LLMMessage], completion: str) -> Usage:
    prompt = sum(estimate_tokens(m.content) for m in messages)
    completion_tokens = estimate_tokens(completion)
    return Usage(
        prompt_tokens=prompt,
        completion_tokens=completion_tokens,
        total_tokens=prompt + completion_tokens,
    )


def validate_messages(messages: list[LLMMessage]) -> None:
    """Raise ValueError unless messages is a non-empty list of well-formed messages."""
    if not messages:
        raise ValueError("At least one message is required")
    for i, msg in enumerate(messages):
        if msg.role not in VALID_ROLES:
            raise ValueError(f"Message {i} has invalid role {msg.role!r}")
        if not isinstance(msg.content, str) or not msg.content:
            raise ValueError(f"Message {i} has empty content")


def split_system_messages(
    messages: list[LLMMessage],
) -> tuple[str | None, list[LLMMessage]]:
    """Separate system messages from the conversation.

    Returns the system messages joined by blank lines (None when there are
    none) and the remaining messages in their original order.
    """
    system_parts = [m.content for m in messages if m.role == "system"]
    conversation = [m for m in messages if m.role != "system"]
    system = "\n\n".join(system_parts) if system_parts else None
    return system, conversation


def require_api_key(provider: str, api_key: str | None) -> str:
    """Return the key unchanged, or raise ConfigurationError if it is unusable."""
    if not api_key or not isinstance(api_key, str):
        raise ConfigurationError(f"{provider} API key is required")
    if api_key != api_key.strip() or any(ch.isspace() for ch in api_key):
        raise ConfigurationError(f"{provider} API key is malformed")
    return api_key
