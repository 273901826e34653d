import logging

import httpx

from homedoc.errors import ConfigurationError, UnsupportedProviderError
from homedoc.llm.anthropic_provider import AnthropicProvider
from homedoc.llm.gemini_provider import GeminiProvider
from homedoc.llm.http import DEFAULT_TIMEOUT
from homedoc.llm.ollama_provider import DEFAULT_BASE_URL as OLLAMA_BASE_URL
from homedoc.llm.ollama_provider import OllamaProvider
from homedoc.llm.openai_provider import OpenAIProvider
from homedoc.llm.types import (
    DEFAULT_MAX_TOKENS,
    DEFAULT_TEMPERATURE,
    ProviderAdapter,
    ProviderConfig,
    ProviderName,
)

logger = logging.getLogger(__name__)

ADAPTERS = {
    ProviderName.OPENAI: OpenAIProvider,
    ProviderName.ANTHROPIC: AnthropicProvider,
    ProviderName.GEMINI: GeminiProvider,
    ProviderName.OLLAMA: OllamaProvider,
}

DEFAULT_CONFIGS: dict[ProviderName, dict] = {
    ProviderName.OPENAI: {
        "model": "gpt-4o-mini",
        "temperature": DEFAULT_TEMPERATURE,
        "max_tokens": DEFAULT_MAX_TOKENS,
    },
    ProviderName.ANTHROPIC: {
        "model": "claude-3-5-haiku-20241022",
        "temperature": DEFAULT_TEMPERATURE,
        "max_tokens": DEFAULT_MAX_TOKENS,
    },
    ProviderName.GEMINI: {
        "model": "gemini-1.5-flash",
        "temperature": DEFAULT_TEMPERATURE,
        "max_tokens": DEFAULT_MAX_TOKENS,
    },
    ProviderName.OLLAMA: {
        "model": "llama2",
        "base_url": OLLAMA_BASE_URL,
        "temperature": DEFAULT_TEMPERATURE,
        "max_tokens": DEFAULT_MAX_TOKENS,
    },
}


def parse_provider(value: str) -> ProviderName:
    """Map a provider string onto the closed set of supported vendors."""
    try:
        return ProviderName(value)
    except ValueError:
        raise UnsupportedProviderError(str(value))


def available_providers() -> list[str]:
    return [p.value for p in ProviderName]


def supported_models(provider: str) -> list[str]:
    return list(ADAPTERS[parse_provider(provider)].SUPPORTED_MODELS)


def create_provider(
    config: ProviderConfig,
    *,
    timeout: float = DEFAULT_TIMEOUT,
    http_client: httpx.AsyncClient | None = None,
) -> ProviderAdapter:
    """Build a fresh adapter for config. Never cached."""
    adapter_cls = ADAPTERS[parse_provider(config.provider)]
    return adapter_cls(config, timeout=timeout, http_client=http_client)


def cache_key(config: ProviderConfig) -> tuple:
    """Identity of an adapter. Only the first 8 characters of the key take part."""
    return (
        parse_provider(config.provider).value,
        config.model,
        config.api_key[:8] if config.api_key else "no-key",
        config.base_url or "default-url",
        config.temperature,
        config.max_tokens,
    )


def validate_config(config: ProviderConfig) -> bool:
    """Structural check of a configuration. Never raises and never hits the network."""
    try:
        return create_provider(config).validate_config()
    except (ConfigurationError, ValueError):
        return False


async def check_api_key(
    provider: str,
    api_key: str | None,
    *,
    model: str | None = None,
    base_url: str | None = None,
    timeout: float = DEFAULT_TIMEOUT,
    http_client: httpx.AsyncClient | None = None,
) -> bool:
    """Check a user-supplied key against the vendor. Returns False on any failure."""
    try:
        name = parse_provider(provider)
        defaults = DEFAULT_CONFIGS[name]
        config = ProviderConfig(
            provider=name.value,
            model=model or defaults["model"],
            api_key=api_key,
            base_url=base_url or defaults.get("base_url"),
        )
        adapter = create_provider(config, timeout=timeout, http_client=http_client)
    except ConfigurationError as e:
        logger.info("Rejected %s key before validation: %s", provider, e.message)
        return False
    return await adapter.validate_key()


class ProviderCache:
    """Adapters keyed by configuration, shared across requests.

    Adapters hold configuration only, so concurrent reads need no locking.
    """

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.timeout = timeout
        self._http_client = http_client
        self._providers: dict[tuple, ProviderAdapter] = {}

    def get_provider(self, config: ProviderConfig) -> ProviderAdapter:
        key = cache_key(config)
        provider = self._providers.get(key)
        if provider is None:
            provider = create_provider(config, timeout=self.timeout, http_client=self._http_client)
            self._providers[key] = provider
            logger.debug("Created %s adapter for model %s", config.provider, config.model)
        return provider

    def evict(self, config: ProviderConfig) -> None:
        self._providers.pop(cache_key(config), None)

    def clear(self) -> None:
        self._providers.clear()

    def __len__(self) -> int:
        return len(self._providers)
