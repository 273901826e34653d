class ChatError(Exception):
    """Base class for errors surfaced by the chat subsystem."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class ConfigurationError(ChatError):
    """Missing or malformed credentials or settings. Never retried."""


class UnsupportedProviderError(ConfigurationError):
    """Raised when a provider name is not one of the supported vendors."""

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"Unsupported LLM provider: {provider}")


class ProviderError(ChatError):
    """The vendor answered with a non-2xx status or an unusable body."""

    def __init__(
        self,
        provider: str,
        message: str,
        status_code: int | None = None,
        body: str | None = None,
    ):
        self.provider = provider
        self.status_code = status_code
        self.body = body
        if status_code is not None:
            message = f"{message} (status {status_code})"
        super().__init__(f"{provider}: {message}")


class TransportError(ChatError):
    """Network failure, timeout, or a stream cut off before completion."""

    def __init__(self, provider: str, message: str):
        self.provider = provider
        super().__init__(f"{provider}: {message}")


class PersistenceError(ChatError):
    """A read or write against the chat store failed."""

    def __init__(self, operation: str, message: str):
        self.operation = operation
        super().__init__(f"Failed to {operation}: {message}")
