"""LLM exceptions for Interview Signals."""


class LlmError(Exception):
    """Base exception for LLM errors."""

    pass


class ProviderNotConfiguredError(LlmError):
    """Raised when a provider is requested that has no key or is unknown."""

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"LLM provider not configured: {provider}")


class ProviderResponseError(LlmError):
    """Raised when a provider returns an unusable response."""

    def __init__(self, provider: str, reason: str):
        self.provider = provider
        self.reason = reason
        super().__init__(f"{provider} returned an invalid response: {reason}")


class RateLimitedError(LlmError):
    """Raised when a provider rejects a request for rate limiting."""

    def __init__(self, provider: str, retry_after: int | None = None):
        self.provider = provider
        self.retry_after = retry_after
        suffix = f" (retry after {retry_after}s)" if retry_after else ""
        super().__init__(f"{provider} rate limited{suffix}")
