"""Exception hierarchy for the gateway.

Only :class:`ProviderRateLimitError` and :class:`TransientProviderError`
are retried by the resilience handler; everything else is terminal.
"""

from __future__ import annotations


class GatewayError(Exception):
    """Base class for all gateway errors."""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class ConfigurationError(GatewayError):
    """Unknown provider, model or otherwise unusable configuration."""


class UnsupportedProviderError(ConfigurationError):
    def __init__(self, provider: str) -> None:
        super().__init__(f"Unsupported provider type: {provider}")
        self.provider = provider


# ---------------------------------------------------------------------------
# Provider calls
# ---------------------------------------------------------------------------

class ProviderError(GatewayError):
    """A provider call failed."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ProviderRateLimitError(ProviderError):
    """The provider rejected the call because of a rate limit (HTTP 429)."""

    def __init__(
        self,
        message: str = "",
        status_code: int | None = 429,
        retry_after: float | None = None,
        key_id: str | None = None,
    ) -> None:
        super().__init__(
            message or f"The AI provider reported a rate limit error ({status_code}).",
            status_code,
        )
        self.retry_after = retry_after
        self.key_id = key_id


class TransientProviderError(ProviderError):
    """Timeouts, connection resets and provider-side 5xx errors."""


class ProviderRequestError(ProviderError):
    """The provider rejected the payload.  Not retried."""


class ProviderAuthError(ProviderRequestError):
    """The provider rejected the credentials.  Not retried."""


class QuotaExceededError(GatewayError):
    """No key of the provider is usable: all exhausted or cooling down."""

    def __init__(self, provider: str, message: str = "") -> None:
        super().__init__(message or f"No API key available for provider '{provider}'")
        self.provider = provider


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------

class StreamFailedError(GatewayError):
    """The response stream was unusable or the provider reported an error."""


class StreamInterruptedError(GatewayError):
    """A retryable failure happened after content reached the user."""


class ToolRoundLimitError(GatewayError):
    def __init__(self, max_rounds: int) -> None:
        super().__init__(
            f"Model kept requesting tools after {max_rounds} rounds; giving up",
        )
        self.max_rounds = max_rounds


RETRYABLE_ERRORS: tuple[type[Exception], ...] = (
    ProviderRateLimitError,
    TransientProviderError,
)
