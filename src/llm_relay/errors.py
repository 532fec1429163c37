from __future__ import annotations


class RelayError(Exception):
    """Base error for relay failures."""

    error_type = "api_error"


class ConfigurationError(RelayError):
    pass


class InvalidRequestError(RelayError):
    """Request shape the relay cannot act on."""

    error_type = "invalid_request_error"


class MissingContextError(InvalidRequestError):
    """No messages to enhance or relay."""


class UpstreamError(RelayError):
    """Base for failures reported by the upstream client."""

    error_type = "upstream_error"


class AuthenticationError(UpstreamError):
    pass


class RateLimitError(UpstreamError):
    def __init__(self, retry_after_seconds: int | None = None, message: str = "Rate limited"):
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


class CircuitBreakerOpenError(UpstreamError):
    def __init__(self, retry_after_seconds: int | None = None, message: str = "Upstream temporarily unavailable"):
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


class UpstreamProtocolError(UpstreamError):
    """Unexpected upstream response shape / contract mismatch."""


class EnhancementUpstreamError(RelayError):
    """The prompt enhancement round-trip failed or produced no usable text."""

    error_type = "upstream_error"


class CompletionUpstreamError(RelayError):
    """The main non-streaming completion call failed."""

    error_type = "upstream_error"


class StreamingUpstreamError(RelayError):
    """The upstream chunk sequence failed while being relayed."""

    error_type = "upstream_error"


class RequestTimeoutError(RelayError):
    """Server-side request deadline exceeded."""

    error_type = "timeout"


def retry_after_of(exc: BaseException) -> int | None:
    """Retry hint carried by an error or by the upstream error that caused it."""
    seen: BaseException | None = exc
    while seen is not None:
        value = getattr(seen, "retry_after_seconds", None)
        if value is not None:
            return value
        seen = seen.__cause__
    return None
