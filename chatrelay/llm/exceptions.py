"""
Error taxonomy for proxied chat streaming.

Every error carries the provider and model it came from so the fallback
policy and the logs can reason about it:
- TransportError: network failure, non-2xx status, malformed or stalled stream
- UpstreamError: the provider reported an error inside an otherwise valid stream
- ParseError: one malformed SSE line (skipped, never surfaced to callers)
- ExhaustedFallbackError: primary and fallback attempts both failed
"""

from __future__ import annotations


class LLMError(Exception):
    """Base LLM error with rich context."""

    def __init__(
        self,
        message: str,
        provider: str = "unknown",
        model: str = "unknown",
        status_code: int | None = None,
        response_data: dict | None = None,
    ):
        super().__init__(message)
        self.provider = provider
        self.model = model
        self.status_code = status_code
        self.response_data = response_data or {}


class TransportError(LLMError):
    """Network failure, non-2xx response or a stream we cannot read."""
    pass


class StreamTimeoutError(TransportError):
    """No bytes arrived within the idle timeout."""

    def __init__(self, message: str, timeout: float | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.timeout = timeout


class ParseError(LLMError):
    """A single SSE line could not be decoded."""

    def __init__(self, message: str, raw_data: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.raw_data = raw_data


class UpstreamError(LLMError):
    """Provider-reported error payload."""
    pass


class ExhaustedFallbackError(LLMError):
    """Both the primary and the fallback attempt failed."""

    def __init__(
        self,
        message: str,
        primary_error: LLMError,
        last_error: LLMError,
    ):
        super().__init__(
            message,
            provider=last_error.provider,
            model=last_error.model,
            status_code=last_error.status_code,
            response_data=last_error.response_data,
        )
        self.primary_error = primary_error
        self.last_error = last_error


class ProviderError(LLMError):
    """Provider-specific configuration or setup errors."""
    pass
