"""
Provider-proxy LLM integration with dataclass-based architecture.

This package provides:
- Type-safe request/result dataclasses
- An immutable model catalog keyed by model identifier
- SSE streaming with partial-line holdover and idle timeout
- Explicit fallback model selection
- An httpx client for the provider proxy functions
"""

from __future__ import annotations

from .catalog import ModelCatalog, ModelInfo, detect_provider
from .client import ProxyClient
from .exceptions import (
    ExhaustedFallbackError,
    LLMError,
    ParseError,
    ProviderError,
    StreamTimeoutError,
    TransportError,
    UpstreamError,
)
from .fallback import FailureInfo, FallbackPolicy, FallbackRule, classify_failure
from .models import (
    ChatMessage,
    MessageRole,
    ProviderType,
    StreamRequest,
    StreamResult,
)

__all__ = [
    "ChatMessage",
    "ExhaustedFallbackError",
    "FailureInfo",
    "FallbackPolicy",
    "FallbackRule",
    "LLMError",
    "MessageRole",
    "ModelCatalog",
    "ModelInfo",
    "ParseError",
    "ProviderError",
    "ProviderType",
    "ProxyClient",
    "StreamRequest",
    "StreamResult",
    "StreamTimeoutError",
    "TransportError",
    "UpstreamError",
    "classify_failure",
    "detect_provider",
]
