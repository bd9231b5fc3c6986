"""Provider proxy functions re-framing upstream streams as OpenAI-shape SSE."""

from __future__ import annotations

from .app import create_app
from .providers import ProviderAdapter, UpstreamCall, build_adapters

__all__ = ["ProviderAdapter", "UpstreamCall", "build_adapters", "create_app"]
