"""Streaming chat client and provider proxies with single-hop model fallback."""

__version__ = "0.1.0"
