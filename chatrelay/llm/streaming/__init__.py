"""
Streaming functionality for proxied chat completions.

This package contains:
- SSE parsing with partial-line holdover and idle timeout
- Chunk accumulation across provider payload shapes
- SSE formatting helpers used by the proxy handlers
"""

from __future__ import annotations

from .models import RawSSEChunk, SSEEventType, StreamChunk, StreamChunkType
from .parser import (
    ChunkAccumulator,
    StreamingParser,
    delta_event,
    extract_content,
    sse_line,
)

__all__ = [
    "ChunkAccumulator",
    "RawSSEChunk",
    "SSEEventType",
    "StreamChunk",
    "StreamChunkType",
    "StreamingParser",
    "delta_event",
    "extract_content",
    "sse_line",
]
