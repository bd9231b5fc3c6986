"""
Event and chunk types produced while reading a proxied SSE stream.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class StreamChunkType(Enum):
    CONTENT = "content"
    COMPLETION = "completion"


class SSEEventType(Enum):
    """What a single ``data:`` line (or comment) turned out to be."""
    CHUNK = "chunk"
    COMPLETION = "completion"
    HEARTBEAT = "heartbeat"


@dataclass(frozen=True)
class RawSSEChunk:
    """One decoded SSE line, before provider-specific extraction."""
    event_type: SSEEventType
    data: dict[str, Any] | None
    raw_data: str
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class StreamChunk:
    """A text fragment (or the end marker) with the attempt's text so far."""
    chunk_type: StreamChunkType
    content: str | None
    accumulated_content: str
    finish_reason: str | None = None
    timestamp: float = field(default_factory=time.time)


@dataclass
class AccumulatorState:
    """Text received during one attempt; discarded on fallback."""
    text: str = ""
    chunk_count: int = 0
    finish_reason: str | None = None
    started_at: float | None = None
    updated_at: float | None = None

    def append(self, content: str, timestamp: float) -> None:
        self.text += content
        self.chunk_count += 1
        if self.started_at is None:
            self.started_at = timestamp
        self.updated_at = timestamp

    @property
    def elapsed(self) -> float:
        """Seconds between the first and the latest fragment."""
        if self.started_at is None or self.updated_at is None:
            return 0.0
        return self.updated_at - self.started_at
