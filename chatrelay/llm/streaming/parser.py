"""
SSE parser and chunk accumulator for proxied chat streams.

The parser recovers ``data:`` events from a chunked HTTP body, holding
partial lines over between reads, and the accumulator turns each event
into an incremental text fragment regardless of the provider's shape.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncGenerator
from typing import Any

import httpx
import structlog

from ..exceptions import ParseError, StreamTimeoutError, TransportError, UpstreamError
from .models import (
    AccumulatorState,
    RawSSEChunk,
    SSEEventType,
    StreamChunk,
    StreamChunkType,
)

logger = structlog.get_logger(__name__)

DATA_PREFIX = "data:"
DONE_MARKER = "[DONE]"
HEARTBEAT_PAYLOADS = ("", "ping", "heartbeat")


class StreamingParser:
    """Incremental SSE parser with idle timeout and per-line error recovery."""

    def __init__(self, chunk_timeout: float | None = 30.0):
        self.chunk_timeout = chunk_timeout
        self.stats = self._empty_stats()

    @staticmethod
    def _empty_stats() -> dict[str, int]:
        return {
            'total_chunks': 0,
            'error_chunks': 0,
            'heartbeats': 0,
            'timeouts': 0,
        }

    async def parse_sse_stream(
        self,
        response: httpx.Response,
        provider: str = "unknown",
        model: str = "unknown",
    ) -> AsyncGenerator[RawSSEChunk]:
        """
        Parse an SSE body into raw events.

        Malformed lines are logged and skipped. A stalled body raises
        StreamTimeoutError; a broken body raises TransportError. Reading
        stops at the ``[DONE]`` sentinel or when the body ends.
        """
        buffer = ""
        text_stream = response.aiter_text()

        while True:
            try:
                async with asyncio.timeout(self.chunk_timeout):
                    text = await anext(text_stream)
            except StopAsyncIteration:
                break
            except TimeoutError as e:
                self.stats['timeouts'] += 1
                raise StreamTimeoutError(
                    f"No data received for {self.chunk_timeout}s",
                    timeout=self.chunk_timeout,
                    provider=provider,
                    model=model,
                ) from e
            except (httpx.HTTPError, httpx.StreamError) as e:
                raise TransportError(
                    f"Stream error: {e}", provider=provider, model=model
                ) from e

            buffer += text
            lines = buffer.split("\n")
            # Last element is an incomplete line (or "") until the next read
            buffer = lines.pop()

            for line in lines:
                chunk = self._handle_line(line, provider, model)
                if chunk is None:
                    continue
                yield chunk
                if chunk.event_type == SSEEventType.COMPLETION:
                    return

        if buffer:
            chunk = self._handle_line(buffer, provider, model)
            if chunk is not None:
                yield chunk

    def _handle_line(
        self, line: str, provider: str, model: str
    ) -> RawSSEChunk | None:
        try:
            chunk = self._parse_line(line, provider, model)
        except ParseError as e:
            self.skip_malformed(e, provider, model)
            return None

        if chunk is None:
            return None
        if chunk.event_type == SSEEventType.HEARTBEAT:
            self.stats['heartbeats'] += 1
        else:
            self.stats['total_chunks'] += 1
        return chunk

    def skip_malformed(self, error: ParseError, provider: str, model: str) -> None:
        """Count and log a line that is dropped instead of failing the stream."""
        self.stats['error_chunks'] += 1
        logger.warning(
            "Skipping malformed SSE line",
            provider=provider,
            model=model,
            error=str(error),
            raw_data=error.raw_data[:200],
        )

    def _parse_line(
        self, raw_line: str, provider: str, model: str
    ) -> RawSSEChunk | None:
        """Parse one SSE line; ``None`` for lines that carry no event."""
        line = raw_line.rstrip("\r")

        if line.startswith(":"):
            return RawSSEChunk(
                event_type=SSEEventType.HEARTBEAT, data=None, raw_data=line
            )

        if not line.startswith(DATA_PREFIX):
            # event:, id:, retry: and blank separators
            return None

        data_content = line[len(DATA_PREFIX):]
        if data_content.startswith(" "):
            data_content = data_content[1:]
        stripped = data_content.strip()

        if stripped == DONE_MARKER:
            return RawSSEChunk(
                event_type=SSEEventType.COMPLETION, data=None, raw_data=DONE_MARKER
            )

        if stripped in HEARTBEAT_PAYLOADS:
            return RawSSEChunk(
                event_type=SSEEventType.HEARTBEAT, data=None, raw_data=data_content
            )

        try:
            parsed_data = json.loads(data_content)
        except json.JSONDecodeError as e:
            raise ParseError(
                f"JSON decode error: {e}",
                raw_data=data_content,
                provider=provider,
                model=model,
            ) from e

        if not isinstance(parsed_data, dict):
            raise ParseError(
                f"Expected JSON object, got {type(parsed_data).__name__}",
                raw_data=data_content,
                provider=provider,
                model=model,
            )

        return RawSSEChunk(
            event_type=SSEEventType.CHUNK, data=parsed_data, raw_data=data_content
        )

    def get_stats(self) -> dict[str, int]:
        """Get streaming statistics for monitoring."""
        return self.stats.copy()

    def reset_stats(self) -> None:
        """Reset statistics counters."""
        self.stats = self._empty_stats()


def _shape_error(data: dict[str, Any], detail: str) -> ParseError:
    return ParseError(
        f"Unexpected payload shape: {detail}",
        raw_data=json.dumps(data, ensure_ascii=False),
    )


def _first_item(
    data: dict[str, Any], parent: dict[str, Any], key: str
) -> dict[str, Any] | None:
    """First element of a list-of-objects field; None when absent or empty."""
    items = parent.get(key)
    if items is None:
        return None
    if not isinstance(items, list):
        raise _shape_error(data, f"'{key}' is {type(items).__name__}, not a list")
    if not items:
        return None
    if not isinstance(items[0], dict):
        raise _shape_error(
            data, f"'{key}[0]' is {type(items[0]).__name__}, not an object"
        )
    return items[0]


def _object(data: dict[str, Any], parent: dict[str, Any], key: str) -> dict[str, Any]:
    value = parent.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise _shape_error(data, f"'{key}' is {type(value).__name__}, not an object")
    return value


def extract_content(data: dict[str, Any]) -> str | None:
    """
    Pull the text delta out of one event payload.

    Understands OpenAI-compatible deltas and full messages, Anthropic
    ``content_block_delta`` events, Gemini candidates and a bare
    ``content`` field. Raises ParseError when a known field has the wrong
    shape; the caller skips such a line like undecodable JSON.
    """
    if choice := _first_item(data, data, "choices"):
        delta = _object(data, choice, "delta")
        if delta.get("content"):
            return str(delta["content"])
        message = _object(data, choice, "message")
        if message.get("content"):
            return str(message["content"])

    delta = _object(data, data, "delta")
    if delta.get("text"):
        return str(delta["text"])

    if candidate := _first_item(data, data, "candidates"):
        content = _object(data, candidate, "content")
        part = _first_item(data, content, "parts")
        if part and part.get("text"):
            return str(part["text"])

    content = data.get("content")
    if isinstance(content, str) and content:
        return content

    return None


def extract_error(data: dict[str, Any]) -> str | None:
    """Provider error message carried in a payload, if any."""
    error = data.get("error")
    if not error:
        return None
    if isinstance(error, dict):
        return str(error.get("message") or error)
    return str(error)


class ChunkAccumulator:
    """Per-attempt accumulation of text fragments."""

    def __init__(self, provider: str = "unknown", model: str = "unknown"):
        self.provider = provider
        self.model = model
        self.state = AccumulatorState()

    def process_chunk(self, raw_chunk: RawSSEChunk) -> StreamChunk | None:
        """
        Turn a raw event into a content or completion chunk.

        Raises UpstreamError when the payload is a provider error report and
        ParseError when its fields have an unexpected shape.
        """
        if raw_chunk.event_type == SSEEventType.HEARTBEAT:
            return None

        if raw_chunk.event_type == SSEEventType.COMPLETION:
            return self._create_completion_chunk()

        data = raw_chunk.data or {}

        if message := extract_error(data):
            raise UpstreamError(
                message,
                provider=self.provider,
                model=self.model,
                response_data=data,
            )

        choices = data.get("choices")
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            if finish_reason := choices[0].get("finish_reason"):
                self.state.finish_reason = finish_reason

        content = extract_content(data)
        if not content:
            return None

        self.state.append(content, raw_chunk.timestamp)
        return StreamChunk(
            chunk_type=StreamChunkType.CONTENT,
            content=content,
            accumulated_content=self.state.text,
        )

    def _create_completion_chunk(self) -> StreamChunk:
        return StreamChunk(
            chunk_type=StreamChunkType.COMPLETION,
            content=None,
            accumulated_content=self.state.text,
            finish_reason=self.state.finish_reason or "stop",
        )

    @property
    def text(self) -> str:
        return self.state.text

    def reset(self) -> None:
        """Reset accumulator state for a new attempt."""
        self.state = AccumulatorState()

    def tokens_per_second(self) -> float:
        """Rough throughput estimate based on whitespace-separated words."""
        duration = self.state.elapsed
        if duration <= 0:
            return 0.0
        return len(self.state.text.split()) / duration


def sse_line(payload: dict[str, Any] | str) -> str:
    """Format one SSE ``data:`` event."""
    if isinstance(payload, str):
        return f"data: {payload}\n\n"
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


def delta_event(content: str) -> dict[str, Any]:
    """OpenAI-shape streaming delta."""
    return {"choices": [{"delta": {"content": content}}]}
