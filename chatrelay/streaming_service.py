"""
Streaming chat service with a single fallback hop.

One logical completion call runs as one asyncio task:

    Idle -> Streaming(primary) -> Complete
                               -> Streaming(fallback) -> Complete | Failed

Each call returns a StreamHandle. Starting a new call cancels the previous
handle, and a cancelled or superseded handle never delivers another
callback, so two generations can never interleave their output.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Callable
from enum import Enum
from typing import Any

import httpx

from chatrelay.config import Configuration
from chatrelay.llm.catalog import ModelCatalog
from chatrelay.llm.client import ProxyClient
from chatrelay.llm.exceptions import (
    ExhaustedFallbackError,
    LLMError,
    TransportError,
    UpstreamError,
)
from chatrelay.llm.fallback import FallbackPolicy, classify_failure
from chatrelay.llm.models import ChatMessage, StreamRequest, StreamResult
from chatrelay.logging_utils import ContextualLogger, log_operation

ChunkCallback = Callable[[str], Any]
CompleteCallback = Callable[[str, str], Any]
ErrorCallback = Callable[[LLMError], Any]
FallbackCallback = Callable[[str, LLMError], Any]

# Failures that trigger the fallback hop
FALLBACK_ERRORS = (TransportError, UpstreamError)


class StreamState(Enum):
    """Lifecycle of one stream call."""
    IDLE = "idle"
    STREAMING_PRIMARY = "streaming_primary"
    STREAMING_FALLBACK = "streaming_fallback"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StreamHandle:
    """Cancellation handle for one stream call."""

    def __init__(self, generation: int, request: StreamRequest) -> None:
        self.generation = generation
        self.request = request
        self.state = StreamState.IDLE
        self.model = request.model
        self.result: StreamResult | None = None
        self.error: LLMError | None = None
        self._cancelled = False
        self._task: asyncio.Task[StreamResult | None] | None = None
        self._cancel_callbacks: list[Callable[[StreamHandle], Any]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def is_streaming(self) -> bool:
        return self.state in (
            StreamState.STREAMING_PRIMARY, StreamState.STREAMING_FALLBACK
        )

    def done(self) -> bool:
        return self._task is None or self._task.done()

    def add_cancel_callback(self, callback: Callable[[StreamHandle], Any]) -> None:
        """Run ``callback(handle)`` when the call is cancelled or superseded."""
        self._cancel_callbacks.append(callback)

    def cancel(self) -> None:
        """Stop the call; no stream callback fires after this returns."""
        if self._cancelled:
            return
        self._cancelled = True
        was_running = self.state == StreamState.IDLE or self.is_streaming
        if was_running:
            self.state = StreamState.CANCELLED
        if self._task is not None and not self._task.done():
            self._task.cancel()
        if was_running:
            for callback in self._cancel_callbacks:
                callback(self)

    async def wait(self) -> StreamResult | None:
        """Result of the call, or None when it failed or was cancelled."""
        if self._task is None:
            return None
        await asyncio.wait({self._task})
        if self._task.cancelled():
            return None
        return self._task.result()


class StreamingService:
    """
    Drives chat-completion streams through the provider proxies.

    Only one call is in flight per service: ``stream_with_fallback`` cancels
    whatever call is still running before starting the next one.
    """

    def __init__(
        self,
        client: ProxyClient,
        fallback_policy: FallbackPolicy | None = None,
        defaults: dict[str, Any] | None = None,
    ) -> None:
        self.client = client
        self.fallback_policy = fallback_policy or FallbackPolicy()
        self.defaults = defaults or {}
        self._generation = 0
        self._active: StreamHandle | None = None

    @classmethod
    def from_config(
        cls,
        config: Configuration,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> StreamingService:
        """Build the client, catalog and fallback policy from configuration."""
        streaming_config = config.get_streaming_config()
        catalog = ModelCatalog.from_config(config.get_models_config())
        client = ProxyClient(
            streaming_config,
            access_token=config.access_token,
            catalog=catalog,
            transport=transport,
        )
        policy = FallbackPolicy.from_config(config.get_fallback_config())
        return cls(client, policy, defaults=streaming_config)

    @property
    def active_handle(self) -> StreamHandle | None:
        return self._active

    def build_request(
        self,
        messages: list[dict[str, Any]] | list[ChatMessage],
        model: str | None = None,
        **overrides: Any,
    ) -> StreamRequest:
        """Request with configured defaults for anything not given."""
        params = {
            "temperature": self.defaults.get("default_temperature", 0.7),
            "max_tokens": self.defaults.get("default_max_tokens", 2000),
            **overrides,
        }
        model = model or self.defaults.get("default_model", "gpt-4o-mini")
        return StreamRequest.build(messages, model, **params)

    def stream_with_fallback(
        self,
        request: StreamRequest,
        on_chunk: ChunkCallback,
        on_complete: CompleteCallback,
        on_error: ErrorCallback,
        on_fallback: FallbackCallback | None = None,
    ) -> StreamHandle:
        """
        Start a streamed completion with at most one fallback attempt.

        Must be called from a running event loop. Any call still in flight
        is cancelled first.

        Args:
            request: Messages, model and generation parameters
            on_chunk: Called with each new text fragment, in receipt order
            on_complete: Called once with (full_text, model_used)
            on_error: Called once with the terminal error
            on_fallback: Called with (fallback_model, primary_error) before
                the fallback attempt starts; partial primary text is void

        Returns:
            Handle for cancelling or awaiting the call
        """
        if self._active is not None:
            self._active.cancel()

        self._generation += 1
        handle = StreamHandle(self._generation, request)
        self._active = handle
        handle._task = asyncio.create_task(
            self._run(handle, on_chunk, on_complete, on_error, on_fallback),
            name=f"chatrelay-stream-{handle.generation}",
        )
        return handle

    def cancel_active(self) -> None:
        if self._active is not None:
            self._active.cancel()

    def _is_current(self, handle: StreamHandle) -> bool:
        return not handle.cancelled and handle.generation == self._generation

    async def _deliver(
        self, handle: StreamHandle, callback: Callable[..., Any] | None, *args: Any
    ) -> None:
        if callback is None or not self._is_current(handle):
            return
        outcome = callback(*args)
        if inspect.isawaitable(outcome):
            await outcome

    async def _run(
        self,
        handle: StreamHandle,
        on_chunk: ChunkCallback,
        on_complete: CompleteCallback,
        on_error: ErrorCallback,
        on_fallback: FallbackCallback | None,
    ) -> StreamResult | None:
        log = ContextualLogger(
            {"generation": handle.generation, "model": handle.request.model},
            name=__name__,
        )
        error: LLMError

        try:
            result = await self._run_attempts(handle, on_chunk, on_fallback, log)
        except asyncio.CancelledError:
            handle.state = StreamState.CANCELLED
            log.debug("Stream cancelled")
            raise
        except LLMError as e:
            error = e
        except Exception as e:
            error = LLMError(
                f"Unexpected streaming failure: {e!s}",
                model=handle.model,
            )
            error.__cause__ = e
        else:
            handle.state = StreamState.COMPLETE
            handle.result = result
            log.info(
                "Stream complete",
                model_used=result.model,
                fallback_used=result.fallback_used,
                chunks=result.chunk_count,
                chars=len(result.text),
            )
            await self._deliver(handle, on_complete, result.text, result.model)
            return result

        handle.state = StreamState.FAILED
        handle.error = error
        log.error(
            "Stream failed",
            error_type=type(error).__name__,
            error_message=str(error),
        )
        await self._deliver(handle, on_error, error)
        return None

    async def _run_attempts(
        self,
        handle: StreamHandle,
        on_chunk: ChunkCallback,
        on_fallback: FallbackCallback | None,
        log: ContextualLogger,
    ) -> StreamResult:
        request = handle.request
        handle.state = StreamState.STREAMING_PRIMARY

        try:
            return await self._attempt(handle, request, on_chunk)
        except FALLBACK_ERRORS as e:
            primary_error = e

        fallback_model = self.fallback_policy.select(
            request.model, primary_error, request.messages
        )
        failure = classify_failure(primary_error)
        log.warning(
            "Primary stream failed, attempting fallback",
            fallback_model=fallback_model,
            failure_code=failure.code,
            status_code=primary_error.status_code,
            error_message=str(primary_error),
        )

        handle.state = StreamState.STREAMING_FALLBACK
        handle.model = fallback_model
        await self._deliver(handle, on_fallback, fallback_model, primary_error)

        try:
            return await self._attempt(
                handle, request.with_model(fallback_model), on_chunk,
                fallback_used=True,
            )
        except FALLBACK_ERRORS as e:
            raise ExhaustedFallbackError(
                f"Streaming failed for {request.model} and fallback "
                f"{fallback_model}: {e!s}",
                primary_error=primary_error,
                last_error=e,
            ) from e

    async def _attempt(
        self,
        handle: StreamHandle,
        request: StreamRequest,
        on_chunk: ChunkCallback,
        fallback_used: bool = False,
    ) -> StreamResult:
        """One streamed attempt; the accumulator starts empty every time."""
        fragments: list[str] = []

        async for fragment in self.client.stream_chat(request):
            fragments.append(fragment)
            await self._deliver(handle, on_chunk, fragment)

        return StreamResult(
            text="".join(fragments),
            model=request.model,
            fallback_used=fallback_used,
            chunk_count=len(fragments),
        )

    @log_operation("stream_generation")
    async def stream_generation(
        self,
        request: StreamRequest,
        on_chunk: ChunkCallback | None = None,
    ) -> StreamResult:
        """Single streamed attempt without fallback; raises on failure."""
        fragments: list[str] = []
        async for fragment in self.client.stream_chat(request):
            fragments.append(fragment)
            if on_chunk is not None:
                outcome = on_chunk(fragment)
                if inspect.isawaitable(outcome):
                    await outcome
        return StreamResult(
            text="".join(fragments),
            model=request.model,
            chunk_count=len(fragments),
        )

    @log_operation("complete")
    async def complete(self, request: StreamRequest) -> StreamResult:
        """Non-streaming completion through the proxy."""
        return await self.client.complete(request)

    async def test_streaming(self, model: str) -> bool:
        """Check whether a model answers through its proxy."""
        request = StreamRequest.build(
            [{"role": "user", "content": "test"}],
            model,
            max_tokens=1,
            stream=False,
        )
        try:
            await self.client.complete(request)
        except LLMError:
            return False
        return True

    async def close(self) -> None:
        """Cancel the active call and close the HTTP client."""
        self.cancel_active()
        await self.client.close()

    async def __aenter__(self) -> StreamingService:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
