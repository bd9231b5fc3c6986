#!/usr/bin/env python3
"""
Tests for the streaming service: chunk delivery, the single fallback hop,
cancellation and single-flight supersession.
"""

import asyncio
import json

import httpx
import pytest

from chatrelay.config import Configuration
from chatrelay.llm.client import ProxyClient
from chatrelay.llm.exceptions import (
    ExhaustedFallbackError,
    StreamTimeoutError,
    TransportError,
    UpstreamError,
)
from chatrelay.llm.fallback import FallbackPolicy
from chatrelay.llm.models import StreamRequest
from chatrelay.llm.streaming.parser import delta_event, sse_line
from chatrelay.streaming_service import StreamingService, StreamState

STREAMING_CONFIG = {
    "proxy_base_url": "http://proxy.test/functions/v1",
    "idle_timeout": 1.0,
    "connect_timeout": 1.0,
    "default_temperature": 0.7,
    "default_max_tokens": 256,
    "default_model": "gpt-4o-mini",
}

HISTORY = [
    {"role": "system", "content": "Answer in French."},
    {"role": "user", "content": "Say hello"},
]


async def byte_stream(chunks, stall: float | None = None):
    for chunk in chunks:
        yield chunk.encode("utf-8")
        await asyncio.sleep(0)
    if stall is not None:
        await asyncio.sleep(stall)


def sse_stream(*fragments: str, done: bool = True, stall: float | None = None):
    chunks = [sse_line(delta_event(f)) for f in fragments]
    if done:
        chunks.append(sse_line("[DONE]"))
    return httpx.Response(
        200,
        headers={"content-type": "text/event-stream"},
        content=byte_stream(chunks, stall=stall),
    )


def proxy_error(status: int, message: str) -> httpx.Response:
    return httpx.Response(status, json={"error": message})


class Recorder:
    """Collects every callback in call order."""

    def __init__(self):
        self.events: list[tuple] = []

    def on_chunk(self, fragment):
        self.events.append(("chunk", fragment))

    def on_complete(self, text, model):
        self.events.append(("complete", text, model))

    def on_error(self, error):
        self.events.append(("error", error))

    def on_fallback(self, model, error):
        self.events.append(("fallback", model, error))

    def kinds(self) -> list[str]:
        return [event[0] for event in self.events]

    def chunks(self) -> list[str]:
        return [event[1] for event in self.events if event[0] == "chunk"]

    def start(self, service: StreamingService, request: StreamRequest):
        return service.stream_with_fallback(
            request, self.on_chunk, self.on_complete, self.on_error, self.on_fallback
        )


class Upstream:
    """Mock proxy answering per model; records every request body."""

    def __init__(self, responses: dict):
        self.responses = responses
        self.requests: list[tuple[str, dict]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append((request.url.path, body))
        response = self.responses[body["model"]]
        return response() if callable(response) else response


def make_service(upstream: Upstream, policy: FallbackPolicy | None = None, **config):
    streaming_config = {**STREAMING_CONFIG, **config}
    client = ProxyClient(
        streaming_config,
        access_token="jwt",
        transport=httpx.MockTransport(upstream),
    )
    return StreamingService(
        client,
        policy or FallbackPolicy(models={"primary-x": "secondary-y"}),
        defaults=streaming_config,
    )


class TestStreamWithFallback:

    @pytest.mark.asyncio
    async def test_chunks_then_complete(self):
        upstream = Upstream({"gpt-4o": lambda: sse_stream("Hel", "lo", "!")})
        service = make_service(upstream)
        recorder = Recorder()

        handle = recorder.start(service, service.build_request(HISTORY, "gpt-4o"))
        result = await handle.wait()

        assert recorder.events == [
            ("chunk", "Hel"),
            ("chunk", "lo"),
            ("chunk", "!"),
            ("complete", "Hello!", "gpt-4o"),
        ]
        assert result.text == "Hello!"
        assert result.chunk_count == 3
        assert result.fallback_used is False
        assert handle.state == StreamState.COMPLETE
        assert len(upstream.requests) == 1

    @pytest.mark.asyncio
    async def test_request_wire_format(self):
        upstream = Upstream({"claude-3-5-sonnet-20241022": lambda: sse_stream("ok")})
        service = make_service(upstream)

        request = service.build_request(HISTORY, "claude-3-5-sonnet-20241022")
        await Recorder().start(service, request).wait()

        path, body = upstream.requests[0]
        assert path == "/functions/v1/claude-chat-stream"
        assert body["messages"] == HISTORY
        assert body["stream"] is True
        assert body["temperature"] == 0.7
        assert body["max_tokens"] == 256
        assert body["max_completion_tokens"] == 256

    @pytest.mark.asyncio
    async def test_sends_bearer_token(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers["authorization"]
            return sse_stream("x")

        client = ProxyClient(
            STREAMING_CONFIG, access_token="jwt", transport=httpx.MockTransport(handler)
        )
        service = StreamingService(client, defaults=STREAMING_CONFIG)
        await Recorder().start(service, service.build_request(HISTORY)).wait()

        assert seen["auth"] == "Bearer jwt"

    @pytest.mark.asyncio
    async def test_fallback_after_primary_status_error(self):
        upstream = Upstream({
            "primary-x": proxy_error(500, "boom"),
            "secondary-y": lambda: sse_stream("Bonjour", "!"),
        })
        service = make_service(upstream)
        recorder = Recorder()

        handle = recorder.start(service, service.build_request(HISTORY, "primary-x"))
        result = await handle.wait()

        assert recorder.kinds() == ["fallback", "chunk", "chunk", "complete"]
        assert recorder.events[0][1] == "secondary-y"
        assert isinstance(recorder.events[0][2], TransportError)
        assert recorder.events[0][2].status_code == 500
        assert recorder.chunks() == ["Bonjour", "!"]
        assert recorder.events[-1] == ("complete", "Bonjour!", "secondary-y")
        assert result.fallback_used is True
        assert handle.model == "secondary-y"

        # Same history goes to the fallback, exactly once
        assert [body["model"] for _, body in upstream.requests] == [
            "primary-x", "secondary-y"
        ]
        assert upstream.requests[0][1]["messages"] == upstream.requests[1][1]["messages"]

    @pytest.mark.asyncio
    async def test_partial_primary_output_is_discarded(self):
        def broken_primary():
            return httpx.Response(
                200,
                headers={"content-type": "text/event-stream"},
                content=byte_stream([
                    sse_line(delta_event("Half")),
                    sse_line({"error": {"message": "model overloaded"}}),
                ]),
            )

        upstream = Upstream({
            "primary-x": broken_primary,
            "secondary-y": lambda: sse_stream("Full"),
        })
        service = make_service(upstream)
        recorder = Recorder()

        result = await recorder.start(
            service, service.build_request(HISTORY, "primary-x")
        ).wait()

        assert recorder.kinds() == ["chunk", "fallback", "chunk", "complete"]
        assert isinstance(recorder.events[1][2], UpstreamError)
        assert result.text == "Full"
        assert recorder.events[-1] == ("complete", "Full", "secondary-y")

    @pytest.mark.asyncio
    async def test_idle_timeout_falls_back_by_error_class(self):
        upstream = Upstream({
            "primary-x": lambda: sse_stream("slow", done=False, stall=5.0),
            "openai/gpt-4o-mini": lambda: sse_stream("fast"),
        })
        service = make_service(upstream, FallbackPolicy(), idle_timeout=0.05)
        recorder = Recorder()

        result = await recorder.start(
            service, service.build_request(HISTORY, "primary-x")
        ).wait()

        fallback = next(e for e in recorder.events if e[0] == "fallback")
        assert fallback[1] == "openai/gpt-4o-mini"
        assert isinstance(fallback[2], StreamTimeoutError)
        assert result.model == "openai/gpt-4o-mini"
        assert upstream.requests[1][0] == "/functions/v1/openai-chat-stream"

    @pytest.mark.asyncio
    async def test_fallback_never_repeats_primary_model(self):
        upstream = Upstream({
            "openai/gpt-4o-mini": proxy_error(429, "rate limited"),
            "anthropic/claude-3-5-haiku-20241022": lambda: sse_stream("Salut"),
        })
        service = make_service(upstream, FallbackPolicy())
        recorder = Recorder()

        result = await recorder.start(
            service, service.build_request(HISTORY, "openai/gpt-4o-mini")
        ).wait()

        assert [(path, body["model"]) for path, body in upstream.requests] == [
            ("/functions/v1/openai-chat-stream", "openai/gpt-4o-mini"),
            ("/functions/v1/claude-chat-stream", "anthropic/claude-3-5-haiku-20241022"),
        ]
        assert result.text == "Salut"
        assert recorder.events[-1] == (
            "complete", "Salut", "anthropic/claude-3-5-haiku-20241022"
        )

    @pytest.mark.asyncio
    async def test_fallback_follows_prompt_task(self):
        upstream = Upstream({
            "primary-x": proxy_error(500, "boom"),
            "deepseek-coder": lambda: sse_stream("def f(): pass"),
        })
        service = make_service(upstream, FallbackPolicy())
        recorder = Recorder()
        history = [{"role": "user", "content": "Please debug this function for me"}]

        result = await recorder.start(
            service, service.build_request(history, "primary-x")
        ).wait()

        assert recorder.events[0][1] == "deepseek-coder"
        assert upstream.requests[1][0] == "/functions/v1/deepseek-chat-stream"
        assert result.model == "deepseek-coder"

    @pytest.mark.asyncio
    async def test_unexpected_payload_shape_is_skipped(self):
        def odd_primary():
            return httpx.Response(
                200,
                headers={"content-type": "text/event-stream"},
                content=byte_stream([
                    sse_line(delta_event("Bon")),
                    sse_line({"candidates": [{"content": "oops"}]}),
                    sse_line(delta_event("jour")),
                    sse_line("[DONE]"),
                ]),
            )

        upstream = Upstream({"primary-x": odd_primary})
        service = make_service(upstream)
        recorder = Recorder()

        result = await recorder.start(
            service, service.build_request(HISTORY, "primary-x")
        ).wait()

        assert recorder.events == [
            ("chunk", "Bon"),
            ("chunk", "jour"),
            ("complete", "Bonjour", "primary-x"),
        ]
        assert result.text == "Bonjour"
        assert len(upstream.requests) == 1

    @pytest.mark.asyncio
    async def test_wrong_content_type_triggers_fallback(self):
        upstream = Upstream({
            "primary-x": httpx.Response(200, html="<html>login</html>"),
            "secondary-y": lambda: sse_stream("ok"),
        })
        service = make_service(upstream)
        recorder = Recorder()

        result = await recorder.start(
            service, service.build_request(HISTORY, "primary-x")
        ).wait()

        assert "content-type" in str(recorder.events[0][2])
        assert result.text == "ok"

    @pytest.mark.asyncio
    async def test_network_error_triggers_fallback(self):
        def refuse():
            raise httpx.ConnectError("connection refused")

        upstream = Upstream({
            "primary-x": refuse,
            "secondary-y": lambda: sse_stream("ok"),
        })
        service = make_service(upstream)
        recorder = Recorder()

        result = await recorder.start(
            service, service.build_request(HISTORY, "primary-x")
        ).wait()

        assert isinstance(recorder.events[0][2], TransportError)
        assert result.text == "ok"

    @pytest.mark.asyncio
    async def test_both_attempts_fail(self):
        upstream = Upstream({
            "primary-x": proxy_error(503, "offline"),
            "secondary-y": proxy_error(429, "slow down"),
        })
        service = make_service(upstream)
        recorder = Recorder()

        handle = recorder.start(service, service.build_request(HISTORY, "primary-x"))
        result = await handle.wait()

        assert result is None
        assert recorder.kinds() == ["fallback", "error"]
        error = recorder.events[-1][1]
        assert isinstance(error, ExhaustedFallbackError)
        assert error.primary_error.status_code == 503
        assert error.last_error.status_code == 429
        assert handle.state == StreamState.FAILED
        assert handle.error is error
        # One fallback hop, never a second
        assert len(upstream.requests) == 2

    @pytest.mark.asyncio
    async def test_async_callbacks_are_awaited(self):
        upstream = Upstream({"gpt-4o": lambda: sse_stream("a", "b")})
        service = make_service(upstream)
        seen = []

        async def on_chunk(fragment):
            await asyncio.sleep(0)
            seen.append(fragment)

        async def on_complete(text, model):
            seen.append((text, model))

        handle = service.stream_with_fallback(
            service.build_request(HISTORY, "gpt-4o"),
            on_chunk, on_complete, lambda error: None,
        )
        await handle.wait()

        assert seen == ["a", "b", ("ab", "gpt-4o")]

    @pytest.mark.asyncio
    async def test_callback_exception_reported_once(self):
        upstream = Upstream({"gpt-4o": lambda: sse_stream("a")})
        service = make_service(upstream)
        errors = []

        def on_chunk(fragment):
            raise RuntimeError("renderer crashed")

        handle = service.stream_with_fallback(
            service.build_request(HISTORY, "gpt-4o"),
            on_chunk, lambda text, model: None, errors.append,
        )
        await handle.wait()

        assert len(errors) == 1
        assert "renderer crashed" in str(errors[0])
        assert handle.state == StreamState.FAILED


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancel_suppresses_callbacks(self):
        upstream = Upstream({
            "gpt-4o": lambda: sse_stream("first", done=False, stall=5.0),
        })
        service = make_service(upstream, idle_timeout=10.0)
        recorder = Recorder()

        handle = recorder.start(service, service.build_request(HISTORY, "gpt-4o"))
        while not recorder.events:
            await asyncio.sleep(0.01)
        handle.cancel()

        assert await handle.wait() is None
        assert handle.state == StreamState.CANCELLED
        assert recorder.events == [("chunk", "first")]

    @pytest.mark.asyncio
    async def test_cancel_before_start(self):
        upstream = Upstream({"gpt-4o": lambda: sse_stream("never")})
        service = make_service(upstream)
        recorder = Recorder()

        handle = recorder.start(service, service.build_request(HISTORY, "gpt-4o"))
        handle.cancel()

        assert await handle.wait() is None
        assert recorder.events == []
        assert handle.cancelled

    @pytest.mark.asyncio
    async def test_new_call_supersedes_previous(self):
        upstream = Upstream({
            "gpt-4o": lambda: sse_stream("old", done=False, stall=5.0),
            "claude-3-5-sonnet-20241022": lambda: sse_stream("new"),
        })
        service = make_service(upstream, idle_timeout=10.0)
        old, new = Recorder(), Recorder()

        first = old.start(service, service.build_request(HISTORY, "gpt-4o"))
        while not old.events:
            await asyncio.sleep(0.01)
        second = new.start(
            service, service.build_request(HISTORY, "claude-3-5-sonnet-20241022")
        )

        assert await first.wait() is None
        result = await second.wait()

        assert first.state == StreamState.CANCELLED
        assert old.events == [("chunk", "old")]
        assert new.events == [
            ("chunk", "new"),
            ("complete", "new", "claude-3-5-sonnet-20241022"),
        ]
        assert result.text == "new"
        assert service.active_handle is second

    @pytest.mark.asyncio
    async def test_close_cancels_active_call(self):
        upstream = Upstream({
            "gpt-4o": lambda: sse_stream("x", done=False, stall=5.0),
        })
        service = make_service(upstream, idle_timeout=10.0)
        recorder = Recorder()

        handle = recorder.start(service, service.build_request(HISTORY, "gpt-4o"))
        await service.close()

        assert await handle.wait() is None
        assert "complete" not in recorder.kinds()


class TestSingleShotCalls:

    @pytest.mark.asyncio
    async def test_stream_generation_raises_without_fallback(self):
        upstream = Upstream({"primary-x": proxy_error(502, "bad gateway")})
        service = make_service(upstream)

        with pytest.raises(TransportError, match="bad gateway"):
            await service.stream_generation(service.build_request(HISTORY, "primary-x"))
        assert len(upstream.requests) == 1

    @pytest.mark.asyncio
    async def test_stream_generation_collects_text(self):
        upstream = Upstream({"gpt-4o": lambda: sse_stream("a", "b", "c")})
        service = make_service(upstream)
        fragments = []

        result = await service.stream_generation(
            service.build_request(HISTORY, "gpt-4o"), fragments.append
        )

        assert fragments == ["a", "b", "c"]
        assert result.text == "abc"

    @pytest.mark.asyncio
    async def test_complete(self):
        upstream = Upstream({
            "gpt-4o": httpx.Response(
                200, json={"generatedText": "Bonjour", "model": "gpt-4o"}
            ),
        })
        service = make_service(upstream)

        result = await service.complete(
            service.build_request(HISTORY, "gpt-4o", stream=False)
        )

        assert result.text == "Bonjour"
        assert upstream.requests[0][1]["stream"] is False

    @pytest.mark.asyncio
    async def test_complete_reports_upstream_error(self):
        upstream = Upstream({
            "gpt-4o": httpx.Response(200, json={"error": "context too long"}),
        })
        service = make_service(upstream)

        with pytest.raises(UpstreamError, match="context too long"):
            await service.complete(service.build_request(HISTORY, "gpt-4o"))

    @pytest.mark.asyncio
    async def test_test_streaming(self):
        upstream = Upstream({
            "gpt-4o": httpx.Response(200, json={"content": "."}),
            "primary-x": proxy_error(401, "bad key"),
        })
        service = make_service(upstream)

        assert await service.test_streaming("gpt-4o") is True
        assert await service.test_streaming("primary-x") is False
        assert upstream.requests[0][1]["max_tokens"] == 1


class TestRequests:

    def test_build_request_uses_defaults(self):
        service = make_service(Upstream({}))
        request = service.build_request(HISTORY)

        assert request.model == "gpt-4o-mini"
        assert request.temperature == 0.7
        assert request.max_tokens == 256

    def test_overrides(self):
        service = make_service(Upstream({}))
        request = service.build_request(HISTORY, "gpt-4o", temperature=0.1)
        assert request.temperature == 0.1

    @pytest.mark.parametrize(
        "kwargs",
        [{"temperature": 2.1}, {"temperature": -0.1}, {"max_tokens": 0}],
    )
    def test_invalid_parameters(self, kwargs):
        with pytest.raises(ValueError):
            StreamRequest.build(HISTORY, "gpt-4o", **kwargs)

    def test_empty_history_rejected(self):
        with pytest.raises(ValueError, match="messages"):
            StreamRequest.build([], "gpt-4o")

    def test_with_model_keeps_history(self):
        request = StreamRequest.build(HISTORY, "gpt-4o", endpoint="custom-fn")
        fallback = request.with_model("sonar")

        assert fallback.messages == request.messages
        assert fallback.model == "sonar"
        assert fallback.endpoint is None

    def test_from_config(self):
        service = StreamingService.from_config(
            Configuration(), transport=httpx.MockTransport(Upstream({}))
        )
        assert service.fallback_policy.last_resort_model == (
            "anthropic/claude-3-5-haiku-20241022"
        )
        assert service.fallback_policy.task_models["code"] == "deepseek-coder"
        assert service.client.catalog.endpoint_for("sonar") == "perplexity-chat-stream"
