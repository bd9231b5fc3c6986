"""
FastAPI app exposing one relay function per upstream provider.

``POST /functions/v1/<provider>-chat-stream`` forwards the body to the
provider and either relays its stream as OpenAI-shape SSE or answers with
one JSON object. Failures before the response starts are JSON
``{"error": ...}`` with status 500; failures mid-stream are sent as a final
``data: {"error": ...}`` event.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from chatrelay.config import Configuration
from chatrelay.llm.exceptions import LLMError, ParseError, ProviderError
from chatrelay.llm.streaming.models import SSEEventType
from chatrelay.llm.streaming.parser import (
    DONE_MARKER,
    StreamingParser,
    delta_event,
    extract_error,
    sse_line,
)
from chatrelay.logging_utils import StreamErrorHandler, operation_context

from .providers import ProviderAdapter, UpstreamCall, build_adapters
from .schemas import ProxyChatRequest

logger = structlog.get_logger(__name__)

ROUTE_PREFIX = "/functions/v1"
ERROR_STATUS = 500
CORS_HEADERS = ["authorization", "x-client-info", "apikey", "content-type"]


def _error(message: str, status: int = ERROR_STATUS) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status)


async def _upstream_error_message(
    adapter: ProviderAdapter, response: httpx.Response
) -> str:
    body = (await response.aread()).decode("utf-8", errors="replace")
    return f"{adapter.name} API error ({response.status_code}): {body}"


async def relay_events(
    adapter: ProviderAdapter,
    call: UpstreamCall,
    response: httpx.Response,
    idle_timeout: float | None,
) -> AsyncIterator[str]:
    """Re-frame an upstream SSE body as OpenAI-shape delta events."""
    parser = StreamingParser(chunk_timeout=idle_timeout)
    relayed = 0
    try:
        async for raw_chunk in parser.parse_sse_stream(
            response, provider=adapter.name, model=call.model
        ):
            if raw_chunk.event_type == SSEEventType.COMPLETION:
                break
            if raw_chunk.event_type != SSEEventType.CHUNK or raw_chunk.data is None:
                continue

            if message := extract_error(raw_chunk.data):
                logger.warning(
                    "Upstream reported error mid-stream",
                    provider=adapter.name,
                    model=call.model,
                    error_message=message,
                )
                yield sse_line({"error": message})
                return

            try:
                delta = adapter.extract_delta(raw_chunk.data)
            except ParseError as e:
                parser.skip_malformed(e, adapter.name, call.model)
                continue
            if delta:
                relayed += 1
                yield sse_line(delta_event(delta))

        yield sse_line(DONE_MARKER)
    except LLMError as e:
        _, payload = StreamErrorHandler.to_payload(
            e, "relay_stream", {"provider": adapter.name, "model": call.model}
        )
        yield sse_line(payload)
    finally:
        await response.aclose()
        logger.debug(
            "Relay finished",
            provider=adapter.name,
            model=call.model,
            relayed=relayed,
            parser_stats=parser.get_stats(),
        )


def create_app(
    config: Configuration,
    upstream_client: httpx.AsyncClient | None = None,
) -> FastAPI:
    """Build the proxy app; ``upstream_client`` replaces the outbound client."""
    proxy_config = config.get_proxy_config()
    adapters = build_adapters(config)
    upstream_timeout = proxy_config.get("upstream_timeout", 60.0)
    owns_client = upstream_client is None
    client = upstream_client or httpx.AsyncClient(
        timeout=httpx.Timeout(upstream_timeout, read=None)
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Proxy starting",
            functions=sorted(adapters),
            host=proxy_config["host"],
            port=proxy_config["port"],
        )
        yield
        if owns_client:
            await client.aclose()
        logger.info("Proxy stopped")

    app = FastAPI(title="chatrelay proxy", lifespan=lifespan)
    app.state.adapters = adapters
    app.state.upstream = client
    app.add_middleware(
        CORSMiddleware,
        allow_origins=proxy_config["cors_origins"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=CORS_HEADERS,
    )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
            for err in exc.errors()
        )
        return _error(f"Invalid request body: {details}", status=422)

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok", "functions": sorted(adapters)}

    @app.post(f"{ROUTE_PREFIX}/{{function_name}}")
    async def relay(function_name: str, body: ProxyChatRequest):
        adapter = adapters.get(function_name)
        if adapter is None:
            return _error(f"Unknown function '{function_name}'", status=404)

        api_key = config.provider_api_key(adapter.name)
        if not api_key:
            status, payload = StreamErrorHandler.to_payload(
                ProviderError(
                    f"{adapter.display_key_env} is not set", provider=adapter.name
                ),
                "resolve_api_key",
                {"function": function_name},
            )
            return _error(payload["error"], status=status)

        call = adapter.build_call(body, api_key)
        context = {"provider": adapter.name, "model": call.model, "stream": body.stream}

        if body.stream:
            return await _open_stream(adapter, call, context)
        return await _complete(adapter, call, context)

    async def _open_stream(
        adapter: ProviderAdapter, call: UpstreamCall, context: dict
    ):
        request = client.build_request(
            "POST", call.url, headers=call.headers, json=call.json
        )
        try:
            response = await client.send(request, stream=True)
        except httpx.HTTPError as e:
            _, payload = StreamErrorHandler.to_payload(e, "open_stream", context)
            return _error(payload["error"])

        if not response.is_success:
            message = await _upstream_error_message(adapter, response)
            await response.aclose()
            logger.error("Upstream rejected stream", error_message=message, **context)
            return _error(message)

        logger.info("Relaying stream", **context)
        return StreamingResponse(
            relay_events(adapter, call, response, upstream_timeout),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    async def _complete(
        adapter: ProviderAdapter, call: UpstreamCall, context: dict
    ) -> JSONResponse:
        try:
            async with operation_context("complete", context=context):
                response = await client.post(
                    call.url, headers=call.headers, json=call.json
                )
        except httpx.HTTPError as e:
            _, payload = StreamErrorHandler.to_payload(e, "complete", context)
            return _error(payload["error"])

        if not response.is_success:
            message = await _upstream_error_message(adapter, response)
            logger.error("Upstream rejected request", error_message=message, **context)
            return _error(message)

        try:
            data = response.json()
        except ValueError as e:
            _, payload = StreamErrorHandler.to_payload(e, "complete", context)
            return _error(payload["error"])

        text = adapter.extract_text(data) if isinstance(data, dict) else ""
        return JSONResponse({
            "generatedText": text,
            "content": text,
            "model": call.model,
            "raw": data,
        })

    return app
