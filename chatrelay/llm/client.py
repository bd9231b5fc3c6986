"""
HTTP client for the provider proxy functions.
"""

from __future__ import annotations

import json
from collections.abc import AsyncGenerator
from typing import Any

import httpx
import structlog

from .catalog import ModelCatalog
from .exceptions import ParseError, TransportError, UpstreamError
from .models import StreamRequest, StreamResult
from .streaming.models import StreamChunkType
from .streaming.parser import ChunkAccumulator, StreamingParser

logger = structlog.get_logger(__name__)

EVENT_STREAM = "text/event-stream"
TEXT_FIELDS = ("generatedText", "text", "content")


class ProxyClient:
    """
    Streaming and one-shot calls against ``<proxy_base_url>/<function>``.

    Errors are raised as TransportError (network, status, malformed stream)
    or UpstreamError (provider-reported), ready for the fallback policy.
    """

    def __init__(
        self,
        config: dict[str, Any],
        access_token: str | None = None,
        catalog: ModelCatalog | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        required_keys = ["proxy_base_url", "idle_timeout", "connect_timeout"]
        for key in required_keys:
            if key not in config:
                raise ValueError(
                    f"Required streaming configuration parameter '{key}' not "
                    "found. All streaming parameters must be explicitly configured."
                )

        self.config = config
        self.catalog = catalog or ModelCatalog()
        self.idle_timeout: float = config["idle_timeout"]
        self.client = httpx.AsyncClient(
            base_url=config["proxy_base_url"].rstrip("/") + "/",
            headers={
                "Authorization": f"Bearer {access_token or 'anonymous'}",
                "Content-Type": "application/json",
            },
            timeout=httpx.Timeout(
                connect=config["connect_timeout"],
                read=None,
                write=config["connect_timeout"],
                pool=config["connect_timeout"],
            ),
            transport=transport,
        )

    def endpoint_for(self, request: StreamRequest) -> str:
        return request.endpoint or self.catalog.endpoint_for(request.model)

    def _provider_name(self, model: str) -> str:
        return self.catalog.get_info(model).provider.value

    async def stream_chat(
        self,
        request: StreamRequest,
        parser: StreamingParser | None = None,
    ) -> AsyncGenerator[str]:
        """Yield text fragments of a streamed completion in receipt order."""
        endpoint = self.endpoint_for(request)
        provider = self._provider_name(request.model)
        parser = parser or StreamingParser(chunk_timeout=self.idle_timeout)
        accumulator = ChunkAccumulator(provider=provider, model=request.model)
        payload = {**request.to_payload(), "stream": True}

        logger.debug(
            "Opening proxy stream",
            endpoint=endpoint,
            provider=provider,
            model=request.model,
            messages=len(request.messages),
        )

        try:
            async with self.client.stream("POST", endpoint, json=payload) as response:
                await self._raise_for_status(response, provider, request.model)

                content_type = response.headers.get("content-type", "")
                if EVENT_STREAM not in content_type:
                    raise TransportError(
                        f"Expected streaming response, got content-type: "
                        f"{content_type or 'none'}",
                        provider=provider,
                        model=request.model,
                        status_code=response.status_code,
                    )

                async for raw_chunk in parser.parse_sse_stream(
                    response, provider=provider, model=request.model
                ):
                    try:
                        chunk = accumulator.process_chunk(raw_chunk)
                    except ParseError as e:
                        parser.skip_malformed(e, provider, request.model)
                        continue
                    if chunk is None:
                        continue
                    if chunk.chunk_type == StreamChunkType.COMPLETION:
                        break
                    if chunk.content:
                        yield chunk.content

        except httpx.HTTPError as e:
            raise TransportError(
                f"HTTP error: {e!s}", provider=provider, model=request.model
            ) from e

        logger.debug(
            "Proxy stream finished",
            endpoint=endpoint,
            model=request.model,
            chunks=accumulator.state.chunk_count,
            tokens_per_second=round(accumulator.tokens_per_second(), 2),
            parser_stats=parser.get_stats(),
        )

    async def complete(self, request: StreamRequest) -> StreamResult:
        """Non-streaming call; the proxy answers with one JSON object."""
        endpoint = self.endpoint_for(request)
        provider = self._provider_name(request.model)
        payload = {**request.to_payload(), "stream": False}

        try:
            response = await self.client.post(endpoint, json=payload)
        except httpx.HTTPError as e:
            raise TransportError(
                f"HTTP error: {e!s}", provider=provider, model=request.model
            ) from e

        await self._raise_for_status(response, provider, request.model)

        try:
            data = response.json()
        except json.JSONDecodeError as e:
            raise TransportError(
                f"Unexpected response format: {e!s}",
                provider=provider,
                model=request.model,
                status_code=response.status_code,
            ) from e

        if not isinstance(data, dict):
            raise TransportError(
                "Unexpected response format: expected a JSON object",
                provider=provider,
                model=request.model,
                status_code=response.status_code,
            )

        if data.get("error"):
            raise UpstreamError(
                str(data["error"]),
                provider=provider,
                model=request.model,
                response_data=data,
            )

        text = next((data[k] for k in TEXT_FIELDS if isinstance(data.get(k), str)), "")
        return StreamResult(
            text=text,
            model=data.get("model") or request.model,
            raw=data,
        )

    async def _raise_for_status(
        self, response: httpx.Response, provider: str, model: str
    ) -> None:
        """Turn a non-2xx proxy response into a TransportError."""
        if response.is_success:
            return

        body = (await response.aread()).decode("utf-8", errors="replace")
        message = body
        response_data: dict[str, Any] = {}
        try:
            parsed = json.loads(body)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, dict):
            response_data = parsed
            message = str(parsed.get("error") or body)

        raise TransportError(
            f"Proxy error {response.status_code}: {message}",
            provider=provider,
            model=model,
            status_code=response.status_code,
            response_data=response_data,
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

    async def __aenter__(self) -> ProxyClient:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

