"""httpx-backed transport."""

from __future__ import annotations

import logging
from typing import AsyncIterator

import httpx

from pipe_engine.engine.errors import TransportError
from pipe_engine.transport.interface import Transport, TransportRequest

logger = logging.getLogger(__name__)

_ERROR_BODY_LIMIT = 500


class HttpxTransport(Transport):
    """Streams vendor responses through an ``httpx.AsyncClient``.

    Pass ``client`` to share one connection pool between runners; a client
    supplied by the caller is left open by ``aclose``.
    """

    def __init__(self, client: httpx.AsyncClient | None = None, timeout: float = 60.0) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    async def stream(self, request: TransportRequest) -> AsyncIterator[bytes]:
        logger.debug("%s %s (stream=%s)", request.method, request.url, request.stream)
        try:
            async with self._client.stream(
                request.method,
                request.url,
                headers=request.headers,
                params=request.params or None,
                json=request.body,
            ) as response:
                if response.status_code >= 400:
                    detail = (await response.aread())[:_ERROR_BODY_LIMIT]
                    raise TransportError(
                        f"{request.url} returned HTTP {response.status_code}: "
                        f"{detail.decode('utf-8', errors='replace')}",
                        status_code=response.status_code,
                    )
                async for chunk in response.aiter_bytes():
                    if chunk:
                        yield chunk
        except httpx.TimeoutException as exc:
            raise TransportError(f"Timed out talking to {request.url}: {exc!r}") from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"Connection to {request.url} failed: {exc!r}") from exc

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
