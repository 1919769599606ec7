"""Transport ABC: moves a vendor request over the wire and yields raw bytes."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, AsyncIterator

from pydantic import BaseModel, Field


class TransportRequest(BaseModel):
    """Vendor HTTP call produced by a provider adapter."""
    method: str = "POST"
    url: str
    headers: dict[str, str] = Field(default_factory=dict)
    params: dict[str, str] = Field(default_factory=dict)
    body: dict[str, Any] = Field(default_factory=dict)
    stream: bool = True


class Transport(ABC):
    """Raw HTTP/streaming transport.

    ``stream`` is an async generator of body fragments with arbitrary
    boundaries. Connection failures, timeouts and non-2xx statuses raise
    ``TransportError``. Closing the generator aborts the in-flight call.
    """

    @abstractmethod
    def stream(self, request: TransportRequest) -> AsyncIterator[bytes]: ...

    async def aclose(self) -> None:
        return None
