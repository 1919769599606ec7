"""Retriever interface: depends only on engine.models.MemoryChunk."""

from __future__ import annotations

from abc import ABC, abstractmethod

from pipe_engine.engine.models import MemoryChunk


class Retriever(ABC):
    """Async retrieval over named memory sources.

    Swap to a real vector store by implementing this ABC. Implementations may
    raise on failure; the injector treats a failing source as empty.
    """

    @abstractmethod
    async def retrieve(self, source: str, query: str, k: int = 5) -> list[MemoryChunk]: ...
