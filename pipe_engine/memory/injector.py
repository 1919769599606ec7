"""Memory context injector: retrieves, ranks and budgets memory chunks into one context message."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from pipe_engine.engine.models import MemoryChunk, Message
from pipe_engine.memory.interface import Retriever

logger = logging.getLogger(__name__)

CONTEXT_HEADER = (
    "Below is CONTEXT retrieved from memory to help answer the user's next message. "
    "Each chunk starts with its source in brackets. Prefer the CONTEXT over prior "
    "knowledge and say so when it does not contain the answer.\n\nCONTEXT:\n"
)
CHUNK_SEPARATOR = "\n\n"


@dataclass
class InjectionResult:
    messages: list[Message]
    selected: list[MemoryChunk] = field(default_factory=list)
    failed_sources: list[str] = field(default_factory=list)

    @property
    def injected(self) -> bool:
        return bool(self.selected)


def render_chunk(chunk: MemoryChunk) -> str:
    return f"[{chunk.source}] {chunk.text}"


class MemoryInjector:
    """Queries every named source with the latest user message and prepends the best chunks.

    Chunks from all sources are ranked by score (descending); ties keep
    source declaration order, then the order the retriever returned them.
    Chunks are taken in that order until the next one would push the
    context message past ``budget_chars``.
    """

    def __init__(self, retriever: Retriever, budget_chars: int = 4000, top_k: int = 5) -> None:
        if budget_chars <= 0:
            raise ValueError("budget_chars must be positive")
        self._retriever = retriever
        self.budget_chars = budget_chars
        self.top_k = top_k

    async def inject(self, messages: list[Message], sources: list[str]) -> InjectionResult:
        if not sources:
            return InjectionResult(messages=list(messages))

        user_index = _last_user_index(messages)
        if user_index is None:
            logger.info("No user message to query memory with; skipping injection")
            return InjectionResult(messages=list(messages))
        query = messages[user_index].content

        chunks, failed = await self._retrieve_all(sources, query)
        selected = self.select(chunks)
        if not selected:
            return InjectionResult(messages=list(messages), failed_sources=failed)

        context = Message(role="system", content=self.render(selected))
        augmented = list(messages[:user_index]) + [context] + list(messages[user_index:])
        logger.info("Injected %d memory chunk(s) from %s", len(selected), sources)
        return InjectionResult(messages=augmented, selected=selected, failed_sources=failed)

    async def _retrieve_all(self, sources: list[str], query: str) -> tuple[list[MemoryChunk], list[str]]:
        results = await asyncio.gather(
            *(self._retriever.retrieve(source, query, k=self.top_k) for source in sources),
            return_exceptions=True,
        )
        chunks: list[MemoryChunk] = []
        failed: list[str] = []
        for source, result in zip(sources, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.warning("Memory retrieval from '%s' failed: %r", source, result)
                failed.append(source)
                continue
            chunks.extend(result)
        return chunks, failed

    def select(self, chunks: list[MemoryChunk]) -> list[MemoryChunk]:
        # sorted() is stable, so equal scores keep source order, then retrieval order
        ranked = sorted(chunks, key=lambda c: c.score, reverse=True)
        selected: list[MemoryChunk] = []
        size = len(CONTEXT_HEADER)
        for chunk in ranked:
            extra = len(render_chunk(chunk)) + (len(CHUNK_SEPARATOR) if selected else 0)
            if size + extra > self.budget_chars:
                break
            selected.append(chunk)
            size += extra
        return selected

    @staticmethod
    def render(chunks: list[MemoryChunk]) -> str:
        return CONTEXT_HEADER + CHUNK_SEPARATOR.join(render_chunk(c) for c in chunks)


def _last_user_index(messages: list[Message]) -> int | None:
    for index in range(len(messages) - 1, -1, -1):
        if messages[index].role == "user":
            return index
    return None
