"""In-memory keyword-overlap retrieval: stand-in for a vector store in demos and tests."""

from __future__ import annotations

import re

from pipe_engine.engine.models import MemoryChunk
from pipe_engine.memory.interface import Retriever

_WORD = re.compile(r"[a-z0-9]+")


def _words(text: str) -> set[str]:
    return set(_WORD.findall(text.lower()))


class InMemoryRetriever(Retriever):
    """Scores each document of a source by query-word overlap.

    ``sources`` maps a memory name to its documents. Querying an unknown
    source raises ``KeyError``, which the injector logs and skips.
    """

    def __init__(self, sources: dict[str, list[str]] | None = None) -> None:
        self._sources: dict[str, list[str]] = {name: list(docs) for name, docs in (sources or {}).items()}

    def add(self, source: str, *documents: str) -> None:
        self._sources.setdefault(source, []).extend(documents)

    async def retrieve(self, source: str, query: str, k: int = 5) -> list[MemoryChunk]:
        documents = self._sources[source]
        query_words = _words(query)
        scored: list[MemoryChunk] = []
        for text in documents:
            overlap = len(query_words & _words(text))
            if overlap > 0:
                score = round(overlap / max(len(query_words), 1), 4)
                scored.append(MemoryChunk(source=source, text=text, score=score))
        scored.sort(key=lambda c: c.score, reverse=True)
        return scored[:k]
