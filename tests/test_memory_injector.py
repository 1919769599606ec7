"""Tests for MemoryInjector: budget, deterministic selection, failure isolation."""

from __future__ import annotations

import pytest

from pipe_engine.engine.models import MemoryChunk, Message
from pipe_engine.memory.in_memory import InMemoryRetriever
from pipe_engine.memory.injector import CHUNK_SEPARATOR, CONTEXT_HEADER, MemoryInjector, render_chunk
from pipe_engine.memory.interface import Retriever


class ScriptedRetriever(Retriever):
    """Returns fixed chunks per source; a source mapped to an exception raises it."""

    def __init__(self, chunks: dict[str, object]) -> None:
        self._chunks = chunks
        self.queries: list[tuple[str, str, int]] = []

    async def retrieve(self, source: str, query: str, k: int = 5) -> list[MemoryChunk]:
        self.queries.append((source, query, k))
        result = self._chunks[source]
        if isinstance(result, Exception):
            raise result
        return list(result)[:k]


def _chunk(source: str, text: str, score: float) -> MemoryChunk:
    return MemoryChunk(source=source, text=text, score=score)


def _conversation() -> list[Message]:
    return [
        Message(role="system", content="Be helpful."),
        Message(role="user", content="earlier question"),
        Message(role="assistant", content="earlier answer"),
        Message(role="user", content="how do pipes route requests"),
    ]


class TestInjection:
    """Requirement: test_memory_injection."""

    async def test_context_inserted_before_last_user_message(self):
        retriever = ScriptedRetriever({"docs": [_chunk("docs", "Pipes route by model id.", 0.9)]})
        result = await MemoryInjector(retriever).inject(_conversation(), ["docs"])

        assert result.injected
        roles = [m.role for m in result.messages]
        assert roles == ["system", "user", "assistant", "system", "user"]
        context = result.messages[3].content
        assert context.startswith(CONTEXT_HEADER)
        assert "[docs] Pipes route by model id." in context
        assert retriever.queries == [("docs", "how do pipes route requests", 5)]

    async def test_input_messages_are_not_mutated(self):
        messages = _conversation()
        retriever = ScriptedRetriever({"docs": [_chunk("docs", "x", 1.0)]})
        await MemoryInjector(retriever).inject(messages, ["docs"])
        assert len(messages) == 4

    async def test_no_sources_is_a_no_op(self):
        result = await MemoryInjector(ScriptedRetriever({})).inject(_conversation(), [])
        assert not result.injected
        assert result.messages == _conversation()

    async def test_no_user_message_skips_retrieval(self):
        retriever = ScriptedRetriever({"docs": []})
        result = await MemoryInjector(retriever).inject([Message(role="system", content="s")], ["docs"])
        assert retriever.queries == []
        assert not result.injected


class TestBudget:
    """Requirement: test_memory_budget."""

    @pytest.mark.parametrize("budget", [4000, len(CONTEXT_HEADER) + 60, len(CONTEXT_HEADER) + 150])
    async def test_rendered_context_never_exceeds_budget(self, budget):
        chunks = [_chunk("docs", f"chunk {i} " + "x" * 40, 1.0 - i / 100) for i in range(50)]
        injector = MemoryInjector(ScriptedRetriever({"docs": chunks}), budget_chars=budget, top_k=50)
        result = await injector.inject(_conversation(), ["docs"])

        context = next(m for m in result.messages if m.role == "system" and m.content.startswith(CONTEXT_HEADER))
        assert len(context.content) <= budget
        assert result.selected == chunks[:len(result.selected)]

    def test_selection_stops_at_first_chunk_that_does_not_fit(self):
        big = _chunk("docs", "B" * 100, 0.9)
        small = _chunk("docs", "s", 0.5)
        budget = len(CONTEXT_HEADER) + len(render_chunk(big)) - 1
        injector = MemoryInjector(ScriptedRetriever({}), budget_chars=budget)

        # ``small`` would fit on its own but comes after a chunk that does not
        assert injector.select([big, small]) == []

    def test_separator_counts_toward_budget(self):
        a, b = _chunk("d", "aaaa", 0.9), _chunk("d", "bbbb", 0.8)
        exact = len(CONTEXT_HEADER) + len(render_chunk(a)) + len(CHUNK_SEPARATOR) + len(render_chunk(b))
        assert MemoryInjector(ScriptedRetriever({}), budget_chars=exact).select([a, b]) == [a, b]
        assert MemoryInjector(ScriptedRetriever({}), budget_chars=exact - 1).select([a, b]) == [a]
        assert len(MemoryInjector.render([a, b])) == exact

    async def test_nothing_fits_means_no_context_message(self):
        injector = MemoryInjector(ScriptedRetriever({"docs": [_chunk("docs", "z" * 500, 1.0)]}), budget_chars=300)
        result = await injector.inject(_conversation(), ["docs"])
        assert not result.injected
        assert len(result.messages) == 4

    def test_non_positive_budget_rejected(self):
        with pytest.raises(ValueError):
            MemoryInjector(ScriptedRetriever({}), budget_chars=0)


class TestDeterministicSelection:
    async def test_ties_keep_source_then_retrieval_order(self):
        retriever = ScriptedRetriever({
            "first": [_chunk("first", "f1", 0.5), _chunk("first", "f2", 0.5)],
            "second": [_chunk("second", "s1", 0.7), _chunk("second", "s2", 0.5)],
        })
        injector = MemoryInjector(retriever)
        runs = [await injector.inject(_conversation(), ["first", "second"]) for _ in range(3)]

        expected = ["s1", "f1", "f2", "s2"]
        for result in runs:
            assert [c.text for c in result.selected] == expected
        assert runs[0].messages == runs[1].messages == runs[2].messages


class TestRetrievalFailure:
    async def test_failed_source_is_skipped(self, caplog):
        retriever = ScriptedRetriever({
            "broken": ConnectionError("vector store down"),
            "docs": [_chunk("docs", "still here", 0.4)],
        })
        result = await MemoryInjector(retriever).inject(_conversation(), ["broken", "docs"])

        assert result.failed_sources == ["broken"]
        assert [c.text for c in result.selected] == ["still here"]
        assert "vector store down" in caplog.text

    async def test_all_sources_failing_leaves_messages_untouched(self):
        retriever = ScriptedRetriever({"broken": RuntimeError("boom")})
        result = await MemoryInjector(retriever).inject(_conversation(), ["broken"])
        assert result.messages == _conversation()
        assert result.failed_sources == ["broken"]


class TestInMemoryRetriever:
    async def test_scores_by_word_overlap(self, retriever):
        chunks = await retriever.retrieve("docs", "how many LLM vendors can pipes route to")
        assert chunks[0].text.startswith("Pipes route")
        assert all(0 < c.score <= 1 for c in chunks)

    async def test_k_limits_results(self):
        r = InMemoryRetriever()
        r.add("notes", "alpha beta", "alpha gamma", "alpha delta")
        assert len(await r.retrieve("notes", "alpha", k=2)) == 2

    async def test_unknown_source_raises(self, retriever):
        with pytest.raises(KeyError):
            await retriever.retrieve("nope", "anything")
