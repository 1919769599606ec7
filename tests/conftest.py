"""Shared fixtures for pipe_engine tests."""

from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator

import pytest

from pipe_engine.config import EngineSettings
from pipe_engine.engine.runner import PipeRunner
from pipe_engine.memory.in_memory import InMemoryRetriever
from pipe_engine.tracing.jsonl_tracer import JSONLTraceCollector
from pipe_engine.transport.interface import Transport, TransportRequest


# -- wire helpers -------------------------------------------------------------

def sse(*documents: Any, done: bool = False) -> bytes:
    """Render documents as ``text/event-stream`` bytes."""
    out = []
    for doc in documents:
        payload = doc if isinstance(doc, str) else json.dumps(doc, ensure_ascii=False)
        out.append(f"data: {payload}\n\n")
    if done:
        out.append("data: [DONE]\n\n")
    return "".join(out).encode("utf-8")


def ndjson(*documents: Any) -> bytes:
    return "".join(json.dumps(doc, ensure_ascii=False) + "\n" for doc in documents).encode("utf-8")


def split_every(data: bytes, size: int) -> list[bytes]:
    return [data[i:i + size] for i in range(0, len(data), size)]


def openai_text(*pieces: str, response_id: str = "chatcmpl-1", finish: str = "stop") -> bytes:
    docs: list[Any] = [
        {"id": response_id, "choices": [{"index": 0, "delta": {"content": p}, "finish_reason": None}]}
        for p in pieces
    ]
    docs.append({"id": response_id, "choices": [{"index": 0, "delta": {}, "finish_reason": finish}]})
    docs.append({"id": response_id, "choices": [],
                 "usage": {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15}})
    return sse(*docs, done=True)


def openai_tool_calls(*calls: tuple[str, str, str], response_id: str = "chatcmpl-t") -> bytes:
    """``calls`` are ``(call_id, name, arguments_json)``; arguments arrive in two fragments."""
    docs: list[Any] = []
    for index, (call_id, name, arguments) in enumerate(calls):
        half = len(arguments) // 2
        docs.append({"id": response_id, "choices": [{"index": 0, "delta": {"tool_calls": [
            {"index": index, "id": call_id, "type": "function",
             "function": {"name": name, "arguments": arguments[:half]}},
        ]}}]})
        docs.append({"id": response_id, "choices": [{"index": 0, "delta": {"tool_calls": [
            {"index": index, "function": {"arguments": arguments[half:]}},
        ]}}]})
    docs.append({"id": response_id, "choices": [{"index": 0, "delta": {}, "finish_reason": "tool_calls"}]})
    return sse(*docs, done=True)


# -- fake transport -----------------------------------------------------------

class FakeTransport(Transport):
    """Replays one scripted response per dispatch and records every request.

    A script entry is either raw bytes (sent as a single read), a list of
    byte chunks, or an exception to raise instead of responding.
    """

    def __init__(self, *responses: Any, delay: float = 0.0) -> None:
        self._responses = list(responses)
        self.requests: list[TransportRequest] = []
        self.delay = delay
        self.closed = False

    @property
    def calls(self) -> int:
        return len(self.requests)

    async def stream(self, request: TransportRequest) -> AsyncIterator[bytes]:
        self.requests.append(request)
        if not self._responses:
            raise AssertionError(f"Unexpected dispatch #{len(self.requests)} to {request.url}")
        response = self._responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        chunks = [response] if isinstance(response, bytes) else list(response)
        for chunk in chunks:
            if self.delay:
                await asyncio.sleep(self.delay)
            yield chunk

    async def aclose(self) -> None:
        self.closed = True


# -- fixtures -----------------------------------------------------------------

@pytest.fixture
def settings():
    return EngineSettings()


@pytest.fixture
def retriever():
    return InMemoryRetriever({
        "docs": [
            "Pipes route one request to many LLM vendors.",
            "The tool loop stops after max_tool_iterations rounds.",
        ],
    })


@pytest.fixture
def trace_collector(tmp_path):
    return JSONLTraceCollector(trace_dir=str(tmp_path / "traces"))


@pytest.fixture
def make_runner(settings, trace_collector):
    def _make(*responses: Any, retriever=None, settings_override: EngineSettings | None = None, **kwargs):
        transport = kwargs.pop("transport", None) or FakeTransport(*responses)
        runner = PipeRunner(
            transport=transport,
            retriever=retriever,
            settings=settings_override or settings,
            trace_collector=trace_collector,
            api_keys={"openai": "sk-test", "anthropic": "ak-test", "google": "g-test", "cohere": "co-test"},
        )
        return runner, transport
    return _make
