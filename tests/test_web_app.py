"""Tests for the FastAPI adapter: buffered JSON, SSE streaming, error mapping."""

from __future__ import annotations

import json

import pytest
from fastapi.testclient import TestClient

from pipe_engine.adapters.web_fastapi.app import THREAD_ID_HEADER, create_app
from pipe_engine.engine.errors import TransportError
from pipe_engine.engine.runner import PipeRunner

from conftest import FakeTransport, openai_text


def _client(*responses) -> tuple[TestClient, FakeTransport]:
    transport = FakeTransport(*responses)
    runner = PipeRunner(transport, api_keys={"openai": "sk-test"})
    return TestClient(create_app(runner)), transport


def _body(**overrides) -> dict:
    body = {"model": "openai:gpt-4o-mini", "messages": [{"role": "user", "content": "hi"}]}
    body.update(overrides)
    return body


def _sse_events(text: str) -> list[dict]:
    events = []
    for block in text.strip().split("\n\n"):
        data = [line[len("data: "):] for line in block.splitlines() if line.startswith("data: ")]
        if data:
            events.append(json.loads("\n".join(data)))
    return events


class TestRunEndpoint:
    def test_health(self):
        client, _ = _client()
        assert client.get("/health").json() == {"status": "ok"}

    def test_buffered_run_returns_completion(self):
        client, _ = _client(openai_text("Hello", " there", response_id="chatcmpl-web"))
        response = client.post("/v1/pipes/run", json=_body())

        assert response.status_code == 200
        assert response.headers[THREAD_ID_HEADER] == "chatcmpl-web"
        payload = response.json()
        assert payload["content"] == "Hello there"
        assert payload["thread_id"] == "chatcmpl-web"
        assert payload["usage"]["total_tokens"] == 15

    def test_streaming_run_returns_sse(self):
        client, _ = _client(openai_text("a", "b", response_id="chatcmpl-sse"))
        response = client.post("/v1/pipes/run", json=_body(stream=True))

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.headers[THREAD_ID_HEADER] == "chatcmpl-sse"
        events = _sse_events(response.text)
        assert events[0]["type"] == "connected"
        assert "".join(e.get("delta", "") for e in events if e["type"] == "content") == "ab"
        assert events[-1]["type"] == "end"

    def test_variables_and_thread_id_pass_through(self):
        client, transport = _client(openai_text("ok"))
        response = client.post("/v1/pipes/run", json=_body(
            messages=[{"role": "user", "content": "Hi {{name}}"}],
            variables={"name": "Ada"},
            thread_id="thread_caller",
        ))

        assert response.headers[THREAD_ID_HEADER] == "thread_caller"
        assert transport.requests[0].body["messages"][0]["content"] == "Hi Ada"

    @pytest.mark.parametrize("model", ["nope:x", "no-colon"])
    def test_configuration_error_is_400(self, model):
        client, transport = _client()
        response = client.post("/v1/pipes/run", json=_body(model=model))

        assert response.status_code == 400
        assert response.json()["error"] == "configuration"
        assert transport.calls == 0

    def test_upstream_failure_is_502(self):
        client, _ = _client(TransportError("HTTP 500: upstream broke", status_code=500))
        response = client.post("/v1/pipes/run", json=_body())

        assert response.status_code == 502
        assert response.json()["error"] == "transport"

    def test_invalid_body_is_422(self):
        client, _ = _client()
        assert client.post("/v1/pipes/run", json={"messages": []}).status_code == 422
