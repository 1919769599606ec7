"""Tests for ToolRegistry: registration, execution, timeout, retry, serialization."""

from __future__ import annotations

import asyncio

import pytest
from pydantic import BaseModel

from pipe_engine.engine.errors import ConfigurationError
from pipe_engine.engine.models import ToolDefinition
from pipe_engine.tools.registry import ToolRegistry, UnknownToolError, serialize_result


# -- helpers ----------------------------------------------------------------

class EchoInput(BaseModel):
    msg: str


class EchoOutput(BaseModel):
    echo: str


async def _echo_handler(inp: EchoInput) -> EchoOutput:
    return EchoOutput(echo=inp.msg)


async def _slow_handler(inp: EchoInput) -> dict:
    await asyncio.sleep(5)
    return {"echo": inp.msg}


def _make_echo_tool(**overrides) -> ToolDefinition:
    defaults = dict(
        name="echo",
        description="Echoes input",
        input_model=EchoInput,
        handler=_echo_handler,
    )
    defaults.update(overrides)
    return ToolDefinition(**defaults)


# -- tests ------------------------------------------------------------------

class TestRegistration:
    def test_duplicate_name_rejected(self):
        registry = ToolRegistry()
        registry.register(_make_echo_tool())
        with pytest.raises(ConfigurationError, match="Duplicate"):
            registry.register(_make_echo_tool())

    def test_lookup(self):
        registry = ToolRegistry.from_definitions([_make_echo_tool(), _make_echo_tool(name="other")])
        assert "echo" in registry
        assert "missing" not in registry
        assert len(registry) == 2
        assert registry.get("other").name == "other"
        assert registry.get("missing") is None

    def test_schema_from_input_model(self):
        schema = _make_echo_tool().json_schema()
        assert schema["properties"]["msg"]["type"] == "string"
        assert schema["required"] == ["msg"]

    def test_explicit_parameters_win(self):
        params = {"type": "object", "properties": {"x": {"type": "integer"}}}
        assert _make_echo_tool(parameters=params).json_schema() == params


class TestToolExecution:
    async def test_basic_execution(self):
        registry = ToolRegistry.from_definitions([_make_echo_tool()])
        result = await registry.execute("echo", {"msg": "hi"})
        assert result == '{"echo":"hi"}'

    async def test_unknown_tool_raises(self):
        registry = ToolRegistry()
        with pytest.raises(UnknownToolError, match="not found"):
            await registry.execute("nonexistent", {"msg": "hi"})

    async def test_invalid_arguments_raise(self):
        registry = ToolRegistry.from_definitions([_make_echo_tool()])
        with pytest.raises(ValueError):
            await registry.execute("echo", {"wrong": 1})

    async def test_sync_handler_runs_off_loop(self):
        def shout(text: str) -> str:
            return text.upper()

        registry = ToolRegistry.from_definitions([
            ToolDefinition(name="shout", description="Upper-case", handler=shout),
        ])
        assert await registry.execute("shout", {"text": "hey"}) == "HEY"

    async def test_timeout(self):
        registry = ToolRegistry()
        registry.register(_make_echo_tool(name="slow", handler=_slow_handler, timeout=0.1))

        with pytest.raises(asyncio.TimeoutError):
            await registry.execute("slow", {"msg": "hi"})

    async def test_default_timeout_applies(self):
        registry = ToolRegistry(default_timeout=0.1)
        registry.register(_make_echo_tool(name="slow", handler=_slow_handler))

        with pytest.raises(asyncio.TimeoutError):
            await registry.execute("slow", {"msg": "hi"})

    async def test_retry_on_failure(self):
        call_count = 0

        async def _flaky(inp: EchoInput) -> dict:
            nonlocal call_count
            call_count += 1
            if call_count < 2:
                raise RuntimeError("transient failure")
            return {"echo": inp.msg}

        registry = ToolRegistry(max_retries=2)
        registry.register(_make_echo_tool(name="flaky", handler=_flaky))

        result = await registry.execute("flaky", {"msg": "ok"})
        assert result == '{"echo": "ok"}'
        assert call_count == 2

    async def test_trace_events(self, trace_collector):
        registry = ToolRegistry.from_definitions([_make_echo_tool()])
        await registry.execute("echo", {"msg": "hi"}, trace_collector, "run-1")
        await trace_collector.flush("run-1")

        lines = (trace_collector.trace_dir / "run-1.jsonl").read_text().splitlines()
        assert len(lines) == 1
        assert '"tool": "echo"' in lines[0]
        assert '"status": "ok"' in lines[0]


class TestSerializeResult:
    def test_strings_pass_through(self):
        assert serialize_result("plain") == "plain"

    def test_models_dump_as_json(self):
        assert serialize_result(EchoOutput(echo="x")) == '{"echo":"x"}'

    def test_other_values_use_json(self):
        assert serialize_result({"n": 1, "items": [1, 2]}) == '{"n": 1, "items": [1, 2]}'
        assert serialize_result(None) == "null"
