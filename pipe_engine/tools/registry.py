"""Per-run tool registry: name resolution, timeout, retry, result serialization and tracing."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
from typing import Any, Iterable

from pydantic import BaseModel

from pipe_engine.engine.errors import ConfigurationError
from pipe_engine.engine.models import ToolDefinition
from pipe_engine.tracing.interface import TraceCollector

logger = logging.getLogger(__name__)


class UnknownToolError(LookupError):
    """A model asked for a tool the request did not declare."""


def serialize_result(value: Any) -> str:
    """Render a tool's return value as the text sent back to the model."""
    if isinstance(value, str):
        return value
    if isinstance(value, BaseModel):
        return value.model_dump_json()
    return json.dumps(value, default=str)


class ToolRegistry:
    """Tool store for a single run, with timeout/retry and tracing hooks."""

    def __init__(self, default_timeout: float = 30.0, max_retries: int = 0) -> None:
        self._tools: dict[str, ToolDefinition] = {}
        self._default_timeout = default_timeout
        self._max_retries = max_retries

    @classmethod
    def from_definitions(
        cls,
        tools: Iterable[ToolDefinition],
        default_timeout: float = 30.0,
        max_retries: int = 0,
    ) -> "ToolRegistry":
        registry = cls(default_timeout=default_timeout, max_retries=max_retries)
        for tool in tools:
            registry.register(tool)
        return registry

    # -- registration -------------------------------------------------------

    def register(self, tool: ToolDefinition) -> None:
        if tool.name in self._tools:
            raise ConfigurationError(f"Duplicate tool name '{tool.name}'")
        self._tools[tool.name] = tool
        logger.debug("Registered tool %s", tool.name)

    def get(self, name: str) -> ToolDefinition | None:
        return self._tools.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    # -- execution ----------------------------------------------------------

    async def execute(
        self,
        name: str,
        arguments: dict[str, Any],
        trace_collector: TraceCollector | None = None,
        trace_id: str | None = None,
    ) -> str:
        tool = self._tools.get(name)
        if tool is None:
            raise UnknownToolError(f"Tool '{name}' not found")

        timeout = tool.timeout if tool.timeout is not None else self._default_timeout

        last_exc: Exception | None = None
        for attempt in range(1, self._max_retries + 2):  # +2 because range is exclusive
            try:
                t0 = time.time()
                raw = await asyncio.wait_for(_invoke(tool, arguments), timeout=timeout)
                latency = time.time() - t0
                output = serialize_result(raw)

                logger.info("tool=%s attempt=%d latency=%.3fs OK", name, attempt, latency)
                if trace_collector and trace_id:
                    await trace_collector.emit(trace_id, "tool_exec", {
                        "tool": name,
                        "attempt": attempt,
                        "latency_ms": round(latency * 1000, 2),
                        "status": "ok",
                    })
                return output

            except Exception as exc:
                last_exc = exc
                logger.warning("tool=%s attempt=%d error=%r", name, attempt, exc)
                if trace_collector and trace_id:
                    await trace_collector.emit(trace_id, "tool_exec", {
                        "tool": name,
                        "attempt": attempt,
                        "status": "error",
                        "error": repr(exc),
                    })

        raise last_exc  # type: ignore[misc]


async def _invoke(tool: ToolDefinition, arguments: dict[str, Any]) -> Any:
    if tool.input_model is not None:
        args: tuple[Any, ...] = (tool.input_model(**arguments),)
        kwargs: dict[str, Any] = {}
    else:
        args, kwargs = (), dict(arguments)

    if inspect.iscoroutinefunction(tool.handler):
        return await tool.handler(*args, **kwargs)

    result = await asyncio.to_thread(tool.handler, *args, **kwargs)
    if inspect.isawaitable(result):
        result = await result
    return result
