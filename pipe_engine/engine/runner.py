"""PipeRunner: the public entry point; wires variables, memory, adapters and the tool loop."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
import uuid
from contextlib import aclosing
from typing import Any, AsyncIterator, Callable

from pipe_engine.config import EngineSettings
from pipe_engine.engine.errors import Cancelled, ConfigurationError, ErrorKind, error_from_event
from pipe_engine.engine.loop import Cancellation, ToolLoop
from pipe_engine.engine.models import (
    Completion,
    EventType,
    NamedToolChoice,
    NeutralEvent,
    RunRequest,
    ToolCallRequest,
    Usage,
)
from pipe_engine.engine.variables import find_placeholders, resolve_messages
from pipe_engine.memory.injector import MemoryInjector
from pipe_engine.memory.interface import Retriever
from pipe_engine.providers import ProviderAdapter, create_adapter
from pipe_engine.tools.registry import ToolRegistry
from pipe_engine.tracing.interface import NullTraceCollector, TraceCollector
from pipe_engine.transport.interface import Transport

logger = logging.getLogger(__name__)

EventCallback = Callable[[NeutralEvent], Any]


class StreamHandle:
    """Live, single-pass sequence of neutral events for one run.

    Iterate it directly (``async for event in handle``), fold it with
    ``collect()``/``text()``, or register callbacks with ``on()`` and drive
    them with ``consume()``. ``thread_id`` is set once the first provider
    response arrives (or synthesized when it carries no id).
    """

    def __init__(
        self,
        events_factory: Callable[["StreamHandle"], AsyncIterator[NeutralEvent]],
        thread_id: str | None = None,
    ) -> None:
        self.thread_id = thread_id
        self._events = events_factory(self)
        self._started = False
        self._callbacks: dict[str, list[EventCallback]] = {}

    def __aiter__(self) -> AsyncIterator[NeutralEvent]:
        if self._started:
            raise RuntimeError("StreamHandle is single-pass and has already been consumed")
        self._started = True
        return self._events

    async def aclose(self) -> None:
        await self._events.aclose()

    # -- subscription API ---------------------------------------------------

    def on(self, event_type: EventType | str, callback: EventCallback) -> "StreamHandle":
        key = event_type.value if isinstance(event_type, EventType) else str(event_type)
        self._callbacks.setdefault(key, []).append(callback)
        return self

    async def consume(self) -> None:
        """Drive the stream, dispatching each event to the callbacks registered for its type."""
        async for event in self:
            for callback in self._callbacks.get(event.type.value, []):
                result = callback(event)
                if inspect.isawaitable(result):
                    await result

    # -- folding ------------------------------------------------------------

    async def collect(self) -> Completion:
        """Fold content and usage; a terminal ``error`` event is raised as its exception."""
        parts: list[str] = []
        usage = Usage()
        finish_reason: str | None = None
        tool_calls: list[ToolCallRequest] = []
        try:
            async for event in self:
                if event.type == EventType.CONTENT:
                    parts.append(event.delta or "")
                elif event.type == EventType.USAGE and event.usage is not None:
                    usage = usage + event.usage
                elif event.type == EventType.TOOL_CALL_COMPLETE:
                    tool_calls.append(ToolCallRequest(
                        id=event.call_id or "", name=event.name or "", arguments=event.arguments or {}
                    ))
                elif event.type == EventType.END:
                    finish_reason = event.finish_reason
                elif event.type == EventType.ERROR and event.is_terminal:
                    raise error_from_event(event.error_kind, event.message or "")
        finally:
            await self.aclose()
        return Completion(
            content="".join(parts),
            usage=usage,
            finish_reason=finish_reason,
            thread_id=self.thread_id or "",
            tool_calls=tool_calls,
        )

    async def text(self) -> str:
        return (await self.collect()).content


class PipeRunner:
    """Public API: ``await runner.run(request)`` returns a ``Completion`` or ``StreamHandle``."""

    def __init__(
        self,
        transport: Transport,
        retriever: Retriever | None = None,
        settings: EngineSettings | None = None,
        trace_collector: TraceCollector | None = None,
        api_keys: dict[str, str] | None = None,
    ) -> None:
        self._transport = transport
        self._settings = settings or EngineSettings()
        self._injector = (
            MemoryInjector(retriever, self._settings.memory_budget_chars, self._settings.memory_top_k)
            if retriever is not None
            else None
        )
        self._trace = trace_collector or NullTraceCollector()
        self._api_keys = dict(api_keys or {})

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    async def aclose(self) -> None:
        await self._transport.aclose()

    async def run(
        self,
        request: RunRequest,
        *,
        cancel: asyncio.Event | None = None,
        timeout: float | None = None,
    ) -> Completion | StreamHandle:
        """Run ``request``. Configuration problems raise before any network call."""
        handle = self.open_stream(request, cancel=cancel, timeout=timeout)
        if request.stream:
            return handle
        return await handle.collect()

    def open_stream(
        self,
        request: RunRequest,
        *,
        cancel: asyncio.Event | None = None,
        timeout: float | None = None,
    ) -> StreamHandle:
        adapter, registry, api_key = self._prepare(request)
        deadline = timeout if timeout is not None else self._settings.run_timeout
        return StreamHandle(
            lambda handle: self._events(handle, request, adapter, registry, api_key, cancel, deadline),
            thread_id=request.thread_id,
        )

    # -- validation ---------------------------------------------------------

    def _prepare(self, request: RunRequest) -> tuple[ProviderAdapter, ToolRegistry, str | None]:
        provider, _ = request.parse_model()
        adapter = create_adapter(provider, base_url=self._settings.base_urls.get(provider))
        if not request.messages:
            raise ConfigurationError("A run needs at least one message")
        registry = ToolRegistry.from_definitions(
            request.tools,
            default_timeout=self._settings.tool_timeout,
            max_retries=self._settings.tool_max_retries,
        )
        if isinstance(request.tool_choice, NamedToolChoice) and request.tool_choice.name not in registry:
            raise ConfigurationError(f"tool_choice names undeclared tool '{request.tool_choice.name}'")
        api_key = adapter.resolve_api_key(request, self._api_keys.get(provider))
        return adapter, registry, api_key

    # -- pipeline -----------------------------------------------------------

    async def _events(
        self,
        handle: StreamHandle,
        request: RunRequest,
        adapter: ProviderAdapter,
        registry: ToolRegistry,
        api_key: str | None,
        cancel: asyncio.Event | None,
        deadline: float | None,
    ) -> AsyncIterator[NeutralEvent]:
        run_id = uuid.uuid4().hex
        t0 = time.time()
        cancellation = Cancellation()
        watchers = _watch_cancellation(cancellation, cancel, deadline)
        loop: ToolLoop | None = None
        early_state = "not_started"

        try:
            messages = resolve_messages(request.messages, request.variables)
            unresolved = find_placeholders(messages)
            if unresolved:
                logger.debug("Leaving unbound placeholders verbatim: %s", sorted(unresolved))

            if request.memory:
                if self._injector is None:
                    logger.warning("Request names memory %s but no retriever is configured", request.memory)
                else:
                    t_mem = time.time()
                    try:
                        injection = await cancellation.race(self._injector.inject(messages, request.memory))
                    except Cancelled as exc:
                        early_state = "cancelled"
                        yield NeutralEvent(type=EventType.ERROR, error_kind=ErrorKind.CANCELLED, message=exc.message)
                        return
                    messages = injection.messages
                    await self._trace.emit(run_id, "memory", {
                        "sources": request.memory,
                        "selected": len(injection.selected),
                        "failed_sources": injection.failed_sources,
                        "latency_ms": round((time.time() - t_mem) * 1000, 2),
                    })

            wire_stream = request.stream or self._settings.wire_streaming
            dispatch = request.model_copy(update={"messages": messages, "stream": wire_stream})
            loop = ToolLoop(
                adapter,
                self._transport,
                registry,
                max_iterations=self._settings.max_tool_iterations,
                api_key=api_key,
                cancellation=cancellation,
                trace_collector=self._trace,
                trace_id=run_id,
            )
            async with aclosing(loop.run(dispatch)) as events:
                async for event in events:
                    if event.type == EventType.CONNECTED and handle.thread_id is None:
                        handle.thread_id = event.response_id or _new_thread_id()
                    yield event
        finally:
            for watcher in watchers:
                watcher.cancel()
            if handle.thread_id is None:
                handle.thread_id = _new_thread_id()
            await self._trace.emit(run_id, "run_done", {
                "model": request.model,
                "thread_id": handle.thread_id,
                "state": loop.state.value if loop else early_state,
                "dispatches": loop.dispatches if loop else 0,
                "tool_iterations": loop.iterations if loop else 0,
                "total_latency_ms": round((time.time() - t0) * 1000, 2),
            })
            await self._trace.flush(run_id)


def _new_thread_id() -> str:
    return f"thread_{uuid.uuid4().hex}"


def _watch_cancellation(
    cancellation: Cancellation,
    cancel: asyncio.Event | None,
    deadline: float | None,
) -> list[asyncio.Handle | asyncio.Task]:
    """Trip ``cancellation`` when the caller's event fires or the deadline passes."""
    watchers: list[asyncio.Handle | asyncio.Task] = []
    if cancel is not None:
        if cancel.is_set():
            cancellation.trip()
        else:
            async def forward() -> None:
                await cancel.wait()
                cancellation.trip()

            watchers.append(asyncio.ensure_future(forward()))
    if deadline is not None:
        watchers.append(asyncio.get_running_loop().call_later(
            deadline, cancellation.trip, f"Run exceeded its {deadline:g}s deadline"
        ))
    return watchers
