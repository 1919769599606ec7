"""ToolLoop: dispatch, stream, run tools, re-dispatch, until the model stops calling tools."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from contextlib import aclosing
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Awaitable, TypeVar

from pipe_engine.engine.errors import Cancelled, ErrorKind, TransportError
from pipe_engine.engine.models import (
    EventType,
    Message,
    NeutralEvent,
    RunRequest,
    ToolCallRequest,
)
from pipe_engine.engine.normalizer import StreamNormalizer
from pipe_engine.providers.base import ProviderAdapter
from pipe_engine.tools.registry import ToolRegistry
from pipe_engine.tracing.interface import NullTraceCollector, TraceCollector
from pipe_engine.transport.interface import Transport, TransportRequest

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LoopState(str, Enum):
    DISPATCHING = "dispatching"
    STREAMING = "streaming"
    TOOLS_PENDING = "tools_pending"
    COMPLETED = "completed"
    FAILED = "failed"


class Cancellation:
    """One run's cancellation signal; a deadline trips it with its own reason."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason = "Run cancelled"

    def trip(self, reason: str = "Run cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    async def race(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the run is cancelled first."""
        if self.is_set():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise Cancelled(self.reason)
        work = asyncio.ensure_future(awaitable)
        stop = asyncio.ensure_future(self.wait())
        try:
            await asyncio.wait({work, stop}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop.cancel()
        if work.done():
            return work.result()
        work.cancel()
        try:
            await work
        except asyncio.CancelledError:
            pass
        raise Cancelled(self.reason)


@dataclass
class ToolOutcome:
    call: ToolCallRequest
    output: str
    error_kind: ErrorKind | None = None

    @property
    def is_error(self) -> bool:
        return self.error_kind is not None

    def event(self) -> NeutralEvent:
        return NeutralEvent(
            type=EventType.TOOL_RESULT,
            call_id=self.call.id,
            name=self.call.name,
            result=self.output,
            is_error=self.is_error,
            error_kind=self.error_kind,
        )

    def message(self) -> Message:
        return Message(role="tool", content=self.output, tool_call_id=self.call.id, name=self.call.name)


def error_payload(message: str) -> str:
    return json.dumps({"error": message})


class ToolLoop:
    """Explicit state machine for one run's dispatches.

    ``DISPATCHING -> STREAMING -> (TOOLS_PENDING | COMPLETED | FAILED)``; from
    ``TOOLS_PENDING`` the loop goes back to ``DISPATCHING`` with the tool
    results appended. Intermediate ``end`` events are held back so the
    caller sees exactly one terminal event per run.
    """

    def __init__(
        self,
        adapter: ProviderAdapter,
        transport: Transport,
        registry: ToolRegistry,
        *,
        max_iterations: int = 5,
        api_key: str | None = None,
        cancellation: Cancellation | None = None,
        trace_collector: TraceCollector | None = None,
        trace_id: str = "",
    ) -> None:
        if max_iterations < 0:
            raise ValueError("max_iterations must be >= 0")
        self._adapter = adapter
        self._transport = transport
        self._registry = registry
        self._max_iterations = max_iterations
        self._api_key = api_key
        self._cancel = cancellation or Cancellation()
        self._trace = trace_collector or NullTraceCollector()
        self._trace_id = trace_id

        self.state = LoopState.DISPATCHING
        self.iterations = 0
        self.dispatches = 0
        self.tool_calls: list[ToolCallRequest] = []

    async def run(self, request: RunRequest) -> AsyncIterator[NeutralEvent]:
        messages = list(request.messages)
        connected = False

        while True:
            self.state = LoopState.DISPATCHING
            dispatch = request.model_copy(update={"messages": messages})
            transport_request = self._adapter.build_request(dispatch, api_key=self._api_key)
            normalizer = StreamNormalizer(self._adapter, self._adapter.new_state(dispatch))
            self.dispatches += 1
            logger.info(
                "Dispatching %s:%s (dispatch=%d, messages=%d)",
                self._adapter.name, transport_request.body.get("model", ""), self.dispatches, len(messages),
            )

            self.state = LoopState.STREAMING
            t0 = time.time()
            pending: list[NeutralEvent] = []
            content: list[str] = []
            finish_reason: str | None = None
            terminal: NeutralEvent | None = None

            async with aclosing(self._dispatch(transport_request, normalizer)) as events:
                async for event in events:
                    if event.type == EventType.CONNECTED:
                        if connected:
                            continue
                        connected = True
                    elif event.type == EventType.END:
                        finish_reason = event.finish_reason
                        continue
                    elif event.type == EventType.ERROR and event.is_terminal:
                        terminal = event
                        continue
                    elif event.type == EventType.TOOL_CALL_COMPLETE:
                        pending.append(event)
                    elif _is_failed_call(event):
                        pending.append(event)
                    elif event.type == EventType.CONTENT:
                        content.append(event.delta or "")
                    yield event

            await self._trace.emit(self._trace_id, "dispatch", {
                "provider": self._adapter.name,
                "dispatch": self.dispatches,
                "latency_ms": round((time.time() - t0) * 1000, 2),
                "tool_calls": len(pending),
                "status": "error" if terminal else "ok",
            })

            if terminal is not None:
                self.state = LoopState.FAILED
                yield terminal
                return

            if not pending or request.tool_choice == "none":
                self.state = LoopState.COMPLETED
                yield NeutralEvent(type=EventType.END, finish_reason=finish_reason)
                return

            if self.iterations >= self._max_iterations:
                self.state = LoopState.FAILED
                logger.warning("Tool loop exceeded %d iteration(s)", self._max_iterations)
                yield NeutralEvent(
                    type=EventType.ERROR,
                    error_kind=ErrorKind.TOOL_LOOP_EXCEEDED,
                    message=f"Max tool iterations ({self._max_iterations}) exceeded",
                )
                return

            self.state = LoopState.TOOLS_PENDING
            self.iterations += 1
            try:
                outcomes = await self._cancel.race(self._execute(pending, request.parallel_tool_calls))
            except Cancelled as exc:
                self.state = LoopState.FAILED
                yield NeutralEvent(type=EventType.ERROR, error_kind=ErrorKind.CANCELLED, message=exc.message)
                return

            calls = [o.call for o in outcomes]
            self.tool_calls.extend(calls)
            messages.append(Message(role="assistant", content="".join(content), tool_calls=calls))
            for outcome in outcomes:
                yield outcome.event()
                messages.append(outcome.message())

    # -- dispatch -----------------------------------------------------------

    async def _dispatch(
        self, transport_request: TransportRequest, normalizer: StreamNormalizer
    ) -> AsyncIterator[NeutralEvent]:
        stream = self._transport.stream(transport_request)
        try:
            while True:
                has_chunk, chunk = await self._cancel.race(_next_chunk(stream))
                if not has_chunk:
                    break
                for event in normalizer.feed(chunk):
                    yield event
            for event in normalizer.finish():
                yield event
        except Cancelled as exc:
            normalizer.discard()
            yield NeutralEvent(type=EventType.ERROR, error_kind=ErrorKind.CANCELLED, message=exc.message)
        except TransportError as exc:
            normalizer.discard()
            logger.warning("Transport error from %s: %s", self._adapter.name, exc.message)
            yield NeutralEvent(type=EventType.ERROR, error_kind=ErrorKind.TRANSPORT, message=exc.message)
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    # -- tools --------------------------------------------------------------

    async def _execute(self, pending: list[NeutralEvent], parallel: bool) -> list[ToolOutcome]:
        if parallel:
            return list(await asyncio.gather(*(self._run_one(e) for e in pending)))
        outcomes = []
        for event in pending:
            outcomes.append(await self._run_one(event))
        return outcomes

    async def _run_one(self, event: NeutralEvent) -> ToolOutcome:
        call = ToolCallRequest(id=event.call_id or "", name=event.name or "", arguments=event.arguments or {})

        if event.type == EventType.ERROR:
            return ToolOutcome(call, error_payload(event.message or "Malformed tool arguments"),
                               ErrorKind.MALFORMED_TOOL_ARGS)
        if call.name not in self._registry:
            logger.warning("Model requested unknown tool '%s' (call %s)", call.name, call.id)
            return ToolOutcome(call, error_payload(f"Tool '{call.name}' is not available"), ErrorKind.UNRESOLVED_TOOL)

        try:
            output = await self._registry.execute(call.name, call.arguments, self._trace, self._trace_id)
        except Exception as exc:
            return ToolOutcome(call, error_payload(f"{type(exc).__name__}: {exc}"), ErrorKind.TOOL_EXECUTION_ERROR)
        return ToolOutcome(call, output)


def _is_failed_call(event: NeutralEvent) -> bool:
    """A started call whose arguments could not be parsed still needs a tool turn.

    Fragments for a call that was never started carry no tool name and are
    forwarded as diagnostics only.
    """
    return (
        event.type == EventType.ERROR
        and event.error_kind == ErrorKind.MALFORMED_TOOL_ARGS
        and event.call_id is not None
        and bool(event.name)
    )


async def _next_chunk(stream: AsyncIterator[bytes]) -> tuple[bool, bytes]:
    try:
        return True, await stream.__anext__()
    except StopAsyncIteration:
        return False, b""
