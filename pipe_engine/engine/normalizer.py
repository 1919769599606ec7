"""Stream normalizer: reassembles vendor frames from raw bytes and owns tool-call accumulators.

Transport fragments have nothing to do with logical boundaries: a JSON
document may span several reads and one read may hold several documents.
The frame decoders buffer until a complete frame is available; the
normalizer then hands each frame to the provider adapter and post-processes
the resulting events so that every dispatch yields a well-formed sequence:
one ``connected``, content in arrival order, tool-call arguments joined per
call id, and exactly one terminal event.
"""

from __future__ import annotations

import codecs
import json
import logging
from dataclasses import dataclass, field

from pipe_engine.engine.errors import ErrorKind
from pipe_engine.engine.models import EventType, NeutralEvent
from pipe_engine.providers.base import AdapterState, Framing, ProviderAdapter

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Frame decoders
# ---------------------------------------------------------------------------

class _TextBuffer:
    """Incremental UTF-8 decoding; a multi-byte character may straddle two reads."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def decode(self, data: bytes, final: bool = False) -> str:
        return self._decoder.decode(data, final)


class SSEDecoder:
    """``text/event-stream`` framing; a frame is the joined ``data:`` lines of one event."""

    def __init__(self) -> None:
        self._text = _TextBuffer()
        self._pending = ""
        self._data_lines: list[str] = []

    def feed(self, data: bytes) -> list[str]:
        return self._consume(self._text.decode(data), final=False)

    def finish(self) -> list[str]:
        frames = self._consume(self._text.decode(b"", final=True), final=True)
        if self._pending:
            self._line(self._pending)
            self._pending = ""
        frames.extend(self._dispatch())
        return frames

    def _consume(self, text: str, final: bool) -> list[str]:
        text = self._pending + text
        # hold a trailing CR back: its LF may arrive with the next read
        if text.endswith("\r") and not final:
            text, self._pending = text[:-1], "\r"
        else:
            self._pending = ""
        text = text.replace("\r\n", "\n").replace("\r", "\n")

        *lines, rest = text.split("\n")
        self._pending = rest + self._pending
        frames: list[str] = []
        for line in lines:
            if line == "":
                frames.extend(self._dispatch())
            else:
                self._line(line)
        return frames

    def _line(self, line: str) -> None:
        if line.startswith(":"):
            return
        fieldname, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if fieldname == "data":
            self._data_lines.append(value)
        # event:, id: and retry: carry nothing the adapters need

    def _dispatch(self) -> list[str]:
        if not self._data_lines:
            return []
        frame = "\n".join(self._data_lines)
        self._data_lines = []
        return [frame]


class NDJSONDecoder:
    """One JSON document per line."""

    def __init__(self) -> None:
        self._text = _TextBuffer()
        self._pending = ""

    def feed(self, data: bytes) -> list[str]:
        *lines, self._pending = (self._pending + self._text.decode(data)).split("\n")
        return [line.strip() for line in lines if line.strip()]

    def finish(self) -> list[str]:
        rest = (self._pending + self._text.decode(b"", final=True)).strip()
        self._pending = ""
        return [rest] if rest else []


class JSONBodyDecoder:
    """Non-streaming responses: the whole body is a single frame."""

    def __init__(self) -> None:
        self._text = _TextBuffer()
        self._parts: list[str] = []

    def feed(self, data: bytes) -> list[str]:
        self._parts.append(self._text.decode(data))
        return []

    def finish(self) -> list[str]:
        self._parts.append(self._text.decode(b"", final=True))
        body = "".join(self._parts).strip()
        self._parts = []
        return [body] if body else []


_DECODERS = {
    Framing.SSE: SSEDecoder,
    Framing.NDJSON: NDJSONDecoder,
    Framing.JSON: JSONBodyDecoder,
}


# ---------------------------------------------------------------------------
# Tool-call accumulation
# ---------------------------------------------------------------------------

@dataclass
class ToolCallAccumulator:
    call_id: str
    name: str
    fragments: list[str] = field(default_factory=list)

    def append(self, fragment: str) -> None:
        self.fragments.append(fragment)

    def text(self) -> str:
        return "".join(self.fragments)


def _error(kind: ErrorKind, message: str, call_id: str | None = None, name: str | None = None) -> NeutralEvent:
    return NeutralEvent(type=EventType.ERROR, error_kind=kind, message=message, call_id=call_id, name=name)


# ---------------------------------------------------------------------------
# Normalizer
# ---------------------------------------------------------------------------

class StreamNormalizer:
    """Turns one dispatch's raw bytes into neutral events.

    Usage::

        normalizer = StreamNormalizer(adapter, adapter.new_state(request))
        async for chunk in transport.stream(transport_request):
            for event in normalizer.feed(chunk):
                ...
        for event in normalizer.finish():
            ...
    """

    def __init__(self, adapter: ProviderAdapter, state: AdapterState) -> None:
        self._adapter = adapter
        self.state = state
        self._decoder = _DECODERS[state.framing]()
        self._accumulators: dict[str, ToolCallAccumulator] = {}
        self._connected = False
        self._closed = False

    @property
    def open_calls(self) -> list[str]:
        return list(self._accumulators)

    @property
    def closed(self) -> bool:
        return self._closed

    def feed(self, data: bytes) -> list[NeutralEvent]:
        events: list[NeutralEvent] = []
        for frame in self._decoder.feed(data):
            events.extend(self._frame(frame))
        return events

    def finish(self) -> list[NeutralEvent]:
        """Flush buffered frames at end of transport and close the dispatch."""
        events: list[NeutralEvent] = []
        frames = self._decoder.finish()
        for frame in frames:
            events.extend(self._frame(frame))
        if not self._connected:
            events.append(self._connect_event())
        if not frames and self.state.framing == Framing.JSON and not self._closed:
            # a non-streaming call must return exactly one response document
            logger.warning("%s returned an empty response body", self._adapter.name)
            empty = _error(ErrorKind.PROVIDER, f"{self._adapter.name} returned an empty response body")
            events.extend(self._track(empty))
        if not self._closed:
            events.extend(self._fail_open_calls())
            if self.state.finish_reason is None:
                logger.warning("%s stream ended without an end signal", self._adapter.name)
                events.append(_error(ErrorKind.MALFORMED_CHUNK,
                                     f"{self._adapter.name} stream ended without an end signal"))
            events.extend(self._track(NeutralEvent(type=EventType.END, finish_reason=self.state.finish_reason)))
        return events

    def discard(self) -> list[str]:
        """Drop open accumulators (cancellation). Returns the discarded call ids."""
        dropped = list(self._accumulators)
        if dropped:
            logger.info("Discarding %d open tool call(s) on cancel: %s", len(dropped), dropped)
        self._accumulators.clear()
        self._closed = True
        return dropped

    # -- internals ----------------------------------------------------------

    def _connect_event(self) -> NeutralEvent:
        self._connected = True
        return NeutralEvent(type=EventType.CONNECTED, response_id=self.state.response_id)

    def _frame(self, frame: str) -> list[NeutralEvent]:
        if self._closed:
            logger.debug("Ignoring %s frame after end of stream", self._adapter.name)
            return []
        try:
            parsed = self._adapter.parse_chunk(frame, self.state)
        except (ValueError, TypeError, AttributeError, KeyError) as exc:
            logger.warning("Malformed %s chunk: %r (%s)", self._adapter.name, frame[:200], exc)
            if self.state.framing == Framing.JSON:
                # the body is the whole response; nothing follows that could recover it
                parsed = [_error(ErrorKind.PROVIDER, f"Unparseable {self._adapter.name} response body: {exc}")]
            else:
                parsed = [_error(ErrorKind.MALFORMED_CHUNK, f"Malformed {self._adapter.name} chunk: {exc}")]

        events: list[NeutralEvent] = []
        if not self._connected:
            events.append(self._connect_event())
        for event in parsed:
            events.extend(self._track(event))
        return events

    def _track(self, event: NeutralEvent) -> list[NeutralEvent]:
        if self._closed:
            return []

        if event.type == EventType.TOOL_CALL_START:
            call_id = event.call_id or ""
            self._accumulators[call_id] = ToolCallAccumulator(call_id, event.name or "")
            return [event]

        if event.type == EventType.TOOL_CALL_ARGS_DELTA:
            acc = self._accumulators.get(event.call_id or "")
            if acc is None:
                return [_error(ErrorKind.MALFORMED_TOOL_ARGS,
                               "Argument fragment for a tool call that was never started", event.call_id)]
            acc.append(event.delta or "")
            return [event]

        if event.type == EventType.TOOL_CALL_COMPLETE:
            return [self._complete(event.call_id or "")]

        if event.type == EventType.END:
            events = self._fail_open_calls()
            self._closed = True
            return events + [event]

        if event.type == EventType.ERROR and event.is_terminal:
            self.discard()
            return [event]

        return [event]

    def _complete(self, call_id: str) -> NeutralEvent:
        acc = self._accumulators.pop(call_id, None)
        if acc is None:
            return _error(ErrorKind.MALFORMED_TOOL_ARGS, "Completion for a tool call that was never started", call_id)
        text = acc.text()
        try:
            arguments = json.loads(text) if text.strip() else {}
        except ValueError as exc:
            logger.warning("Malformed arguments for tool call %s (%s): %r", call_id, acc.name, text[:200])
            return _error(ErrorKind.MALFORMED_TOOL_ARGS, f"Arguments for '{acc.name}' are not valid JSON: {exc}", call_id, acc.name)
        if not isinstance(arguments, dict):
            return _error(ErrorKind.MALFORMED_TOOL_ARGS, f"Arguments for '{acc.name}' must be a JSON object", call_id, acc.name)
        return NeutralEvent(type=EventType.TOOL_CALL_COMPLETE, call_id=call_id, name=acc.name, arguments=arguments)

    def _fail_open_calls(self) -> list[NeutralEvent]:
        events = []
        for call_id, acc in self._accumulators.items():
            logger.error("Tool call %s (%s) still open at end of stream", call_id, acc.name)
            events.append(_error(ErrorKind.MALFORMED_TOOL_ARGS,
                                 f"Tool call '{acc.name}' was never completed by the provider", call_id, acc.name))
        self._accumulators.clear()
        return events
