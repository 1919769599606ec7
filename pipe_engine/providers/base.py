"""ProviderAdapter ABC and the helpers every vendor adapter shares."""

from __future__ import annotations

import json
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pipe_engine.engine.errors import ConfigurationError, ErrorKind
from pipe_engine.engine.models import (
    EventType,
    NamedToolChoice,
    NeutralEvent,
    RunRequest,
    Usage,
)
from pipe_engine.transport.interface import TransportRequest


class Framing(str, Enum):
    SSE = "sse"          # text/event-stream, one JSON document per ``data:`` block
    NDJSON = "ndjson"    # one JSON document per line
    JSON = "json"        # the whole body is one JSON document


@dataclass
class AdapterState:
    """Per-dispatch parsing state, owned by the normalizer and passed to ``parse_chunk``."""

    framing: Framing
    response_id: str | None = None
    finish_reason: str | None = None
    # vendor-side index (or block index) -> neutral call id
    call_ids: dict[Any, str] = field(default_factory=dict)
    # call ids started but not yet completed, in start order
    open_calls: list[str] = field(default_factory=list)
    prompt_tokens: int = 0
    calls_seen: int = 0


class ProviderAdapter(ABC):
    """Maps a neutral ``RunRequest`` to a vendor call and vendor frames back to events."""

    name: str = ""
    env_key: str | None = None
    default_base_url: str = ""
    supports_streaming: bool = True
    stream_framing: Framing = Framing.SSE

    def __init__(self, base_url: str | None = None) -> None:
        self.base_url = (base_url or self.default_base_url).rstrip("/")

    # -- request side -------------------------------------------------------

    @abstractmethod
    def build_request(self, request: RunRequest, *, api_key: str | None = None) -> TransportRequest:
        """Render ``request`` (messages, sampling params, tools) as a vendor HTTP call."""

    def resolve_api_key(self, request: RunRequest, api_key: str | None = None) -> str | None:
        key = api_key or request.api_key
        if key is None and self.env_key:
            key = os.environ.get(self.env_key)
        if key is None and self.env_key:
            raise ConfigurationError(
                f"No API key for provider '{self.name}': pass api_key or set {self.env_key}"
            )
        return key

    def framing_for(self, request: RunRequest) -> Framing:
        if request.stream and self.supports_streaming:
            return self.stream_framing
        return Framing.JSON

    def new_state(self, request: RunRequest) -> AdapterState:
        return AdapterState(framing=self.framing_for(request))

    # -- response side ------------------------------------------------------

    @abstractmethod
    def parse_chunk(self, raw: str, state: AdapterState) -> list[NeutralEvent]:
        """Translate one complete vendor frame into zero or more neutral events.

        Tool calls are reported as ``tool_call_start`` / ``tool_call_args_delta``
        and a bare ``tool_call_complete`` signal; the normalizer fills in the
        parsed arguments.
        """


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

def drop_none(params: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in params.items() if v is not None and v != []}


def load_frame(raw: str) -> Any:
    """Decode a frame; ``ValueError`` propagates so the normalizer can flag it."""
    return json.loads(raw)


def content_event(text: str) -> NeutralEvent:
    return NeutralEvent(type=EventType.CONTENT, delta=text)


def usage_event(prompt: int, completion: int, total: int | None = None) -> NeutralEvent:
    return NeutralEvent(
        type=EventType.USAGE,
        usage=Usage(
            prompt_tokens=prompt,
            completion_tokens=completion,
            total_tokens=total if total is not None else prompt + completion,
        ),
    )


def end_event(state: AdapterState) -> NeutralEvent:
    return NeutralEvent(type=EventType.END, finish_reason=state.finish_reason)


def provider_error(message: str) -> NeutralEvent:
    return NeutralEvent(type=EventType.ERROR, error_kind=ErrorKind.PROVIDER, message=message)


def start_call(state: AdapterState, key: Any, call_id: str | None, name: str) -> list[NeutralEvent]:
    if not call_id:
        call_id = f"call_{state.calls_seen}"
    state.calls_seen += 1
    state.call_ids[key] = call_id
    state.open_calls.append(call_id)
    return [NeutralEvent(type=EventType.TOOL_CALL_START, call_id=call_id, name=name)]


def args_delta(call_id: str, fragment: str) -> NeutralEvent:
    return NeutralEvent(type=EventType.TOOL_CALL_ARGS_DELTA, call_id=call_id, delta=fragment)


def complete_call(state: AdapterState, call_id: str) -> list[NeutralEvent]:
    if call_id not in state.open_calls:
        return []
    state.open_calls.remove(call_id)
    return [NeutralEvent(type=EventType.TOOL_CALL_COMPLETE, call_id=call_id)]


def complete_all(state: AdapterState) -> list[NeutralEvent]:
    events: list[NeutralEvent] = []
    for call_id in list(state.open_calls):
        events.extend(complete_call(state, call_id))
    return events


def whole_call(state: AdapterState, key: Any, call_id: str | None, name: str, arguments: Any) -> list[NeutralEvent]:
    """For vendors that deliver a call's arguments in one piece."""
    events = start_call(state, key, call_id, name)
    started_id = events[0].call_id or ""
    if isinstance(arguments, str):
        text = arguments
    else:
        text = json.dumps(arguments if arguments is not None else {})
    events.append(args_delta(started_id, text))
    events.extend(complete_call(state, started_id))
    return events


def openai_style_tools(schemas: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [
        {
            "type": "function",
            "function": {
                "name": s["name"],
                "description": s["description"],
                "parameters": s["parameters"],
            },
        }
        for s in schemas
    ]


def named_choice(request: RunRequest) -> str | None:
    if isinstance(request.tool_choice, NamedToolChoice):
        return request.tool_choice.name
    return None


def tool_schemas(request: RunRequest) -> list[dict[str, Any]]:
    return [
        {"name": t.name, "description": t.description, "parameters": t.json_schema()}
        for t in request.tools
    ]


def tool_names_by_call_id(request: RunRequest) -> dict[str, str]:
    """Map call ids to tool names from the assistant turns already in the conversation."""
    names: dict[str, str] = {}
    for message in request.messages:
        for call in message.tool_calls or []:
            names[call.id] = call.name
    return names
