"""Cohere v2 chat adapter."""

from __future__ import annotations

import json
from typing import Any

from pipe_engine.engine.models import Message, NeutralEvent, RunRequest
from pipe_engine.providers.base import (
    AdapterState,
    Framing,
    ProviderAdapter,
    args_delta,
    complete_all,
    complete_call,
    content_event,
    drop_none,
    end_event,
    load_frame,
    openai_style_tools,
    provider_error,
    start_call,
    tool_schemas,
    usage_event,
    whole_call,
)
from pipe_engine.transport.interface import TransportRequest


class CohereAdapter(ProviderAdapter):
    """``POST /v2/chat``. Streams typed SSE events (``content-delta``, ``tool-call-*``).

    Cohere only understands ``REQUIRED`` and ``NONE`` for tool choice; ``auto``
    is its default and a named choice has no equivalent, so both are omitted.
    """

    name = "cohere"
    env_key = "COHERE_API_KEY"
    default_base_url = "https://api.cohere.com/v2"

    def build_request(self, request: RunRequest, *, api_key: str | None = None) -> TransportRequest:
        key = self.resolve_api_key(request, api_key)
        _, model_name = request.parse_model()

        body: dict[str, Any] = {
            "model": model_name,
            "messages": [_message(m) for m in request.messages],
            "stream": request.stream,
        }
        body.update(drop_none({
            "temperature": request.temperature,
            "p": request.top_p,
            "presence_penalty": request.presence_penalty,
            "frequency_penalty": request.frequency_penalty,
            "stop_sequences": request.stop,
            "max_tokens": request.max_tokens,
        }))
        if request.tools:
            body["tools"] = openai_style_tools(tool_schemas(request))
            if request.tool_choice in ("required", "none"):
                body["tool_choice"] = str(request.tool_choice).upper()
        if request.json_mode:
            body["response_format"] = {"type": "json_object"}

        return TransportRequest(
            url=f"{self.base_url}/chat",
            headers={
                "Authorization": f"Bearer {key}",
                "Content-Type": "application/json",
                "Accept": "text/event-stream" if request.stream else "application/json",
            },
            body=body,
            stream=request.stream,
        )

    def parse_chunk(self, raw: str, state: AdapterState) -> list[NeutralEvent]:
        data = load_frame(raw)
        if state.framing == Framing.JSON:
            return self._parse_body(data, state)

        kind = data.get("type")
        delta = data.get("delta") or {}
        message = delta.get("message") or {}

        if kind == "message-start":
            state.response_id = state.response_id or data.get("id")
            return []
        if kind == "content-delta":
            text = (message.get("content") or {}).get("text")
            return [content_event(text)] if text else []
        if kind == "tool-call-start":
            call = message.get("tool_calls") or {}
            fn = call.get("function") or {}
            events = start_call(state, data.get("index"), call.get("id"), fn.get("name", ""))
            if fn.get("arguments"):
                events.append(args_delta(events[0].call_id or "", fn["arguments"]))
            return events
        if kind == "tool-call-delta":
            fragment = ((message.get("tool_calls") or {}).get("function") or {}).get("arguments")
            call_id = state.call_ids.get(data.get("index"))
            return [args_delta(call_id, fragment)] if call_id and fragment else []
        if kind == "tool-call-end":
            call_id = state.call_ids.get(data.get("index"))
            return complete_call(state, call_id) if call_id else []
        if kind == "message-end":
            state.finish_reason = delta.get("finish_reason")
            if delta.get("error"):
                return [provider_error(str(delta["error"]))]
            tokens = _tokens(delta.get("usage") or {})
            return complete_all(state) + [usage_event(*tokens), end_event(state)]
        # tool-plan-delta, citation-*, content-start/end carry nothing neutral
        return []

    def _parse_body(self, data: dict[str, Any], state: AdapterState) -> list[NeutralEvent]:
        if isinstance(data.get("message"), str):
            # error bodies are {"message": "..."}
            return [provider_error(data["message"])]
        state.response_id = state.response_id or data.get("id")
        message = data.get("message") or {}
        events: list[NeutralEvent] = []
        text = "".join(
            block.get("text", "") for block in message.get("content") or [] if block.get("type") == "text"
        )
        if text:
            events.append(content_event(text))
        for i, call in enumerate(message.get("tool_calls") or []):
            fn = call.get("function") or {}
            events.extend(whole_call(state, i, call.get("id"), fn.get("name", ""), fn.get("arguments") or ""))
        state.finish_reason = data.get("finish_reason")
        events.append(usage_event(*_tokens(data.get("usage") or {})))
        events.append(end_event(state))
        return events


def _tokens(usage: dict[str, Any]) -> tuple[int, int]:
    counts = usage.get("tokens") or usage.get("billed_units") or {}
    return int(counts.get("input_tokens", 0)), int(counts.get("output_tokens", 0))


def _message(message: Message) -> dict[str, Any]:
    if message.role == "tool":
        return {"role": "tool", "tool_call_id": message.tool_call_id, "content": message.content}
    if message.role == "assistant" and message.tool_calls:
        out: dict[str, Any] = {
            "role": "assistant",
            "tool_calls": [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
                }
                for call in message.tool_calls
            ],
        }
        if message.content:
            out["tool_plan"] = message.content
        return out
    return {"role": message.role, "content": message.content}
