"""Anthropic messages API adapter."""

from __future__ import annotations

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
    named_choice,
    provider_error,
    start_call,
    tool_schemas,
    usage_event,
    whole_call,
)
from pipe_engine.transport.interface import TransportRequest

ANTHROPIC_VERSION = "2023-06-01"

# The messages API rejects requests without max_tokens.
DEFAULT_MAX_TOKENS = 4096


class AnthropicAdapter(ProviderAdapter):
    """``POST /v1/messages``; streaming arrives as typed SSE events.

    Leading system messages become the top-level ``system`` field; a system
    message later in the conversation (e.g. injected memory context) is sent
    as a user turn so its position is kept.
    """

    name = "anthropic"
    env_key = "ANTHROPIC_API_KEY"
    default_base_url = "https://api.anthropic.com/v1"

    # -- request side -------------------------------------------------------

    def build_request(self, request: RunRequest, *, api_key: str | None = None) -> TransportRequest:
        key = self.resolve_api_key(request, api_key)
        _, model_name = request.parse_model()

        system, turns = self._split_messages(request.messages)
        body: dict[str, Any] = {
            "model": model_name,
            "messages": turns,
            "max_tokens": request.max_tokens or DEFAULT_MAX_TOKENS,
            "stream": request.stream,
        }
        if system:
            body["system"] = system
        body.update(drop_none({
            "temperature": request.temperature,
            "top_p": request.top_p,
            "stop_sequences": request.stop,
        }))

        if request.tools:
            body["tools"] = [
                {"name": s["name"], "description": s["description"], "input_schema": s["parameters"]}
                for s in tool_schemas(request)
            ]
            body["tool_choice"] = self._tool_choice(request)

        return TransportRequest(
            url=f"{self.base_url}/messages",
            headers={
                "x-api-key": key or "",
                "anthropic-version": ANTHROPIC_VERSION,
                "Content-Type": "application/json",
            },
            body=body,
            stream=request.stream,
        )

    @staticmethod
    def _tool_choice(request: RunRequest) -> dict[str, Any]:
        name = named_choice(request)
        if name is not None:
            choice: dict[str, Any] = {"type": "tool", "name": name}
        elif request.tool_choice == "required":
            choice = {"type": "any"}
        else:
            choice = {"type": request.tool_choice}
        if not request.parallel_tool_calls and choice["type"] != "none":
            choice["disable_parallel_tool_use"] = True
        return choice

    @staticmethod
    def _split_messages(messages: list[Message]) -> tuple[str, list[dict[str, Any]]]:
        system_parts: list[str] = []
        turns: list[dict[str, Any]] = []
        leading = True

        def append(role: str, blocks: list[dict[str, Any]]) -> None:
            # consecutive same-role turns are merged; the API requires alternation
            if turns and turns[-1]["role"] == role:
                turns[-1]["content"].extend(blocks)
            else:
                turns.append({"role": role, "content": blocks})

        for message in messages:
            if message.role == "system" and leading:
                system_parts.append(message.content)
                continue
            leading = False
            if message.role == "system":
                append("user", [{"type": "text", "text": message.content}])
            elif message.role == "tool":
                append("user", [{
                    "type": "tool_result",
                    "tool_use_id": message.tool_call_id,
                    "content": message.content,
                }])
            elif message.role == "assistant":
                blocks: list[dict[str, Any]] = []
                if message.content:
                    blocks.append({"type": "text", "text": message.content})
                for call in message.tool_calls or []:
                    blocks.append({"type": "tool_use", "id": call.id, "name": call.name, "input": call.arguments})
                append("assistant", blocks)
            else:
                append("user", [{"type": "text", "text": message.content}])

        return "\n\n".join(system_parts), turns

    # -- response side ------------------------------------------------------

    def parse_chunk(self, raw: str, state: AdapterState) -> list[NeutralEvent]:
        data = load_frame(raw)
        kind = data.get("type")

        if kind == "error":
            err = data.get("error") or {}
            return [provider_error(err.get("message", "Anthropic stream error"))]
        if state.framing == Framing.JSON:
            return self._parse_body(data, state)

        if kind == "message_start":
            message = data.get("message") or {}
            state.response_id = state.response_id or message.get("id")
            state.prompt_tokens = (message.get("usage") or {}).get("input_tokens", 0)
            return []
        if kind == "content_block_start":
            block = data.get("content_block") or {}
            if block.get("type") == "tool_use":
                return start_call(state, data.get("index"), block.get("id"), block.get("name", ""))
            if block.get("type") == "text" and block.get("text"):
                return [content_event(block["text"])]
            return []
        if kind == "content_block_delta":
            delta = data.get("delta") or {}
            if delta.get("type") == "text_delta":
                return [content_event(delta.get("text", ""))] if delta.get("text") else []
            if delta.get("type") == "input_json_delta":
                call_id = state.call_ids.get(data.get("index"))
                if call_id and delta.get("partial_json"):
                    return [args_delta(call_id, delta["partial_json"])]
            return []
        if kind == "content_block_stop":
            call_id = state.call_ids.get(data.get("index"))
            return complete_call(state, call_id) if call_id else []
        if kind == "message_delta":
            state.finish_reason = (data.get("delta") or {}).get("stop_reason") or state.finish_reason
            output_tokens = (data.get("usage") or {}).get("output_tokens", 0)
            return [usage_event(state.prompt_tokens, output_tokens)]
        if kind == "message_stop":
            return complete_all(state) + [end_event(state)]
        # ping and future event types
        return []

    def _parse_body(self, data: dict[str, Any], state: AdapterState) -> list[NeutralEvent]:
        state.response_id = state.response_id or data.get("id")
        events: list[NeutralEvent] = []
        for i, block in enumerate(data.get("content") or []):
            if block.get("type") == "text" and block.get("text"):
                events.append(content_event(block["text"]))
            elif block.get("type") == "tool_use":
                events.extend(whole_call(state, i, block.get("id"), block.get("name", ""), block.get("input")))
        state.finish_reason = data.get("stop_reason")
        usage = data.get("usage") or {}
        events.append(usage_event(usage.get("input_tokens", 0), usage.get("output_tokens", 0)))
        events.append(end_event(state))
        return events
