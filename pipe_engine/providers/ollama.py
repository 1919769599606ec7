"""Ollama native ``/api/chat`` adapter (newline-delimited JSON stream)."""

from __future__ import annotations

from typing import Any

from pipe_engine.engine.models import Message, NeutralEvent, RunRequest
from pipe_engine.providers.base import (
    AdapterState,
    Framing,
    ProviderAdapter,
    content_event,
    drop_none,
    end_event,
    load_frame,
    openai_style_tools,
    provider_error,
    tool_names_by_call_id,
    tool_schemas,
    usage_event,
    whole_call,
)
from pipe_engine.transport.interface import TransportRequest


class OllamaAdapter(ProviderAdapter):
    """Local models; no API key. ``tool_choice`` and the parallel flag have no equivalent."""

    name = "ollama"
    env_key = None
    default_base_url = "http://localhost:11434"
    stream_framing = Framing.NDJSON

    def build_request(self, request: RunRequest, *, api_key: str | None = None) -> TransportRequest:
        _, model_name = request.parse_model()
        names = tool_names_by_call_id(request)

        body: dict[str, Any] = {
            "model": model_name,
            "messages": [_message(m, names) for m in request.messages],
            "stream": request.stream,
        }
        options = drop_none({
            "temperature": request.temperature,
            "top_p": request.top_p,
            "presence_penalty": request.presence_penalty,
            "frequency_penalty": request.frequency_penalty,
            "stop": request.stop,
            "num_predict": request.max_tokens,
        })
        if options:
            body["options"] = options
        if request.tools:
            body["tools"] = openai_style_tools(tool_schemas(request))
        if request.json_mode:
            body["format"] = "json"

        headers = {"Content-Type": "application/json"}
        key = api_key or request.api_key
        if key:
            # hosted Ollama deployments sit behind a bearer-token proxy
            headers["Authorization"] = f"Bearer {key}"
        return TransportRequest(url=f"{self.base_url}/api/chat", headers=headers, body=body, stream=request.stream)

    def parse_chunk(self, raw: str, state: AdapterState) -> list[NeutralEvent]:
        data = load_frame(raw)
        if "error" in data:
            return [provider_error(str(data["error"]))]

        events: list[NeutralEvent] = []
        message = data.get("message") or {}
        if message.get("content"):
            events.append(content_event(message["content"]))
        for call in message.get("tool_calls") or []:
            fn = call.get("function") or {}
            key = ("call", state.calls_seen)
            events.extend(whole_call(state, key, call.get("id"), fn.get("name", ""), fn.get("arguments")))

        if data.get("done") or state.framing == Framing.JSON:
            state.finish_reason = data.get("done_reason")
            events.append(usage_event(data.get("prompt_eval_count", 0), data.get("eval_count", 0)))
            events.append(end_event(state))
        return events


def _message(message: Message, names: dict[str, str]) -> dict[str, Any]:
    out: dict[str, Any] = {"role": message.role, "content": message.content}
    if message.role == "tool":
        out["tool_name"] = message.name or names.get(message.tool_call_id or "", "")
    if message.role == "assistant" and message.tool_calls:
        out["tool_calls"] = [
            {"function": {"name": call.name, "arguments": call.arguments}} for call in message.tool_calls
        ]
    return out
