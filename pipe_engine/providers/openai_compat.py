"""OpenAI chat-completions adapter, shared by every vendor that speaks the same dialect."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from pipe_engine.engine.models import Message, NeutralEvent, RunRequest
from pipe_engine.providers.base import (
    AdapterState,
    Framing,
    ProviderAdapter,
    args_delta,
    complete_all,
    content_event,
    drop_none,
    end_event,
    load_frame,
    named_choice,
    openai_style_tools,
    provider_error,
    start_call,
    tool_schemas,
    usage_event,
    whole_call,
)
from pipe_engine.transport.interface import TransportRequest


@dataclass(frozen=True)
class VendorProfile:
    """What differs between OpenAI-compatible vendors."""

    name: str
    base_url: str
    env_key: str
    # neutral parameter names the vendor rejects; they are left out of the body
    unsupported: frozenset[str] = field(default_factory=frozenset)
    # how the vendor spells tool_choice="required"
    required_choice: str = "required"


OPENAI_COMPATIBLE: dict[str, VendorProfile] = {
    p.name: p
    for p in (
        VendorProfile("openai", "https://api.openai.com/v1", "OPENAI_API_KEY"),
        VendorProfile("together", "https://api.together.xyz/v1", "TOGETHER_API_KEY",
                      frozenset({"parallel_tool_calls"})),
        VendorProfile("groq", "https://api.groq.com/openai/v1", "GROQ_API_KEY",
                      frozenset({"stream_usage"})),
        VendorProfile("fireworks", "https://api.fireworks.ai/inference/v1", "FIREWORKS_API_KEY",
                      frozenset({"parallel_tool_calls", "stream_usage"})),
        VendorProfile("perplexity", "https://api.perplexity.ai", "PERPLEXITY_API_KEY",
                      frozenset({"tools", "stop", "json_mode", "stream_usage"})),
        VendorProfile("mistral", "https://api.mistral.ai/v1", "MISTRAL_API_KEY",
                      frozenset({"stream_usage"}), required_choice="any"),
        VendorProfile("xai", "https://api.x.ai/v1", "XAI_API_KEY"),
        VendorProfile("deepseek", "https://api.deepseek.com/v1", "DEEPSEEK_API_KEY",
                      frozenset({"parallel_tool_calls"})),
        VendorProfile("openrouter", "https://openrouter.ai/api/v1", "OPENROUTER_API_KEY"),
    )
}


class OpenAICompatibleAdapter(ProviderAdapter):
    """``POST {base_url}/chat/completions`` with bearer auth and SSE streaming."""

    def __init__(self, profile: VendorProfile, base_url: str | None = None) -> None:
        self.profile = profile
        self.name = profile.name
        self.env_key = profile.env_key
        self.default_base_url = profile.base_url
        super().__init__(base_url)

    def _supports(self, feature: str) -> bool:
        return feature not in self.profile.unsupported

    # -- request side -------------------------------------------------------

    def build_request(self, request: RunRequest, *, api_key: str | None = None) -> TransportRequest:
        key = self.resolve_api_key(request, api_key)
        _, model_name = request.parse_model()

        body: dict[str, Any] = {
            "model": model_name,
            "messages": [self._message(m) for m in request.messages],
            "stream": request.stream,
        }
        sampling = {
            "temperature": request.temperature,
            "top_p": request.top_p,
            "presence_penalty": request.presence_penalty,
            "frequency_penalty": request.frequency_penalty,
            "stop": request.stop,
            "max_tokens": request.max_tokens,
        }
        body.update(drop_none({k: v for k, v in sampling.items() if self._supports(k)}))

        if request.tools and self._supports("tools"):
            body["tools"] = openai_style_tools(tool_schemas(request))
            body["tool_choice"] = self._tool_choice(request)
            if self._supports("parallel_tool_calls"):
                body["parallel_tool_calls"] = request.parallel_tool_calls

        if request.json_mode and self._supports("json_mode"):
            body["response_format"] = {"type": "json_object"}
        if request.stream and self._supports("stream_usage"):
            body["stream_options"] = {"include_usage": True}

        return TransportRequest(
            url=f"{self.base_url}/chat/completions",
            headers={"Authorization": f"Bearer {key}", "Content-Type": "application/json"},
            body=body,
            stream=request.stream,
        )

    def _tool_choice(self, request: RunRequest) -> Any:
        name = named_choice(request)
        if name is not None:
            return {"type": "function", "function": {"name": name}}
        if request.tool_choice == "required":
            return self.profile.required_choice
        return request.tool_choice

    @staticmethod
    def _message(message: Message) -> dict[str, Any]:
        if message.role == "tool":
            return {"role": "tool", "tool_call_id": message.tool_call_id, "content": message.content}
        out: dict[str, Any] = {"role": message.role, "content": message.content}
        if message.name and message.role in ("system", "user"):
            out["name"] = message.name
        if message.role == "assistant" and message.tool_calls:
            out["content"] = message.content or None
            out["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
                }
                for call in message.tool_calls
            ]
        return out

    # -- response side ------------------------------------------------------

    def parse_chunk(self, raw: str, state: AdapterState) -> list[NeutralEvent]:
        if raw.strip() == "[DONE]":
            return complete_all(state) + [end_event(state)]

        data = load_frame(raw)
        if "error" in data:
            err = data["error"]
            return [provider_error(err.get("message", str(err)) if isinstance(err, dict) else str(err))]

        if data.get("id") and state.response_id is None:
            state.response_id = data["id"]

        if state.framing == Framing.JSON:
            return self._parse_body(data, state)

        events: list[NeutralEvent] = []
        for choice in data.get("choices") or []:
            delta = choice.get("delta") or {}
            if delta.get("content"):
                events.append(content_event(delta["content"]))
            for tc in delta.get("tool_calls") or []:
                index = tc.get("index", 0)
                fn = tc.get("function") or {}
                if index not in state.call_ids:
                    events.extend(start_call(state, index, tc.get("id"), fn.get("name", "")))
                if fn.get("arguments"):
                    events.append(args_delta(state.call_ids[index], fn["arguments"]))
            if choice.get("finish_reason"):
                state.finish_reason = choice["finish_reason"]
                events.extend(complete_all(state))

        usage = data.get("usage") or (data.get("x_groq") or {}).get("usage")
        if usage:
            events.append(usage_event(
                usage.get("prompt_tokens", 0),
                usage.get("completion_tokens", 0),
                usage.get("total_tokens"),
            ))
        return events

    def _parse_body(self, data: dict[str, Any], state: AdapterState) -> list[NeutralEvent]:
        events: list[NeutralEvent] = []
        choices = data.get("choices") or []
        if choices:
            choice = choices[0]
            message = choice.get("message") or {}
            if message.get("content"):
                events.append(content_event(message["content"]))
            for i, tc in enumerate(message.get("tool_calls") or []):
                fn = tc.get("function") or {}
                events.extend(whole_call(state, i, tc.get("id"), fn.get("name", ""), fn.get("arguments") or ""))
            state.finish_reason = choice.get("finish_reason")
        usage = data.get("usage")
        if usage:
            events.append(usage_event(
                usage.get("prompt_tokens", 0),
                usage.get("completion_tokens", 0),
                usage.get("total_tokens"),
            ))
        events.append(end_event(state))
        return events
