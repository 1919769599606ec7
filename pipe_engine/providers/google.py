"""Google Gemini ``generateContent`` adapter."""

from __future__ import annotations

from typing import Any

from pipe_engine.engine.models import Message, NeutralEvent, RunRequest
from pipe_engine.providers.base import (
    AdapterState,
    ProviderAdapter,
    complete_all,
    content_event,
    drop_none,
    end_event,
    load_frame,
    named_choice,
    provider_error,
    tool_names_by_call_id,
    tool_schemas,
    usage_event,
    whole_call,
)
from pipe_engine.transport.interface import TransportRequest

# JSON-schema keywords the function declaration schema does not accept
_UNSUPPORTED_SCHEMA_KEYS = frozenset({"$schema", "additionalProperties", "title", "default"})

_MODES = {"auto": "AUTO", "required": "ANY", "none": "NONE"}


def clean_schema(schema: Any) -> Any:
    if isinstance(schema, dict):
        return {k: clean_schema(v) for k, v in schema.items() if k not in _UNSUPPORTED_SCHEMA_KEYS}
    if isinstance(schema, list):
        return [clean_schema(v) for v in schema]
    return schema


class GoogleAdapter(ProviderAdapter):
    """``models/{model}:streamGenerateContent?alt=sse`` (or ``:generateContent``).

    Gemini sends function calls whole, never as fragments, and has no
    parallel-call switch, so ``parallel_tool_calls`` is not forwarded.
    """

    name = "google"
    env_key = "GOOGLE_API_KEY"
    default_base_url = "https://generativelanguage.googleapis.com/v1beta"

    def build_request(self, request: RunRequest, *, api_key: str | None = None) -> TransportRequest:
        key = self.resolve_api_key(request, api_key)
        _, model_name = request.parse_model()

        system, contents = self._contents(request)
        body: dict[str, Any] = {"contents": contents}
        if system:
            body["systemInstruction"] = {"parts": [{"text": system}]}

        generation = drop_none({
            "temperature": request.temperature,
            "topP": request.top_p,
            "presencePenalty": request.presence_penalty,
            "frequencyPenalty": request.frequency_penalty,
            "stopSequences": request.stop,
            "maxOutputTokens": request.max_tokens,
            "responseMimeType": "application/json" if request.json_mode else None,
        })
        if generation:
            body["generationConfig"] = generation

        if request.tools:
            body["tools"] = [{
                "functionDeclarations": [
                    {"name": s["name"], "description": s["description"], "parameters": clean_schema(s["parameters"])}
                    for s in tool_schemas(request)
                ]
            }]
            name = named_choice(request)
            if name is not None:
                config = {"mode": "ANY", "allowedFunctionNames": [name]}
            else:
                config = {"mode": _MODES[str(request.tool_choice)]}
            body["toolConfig"] = {"functionCallingConfig": config}

        if request.stream:
            url = f"{self.base_url}/models/{model_name}:streamGenerateContent"
            params = {"alt": "sse"}
        else:
            url = f"{self.base_url}/models/{model_name}:generateContent"
            params = {}
        return TransportRequest(
            url=url,
            params=params,
            headers={"x-goog-api-key": key or "", "Content-Type": "application/json"},
            body=body,
            stream=request.stream,
        )

    @staticmethod
    def _contents(request: RunRequest) -> tuple[str, list[dict[str, Any]]]:
        names = tool_names_by_call_id(request)
        system_parts: list[str] = []
        contents: list[dict[str, Any]] = []
        leading = True

        def append(role: str, parts: list[dict[str, Any]]) -> None:
            if contents and contents[-1]["role"] == role:
                contents[-1]["parts"].extend(parts)
            else:
                contents.append({"role": role, "parts": parts})

        for message in request.messages:
            if message.role == "system" and leading:
                system_parts.append(message.content)
                continue
            leading = False
            append(*_content(message, names))

        return "\n\n".join(system_parts), contents

    def parse_chunk(self, raw: str, state: AdapterState) -> list[NeutralEvent]:
        data = load_frame(raw)
        if isinstance(data, list):
            # non-streaming error bodies and some proxies wrap the response in a list
            events: list[NeutralEvent] = []
            for item in data:
                events.extend(self._parse_response(item, state))
            return events
        return self._parse_response(data, state)

    def _parse_response(self, data: dict[str, Any], state: AdapterState) -> list[NeutralEvent]:
        if "error" in data:
            return [provider_error((data["error"] or {}).get("message", "Gemini error"))]
        if data.get("responseId") and state.response_id is None:
            state.response_id = data["responseId"]

        events: list[NeutralEvent] = []
        finished = False
        for candidate in (data.get("candidates") or [])[:1]:
            for part in (candidate.get("content") or {}).get("parts") or []:
                if part.get("thought"):
                    continue
                if part.get("text"):
                    events.append(content_event(part["text"]))
                elif "functionCall" in part:
                    call = part["functionCall"]
                    key = ("fc", state.calls_seen)
                    events.extend(whole_call(state, key, call.get("id"), call.get("name", ""), call.get("args")))
            if candidate.get("finishReason"):
                state.finish_reason = candidate["finishReason"]
                finished = True

        if finished:
            # usageMetadata is cumulative; report it once, with the final chunk
            usage = data.get("usageMetadata") or {}
            events.append(usage_event(
                usage.get("promptTokenCount", 0),
                usage.get("candidatesTokenCount", 0),
                usage.get("totalTokenCount"),
            ))
            events.extend(complete_all(state))
            events.append(end_event(state))
        return events


def _content(message: Message, names: dict[str, str]) -> tuple[str, list[dict[str, Any]]]:
    if message.role == "tool":
        name = message.name or names.get(message.tool_call_id or "", "")
        return "user", [{"functionResponse": {"name": name, "response": {"content": message.content}}}]
    if message.role == "assistant":
        parts: list[dict[str, Any]] = []
        if message.content:
            parts.append({"text": message.content})
        for call in message.tool_calls or []:
            parts.append({"functionCall": {"name": call.name, "args": call.arguments}})
        return "model", parts
    return "user", [{"text": message.content}]
