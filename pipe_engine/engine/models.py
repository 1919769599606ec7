"""Core data models: no internal dependencies beyond the error taxonomy, only Pydantic + stdlib."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from pipe_engine.engine.errors import TERMINAL_KINDS, ConfigurationError, ErrorKind


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------

class ToolCallRequest(BaseModel):
    """A single tool/function call requested by the model."""
    id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class Message(BaseModel):
    role: Literal["system", "user", "assistant", "tool"]
    content: str = ""
    name: str | None = None
    tool_call_id: str | None = None
    tool_calls: list[ToolCallRequest] | None = None


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------

@dataclass
class ToolDefinition:
    """A caller-supplied tool: JSON-schema parameters plus the bound implementation.

    ``handler`` may be sync or async. When ``input_model`` is set the arguments
    are validated into it and the handler receives the model instance;
    otherwise the handler is called with the arguments as keyword arguments.
    """

    name: str
    description: str
    handler: Callable[..., Any]
    parameters: dict[str, Any] = field(default_factory=dict)
    input_model: type[BaseModel] | None = None
    timeout: float | None = None

    def json_schema(self) -> dict[str, Any]:
        if self.parameters:
            return self.parameters
        if self.input_model is not None:
            return self.input_model.model_json_schema()
        return {"type": "object", "properties": {}}


class NamedToolChoice(BaseModel):
    name: str


ToolChoice = Union[Literal["auto", "required", "none"], NamedToolChoice]


# ---------------------------------------------------------------------------
# Inbound request (caller -> runner)
# ---------------------------------------------------------------------------

class RunRequest(BaseModel):
    """Provider-agnostic run request. Read-only once constructed."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    model: str
    messages: list[Message]
    temperature: float | None = None
    top_p: float | None = None
    presence_penalty: float | None = None
    frequency_penalty: float | None = None
    stop: list[str] = Field(default_factory=list)
    max_tokens: int | None = None
    tools: list[ToolDefinition] = Field(default_factory=list)
    tool_choice: ToolChoice = "auto"
    parallel_tool_calls: bool = True
    memory: list[str] = Field(default_factory=list)
    variables: dict[str, str] = Field(default_factory=dict)
    stream: bool = False
    json_mode: bool = False
    thread_id: str | None = None
    api_key: str | None = None

    def parse_model(self) -> tuple[str, str]:
        """Return ``(provider, model_name)``."""
        return parse_model_id(self.model)

    def tool_names(self) -> list[str]:
        return [t.name for t in self.tools]


def parse_model_id(model_id: str) -> tuple[str, str]:
    provider, sep, name = model_id.partition(":")
    provider, name = provider.strip().lower(), name.strip()
    if not sep or not provider or not name:
        raise ConfigurationError(f"Model identifier {model_id!r} must look like 'provider:model-name'")
    return provider, name


# ---------------------------------------------------------------------------
# Outbound events (normalizer / loop -> caller)
# ---------------------------------------------------------------------------

class EventType(str, Enum):
    CONNECTED = "connected"
    CONTENT = "content"
    TOOL_CALL_START = "tool_call_start"
    TOOL_CALL_ARGS_DELTA = "tool_call_args_delta"
    TOOL_CALL_COMPLETE = "tool_call_complete"
    TOOL_RESULT = "tool_result"
    USAGE = "usage"
    END = "end"
    ERROR = "error"


class Usage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: "Usage") -> "Usage":
        return Usage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


class NeutralEvent(BaseModel):
    """Vendor-agnostic unit of streamed output.

    Only the fields relevant to ``type`` are populated. Consumers should
    ignore event types they do not know.
    """
    type: EventType
    delta: str | None = None
    call_id: str | None = None
    name: str | None = None
    arguments: dict[str, Any] | None = None
    result: str | None = None
    is_error: bool = False
    usage: Usage | None = None
    finish_reason: str | None = None
    error_kind: ErrorKind | None = None
    message: str | None = None
    response_id: str | None = None
    timestamp: float = Field(default_factory=time.time)

    @property
    def is_terminal(self) -> bool:
        if self.type == EventType.END:
            return True
        return self.type == EventType.ERROR and self.error_kind in TERMINAL_KINDS


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

class Completion(BaseModel):
    """Buffered result of a run."""
    content: str = ""
    usage: Usage = Field(default_factory=Usage)
    finish_reason: str | None = None
    thread_id: str
    tool_calls: list[ToolCallRequest] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# RAG chunk
# ---------------------------------------------------------------------------

class MemoryChunk(BaseModel):
    source: str
    text: str
    score: float
