from pipe_engine.engine.errors import (
    Cancelled,
    ConfigurationError,
    EngineError,
    ErrorKind,
    ProviderError,
    ToolLoopExceeded,
    TransportError,
)
from pipe_engine.engine.models import (
    Completion,
    EventType,
    MemoryChunk,
    Message,
    NamedToolChoice,
    NeutralEvent,
    RunRequest,
    ToolCallRequest,
    ToolDefinition,
    Usage,
)
from pipe_engine.engine.variables import resolve_messages, substitute
from pipe_engine.engine.normalizer import StreamNormalizer
from pipe_engine.engine.loop import Cancellation, LoopState, ToolLoop
from pipe_engine.engine.runner import PipeRunner, StreamHandle

__all__ = [
    "Cancellation",
    "Cancelled",
    "Completion",
    "ConfigurationError",
    "EngineError",
    "ErrorKind",
    "EventType",
    "LoopState",
    "MemoryChunk",
    "Message",
    "NamedToolChoice",
    "NeutralEvent",
    "PipeRunner",
    "ProviderError",
    "RunRequest",
    "StreamHandle",
    "StreamNormalizer",
    "ToolCallRequest",
    "ToolDefinition",
    "ToolLoop",
    "ToolLoopExceeded",
    "TransportError",
    "Usage",
    "resolve_messages",
    "substitute",
]
