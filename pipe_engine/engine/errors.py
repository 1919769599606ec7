"""Error taxonomy shared by adapters, the normalizer, the tool loop and the runner."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    CONFIGURATION = "configuration"
    TRANSPORT = "transport"
    PROVIDER = "provider"
    MALFORMED_CHUNK = "malformed_chunk"
    MALFORMED_TOOL_ARGS = "malformed_tool_args"
    UNRESOLVED_TOOL = "unresolved_tool"
    TOOL_EXECUTION_ERROR = "tool_execution_error"
    TOOL_LOOP_EXCEEDED = "tool_loop_exceeded"
    CANCELLED = "cancelled"


# Kinds that end the whole run when they surface as an ``error`` event.
TERMINAL_KINDS = frozenset({
    ErrorKind.TRANSPORT,
    ErrorKind.PROVIDER,
    ErrorKind.TOOL_LOOP_EXCEEDED,
    ErrorKind.CANCELLED,
})


class EngineError(Exception):
    """Base class for every error raised by the engine."""

    kind: ErrorKind = ErrorKind.PROVIDER

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConfigurationError(EngineError):
    """Bad model identifier, duplicate tool name, missing field. Raised before any I/O."""

    kind = ErrorKind.CONFIGURATION


class TransportError(EngineError):
    kind = ErrorKind.TRANSPORT

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ProviderError(EngineError):
    """The vendor reported an error inside an otherwise healthy stream."""

    kind = ErrorKind.PROVIDER


class ToolLoopExceeded(EngineError):
    kind = ErrorKind.TOOL_LOOP_EXCEEDED

    @classmethod
    def for_limit(cls, max_iterations: int) -> "ToolLoopExceeded":
        return cls(f"Max tool iterations ({max_iterations}) exceeded")


class Cancelled(EngineError):
    kind = ErrorKind.CANCELLED

    def __init__(self, message: str = "Run cancelled") -> None:
        super().__init__(message)


_EXCEPTIONS_BY_KIND: dict[ErrorKind, type[EngineError]] = {
    ErrorKind.CONFIGURATION: ConfigurationError,
    ErrorKind.TRANSPORT: TransportError,
    ErrorKind.PROVIDER: ProviderError,
    ErrorKind.TOOL_LOOP_EXCEEDED: ToolLoopExceeded,
    ErrorKind.CANCELLED: Cancelled,
}


def error_from_event(kind: ErrorKind, message: str) -> EngineError:
    """Rebuild the exception matching a terminal ``error`` event (buffered mode)."""
    cls = _EXCEPTIONS_BY_KIND.get(kind, ProviderError)
    return cls(message)
