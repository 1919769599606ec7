"""pipe_engine: run one request shape against many LLM vendors as a single neutral event stream.

Usage::

    from pipe_engine import RunRequest, create_runner

    runner = create_runner()
    completion = await runner.run(RunRequest(
        model="openai:gpt-4o-mini",
        messages=[{"role": "user", "content": "Hello"}],
    ))
    print(completion.content)
"""

from __future__ import annotations

from dotenv import load_dotenv

load_dotenv()  # reads .env into os.environ (no-op if file missing)

from pipe_engine.config import EngineSettings, load_settings
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
    Message,
    NeutralEvent,
    RunRequest,
    ToolDefinition,
)
from pipe_engine.engine.runner import PipeRunner, StreamHandle
from pipe_engine.memory.interface import Retriever
from pipe_engine.tracing.interface import NullTraceCollector, TraceCollector
from pipe_engine.tracing.jsonl_tracer import JSONLTraceCollector
from pipe_engine.transport import HttpxTransport, Transport

__all__ = [
    "Cancelled",
    "Completion",
    "ConfigurationError",
    "EngineError",
    "EngineSettings",
    "ErrorKind",
    "EventType",
    "Message",
    "NeutralEvent",
    "PipeRunner",
    "ProviderError",
    "RunRequest",
    "StreamHandle",
    "ToolDefinition",
    "ToolLoopExceeded",
    "TransportError",
    "create_runner",
    "load_settings",
]


def create_runner(
    *,
    settings: EngineSettings | None = None,
    transport: Transport | None = None,
    retriever: Retriever | None = None,
    trace_collector: TraceCollector | None = None,
    api_keys: dict[str, str] | None = None,
) -> PipeRunner:
    """Wire all components and return a ready-to-use PipeRunner.

    Settings come from ``PIPE_*`` environment variables unless passed in
    (see ``pipe_engine.config``). Vendor keys are read per run from the
    adapter's environment variable (``OPENAI_API_KEY``, ``ANTHROPIC_API_KEY``,
    ...) unless ``api_keys`` or the request itself carries one.
    """
    settings = settings or load_settings()

    if transport is None:
        transport = HttpxTransport(timeout=settings.request_timeout)

    if trace_collector is None:
        if settings.trace_dir:
            trace_collector = JSONLTraceCollector(settings.trace_dir)
        else:
            trace_collector = NullTraceCollector()

    return PipeRunner(
        transport=transport,
        retriever=retriever,
        settings=settings,
        trace_collector=trace_collector,
        api_keys=api_keys,
    )
