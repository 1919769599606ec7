"""Engine settings with documented defaults, overridable from the environment."""

from __future__ import annotations

import os

from pydantic import BaseModel, Field

ENV_PREFIX = "PIPE_"


class EngineSettings(BaseModel):
    """Knobs the runner reads on every run.

    Environment overrides (all optional, read by ``load_settings``):
      PIPE_MAX_TOOL_ITERATIONS  tool rounds before ``tool_loop_exceeded`` (default 5)
      PIPE_MEMORY_BUDGET_CHARS  size cap of the injected context message (default 4000)
      PIPE_MEMORY_TOP_K         chunks requested per memory source (default 5)
      PIPE_TOOL_TIMEOUT         seconds per tool call (default 30)
      PIPE_TOOL_MAX_RETRIES     extra attempts for a failing tool call (default 0)
      PIPE_REQUEST_TIMEOUT      HTTP timeout in seconds (default 60)
      PIPE_RUN_TIMEOUT          whole-run deadline in seconds (default: none)
      PIPE_WIRE_STREAMING       ``0`` to use non-streaming vendor calls for buffered runs
      PIPE_TRACE_DIR            write JSONL traces here (default: tracing off)
      PIPE_<PROVIDER>_BASE_URL  e.g. ``PIPE_OLLAMA_BASE_URL=http://gpu-box:11434``
    """

    max_tool_iterations: int = Field(default=5, ge=0)
    memory_budget_chars: int = Field(default=4000, gt=0)
    memory_top_k: int = Field(default=5, gt=0)
    tool_timeout: float = Field(default=30.0, gt=0)
    tool_max_retries: int = Field(default=0, ge=0)
    request_timeout: float = Field(default=60.0, gt=0)
    run_timeout: float | None = None
    wire_streaming: bool = True
    trace_dir: str | None = None
    base_urls: dict[str, str] = Field(default_factory=dict)


_FIELD_ENV = {
    "max_tool_iterations": "MAX_TOOL_ITERATIONS",
    "memory_budget_chars": "MEMORY_BUDGET_CHARS",
    "memory_top_k": "MEMORY_TOP_K",
    "tool_timeout": "TOOL_TIMEOUT",
    "tool_max_retries": "TOOL_MAX_RETRIES",
    "request_timeout": "REQUEST_TIMEOUT",
    "run_timeout": "RUN_TIMEOUT",
    "trace_dir": "TRACE_DIR",
}

_BASE_URL_SUFFIX = "_BASE_URL"


def load_settings(environ: dict[str, str] | None = None, **overrides) -> EngineSettings:
    """Build settings from ``PIPE_*`` variables, then apply keyword overrides."""
    env = os.environ if environ is None else environ
    values: dict = {}
    for field_name, suffix in _FIELD_ENV.items():
        raw = env.get(ENV_PREFIX + suffix)
        if raw not in (None, ""):
            values[field_name] = raw
    if env.get(ENV_PREFIX + "WIRE_STREAMING") not in (None, ""):
        values["wire_streaming"] = env[ENV_PREFIX + "WIRE_STREAMING"].lower() not in ("0", "false", "no")

    base_urls = {
        key[len(ENV_PREFIX):-len(_BASE_URL_SUFFIX)].lower(): value
        for key, value in env.items()
        if key.startswith(ENV_PREFIX) and key.endswith(_BASE_URL_SUFFIX) and value
    }
    if base_urls:
        values["base_urls"] = base_urls

    values.update({k: v for k, v in overrides.items() if v is not None})
    return EngineSettings.model_validate(values)
