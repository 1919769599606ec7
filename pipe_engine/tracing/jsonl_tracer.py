"""JSONL file-based trace collector."""

from __future__ import annotations

import json
import time
from pathlib import Path
from typing import Any

from pipe_engine.tracing.interface import TraceCollector


class JSONLTraceCollector(TraceCollector):
    """Appends one line per trace event to ``{trace_dir}/{run_id}.jsonl``.

    A run's events stay in memory until ``flush`` so a run that is cancelled
    half-way still writes one contiguous block. Each line carries its
    sequence number within the run and the milliseconds elapsed since the
    run's first event.
    """

    def __init__(self, trace_dir: str = "./traces") -> None:
        self._dir = Path(trace_dir)
        self._dir.mkdir(parents=True, exist_ok=True)
        self._pending: dict[str, list[dict[str, Any]]] = {}
        self._started: dict[str, float] = {}

    @property
    def trace_dir(self) -> Path:
        return self._dir

    async def emit(self, run_id: str, step: str, fields: dict[str, Any]) -> None:
        now = time.time()
        started = self._started.setdefault(run_id, now)
        run_events = self._pending.setdefault(run_id, [])
        run_events.append({
            "run_id": run_id,
            "seq": len(run_events),
            "event": step,
            "ts": now,
            "elapsed_ms": round((now - started) * 1000, 2),
            **fields,
        })

    async def flush(self, run_id: str) -> None:
        self._started.pop(run_id, None)
        run_events = self._pending.pop(run_id, None)
        if not run_events:
            return
        lines = "".join(json.dumps(e, default=str) + "\n" for e in run_events)
        with open(self._dir / f"{run_id}.jsonl", "a", encoding="utf-8") as fh:
            fh.write(lines)
