"""Per-run trace sink. Depends on nothing else in the package."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class TraceCollector(ABC):
    """Receives one record per step of a run, keyed by the run id.

    The runner emits ``memory`` (when memory is requested), ``dispatch`` per
    provider call, ``tool_exec`` per tool attempt and a final ``run_done``,
    then calls ``flush`` exactly once for the run.
    """

    @abstractmethod
    async def emit(self, run_id: str, step: str, fields: dict[str, Any]) -> None: ...

    @abstractmethod
    async def flush(self, run_id: str) -> None: ...


class NullTraceCollector(TraceCollector):
    """Used when no trace directory is configured."""

    async def emit(self, run_id: str, step: str, fields: dict[str, Any]) -> None:
        return None

    async def flush(self, run_id: str) -> None:
        return None
