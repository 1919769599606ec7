"""FastAPI adapter: runs pipes over HTTP, streaming neutral events as SSE."""

from __future__ import annotations

import json
import logging
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from pipe_engine import create_runner
from pipe_engine.engine.errors import ConfigurationError, EngineError
from pipe_engine.engine.models import Message, NeutralEvent, RunRequest, ToolChoice
from pipe_engine.engine.runner import PipeRunner

logger = logging.getLogger(__name__)

THREAD_ID_HEADER = "lb-thread-id"


class PipeRunBody(BaseModel):
    """HTTP shape of a run. Tools carry Python handlers, so they cannot be sent over the wire."""

    model: str
    messages: list[Message]
    temperature: float | None = None
    top_p: float | None = None
    presence_penalty: float | None = None
    frequency_penalty: float | None = None
    stop: list[str] = Field(default_factory=list)
    max_tokens: int | None = None
    tool_choice: ToolChoice = "auto"
    memory: list[str] = Field(default_factory=list)
    variables: dict[str, str] = Field(default_factory=dict)
    stream: bool = False
    json_mode: bool = False
    thread_id: str | None = None
    api_key: str | None = None

    def to_request(self) -> RunRequest:
        return RunRequest(**self.model_dump())


def sse_frame(event: NeutralEvent) -> str:
    payload = json.dumps(event.model_dump(mode="json", exclude_none=True))
    return f"event: {event.type.value}\ndata: {payload}\n\n"


def _status_for(exc: EngineError) -> int:
    return 400 if isinstance(exc, ConfigurationError) else 502


def create_app(runner: PipeRunner | None = None) -> FastAPI:
    runner = runner or create_runner()
    app = FastAPI(title="Pipe Engine API", version="0.1.0")

    @app.post("/v1/pipes/run")
    async def run_pipe(body: PipeRunBody):
        try:
            handle = runner.open_stream(body.to_request())
        except ConfigurationError as exc:
            return JSONResponse({"error": exc.kind.value, "message": exc.message}, status_code=400)

        if not body.stream:
            try:
                completion = await handle.collect()
            except EngineError as exc:
                logger.warning("Run failed (%s): %s", exc.kind.value, exc.message)
                headers = {THREAD_ID_HEADER: handle.thread_id} if handle.thread_id else None
                return JSONResponse(
                    {"error": exc.kind.value, "message": exc.message},
                    status_code=_status_for(exc),
                    headers=headers,
                )
            return JSONResponse(
                completion.model_dump(mode="json"),
                headers={THREAD_ID_HEADER: completion.thread_id},
            )

        # Pull the first event so the thread id is known before headers go out.
        events = handle.__aiter__()
        first = await anext(events, None)

        async def sse_stream() -> AsyncIterator[str]:
            try:
                if first is not None:
                    yield sse_frame(first)
                async for event in events:
                    yield sse_frame(event)
            finally:
                await handle.aclose()

        headers = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}
        if handle.thread_id:
            headers[THREAD_ID_HEADER] = handle.thread_id
        return StreamingResponse(sse_stream(), media_type="text/event-stream", headers=headers)

    @app.get("/health")
    async def health() -> JSONResponse:
        return JSONResponse({"status": "ok"})

    return app


# Module-level instance for ``uvicorn pipe_engine.adapters.web_fastapi.app:app``
app = create_app()


def serve() -> None:
    """Entry-point for ``pipe-web`` console script."""
    import uvicorn

    uvicorn.run(
        "pipe_engine.adapters.web_fastapi.app:app",
        host="0.0.0.0",
        port=8000,
        log_level="info",
    )
