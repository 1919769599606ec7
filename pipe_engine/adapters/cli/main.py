"""CLI JSON-lines adapter: reads a run request from argv/stdin, prints neutral events as JSON."""

from __future__ import annotations

import asyncio
import json
import sys

from pipe_engine import create_runner
from pipe_engine.engine.errors import ConfigurationError
from pipe_engine.engine.models import RunRequest

USAGE = (
    "Usage: pipe-cli <provider:model> <text>\n"
    "   OR  echo '{\"model\": \"openai:gpt-4o-mini\", \"messages\": [...]}' | pipe-cli"
)


def parse_args(argv: list[str], stdin_text: str) -> RunRequest:
    if len(argv) >= 2:
        return RunRequest(
            model=argv[0],
            messages=[{"role": "user", "content": " ".join(argv[1:])}],
            stream=True,
        )
    raw = stdin_text.strip()
    if not raw:
        raise ValueError(USAGE)
    data = json.loads(raw)
    data.pop("tools", None)
    data.setdefault("stream", True)
    return RunRequest.model_validate(data)


async def run_cli(request: RunRequest) -> int:
    runner = create_runner()
    try:
        handle = runner.open_stream(request)
        async for event in handle:
            print(json.dumps(event.model_dump(mode="json", exclude_none=True)), flush=True)
    finally:
        await runner.aclose()
    return 0


def main() -> None:
    argv = sys.argv[1:]
    try:
        request = parse_args(argv, "" if argv else sys.stdin.read())
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        sys.exit(1)

    try:
        code = asyncio.run(run_cli(request))
    except ConfigurationError as exc:
        print(json.dumps({"error": exc.kind.value, "message": exc.message}), file=sys.stderr)
        sys.exit(2)
    sys.exit(code)


if __name__ == "__main__":
    main()
