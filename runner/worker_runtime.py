"""Worker process entry point.

Usage:
  python -m runner.worker_runtime <script.py>  (job JSON on stdin)

Loads the runner script by path and calls its ``run(job, ctx)`` (plain function
or coroutine function). The real stdout is reserved for the protocol channel;
anything the script prints goes to stderr.

Completion is always reported through a final ``done`` update: script errors are
turned into an error trace line plus ``failedReason`` and the process exits 0.
A non-zero exit code therefore means the runtime itself could not run.
"""
from __future__ import annotations

import asyncio
import importlib.util
import inspect
import json
import sys
import threading
import traceback
from pathlib import Path
from types import ModuleType
from typing import IO, Any

from domain.models import JobLogLevel, TraceEntry

from .protocol import encode_log, encode_update


class JobContext:
    """Handle given to runner scripts for reporting progress."""

    def __init__(self, job: dict[str, Any], channel: IO[str]) -> None:
        self.job = job
        self._channel = channel
        self._lock = threading.Lock()
        self.finished = False

    def _write(self, line: str) -> None:
        with self._lock:
            self._channel.write(line + "\n")
            self._channel.flush()

    def log(self, level: JobLogLevel | str, message: str) -> None:
        self._write(encode_log(TraceEntry.now(JobLogLevel(level), str(message))))

    def debug(self, message: str) -> None:
        self.log(JobLogLevel.DEBUG, message)

    def info(self, message: str) -> None:
        self.log(JobLogLevel.INFO, message)

    def warn(self, message: str) -> None:
        self.log(JobLogLevel.WARN, message)

    def error(self, message: str) -> None:
        self.log(JobLogLevel.ERROR, message)

    def update(self, **fields: Any) -> None:
        """Forward the trace logged so far, plus ``fields``, to the broker."""
        self._write(encode_update(fields=fields))

    def finish(self, *, failed_reason: str | None = None, **fields: Any) -> None:
        if self.finished:
            return
        self.finished = True
        self._write(encode_update(done=True, failed_reason=failed_reason, fields=fields))


def load_script(path: Path) -> ModuleType:
    spec = importlib.util.spec_from_file_location(f"runner_script_{path.stem}", path)
    if spec is None or spec.loader is None:
        raise ImportError(f"cannot load runner script {path}")
    module = importlib.util.module_from_spec(spec)
    # Let packaged scripts import their sibling modules.
    sys.path.insert(0, str(path.parent))
    spec.loader.exec_module(module)
    return module


def execute(script: Path, job: dict[str, Any], ctx: JobContext) -> None:
    try:
        module = load_script(script)
        run = getattr(module, "run", None)
        if not callable(run):
            raise AttributeError(f"runner script {script.name} has no run(job, ctx) function")
        result = run(job, ctx)
        if inspect.isawaitable(result):
            result = asyncio.run(_await(result))
    except Exception as exc:
        ctx.error(f"job failed [type={job.get('jobType')}]\n{traceback.format_exc()}")
        ctx.finish(failed_reason=f"{type(exc).__name__}: {exc}")
        return
    if isinstance(result, dict):
        ctx.finish(result=result)
    else:
        ctx.finish()


async def _await(awaitable):
    return await awaitable


def main(argv: list[str] | None = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    if len(args) != 1:
        print("usage: python -m runner.worker_runtime <script.py>", file=sys.stderr)
        return 2
    channel = sys.stdout
    sys.stdout = sys.stderr
    job = json.loads(sys.stdin.read() or "{}")
    execute(Path(args[0]), job, JobContext(job, channel))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
