"""Job worker handle.

A ``JobWorker`` owns the child process executing one job:

- start(): spawn ``python -m runner.worker_runtime <script>`` with the job on stdin
- relay: protocol lines from the child's stdout become trace entries; every
  ``update`` line is forwarded through ``on_update`` (sequentially, so trace
  order is preserved). stderr lines are kept as ``warn`` entries.
- retries: an update the broker did not acknowledge (``on_update`` raised
  ``TraceUpdateError``) is retried with exponential jitter; unacknowledged lines
  stay queued and go out with the next attempt.
- terminate(reason): SIGTERM then SIGKILL after a grace period. After a
  ``canceled`` termination nothing more is sent to the broker.
- completion: exactly one of ``on_error(err)`` / ``on_end()`` is called.

If the child exits without reporting ``done`` (crash, timeout, shutdown) the
handle pushes a final ``done`` update itself before ``on_end``; if that push
cannot be delivered the job ends through ``on_error`` instead.
"""
from __future__ import annotations

import asyncio
import contextlib
import json
import os
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

from domain.models import Job, JobLogLevel, JobUpdate, TraceEntry

from . import protocol
from .bootstrap import Settings
from .errors import TraceUpdateError, WorkerError

PROJECT_ROOT = Path(__file__).resolve().parent.parent
STREAM_LIMIT = 4 * 1024 * 1024

REASON_CANCELED = "canceled"
REASON_TIMEOUT = "timeout"
REASON_SHUTDOWN = "shutdown"

_FAILED_REASONS = {
    REASON_TIMEOUT: "Timeout",
    REASON_SHUTDOWN: "Runner shutdown",
}

UpdateCallback = Callable[[JobUpdate], Awaitable[None]]


class JobWorker:
    def __init__(
        self,
        script_entry: Path,
        job: Job,
        settings: Settings,
        *,
        on_update: UpdateCallback,
        on_error: Callable[[BaseException], None],
        on_end: Callable[[], None],
        timeout_seconds: Optional[float] = None,
    ) -> None:
        self.script_entry = Path(script_entry)
        self.job = job
        self.settings = settings
        self._on_update = on_update
        self._on_error = on_error
        self._on_end = on_end
        self.logger = structlog.get_logger().bind(component="worker", job_id=job.job_id, job_type=job.job_type)
        if timeout_seconds is None:
            timeout_seconds = self._payload_timeout()
        self.timeout_seconds = timeout_seconds

        self._process: asyncio.subprocess.Process | None = None
        self._pending: list[TraceEntry] = []
        self._done_sent = False
        self._error: BaseException | None = None
        self._settled = False
        self._finished = asyncio.Event()
        self._tasks: set[asyncio.Task] = set()
        self.terminated_reason: str | None = None

    # ------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------
    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def canceled(self) -> bool:
        return self.terminated_reason == REASON_CANCELED

    async def start(self) -> None:
        """Spawn the worker process. Failures are reported through on_error, never raised."""
        if self.terminated_reason is not None:
            # Terminated before it ever ran (shutdown right after admission).
            await self._finish(returncode=None)
            return
        env = dict(os.environ)
        env["PYTHONPATH"] = os.pathsep.join(p for p in (str(PROJECT_ROOT), env.get("PYTHONPATH")) if p)
        env["PYTHONUNBUFFERED"] = "1"
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.settings.python_executable,
                "-m",
                "runner.worker_runtime",
                str(self.script_entry),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                limit=STREAM_LIMIT,
            )
            assert self._process.stdin is not None
            self._process.stdin.write(json.dumps(self._job_document(), default=str).encode("utf-8"))
            await self._process.stdin.drain()
            self._process.stdin.close()
        except (OSError, ValueError) as exc:
            self.logger.error("worker_spawn_failed", error=str(exc))
            if self._process is not None and self._process.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    self._process.kill()
            self._emit_error(WorkerError(f"failed to start worker process: {exc}"))
            return
        self.logger.info("worker_started", pid=self._process.pid, script=str(self.script_entry))
        self._spawn(self._supervise(), name=f"worker-{self.job.job_id}")
        if self.timeout_seconds and self.timeout_seconds > 0:
            self._spawn(self._expire_after(self.timeout_seconds), name=f"worker-timeout-{self.job.job_id}")

    async def terminate(self, reason: str) -> None:
        """Ask the worker process to stop. Returns without waiting for the exit."""
        if self.terminated_reason is not None:
            return
        self.terminated_reason = reason
        self.logger.info("worker_terminate_requested", reason=reason)
        proc = self._process
        if proc is None or proc.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError):
            proc.terminate()
        self._spawn(self._kill_after_grace(proc), name=f"worker-kill-{self.job.job_id}")

    async def wait(self) -> None:
        """Wait until on_error or on_end has been called."""
        await self._finished.wait()

    # ------------------------------------------------------------
    # Supervision
    # ------------------------------------------------------------
    async def _supervise(self) -> None:
        proc = self._process
        assert proc is not None and proc.stdout is not None and proc.stderr is not None
        try:
            stderr_task = asyncio.create_task(self._pump_stderr(proc.stderr))
            await self._pump_stdout(proc.stdout)
            returncode = await proc.wait()
            await stderr_task
            await self._finish(returncode=returncode)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.logger.exception("worker_supervision_failed")
            await self._kill()
            self._emit_error(WorkerError(f"worker supervision failed: {exc}"))

    async def _pump_stdout(self, stream: asyncio.StreamReader) -> None:
        async for raw in stream:
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            if not line:
                continue
            if self.terminated_reason is not None or self._error is not None:
                continue  # drain only
            try:
                msg = protocol.decode(line)
            except ValueError:
                self._pending.append(TraceEntry.now(JobLogLevel.INFO, line))
                continue
            if msg["type"] == protocol.MESSAGE_LOG:
                self._pending.append(protocol.log_entry(msg))
                continue
            try:
                await self._flush(
                    done=bool(msg.get("done")),
                    failed_reason=msg.get("failedReason"),
                    fields=msg.get("fields") or {},
                )
            except TraceUpdateError as exc:
                self._error = WorkerError(f"trace update failed: {exc}", details={"attempts": self.settings.update_retry_attempts})
                self.logger.error("worker_trace_update_exhausted", error=str(exc))
                await self._kill()

    async def _pump_stderr(self, stream: asyncio.StreamReader) -> None:
        async for raw in stream:
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            if not line:
                continue
            self.logger.debug("worker_stderr", line=line)
            self._pending.append(TraceEntry.now(JobLogLevel.WARN, line))

    async def _flush(self, *, done: bool = False, failed_reason: str | None = None, fields: dict[str, Any] | None = None) -> None:
        """Forward queued trace lines; raises TraceUpdateError when retries are exhausted."""
        update = JobUpdate(trace=list(self._pending), done=done, failed_reason=failed_reason, fields=fields or {})
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.settings.update_retry_attempts),
            wait=wait_exponential_jitter(max=self.settings.update_retry_max_wait),
            retry=retry_if_exception_type(TraceUpdateError),
            reraise=True,
        ):
            with attempt:
                if self.canceled:
                    return
                if attempt.retry_state.attempt_number > 1:
                    self.logger.warning("worker_trace_update_retry", attempt=attempt.retry_state.attempt_number)
                await self._on_update(update)
        del self._pending[: len(update.trace)]
        if done:
            self._done_sent = True

    async def _finish(self, *, returncode: Optional[int]) -> None:
        if self._error is not None:
            self._emit_error(self._error)
            return
        if self.canceled or self._done_sent:
            self._emit_end()
            return
        failed_reason = _FAILED_REASONS.get(self.terminated_reason or "") or (
            f"Worker exited with code {returncode} before reporting completion"
        )
        self._pending.append(TraceEntry.now(JobLogLevel.ERROR, failed_reason))
        try:
            await self._flush(done=True, failed_reason=failed_reason)
        except TraceUpdateError as exc:
            self._emit_error(WorkerError(f"final trace update failed: {exc}", details={"returncode": returncode}))
            return
        self._emit_end()

    async def _expire_after(self, seconds: float) -> None:
        await asyncio.sleep(seconds)
        if not self._settled:
            self.logger.warning("worker_timeout", seconds=seconds)
            await self.terminate(REASON_TIMEOUT)

    async def _kill_after_grace(self, proc: asyncio.subprocess.Process) -> None:
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.settings.worker_kill_grace_seconds)
        except asyncio.TimeoutError:
            self.logger.warning("worker_kill_after_grace", grace=self.settings.worker_kill_grace_seconds)
            with contextlib.suppress(ProcessLookupError):
                proc.kill()

    async def _kill(self) -> None:
        proc = self._process
        if proc is not None and proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()

    # ------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------
    def _payload_timeout(self) -> float:
        default = float(self.settings.job_timeout_seconds or 0)
        raw = self.job.payload.get("timeout")
        if raw is None or raw == "":
            return default
        try:
            value = float(raw)
        except (TypeError, ValueError):
            self.logger.warning("worker_timeout_invalid", timeout=raw, fallback=default)
            return default
        if value != value or value < 0:  # NaN or negative
            self.logger.warning("worker_timeout_invalid", timeout=raw, fallback=default)
            return default
        return value or default

    def _job_document(self) -> dict[str, Any]:
        return {"jobId": self.job.job_id, "jobType": self.job.job_type, "payload": self.job.payload}

    def _spawn(self, coro, *, name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _settle(self) -> bool:
        if self._settled:
            self.logger.warning("worker_already_settled")
            return False
        self._settled = True
        self._finished.set()
        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current and not task.done() and task.get_name().startswith("worker-timeout-"):
                task.cancel()
        return True

    def _emit_error(self, error: BaseException) -> None:
        if self._settle():
            self.logger.error("worker_failed", error=str(error))
            self._on_error(error)

    def _emit_end(self) -> None:
        if self._settle():
            self.logger.info("worker_ended", canceled=self.canceled, reason=self.terminated_reason)
            self._on_end()
