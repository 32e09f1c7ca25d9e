"""Runner poll loop.

Responsibilities:
- Periodically ask the broker for a job while local capacity allows
- Apply the runner config patch carried by a poll response before anything else
- Resolve the runner script for an accepted job (broker package, else bundled)
- Register the job, start its worker without awaiting it, relay worker updates
  to the broker and clean the registry on the worker's terminal event
- Report jobs that cannot start as failed so the broker never loses them

Concurrency notes:
- Everything runs on one event loop; the registry and config are only touched
  from loop callbacks, so the admission check needs no lock.
- At most one poll attempt is outstanding: a tick while an attempt is in flight
  is a no-op. The flag is cleared when the attempt task settles, however it ends.
- Capacity is checked at admission only. A concurrency patch that lowers the
  limit while jobs run takes effect on the next poll.
"""
from __future__ import annotations

import asyncio
import contextlib
import json
import time
import traceback
from pathlib import Path
from typing import Any, Callable, Optional, Protocol

import structlog

from domain.models import Job, JobLogLevel, JobState, JobUpdate, TraceEntry

from .bootstrap import (
    RUNNER_JOBS_TOTAL,
    RUNNER_POLL_DURATION_SECONDS,
    RUNNER_POLLS_TOTAL,
    RUNNER_TRACE_UPDATES_TOTAL,
    Settings,
)
from .broker_client import BrokerClient
from .config import ConfigManager
from .errors import ScriptInstallError, ScriptResolutionError, TraceUpdateError, UnknownJobTypeError
from .registry import RunningJobRegistry, WorkerHandle
from .resolver import ResolvedScript, ScriptResolver
from .worker import REASON_CANCELED, REASON_SHUTDOWN, JobWorker

FAILED_REASON = "Internal Error"


class WorkerFactory(Protocol):
    def __call__(
        self,
        entry: Path,
        job: Job,
        *,
        on_update: Callable[[JobUpdate], Any],
        on_error: Callable[[BaseException], None],
        on_end: Callable[[], None],
    ) -> WorkerHandle: ...


def _render_reason(reason: Any) -> str:
    if isinstance(reason, BaseException):
        return "".join(traceback.format_exception(type(reason), reason, reason.__traceback__)).rstrip()
    return json.dumps(reason, default=str)


class Runner:
    def __init__(
        self,
        settings: Settings,
        config: ConfigManager,
        broker: BrokerClient,
        *,
        resolver: Optional[ScriptResolver] = None,
        worker_factory: Optional[WorkerFactory] = None,
        registry: Optional[RunningJobRegistry] = None,
    ) -> None:
        self.settings = settings
        self.config = config
        self.broker = broker
        self.resolver = resolver or ScriptResolver(broker, settings.scripts_dir)
        self.worker_factory: WorkerFactory = worker_factory or self._job_worker
        self.registry = registry or RunningJobRegistry()
        self.logger = structlog.get_logger().bind(component="runner", runner_id=settings.runner_id)

        self._polling = False
        self._stopping = False
        self._timer: asyncio.Task | None = None
        self._attempt: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()
        self._idle = asyncio.Event()
        self._idle.set()

    # ------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------
    @property
    def polling(self) -> bool:
        return self._polling

    @property
    def running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    async def start(self) -> None:
        if self.running:
            return
        self._stopping = False
        self._timer = asyncio.create_task(self._run(), name="runner-poll-timer")
        self.logger.info(
            "runner_started",
            concurrency=self.config.runner.concurrency,
            check_interval=self.config.runner.check_interval,
        )

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Stop polling, let an in-flight poll settle and shut running workers down."""
        self._stopping = True
        if self._timer is not None:
            self._timer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._timer
            self._timer = None
        if self._attempt is not None and not self._attempt.done():
            await asyncio.wait({self._attempt})
        running = list(self.registry)
        for entry in running:
            await entry.worker.terminate(REASON_SHUTDOWN)
        if running:
            if timeout is None:
                timeout = self.settings.worker_kill_grace_seconds + 5
            try:
                await asyncio.wait_for(self._idle.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                self.logger.warning("runner_stop_timeout", remaining=[e.job.job_id for e in self.registry])
        self.logger.info("runner_stopped", terminated=len(running))

    async def _run(self) -> None:
        while True:
            self.tick()
            await asyncio.sleep(self.config.runner.check_interval)

    def tick(self) -> Optional[asyncio.Task]:
        """Start one poll attempt unless one is already in flight. Returns the attempt task."""
        if self._polling or self._stopping:
            return None
        self._polling = True
        task = asyncio.create_task(self._poll_attempt(), name="runner-poll-attempt")
        self._attempt = task
        task.add_done_callback(self._attempt_settled)
        return task

    def _attempt_settled(self, task: asyncio.Task) -> None:
        self._polling = False

    # ------------------------------------------------------------
    # Poll attempt
    # ------------------------------------------------------------
    async def _poll_attempt(self) -> None:
        started = time.perf_counter()
        outcome = "error"
        try:
            outcome = await self.poll_once()
        except Exception:
            self.logger.exception("poll_failed")
        finally:
            RUNNER_POLLS_TOTAL.labels(outcome=outcome).inc()
            RUNNER_POLL_DURATION_SECONDS.observe(time.perf_counter() - started)

    async def poll_once(self) -> str:
        """One poll-and-dispatch attempt. Returns the outcome label."""
        concurrency = self.config.runner.concurrency
        if len(self.registry) >= concurrency:
            self.logger.debug("poll_skipped_at_capacity", running=len(self.registry), concurrency=concurrency)
            return "at_capacity"

        response = await self.broker.request_job()
        if response is None:
            return "empty"
        if response.set:
            self.apply_config_patch(response.set)
        job = response.job
        if job is None:
            return "empty"
        if job.job_id in self.registry:
            self.logger.warning("job_already_running", job_id=job.job_id, job_type=job.job_type)
            return "duplicate"

        try:
            script = await self.resolver.resolve(job)
        except UnknownJobTypeError as exc:
            self.logger.critical("runner_script_missing", job_id=job.job_id, job_type=job.job_type, error=str(exc))
            await self.failed_job(job, exc)
            return "failed"
        except (ScriptInstallError, ScriptResolutionError) as exc:
            self.logger.error("runner_script_install_failed", job_id=job.job_id, job_type=job.job_type, error=str(exc))
            await self.failed_job(job, exc)
            return "failed"

        try:
            self.execute_job(job, script)
        except Exception as exc:
            self.logger.exception("job_dispatch_failed", job_id=job.job_id, job_type=job.job_type)
            if job.job_id in self.registry:
                self._job_settled(job, JobState.FAILED)
            await self.failed_job(job, exc)
            return "failed"
        return "dispatched"

    def apply_config_patch(self, patch: dict[str, Any]) -> None:
        try:
            self.config.patch({"runner": patch})
        except ValueError as exc:
            self.logger.warning("config_patch_rejected", patch=patch, error=str(exc))
            return
        self.logger.info("config_patched", patch=patch, runner=self.config.runner.model_dump())

    async def failed_job(self, job: Job, *reasons: Any) -> None:
        """Report a job that never started as failed."""
        details = "\n".join(_render_reason(r) for r in reasons) or "unknown reason"
        update = JobUpdate(
            trace=[TraceEntry.now(JobLogLevel.ERROR, f"job failed [type={job.job_type}] {details}")],
            done=True,
            failed_reason=FAILED_REASON,
        )
        RUNNER_JOBS_TOTAL.labels(state=JobState.FAILED.value).inc()
        result = await self.broker.update_job_trace(job.job_id, update)
        if result is None:
            self.logger.error("job_failure_report_failed", job_id=job.job_id, job_type=job.job_type)

    # ------------------------------------------------------------
    # Job execution
    # ------------------------------------------------------------
    def execute_job(self, job: Job, script: ResolvedScript) -> WorkerHandle:
        cancel_requested = False

        async def on_update(update: JobUpdate) -> None:
            nonlocal cancel_requested
            try:
                result = await self.broker.update_job_trace(job.job_id, update)
            except Exception as exc:
                RUNNER_TRACE_UPDATES_TOTAL.labels(result="error").inc()
                raise TraceUpdateError(f"trace update for job {job.job_id} failed: {exc}") from exc
            if result is None:
                RUNNER_TRACE_UPDATES_TOTAL.labels(result="rejected").inc()
                raise TraceUpdateError(f"trace update for job {job.job_id} was not acknowledged")
            RUNNER_TRACE_UPDATES_TOTAL.labels(result="ok").inc()
            if result.get("canceled") and not cancel_requested:
                cancel_requested = True
                self.logger.info("job_canceled_by_broker", job_id=job.job_id, job_type=job.job_type)
                await worker.terminate(REASON_CANCELED)

        def on_error(err: BaseException) -> None:
            self.logger.error(
                "job_failed",
                job_id=job.job_id,
                job_type=job.job_type,
                error=str(err),
                details=getattr(err, "details", None),
            )
            self._job_settled(job, JobState.FAILED)

        def on_end() -> None:
            self._job_settled(job, JobState.CANCELED if cancel_requested else JobState.COMPLETED)

        worker = self.worker_factory(script.entry, job, on_update=on_update, on_error=on_error, on_end=on_end)
        self.registry.add(job, worker)
        self._idle.clear()
        self._spawn(self._start_worker(job, worker), name=f"runner-start-{job.job_id}")
        self.registry.mark_executing(job.job_id)
        self.logger.info(
            "job_dispatched",
            job_id=job.job_id,
            job_type=job.job_type,
            script=str(script.entry),
            source=script.source,
        )
        return worker

    async def _start_worker(self, job: Job, worker: WorkerHandle) -> None:
        try:
            await worker.start()
        except Exception:
            self.logger.exception("worker_start_failed", job_id=job.job_id, job_type=job.job_type)
            self._job_settled(job, JobState.FAILED)

    def _job_settled(self, job: Job, state: JobState) -> None:
        self.registry.finish(job.job_id, state)
        if not len(self.registry):
            self._idle.set()

    def _job_worker(self, entry: Path, job: Job, **callbacks: Any) -> JobWorker:
        return JobWorker(entry, job, self.settings, **callbacks)

    def _spawn(self, coro, *, name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------
    def status_snapshot(self) -> dict[str, Any]:
        runner_cfg = self.config.runner
        return {
            "runner_id": self.settings.runner_id,
            "running": self.running,
            "polling": self._polling,
            "stopping": self._stopping,
            "concurrency": runner_cfg.concurrency,
            "check_interval": runner_cfg.check_interval,
            "running_jobs": self.registry.snapshot(),
        }
