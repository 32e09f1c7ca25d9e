"""Registry of jobs currently executing on this runner.

Each entry binds a job to its worker handle and tracks the job through
``accepted -> executing -> completed | canceled | failed``. Entries are added by
the poll loop and removed by exactly one terminal transition; a second terminal
signal for the same job is logged and ignored.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterator, Protocol
import time

import structlog

from domain.models import Job, JobId, JobState

from .bootstrap import RUNNER_JOBS_TOTAL, RUNNER_RUNNING_JOBS

_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.ACCEPTED: frozenset({JobState.EXECUTING, JobState.FAILED, JobState.CANCELED}),
    JobState.EXECUTING: frozenset({JobState.COMPLETED, JobState.CANCELED, JobState.FAILED}),
}


class WorkerHandle(Protocol):
    async def start(self) -> None: ...

    async def terminate(self, reason: str) -> None: ...


class InvalidTransition(RuntimeError):
    pass


@dataclass
class RunningJob:
    job: Job
    worker: WorkerHandle
    state: JobState = JobState.ACCEPTED
    accepted_at: float = field(default_factory=time.time)

    def snapshot(self) -> dict:
        return {
            "job_id": self.job.job_id,
            "job_type": self.job.job_type,
            "state": self.state.value,
            "running_seconds": round(time.time() - self.accepted_at, 3),
        }


class RunningJobRegistry:
    def __init__(self) -> None:
        self._jobs: dict[JobId, RunningJob] = {}
        self.logger = structlog.get_logger().bind(component="registry")

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._jobs

    def __iter__(self) -> Iterator[RunningJob]:
        return iter(list(self._jobs.values()))

    def add(self, job: Job, worker: WorkerHandle) -> RunningJob:
        if job.job_id in self._jobs:
            raise KeyError(f"job {job.job_id!r} is already running")
        entry = RunningJob(job=job, worker=worker)
        self._jobs[job.job_id] = entry
        RUNNER_RUNNING_JOBS.set(len(self._jobs))
        self.logger.info("job_accepted", job_id=job.job_id, job_type=job.job_type, running=len(self._jobs))
        return entry

    def mark_executing(self, job_id: JobId) -> None:
        entry = self._jobs.get(job_id)
        if entry is None or entry.state is not JobState.ACCEPTED:
            # Already settled (e.g. worker failed while starting).
            return
        self._transition(entry, JobState.EXECUTING)

    def finish(self, job_id: JobId, state: JobState) -> bool:
        """Apply a terminal transition and drop the entry. Returns False if already gone."""
        if not state.terminal:
            raise InvalidTransition(f"{state.value} is not a terminal state")
        entry = self._jobs.get(job_id)
        if entry is None:
            self.logger.warning("job_already_finished", job_id=job_id, state=state.value)
            return False
        self._transition(entry, state)
        del self._jobs[job_id]
        RUNNER_RUNNING_JOBS.set(len(self._jobs))
        RUNNER_JOBS_TOTAL.labels(state=state.value).inc()
        self.logger.info(
            "job_finished",
            job_id=job_id,
            job_type=entry.job.job_type,
            state=state.value,
            running=len(self._jobs),
        )
        return True

    def snapshot(self) -> list[dict]:
        return [entry.snapshot() for entry in self._jobs.values()]

    def _transition(self, entry: RunningJob, state: JobState) -> None:
        allowed = _TRANSITIONS.get(entry.state, frozenset())
        if state not in allowed:
            raise InvalidTransition(f"job {entry.job.job_id!r}: {entry.state.value} -> {state.value}")
        entry.state = state
