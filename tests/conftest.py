from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Any, Optional

import pytest

from domain.models import Job, JobRequestResponse, JobUpdate
from runner.bootstrap import Settings
from runner.config import ConfigManager


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        broker_url="http://broker.test",
        runner_id="runner-test",
        scripts_dir=str(tmp_path / "scripts"),
        python_executable=sys.executable,
        concurrency=2,
        check_interval=0.01,
        job_timeout_seconds=0,
        worker_kill_grace_seconds=2,
        update_retry_attempts=3,
        update_retry_max_wait=0,
        broker_max_retries=2,
    )


@pytest.fixture
def config(settings) -> ConfigManager:
    return ConfigManager.from_settings(settings)


def make_job(job_id: Any = 1, job_type: str = "echo", **payload: Any) -> Job:
    return Job(job_id=job_id, job_type=job_type, payload=payload)


class FakeBroker:
    """In-memory stand-in for BrokerClient."""

    def __init__(self) -> None:
        self.responses: list[Optional[JobRequestResponse] | BaseException] = []
        self.request_calls = 0
        self.request_gate: Optional[asyncio.Event] = None
        self.package: Optional[dict[str, Any]] | BaseException = None
        self.install_calls: list[str] = []
        self.archives: dict[str, bytes] = {}
        self.downloads: list[str] = []
        self.trace_replies: list[Optional[dict[str, Any]]] = []
        self.updates: list[tuple[Any, JobUpdate]] = []

    def queue_job(self, job: Job, patch: Optional[dict[str, Any]] = None) -> None:
        self.responses.append(JobRequestResponse(set=patch, job=job))

    async def request_job(self) -> Optional[JobRequestResponse]:
        self.request_calls += 1
        if self.request_gate is not None:
            await self.request_gate.wait()
        if not self.responses:
            return None
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    async def install_activated_runner_script(self, job_type: str) -> Optional[dict[str, Any]]:
        self.install_calls.append(job_type)
        if isinstance(self.package, BaseException):
            raise self.package
        return self.package

    async def update_job_trace(self, job_id: Any, update: JobUpdate) -> Optional[dict[str, Any]]:
        self.updates.append((job_id, update))
        if self.trace_replies:
            return self.trace_replies.pop(0)
        return {}

    async def download(self, url: str) -> bytes:
        self.downloads.append(url)
        return self.archives[url]

    async def aclose(self) -> None:
        pass


class FakeWorker:
    """Worker handle driven by the test instead of a child process."""

    def __init__(self, entry: Path, job: Job, *, on_update, on_error, on_end) -> None:
        self.entry = entry
        self.job = job
        self.on_update = on_update
        self.on_error = on_error
        self.on_end = on_end
        self.started = asyncio.Event()
        self.terminations: list[str] = []
        self.end_on_terminate = False

    async def start(self) -> None:
        self.started.set()

    async def terminate(self, reason: str) -> None:
        self.terminations.append(reason)
        if self.end_on_terminate:
            self.on_end()


class WorkerFactory:
    def __init__(self) -> None:
        self.workers: list[FakeWorker] = []
        self.end_on_terminate = False

    def __call__(self, entry: Path, job: Job, **callbacks: Any) -> FakeWorker:
        worker = FakeWorker(entry, job, **callbacks)
        worker.end_on_terminate = self.end_on_terminate
        self.workers.append(worker)
        return worker


@pytest.fixture
def broker() -> FakeBroker:
    return FakeBroker()


@pytest.fixture
def worker_factory() -> WorkerFactory:
    return WorkerFactory()
