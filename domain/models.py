from __future__ import annotations
from enum import Enum
from typing import Any, NamedTuple, Optional, Union
import time

from pydantic import BaseModel, ConfigDict, Field

JobId = Union[int, str]


class JobLogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class TraceEntry(NamedTuple):
    """One line of a job trace: (level, timestamp in ms, message)."""
    level: JobLogLevel
    timestamp: int
    message: str

    @classmethod
    def now(cls, level: JobLogLevel, message: str) -> "TraceEntry":
        return cls(level, int(time.time() * 1000), message)

    def to_wire(self) -> list[Any]:
        return [self.level.value, self.timestamp, self.message]


class JobState(str, Enum):
    ACCEPTED = "accepted"
    EXECUTING = "executing"
    COMPLETED = "completed"
    CANCELED = "canceled"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.CANCELED, JobState.FAILED)


class Job(BaseModel):
    """Unit of work assigned by the broker.

    Only the id and type matter to the runner; every other broker field is
    kept untouched in ``payload`` and handed to the job script.
    """
    model_config = ConfigDict(frozen=True)

    job_id: JobId
    job_type: str
    payload: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_broker(cls, data: dict[str, Any]) -> "Job":
        rest = {k: v for k, v in data.items() if k not in ("jobId", "jobType")}
        return cls(job_id=data["jobId"], job_type=str(data["jobType"]), payload=rest)


class JobRequestResponse(BaseModel):
    """Answer to a poll: an optional runner config patch and an optional job."""
    set: Optional[dict[str, Any]] = None
    job: Optional[Job] = None

    @classmethod
    def from_broker(cls, data: dict[str, Any]) -> "JobRequestResponse":
        job = data.get("job")
        return cls(
            set=data.get("set") or None,
            job=Job.from_broker(job) if job else None,
        )


class JobUpdate(BaseModel):
    """Incremental status pushed by a worker: trace lines plus free-form fields."""
    trace: list[TraceEntry] = Field(default_factory=list)
    done: bool = False
    failed_reason: Optional[str] = None
    fields: dict[str, Any] = Field(default_factory=dict)

    def to_broker(self, job_id: JobId) -> dict[str, Any]:
        body: dict[str, Any] = {**self.fields, "jobId": job_id, "trace": [t.to_wire() for t in self.trace]}
        if self.done:
            body["done"] = True
        if self.failed_reason:
            body["failedReason"] = self.failed_reason
        return body
