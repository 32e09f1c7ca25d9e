"""Error taxonomy for the runner.

Every error raised on purpose by the runner derives from ``RunnerError`` so the
poll loop can tell classified failures apart from unexpected ones in its logs.
"""
from __future__ import annotations

from typing import Any, Optional


class RunnerError(Exception):
    """Base class for runner failures."""


class BrokerError(RunnerError):
    """Transport or protocol failure while talking to the broker."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ScriptInstallError(RunnerError):
    """A dynamically provided runner script could not be downloaded or unpacked."""


class ScriptResolutionError(RunnerError):
    """An installed script package has no usable entry point."""


class UnknownJobTypeError(RunnerError):
    """No bundled script exists for a job type (configuration error)."""

    def __init__(self, job_type: str) -> None:
        super().__init__(f"no bundled runner script for job type {job_type!r}")
        self.job_type = job_type


class TraceUpdateError(RunnerError):
    """The broker did not acknowledge a trace update."""


class WorkerError(RunnerError):
    """A worker process failed in a way the job script could not report itself."""

    def __init__(self, message: str, *, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.details = details or {}


__all__ = [
    "RunnerError",
    "BrokerError",
    "ScriptInstallError",
    "ScriptResolutionError",
    "UnknownJobTypeError",
    "TraceUpdateError",
    "WorkerError",
]
