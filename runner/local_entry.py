"""Runner scripts bundled with the agent.

Used whenever the broker has no activated script package for a job type.
"""
from __future__ import annotations

from pathlib import Path

from .errors import UnknownJobTypeError

SCRIPTS_DIR = Path(__file__).resolve().parent / "scripts"

LOCAL_RUNNER_SCRIPTS: dict[str, str] = {
    "echo": "echo.py",
    "sleep": "sleep.py",
    "command": "command.py",
}


def local_runner_script_entry(job_type: str) -> Path:
    try:
        name = LOCAL_RUNNER_SCRIPTS[job_type]
    except KeyError:
        raise UnknownJobTypeError(job_type) from None
    entry = SCRIPTS_DIR / name
    if not entry.is_file():
        raise UnknownJobTypeError(job_type)
    return entry
