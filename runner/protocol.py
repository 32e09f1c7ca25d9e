"""JSON-lines protocol between a worker process and its JobWorker handle.

Each stdout line of the worker process is one JSON object:

  {"type": "log", "level": "info", "ts": 1700000000000, "message": "..."}
  {"type": "update", "done": false, "failedReason": null, "fields": {...}}

``log`` lines are accumulated as trace entries; an ``update`` line asks the
handle to forward everything accumulated so far together with ``fields``.
"""
from __future__ import annotations

import json
from typing import Any

from domain.models import JobLogLevel, TraceEntry

MESSAGE_LOG = "log"
MESSAGE_UPDATE = "update"


def encode_log(entry: TraceEntry) -> str:
    return json.dumps(
        {"type": MESSAGE_LOG, "level": entry.level.value, "ts": entry.timestamp, "message": entry.message},
        ensure_ascii=False,
    )


def encode_update(*, done: bool = False, failed_reason: str | None = None, fields: dict[str, Any] | None = None) -> str:
    return json.dumps(
        {"type": MESSAGE_UPDATE, "done": done, "failedReason": failed_reason, "fields": fields or {}},
        ensure_ascii=False,
        default=str,
    )


def decode(line: str) -> dict[str, Any]:
    """Parse one protocol line. Raises ValueError for anything that is not a protocol message."""
    msg = json.loads(line)
    if not isinstance(msg, dict) or msg.get("type") not in (MESSAGE_LOG, MESSAGE_UPDATE):
        raise ValueError(f"not a protocol message: {line[:120]!r}")
    return msg


def log_entry(msg: dict[str, Any]) -> TraceEntry:
    try:
        level = JobLogLevel(msg.get("level", "info"))
    except ValueError:
        level = JobLogLevel.INFO
    return TraceEntry(level, int(msg.get("ts") or 0), str(msg.get("message", "")))
