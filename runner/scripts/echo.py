"""Echo job: writes ``payload["message"]`` (or every payload key) to the trace."""
from __future__ import annotations


def run(job, ctx):
    payload = job.get("payload") or {}
    message = payload.get("message")
    if message is not None:
        ctx.info(str(message))
    else:
        for key in sorted(payload):
            ctx.info(f"{key}={payload[key]!r}")
    return {"echoed": message}
