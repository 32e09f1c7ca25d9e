"""Command job: runs ``payload["argv"]`` and streams its output into the trace.

Optional payload keys: ``cwd``, ``env`` (merged over the worker environment).
A non-zero exit code fails the job.
"""
from __future__ import annotations

import asyncio
import os


async def run(job, ctx):
    payload = job.get("payload") or {}
    argv = payload.get("argv")
    if not argv or not isinstance(argv, list):
        raise ValueError("command job requires a non-empty 'argv' list")
    env = {**os.environ, **{str(k): str(v) for k, v in (payload.get("env") or {}).items()}}
    ctx.info("$ " + " ".join(str(a) for a in argv))
    proc = await asyncio.create_subprocess_exec(
        *[str(a) for a in argv],
        cwd=payload.get("cwd"),
        env=env,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )
    assert proc.stdout is not None
    async for raw in proc.stdout:
        ctx.info(raw.decode("utf-8", errors="replace").rstrip("\n"))
    returncode = await proc.wait()
    if returncode != 0:
        raise RuntimeError(f"command exited with code {returncode}")
    return {"returncode": returncode}
