"""Sleep job: waits ``payload["seconds"]`` reporting progress every ``payload["step"]`` seconds."""
from __future__ import annotations

import asyncio


async def run(job, ctx):
    payload = job.get("payload") or {}
    total = float(payload.get("seconds", 1))
    step = max(0.01, float(payload.get("step", 1)))
    elapsed = 0.0
    while elapsed < total:
        chunk = min(step, total - elapsed)
        await asyncio.sleep(chunk)
        elapsed += chunk
        ctx.info(f"slept {elapsed:.2f}/{total:.2f}s")
        ctx.update(progress=round(elapsed / total, 4) if total else 1.0)
