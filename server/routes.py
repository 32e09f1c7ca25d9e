"""Health endpoints.

Endpoints:
- GET /health/simple : Liveness check, plain text ``ok``
- GET /health        : Runner snapshot (running jobs, capacity, poll state)
- GET /metrics       : Prometheus metrics
"""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request, Response
from fastapi.responses import PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

router = APIRouter()


@router.get("/health/simple", response_class=PlainTextResponse)
async def health_simple() -> str:
    return "ok"


@router.get("/health")
async def health(request: Request) -> dict[str, Any]:
    data: dict[str, Any] = {"status": "ok"}
    runner = getattr(request.app.state, "runner", None)
    if runner is not None:
        data["runner"] = runner.status_snapshot()
    return data


@router.get("/metrics")
async def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
