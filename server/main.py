"""FastAPI application for the runner's health server.

The app carries no state of its own: it reads the runner attached to
``app.state.runner`` (None when the server runs standalone, e.g. in tests).
Served by uvicorn inside the runner's event loop (see entrypoint.py).
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Optional
import uuid

from fastapi import FastAPI, Request
import structlog
from structlog import contextvars as struct_contextvars

from .routes import router as health_router

if TYPE_CHECKING:  # pragma: no cover
    from runner.poll_loop import Runner


def create_app(runner: Optional["Runner"] = None) -> FastAPI:
    app = FastAPI(title="Job Runner", version="0.1.0", docs_url=None, redoc_url=None)
    app.state.runner = runner

    @app.middleware("http")
    async def request_context(request: Request, call_next):  # noqa: D401
        rid = request.headers.get("x-request-id") or str(uuid.uuid4())
        struct_contextvars.bind_contextvars(request_id=rid)
        try:
            response = await call_next(request)
        finally:
            struct_contextvars.unbind_contextvars("request_id")
        response.headers["X-Request-ID"] = rid
        return response

    app.include_router(health_router)
    structlog.get_logger().bind(component="health_server").debug("health_app_created", with_runner=runner is not None)
    return app
