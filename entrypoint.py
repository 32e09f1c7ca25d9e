"""Runner agent entrypoint.

Behavior:
 - Builds the application context (settings, structured logging, config store, broker client).
 - Starts the poll loop and the health server (uvicorn) in the same event loop.
 - The health server listens on HEALTH_HOST and AUTO_PORT0 / HEALTH_PORT (default 3333).
 - On shutdown running workers are terminated and report the job as failed.
 - Test shortcut: set ENTRYPOINT_TEST_MODE=1 to skip launching subsystems (used in unit tests).

Usage (source):
  python entrypoint.py
Installed:
  job-runner
"""
from __future__ import annotations
import asyncio, os, sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import structlog
import uvicorn

from runner.bootstrap import bootstrap
from runner.poll_loop import Runner
from server.main import create_app


def _build_server(runner: Runner) -> uvicorn.Server:
    settings = runner.settings
    config = uvicorn.Config(
        create_app(runner),
        host=settings.health_host,
        port=settings.health_port,
        log_level=settings.log_level.lower(),
        access_log=False,
    )
    return uvicorn.Server(config)


async def main():
    # Test shortcut: bail out quickly (used by unit test)
    if os.environ.get('ENTRYPOINT_TEST_MODE') == '1':
        structlog.get_logger().info("entrypoint_test_mode", detail="skipping launch")
        return
    ctx = await bootstrap()
    logger = ctx.logger.bind(component="entrypoint")
    runner = Runner(ctx.settings, ctx.config, ctx.broker)
    server = _build_server(runner)
    logger.info("starting_runner", host=ctx.settings.health_host, port=ctx.settings.health_port)
    await runner.start()
    try:
        await server.serve()
    finally:
        logger.info("stopping_runner")
        await runner.stop()
        await ctx.broker.aclose()


def cli() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print('\n[entrypoint] Interrupted')


if __name__ == '__main__':
    cli()
