from __future__ import annotations

import httpx

from runner.poll_loop import Runner
from server.main import create_app

from conftest import make_job


def _client(app) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://runner.test")


async def test_simple_health_is_plain_ok():
    async with _client(create_app()) as client:
        resp = await client.get("/health/simple")
    assert resp.status_code == 200
    assert resp.text == "ok"
    assert resp.headers["content-type"].startswith("text/plain")
    assert resp.headers["x-request-id"]


async def test_health_without_runner():
    async with _client(create_app()) as client:
        resp = await client.get("/health")
    assert resp.json() == {"status": "ok"}


async def test_health_reports_runner_snapshot(settings, config, broker, worker_factory):
    runner = Runner(settings, config, broker, worker_factory=worker_factory)
    broker.queue_job(make_job(99, "echo"))
    await runner.poll_once()

    async with _client(create_app(runner)) as client:
        resp = await client.get("/health")
    data = resp.json()
    assert data["status"] == "ok"
    assert data["runner"]["concurrency"] == 2
    assert [j["job_id"] for j in data["runner"]["running_jobs"]] == [99]


async def test_metrics_endpoint():
    async with _client(create_app()) as client:
        resp = await client.get("/metrics")
    assert resp.status_code == 200
    assert "runner_polls_total" in resp.text
