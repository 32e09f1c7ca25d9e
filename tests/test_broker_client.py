from __future__ import annotations

import json

import httpx
import pytest

from domain.models import JobLogLevel, JobUpdate, TraceEntry
from runner.broker_client import BrokerClient
from runner.errors import BrokerError


def _client(handler, **kwargs) -> BrokerClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://broker.test")
    kwargs.setdefault("runner_id", "r-1")
    return BrokerClient(base_url="http://broker.test", retry_wait_max=0, client=http, **kwargs)


async def test_request_job_returns_none_on_204():
    broker = _client(lambda request: httpx.Response(204))
    assert await broker.request_job() is None


async def test_request_job_parses_job_and_patch():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        seen["token"] = request.headers.get("x-runner-token")
        return httpx.Response(
            200,
            json={"set": {"concurrency": 3}, "job": {"jobId": 5, "jobType": "echo", "message": "hi"}},
        )

    broker = _client(handler, token="s3cret", job_types=["echo", "sleep"])
    resp = await broker.request_job()
    assert seen == {
        "path": "/api/runners/jobs/request",
        "body": {"runnerId": "r-1", "jobTypes": ["echo", "sleep"]},
        "token": "s3cret",
    }
    assert resp.set == {"concurrency": 3}
    assert resp.job.job_id == 5
    assert resp.job.payload == {"message": "hi"}


async def test_request_job_http_error_raises():
    broker = _client(lambda request: httpx.Response(503))
    with pytest.raises(BrokerError) as excinfo:
        await broker.request_job()
    assert excinfo.value.status_code == 503


async def test_transport_errors_are_retried():
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        if calls["n"] < 3:
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(204)

    broker = _client(handler, max_retries=3)
    assert await broker.request_job() is None
    assert calls["n"] == 3


async def test_transport_errors_exhausted_raise_broker_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    broker = _client(handler, max_retries=2)
    with pytest.raises(BrokerError):
        await broker.request_job()


async def test_install_activated_runner_script():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/runners/scripts/lab/activated":
            return httpx.Response(200, json={"version": "1.2.0", "url": "/artifacts/lab-1.2.0.zip"})
        return httpx.Response(404)

    broker = _client(handler)
    assert await broker.install_activated_runner_script("lab") == {
        "version": "1.2.0",
        "url": "/artifacts/lab-1.2.0.zip",
    }
    assert await broker.install_activated_runner_script("echo") is None


async def test_install_server_error_raises():
    broker = _client(lambda request: httpx.Response(500))
    with pytest.raises(BrokerError):
        await broker.install_activated_runner_script("lab")


async def test_update_job_trace_wire_format_and_cancel_flag():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"canceled": True})

    broker = _client(handler)
    update = JobUpdate(trace=[TraceEntry(JobLogLevel.INFO, 10, "hello")], fields={"progress": 5})
    assert await broker.update_job_trace(42, update) == {"canceled": True}
    assert seen["body"] == {"progress": 5, "jobId": 42, "trace": [["info", 10, "hello"]]}


async def test_update_job_trace_empty_ack_and_failure():
    broker = _client(lambda request: httpx.Response(200))
    assert await broker.update_job_trace(1, JobUpdate()) == {}

    broker = _client(lambda request: httpx.Response(500))
    assert await broker.update_job_trace(1, JobUpdate()) is None


async def test_download():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/artifacts/ok.zip":
            return httpx.Response(200, content=b"PK\x03\x04data")
        return httpx.Response(404)

    broker = _client(handler)
    assert await broker.download("/artifacts/ok.zip") == b"PK\x03\x04data"
    with pytest.raises(BrokerError):
        await broker.download("/artifacts/missing.zip")
