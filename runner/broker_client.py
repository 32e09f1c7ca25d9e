"""HTTP client for the job broker.

Three calls make up the whole contract the runner depends on:

- ``request_job``: poll for work (may carry a runner config patch)
- ``install_activated_runner_script``: fetch the descriptor of the script package
  activated for a job type (``None`` means "use the bundled script")
- ``update_job_trace``: stream trace lines / status; the reply may flag the job
  as canceled

Transport errors are retried with exponential jitter (tenacity) and surface as
``BrokerError`` once attempts are exhausted. HTTP error statuses are not retried.
"""
from __future__ import annotations

from typing import Any, Optional
from urllib.parse import quote

import httpx
import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

from domain.models import JobId, JobRequestResponse, JobUpdate

from .bootstrap import Settings
from .errors import BrokerError

logger = structlog.get_logger().bind(component="broker_client")


class BrokerClient:
    def __init__(
        self,
        *,
        base_url: str,
        runner_id: str,
        token: str | None = None,
        job_types: list[str] | None = None,
        timeout_seconds: float = 30.0,
        max_retries: int = 3,
        retry_wait_max: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        headers: dict[str, str] = {"Accept": "application/json"}
        if token:
            headers["x-runner-token"] = token
        self.runner_id = runner_id
        self.job_types = list(job_types or [])
        self.max_retries = max(1, max_retries)
        self.retry_wait_max = retry_wait_max
        self._owns_client = client is None
        if client is None:
            client = httpx.AsyncClient(base_url=base_url, timeout=timeout_seconds, headers=headers)
        else:
            client.headers.update(headers)
        self._client = client

    @classmethod
    def from_settings(cls, settings: Settings, client: httpx.AsyncClient | None = None) -> "BrokerClient":
        return cls(
            base_url=settings.broker_url,
            runner_id=settings.runner_id,
            token=settings.runner_token,
            job_types=settings.job_types,
            timeout_seconds=settings.broker_timeout,
            max_retries=settings.broker_max_retries,
            client=client,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------
    async def request_job(self) -> Optional[JobRequestResponse]:
        body: dict[str, Any] = {"runnerId": self.runner_id}
        if self.job_types:
            body["jobTypes"] = self.job_types
        data = await self._request("POST", "/api/runners/jobs/request", json=body)
        if not data:
            return None
        return JobRequestResponse.from_broker(data)

    async def install_activated_runner_script(self, job_type: str) -> Optional[dict[str, Any]]:
        """Return the activated script package descriptor for ``job_type`` or None.

        The descriptor carries at least ``version`` and ``url`` (absolute or
        relative to the broker), optionally ``sha256`` and ``entry``.
        """
        data = await self._request(
            "GET",
            f"/api/runners/scripts/{quote(job_type, safe='')}/activated",
            not_found_ok=True,
        )
        if not data or not data.get("url"):
            return None
        return data

    async def update_job_trace(self, job_id: JobId, update: JobUpdate) -> Optional[dict[str, Any]]:
        """Push one trace update. Returns the broker reply, or None when it was not accepted."""
        try:
            data = await self._request("POST", "/api/runners/jobs/trace", json=update.to_broker(job_id))
        except BrokerError as exc:
            logger.warning("trace_update_rejected", job_id=job_id, error=str(exc))
            return None
        # An empty 2xx body is still an acknowledgement.
        return data if data is not None else {}

    async def download(self, url: str) -> bytes:
        """Fetch a script archive (absolute URL or broker-relative path)."""
        try:
            async for attempt in self._retrying():
                with attempt:
                    response = await self._client.get(url)
        except httpx.TransportError as exc:
            raise BrokerError(f"download failed: {url}: {exc!r}") from exc
        if response.is_error:
            raise BrokerError(f"download failed: {url}: {response.status_code}", status_code=response.status_code)
        return response.content

    # ------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------
    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential_jitter(max=self.retry_wait_max),
            retry=retry_if_exception_type(httpx.TransportError),
            reraise=True,
        )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        not_found_ok: bool = False,
    ) -> Optional[dict[str, Any]]:
        try:
            async for attempt in self._retrying():
                with attempt:
                    response = await self._client.request(method, path, json=json)
        except httpx.TransportError as exc:
            raise BrokerError(f"broker request failed: {method} {path}: {exc!r}") from exc

        if response.status_code == 204 or (not_found_ok and response.status_code == 404):
            return None
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise BrokerError(
                f"broker request failed: {method} {path}: {response.status_code}",
                status_code=response.status_code,
            ) from exc
        if not response.content:
            return None
        try:
            data = response.json()
        except ValueError as exc:
            raise BrokerError(f"broker returned invalid JSON: {method} {path}") from exc
        if data is None:
            return None
        if not isinstance(data, dict):
            raise BrokerError(f"broker returned unexpected payload: {method} {path}: {type(data).__name__}")
        return data
