"""
HTTP Generation Worker - Runs Image/Video/Audio nodes on a remote backend.

Protocol:
    POST {base_url}/generate        {"kind", "params", "inputs"}
        -> {"output", "artifactRef"}           finished immediately, or
        -> {"jobId"}                           queued job
    GET {base_url}/jobs/{id}
        -> {"status", "progress", "output", "artifactRef", "error"}
    DELETE {base_url}/jobs/{id}                cancel a queued/running job
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import aiohttp

from computeflow.core.errors import AuthenticationError, RateLimitError, WorkerError
from computeflow.core.execution import WorkerContext, WorkerResult
from computeflow.core.node_kinds import NodeKind
from computeflow.core.settings import EngineSettings

logger = logging.getLogger(__name__)


class HttpGenerationWorker:
    """Generation worker backed by an HTTP job API."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        poll_interval: float = 1.0,
        request_timeout: float = 60.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.poll_interval = poll_interval
        self.request_timeout = request_timeout

    @classmethod
    def from_settings(cls, settings: EngineSettings) -> HttpGenerationWorker:
        if not settings.backend_url:
            raise WorkerError("no generation backend configured")
        return cls(settings.backend_url, settings.api_key, settings.poll_interval)

    def get_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def invoke(
        self,
        kind: NodeKind,
        params: dict[str, Any],
        inputs: dict[str, Any],
        context: WorkerContext,
    ) -> WorkerResult:
        body = {"kind": kind.value, "params": params, "inputs": inputs}
        timeout = aiohttp.ClientTimeout(total=self.request_timeout)

        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                data = await self._request(session, "POST", f"{self.base_url}/generate", body)

                job_id = data.get("jobId")
                if not job_id:
                    return self._parse_result(data)

                logger.debug("Node %s: backend job %s queued", context.node_id, job_id)
                return await self._poll_job(session, job_id, context)
        except aiohttp.ClientError as e:
            raise WorkerError(f"Generation backend request failed: {e}") from e
        except asyncio.TimeoutError as e:
            raise WorkerError("Generation backend request timed out") from e

    async def _poll_job(
        self,
        session: aiohttp.ClientSession,
        job_id: str,
        context: WorkerContext,
    ) -> WorkerResult:
        url = f"{self.base_url}/jobs/{job_id}"
        while True:
            if context.cancelled:
                await self._cancel_job(session, job_id)
                context.check_cancelled()

            data = await self._request(session, "GET", url)
            status = data.get("status")

            if "progress" in data:
                context.report_progress(float(data["progress"]))

            if status == "succeeded":
                return self._parse_result(data)
            elif status == "failed":
                raise WorkerError(f"Generation failed: {data.get('error', 'Unknown error')}")
            elif status == "canceled":
                raise asyncio.CancelledError(f"Backend job {job_id} was canceled")
            elif status not in ("pending", "queued", "running"):
                raise WorkerError(f"Unknown job status: {status}")

            try:
                await asyncio.wait_for(context.wait_cancelled(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    async def _cancel_job(self, session: aiohttp.ClientSession, job_id: str) -> None:
        logger.info("Canceling backend job %s", job_id)
        try:
            async with session.delete(
                f"{self.base_url}/jobs/{job_id}",
                headers=self.get_headers(),
            ) as resp:
                if resp.status >= 400 and resp.status != 404:
                    logger.warning("Cancel of job %s returned HTTP %d", job_id, resp.status)
        except aiohttp.ClientError as e:
            logger.warning("Cancel of job %s failed: %s", job_id, e)

    async def _request(
        self,
        session: aiohttp.ClientSession,
        method: str,
        url: str,
        body: dict | None = None,
    ) -> dict:
        """Make a request and return the decoded JSON body."""
        async with session.request(method, url, json=body, headers=self.get_headers()) as resp:
            try:
                data = await resp.json(content_type=None)
            except ValueError:
                data = {"error": (await resp.text())[:200]}
            if not isinstance(data, dict):
                data = {"output": data}
            self._check_error(resp.status, data, resp.headers.get("Retry-After"))
            return data

    def _parse_result(self, data: dict) -> WorkerResult:
        if "output" not in data and "artifactRef" not in data:
            raise WorkerError("No output in generation response")
        return WorkerResult(
            output=data.get("output", data.get("artifactRef")),
            artifact_ref=data.get("artifactRef"),
        )

    def _check_error(self, status: int, data: dict, retry_after: str | None = None) -> None:
        """Check for API errors."""
        if status == 401:
            raise AuthenticationError("Invalid generation backend API key")
        elif status == 429:
            error = RateLimitError("Generation backend rate limit exceeded")
            try:
                error.retry_after = float(retry_after) if retry_after else None
            except ValueError:
                error.retry_after = None
            raise error
        elif status >= 400:
            error_msg = data.get("error", "Unknown error")
            if isinstance(error_msg, dict):
                error_msg = error_msg.get("message", "Unknown error")
            raise WorkerError(f"Generation backend error (HTTP {status}): {error_msg}")
