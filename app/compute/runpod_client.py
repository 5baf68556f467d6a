"""Async client for RunPod serverless endpoints.

Wire protocol:
  POST {base}/{endpoint_id}/run            body {"input": {...}}  -> {"id": "..."}
  GET  {base}/{endpoint_id}/status/{id}                           -> {"status", "output"?, "error"?}
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_incrementing,
)

from app.config import settings
from app.errors import (
    BackendProtocolError,
    BackendReportedFailure,
    JobTimeoutError,
    SubmissionError,
)

logger = logging.getLogger(__name__)

IN_QUEUE = "IN_QUEUE"
IN_PROGRESS = "IN_PROGRESS"
COMPLETED = "COMPLETED"
FAILED = "FAILED"
KNOWN_STATUSES = frozenset({IN_QUEUE, IN_PROGRESS, COMPLETED, FAILED})
PENDING_STATUSES = frozenset({IN_QUEUE, IN_PROGRESS})

# Progress is logged at most this often while waiting
_PROGRESS_LOG_EVERY = 30.0


@dataclass
class BackendStatus:
    """One status response from the backend."""
    id: str
    status: str
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


def summarize_payload(payload: Dict[str, Any], limit: int = 100) -> Dict[str, Any]:
    """Shorten long strings (base64 media) so a payload can be logged."""
    summary: Dict[str, Any] = {}
    for key, value in payload.items():
        if value is None:
            continue
        if isinstance(value, str) and len(value) > limit:
            summary[key] = f"[data] ({len(value)} characters)"
        elif isinstance(value, (dict, list)):
            summary[key] = str(value)[:limit]
        else:
            summary[key] = value
    return summary


class RunPodClient:
    """Submits jobs to one RunPod endpoint and waits for their outcome."""

    def __init__(
        self,
        api_key: str,
        endpoint_id: str,
        generate_timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        max_attempts: Optional[int] = None,
        retry_wait: float = 1.0,
    ):
        if not api_key or not endpoint_id:
            raise ValueError("RunPod API key and endpoint ID are required")
        self.endpoint_id = endpoint_id
        self.generate_timeout = float(3600 if generate_timeout is None else generate_timeout)
        self.poll_interval = settings.runpod_poll_interval if poll_interval is None else poll_interval
        self.max_attempts = max_attempts or settings.runpod_max_request_attempts
        self.retry_wait = retry_wait
        base = (base_url or settings.runpod_base_url).rstrip("/")
        self._http = httpx.AsyncClient(
            base_url=f"{base}/{endpoint_id}",
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            timeout=settings.runpod_request_timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "RunPodClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def close(self) -> None:
        await self._http.aclose()

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Single HTTP round trip, retried on transient network errors only."""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_incrementing(start=self.retry_wait, increment=self.retry_wait),
            retry=retry_if_exception_type(httpx.TransportError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                return await self._http.request(method, url, **kwargs)

    async def submit(self, payload: Dict[str, Any]) -> str:
        """Submit a job; returns the backend's job id."""
        logger.info(
            "Submitting job to endpoint %s: %s",
            self.endpoint_id, summarize_payload(payload.get("input", {})),
        )
        try:
            response = await self._request("POST", "/run", json=payload)
        except httpx.HTTPError as exc:
            raise SubmissionError(f"RunPod API call failed: {exc}") from exc

        if not response.is_success:
            raise SubmissionError(f"RunPod API error: {response.status_code} - {response.text}")

        try:
            data = response.json()
        except ValueError as exc:
            raise SubmissionError(f"RunPod API returned a non-JSON body: {response.text[:200]}") from exc

        job_id = data.get("id") if isinstance(data, dict) else None
        if job_id is None:
            raise SubmissionError("RunPod API did not return a job ID")
        if not isinstance(job_id, str) or not job_id:
            raise SubmissionError(f"RunPod API returned a malformed job ID: {job_id!r}")

        logger.info("Job submitted to endpoint %s, id=%s", self.endpoint_id, job_id)
        return job_id

    async def get_status(self, external_job_id: str) -> BackendStatus:
        response = await self._request("GET", f"/status/{external_job_id}")

        if response.status_code == 404:
            # Just-submitted jobs can briefly be unknown to the status API
            logger.debug("Job %s not yet registered (404), treating as IN_QUEUE", external_job_id)
            return BackendStatus(id=external_job_id, status=IN_QUEUE)

        if not response.is_success:
            raise BackendProtocolError(
                f"RunPod status API error: {response.status_code} - {response.text}"
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise BackendProtocolError("RunPod status API returned a non-JSON body") from exc
        if not isinstance(data, dict):
            raise BackendProtocolError(f"RunPod status API returned {type(data).__name__}")

        output = data.get("output")
        if output is not None and not isinstance(output, dict):
            output = {"result": output}
        return BackendStatus(
            id=external_job_id,
            status=data.get("status"),
            output=output,
            error=data.get("error"),
        )

    async def wait_for_completion(
        self,
        external_job_id: str,
        timeout: Optional[float] = None,
    ) -> BackendStatus:
        """Poll until COMPLETED; raise on FAILED, unknown status, or timeout."""
        timeout = self.generate_timeout if timeout is None else timeout
        started = time.monotonic()
        last_progress_log = started
        logger.info("Waiting for job %s (timeout %.0fs)", external_job_id, timeout)

        while True:
            elapsed = time.monotonic() - started
            if elapsed > timeout:
                raise JobTimeoutError(
                    f"Job timeout: maximum wait time ({timeout:.0f}s) exceeded"
                )

            status = await self.get_status(external_job_id)

            if status.status == COMPLETED:
                keys = sorted((status.output or {}).keys())
                logger.info("Job %s completed, output keys: %s", external_job_id, keys)
                return status

            if status.status == FAILED:
                logger.warning("Job %s failed: %s", external_job_id, status.error)
                raise BackendReportedFailure(external_job_id, status.error)

            if status.status not in PENDING_STATUSES:
                raise BackendProtocolError(f"Unknown job status: {status.status!r}")

            now = time.monotonic()
            if now - last_progress_log >= _PROGRESS_LOG_EVERY:
                logger.info(
                    "Job %s still %s (%.0fs elapsed)", external_job_id, status.status, now - started
                )
                last_progress_log = now

            await asyncio.sleep(self.poll_interval)


ClientFactory = Callable[[str, str, Optional[float]], RunPodClient]


def client_factory(
    transport: Optional[httpx.AsyncBaseTransport] = None,
    poll_interval: Optional[float] = None,
    base_url: Optional[str] = None,
) -> ClientFactory:
    """Build ``RunPodClient``s sharing one transport/poll configuration."""

    def build(api_key: str, endpoint_id: str, generate_timeout: Optional[float] = None) -> RunPodClient:
        return RunPodClient(
            api_key,
            endpoint_id,
            generate_timeout=generate_timeout,
            poll_interval=poll_interval,
            base_url=base_url,
            transport=transport,
        )

    return build
