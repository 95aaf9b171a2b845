"""
Async Kie.ai API client.

All three generation capabilities (style edit, scene composition, image-to-video)
run on Kie.ai's unified task API:
  POST /jobs/createTask          → taskId
  GET  /jobs/recordInfo?taskId=… → state + resultJson

Retries 429 / 5xx with exponential backoff; API-level errors (body `code` != 200)
surface as KieApiError.
"""

import json
import time
import random
import asyncio
import logging
from typing import Optional

import httpx

from . import metrics
from .errors import ProviderFailure, TimeoutFailure

logger = logging.getLogger(__name__)

# ── Retry configuration ──────────────────────────────────────────────────────
MAX_RETRIES = 5
BASE_DELAY = 2.0       # seconds, doubled each retry
JITTER_MAX = 1.0       # random jitter 0–1s added to each delay
RETRYABLE_STATUS_CODES = {429, 502, 503, 504}

# Kie.ai task states → RemoteJob status
STATE_MAP = {
    "waiting": "pending",
    "queuing": "pending",
    "generating": "processing",
    "success": "completed",
    "fail": "failed",
}


class KieApiError(ProviderFailure):
    """Kie.ai answered with a non-200 `code`."""

    def __init__(self, code: int, message: str, payload: Optional[dict] = None):
        super().__init__(f"Kie.ai error {code}: {message}", provider="kie")
        self.code = code
        self.payload = payload or {}


class KieClient:
    """Thin async wrapper over the Kie.ai task endpoints."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.kie.ai/api/v1",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        base_delay: float = BASE_DELAY,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._base_delay = base_delay

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def _request_with_backoff(self, method: str, path: str, **kwargs) -> dict:
        """
        Make an HTTP request with exponential backoff on retryable errors (429, 5xx).

        Uses: base_delay * 2^attempt + random jitter
        """
        if not self.api_key:
            raise KieApiError(401, "KIE_API_KEY is not configured")

        url = f"{self.base_url}{path}"
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        for attempt in range(MAX_RETRIES + 1):
            started = time.perf_counter()
            try:
                async with self._client() as client:
                    response = await client.request(method, url, headers=headers, **kwargs)
            except httpx.TransportError as e:
                metrics.inc_counter("kie.transport_errors")
                if attempt >= MAX_RETRIES:
                    raise
                delay = self._base_delay * (2 ** attempt) + random.uniform(0, JITTER_MAX)
                logger.warning(
                    f"Kie.ai request error on attempt {attempt + 1}/{MAX_RETRIES + 1}: {e} "
                    f"- retrying in {delay:.1f}s"
                )
                await asyncio.sleep(delay)
                continue
            finally:
                metrics.record_latency(f"kie.{path.split('?')[0]}", (time.perf_counter() - started) * 1000)

            metrics.inc_counter("kie.requests")

            if response.status_code not in RETRYABLE_STATUS_CODES:
                response.raise_for_status()
                data = response.json()
                if data.get("code") != 200:
                    metrics.inc_counter("kie.api_errors")
                    raise KieApiError(data.get("code", response.status_code), data.get("msg", ""), data)
                return data

            if attempt >= MAX_RETRIES:
                response.raise_for_status()

            retry_after = response.headers.get("Retry-After")
            if retry_after and retry_after.isdigit():
                delay = int(retry_after)
            else:
                delay = self._base_delay * (2 ** attempt) + random.uniform(0, JITTER_MAX)

            metrics.inc_counter(f"kie.retries.{response.status_code}")
            logger.warning(
                f"Kie.ai {response.status_code} on attempt {attempt + 1}/{MAX_RETRIES + 1} "
                f"- retrying in {delay:.1f}s (url={url})"
            )
            await asyncio.sleep(delay)

        raise KieApiError(500, f"Request to {url} failed after {MAX_RETRIES + 1} attempts")

    async def create_task(self, model: str, input: dict, callback_url: Optional[str] = None) -> str:
        """Create a generation task and return its taskId."""
        body: dict = {"model": model, "input": input}
        if callback_url:
            body["callBackUrl"] = callback_url

        logger.info(f"Kie.ai createTask: model={model}")
        data = await self._request_with_backoff("POST", "/jobs/createTask", json=body)

        task_id = (data.get("data") or {}).get("taskId")
        if not task_id:
            raise KieApiError(500, f"createTask returned no taskId: {data}", data)
        return task_id

    async def get_task_status(self, task_id: str) -> dict:
        """
        Query a task and normalize it to
        {task_id, status: pending|processing|completed|failed, result_urls, error}.
        """
        data = await self._request_with_backoff(
            "GET", "/jobs/recordInfo", params={"taskId": task_id}
        )
        record = data.get("data") or {}
        state = record.get("state", "")

        status = STATE_MAP.get(state)
        if status is None:
            # Unknown state counts as processing
            logger.warning(f"Kie.ai unknown state '{state}' for task {task_id}, treating as processing")
            status = "processing"

        result_urls: list[str] = []
        if record.get("resultJson"):
            try:
                result_urls = json.loads(record["resultJson"]).get("resultUrls") or []
            except (ValueError, AttributeError) as e:
                logger.warning(f"Kie.ai task {task_id}: unparseable resultJson: {e}")

        return {
            "task_id": record.get("taskId", task_id),
            "status": status,
            "result_urls": result_urls,
            "error": record.get("failMsg") or None,
        }

    async def wait_for_task(
        self,
        task_id: str,
        poll_interval: float = 3.0,
        max_wait: float = 300.0,
    ) -> dict:
        """Poll until the task completes. Raises ProviderFailure / TimeoutFailure."""
        deadline = time.monotonic() + max_wait
        attempts = 0

        while True:
            result = await self.get_task_status(task_id)
            attempts += 1

            if result["status"] == "completed":
                return result
            if result["status"] == "failed":
                raise ProviderFailure(
                    result["error"] or "Task failed", provider="kie", job_id=task_id
                )
            if time.monotonic() >= deadline:
                break
            await asyncio.sleep(poll_interval)

        raise TimeoutFailure(
            f"Kie.ai task {task_id} timed out after {max_wait:.0f}s",
            job_id=task_id,
            attempts=attempts,
        )
