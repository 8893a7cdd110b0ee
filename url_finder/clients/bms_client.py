# ============================================================================
# url_finder/clients/bms_client.py
# ============================================================================
# Client for the Bandwidth Measurement Service (BMS).
#
# BMS runs distributed throughput tests against a URL. URL Finder only
# creates jobs and polls their status; the measurement itself is external.
#
# Environment-driven configuration (see config.py):
#   - settings.bms_url (required to enable BMS scheduling)
#   - settings.bms_routing_key (default: us_east)
#   - settings.upstream_timeout_seconds / settings.upstream_max_retries
# ============================================================================

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from ..config import settings
from ..exceptions import BmsError
from .http_retry import request_with_retry

logger = logging.getLogger("url_finder.clients.bms")

FINISHED_STATUSES = {"Completed", "Failed", "Cancelled"}


def is_job_finished(status: str) -> bool:
    return status in FINISHED_STATUSES


def extract_metrics(job: Dict[str, Any]) -> Dict[str, Optional[float]]:
    """
    Pull latency and throughput figures out of a finished BMS job.

    Uses the first worker of the last completed sub-job that reported
    worker data. BMS reports ping in seconds; it is converted to ms here.
    Head latency and TTFB are already in ms, download speed in Mbps.
    """
    metrics: Dict[str, Optional[float]] = {
        "ping_avg_ms": None,
        "head_avg_ms": None,
        "ttfb_ms": None,
        "download_speed_mbps": None,
    }

    sub_jobs = job.get("sub_jobs") or []
    worker = None
    for sub_job in reversed(sub_jobs):
        if sub_job.get("status") == "Completed" and sub_job.get("worker_data") is not None:
            workers = sub_job["worker_data"]
            worker = workers[0] if workers else None
            break

    if not worker:
        return metrics

    ping = worker.get("ping") or {}
    head = worker.get("head") or {}
    download = worker.get("download") or {}

    if ping.get("avg") is not None:
        metrics["ping_avg_ms"] = ping["avg"] * 1000.0
    metrics["head_avg_ms"] = head.get("avg")
    metrics["ttfb_ms"] = download.get("time_to_first_byte_ms")
    metrics["download_speed_mbps"] = download.get("download_speed")
    return metrics


class BmsClient:
    """Async client for the BMS jobs API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        routing_key: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = (base_url or settings.bms_url or "").rstrip("/")
        self.routing_key = routing_key or settings.bms_routing_key
        self.timeout = timeout or settings.upstream_timeout_seconds
        self.max_retries = max_retries if max_retries is not None else settings.upstream_max_retries
        self._transport = transport

        if not self.base_url:
            raise ValueError("BmsClient requires a base URL. Set BMS_URL or settings.bms_url")

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await request_with_retry(client, method, url, retries=self.max_retries, **kwargs)
        except httpx.TransportError as e:
            raise BmsError(f"BMS {method} {path} failed: {e!s}") from e

        if not response.is_success:
            logger.warning(f"BMS {method} {path} failed: HTTP {response.status_code} - {response.text[:500]}")
            raise BmsError(f"BMS {method} {path} failed: HTTP {response.status_code}")

        try:
            return response.json()
        except ValueError as e:
            raise BmsError(f"BMS {method} {path} returned invalid JSON") from e

    async def create_job(self, url: str, worker_count: int, entity: Optional[str] = None) -> Dict[str, Any]:
        """
        Create a bandwidth job for ``url``.

        Returns:
            The BMS job record: ``{"id", "status", "url", "routing_key"}``.
        """
        body: Dict[str, Any] = {
            "url": url,
            "routing_key": self.routing_key,
            "worker_count": worker_count,
        }
        if entity:
            body["entity"] = entity

        logger.debug(f"Creating BMS job: {body}")
        job = await self._request("POST", "/jobs", json=body)
        logger.debug(f"BMS job created: {job.get('id')}")
        return job

    async def get_job(self, job_id: str) -> Dict[str, Any]:
        """Fetch a job with its sub-jobs and worker data."""
        job = await self._request("GET", f"/jobs/{job_id}")
        logger.debug(f"BMS job fetched: {job_id} - status: {job.get('status')}")
        return job
