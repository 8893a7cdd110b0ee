# ============================================================================
# url_finder/clients/http_retry.py
# ============================================================================
# Shared retry loop for upstream HTTP calls (Lotus RPC, cid.contact, BMS).
#
# Transport failures, 429 and 5xx responses are retried with exponential
# backoff capped at 6 seconds. Any other response is returned unchanged so
# callers can map status codes to their own errors.
# ============================================================================

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import httpx

logger = logging.getLogger("url_finder.clients")

RETRYABLE_STATUS = {429, 500, 502, 503, 504}


def backoff_delay(attempt: int) -> float:
    return min(2 ** attempt * 0.5, 6.0)


async def request_with_retry(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    retries: int,
    **kwargs,
) -> httpx.Response:
    """
    Send a request, retrying transient failures.

    Returns:
        The first non-retryable response, or the last response once
        retries are exhausted.

    Raises:
        httpx.TransportError: If every attempt failed at the transport level.
    """
    retries = max(0, int(retries))
    attempt = 0
    last_error: Optional[httpx.TransportError] = None
    response: Optional[httpx.Response] = None

    while attempt <= retries:
        try:
            response = await client.request(method, url, **kwargs)
            last_error = None
            if response.status_code not in RETRYABLE_STATUS:
                return response
            logger.debug(f"{method} {url} -> HTTP {response.status_code} (attempt {attempt + 1})")
        except httpx.TransportError as e:
            last_error = e
            response = None
            logger.debug(f"{method} {url} failed: {e!r} (attempt {attempt + 1})")

        if attempt >= retries:
            break
        await asyncio.sleep(backoff_delay(attempt))
        attempt += 1

    if last_error is not None:
        logger.warning(f"{method} {url} failed after {retries + 1} attempt(s): {last_error!s}")
        raise last_error
    return response
