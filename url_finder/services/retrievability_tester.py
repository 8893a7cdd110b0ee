# url_finder/services/retrievability_tester.py
"""
Retrievability tester: concurrent HEAD probing of piece URLs.

Every candidate URL (``{endpoint}/piece/{piece_cid}``) is probed with a HEAD
request, at most ``settings.max_concurrent_probes`` at a time. Each response
is classified by the first rule that applies:

    1. timeout / transport failure    -> TIMEOUT / TRANSPORT_ERROR
    2. status outside 2xx             -> UNREACHABLE
    3. bad content-type or no etag    -> WRONG_HEADERS
    4. Content-Length missing or below
       settings.min_content_length_bytes -> REACHABLE_INVALID (evidence)
    5. otherwise                      -> VALID (working URL)

Probes are consumed in completion order. The working URL is the first VALID
probe to complete and the evidence URL the first REACHABLE_INVALID one, so
with several candidates which URL is picked varies from run to run.

Usage:
    tester = RetrievabilityTester()
    report = await tester.test(endpoints, ["baga6ea4sea..."])
    report.retrievability_percent, report.result_code()
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable, List, Mapping, Optional

import httpx

from ..config import settings
from ..types import ProbeOutcome, ResultCode

logger = logging.getLogger("url_finder.services.retrievability_tester")

VALID_CONTENT_TYPES = {"application/octet-stream", "application/piece"}


@dataclass
class ProbeResult:
    """Classification of a single probed URL."""
    url: str
    outcome: ProbeOutcome
    status_code: Optional[int] = None
    content_length: Optional[int] = None


ProbeFn = Callable[[str], Awaitable[ProbeResult]]


@dataclass
class RetrievabilityReport:
    """
    Aggregate of one probing run.

    Attributes:
        tested_count: URLs probed (timeouts included)
        valid_count: URLs passing every rule
        reachable_invalid_count: 2xx with good headers but too small / no length
        timeout_count: Probes that timed out or failed at the transport level
        working_url / working_content_length: First valid probe to complete
        evidence_url / evidence_content_length: First reachable-but-invalid
            probe to complete; only kept when no valid URL was found
        probes: Every ProbeResult in completion order
    """
    tested_count: int = 0
    valid_count: int = 0
    reachable_invalid_count: int = 0
    timeout_count: int = 0
    working_url: Optional[str] = None
    working_content_length: Optional[int] = None
    evidence_url: Optional[str] = None
    evidence_content_length: Optional[int] = None
    probes: List[ProbeResult] = field(default_factory=list)

    @property
    def retrievability_percent(self) -> Optional[float]:
        if self.tested_count == 0:
            return None
        return round(self.valid_count / self.tested_count * 100, 2)

    @property
    def large_files_percent(self) -> Optional[float]:
        header_valid = self.valid_count + self.reachable_invalid_count
        if header_valid == 0:
            return None
        return round(self.valid_count / header_valid * 100, 2)

    @property
    def timeout_ratio(self) -> float:
        if self.tested_count == 0:
            return 0.0
        return self.timeout_count / self.tested_count

    @property
    def content_length(self) -> Optional[int]:
        if self.working_url:
            return self.working_content_length
        return self.evidence_content_length

    def result_code(self, upstream: Optional[ResultCode] = None) -> ResultCode:
        """
        Derive the run's result code.

        Working URL -> Success; evidence -> ReachableButInvalid; anything
        tested -> FailedToGetWorkingUrl; otherwise the upstream reason (or
        FailedToGetWorkingUrl when none was given).
        """
        if self.working_url:
            return ResultCode.SUCCESS
        if self.evidence_url:
            return ResultCode.REACHABLE_BUT_INVALID
        if self.tested_count > 0:
            return ResultCode.FAILED_TO_GET_WORKING_URL
        return upstream or ResultCode.FAILED_TO_GET_WORKING_URL

    def record(self, probe: ProbeResult) -> None:
        """Fold one probe into the aggregate (first-seen wins)."""
        self.probes.append(probe)
        self.tested_count += 1

        if probe.outcome in (ProbeOutcome.TIMEOUT, ProbeOutcome.TRANSPORT_ERROR):
            self.timeout_count += 1
        elif probe.outcome == ProbeOutcome.REACHABLE_INVALID:
            self.reachable_invalid_count += 1
            if self.evidence_url is None:
                self.evidence_url = probe.url
                self.evidence_content_length = probe.content_length
        elif probe.outcome == ProbeOutcome.VALID:
            self.valid_count += 1
            if self.working_url is None:
                self.working_url = probe.url
                self.working_content_length = probe.content_length

    def finalize(self) -> "RetrievabilityReport":
        # Evidence only substantiates a failure
        if self.working_url is not None:
            self.evidence_url = None
            self.evidence_content_length = None
        return self


def build_piece_urls(endpoints: Iterable[str], piece_cids: Iterable[str]) -> List[str]:
    """Cross product of endpoints and pieces as ``{endpoint}/piece/{cid}``."""
    pieces = list(piece_cids)
    return [f"{endpoint.rstrip('/')}/piece/{cid}" for endpoint in endpoints for cid in pieces]


def _parse_length(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        length = int(value.strip())
    except ValueError:
        return None
    return length if length >= 0 else None


def classify_response(
    url: str,
    status_code: int,
    headers: Mapping[str, str],
    min_content_length: Optional[int] = None,
) -> ProbeResult:
    """Apply the status / header / length rules to a HEAD response."""
    threshold = settings.min_content_length_bytes if min_content_length is None else min_content_length

    if not 200 <= status_code < 300:
        return ProbeResult(url, ProbeOutcome.UNREACHABLE, status_code)

    lowered = {k.lower(): v for k, v in headers.items()}
    content_type = lowered.get("content-type", "").split(";", 1)[0].strip().lower()
    if content_type not in VALID_CONTENT_TYPES or "etag" not in lowered:
        return ProbeResult(url, ProbeOutcome.WRONG_HEADERS, status_code)

    length = _parse_length(lowered.get("content-length"))
    if length is None or length < threshold:
        return ProbeResult(url, ProbeOutcome.REACHABLE_INVALID, status_code, length)

    return ProbeResult(url, ProbeOutcome.VALID, status_code, length)


class RetrievabilityTester:
    """
    Probes candidate URLs under a concurrency cap.

    ``probe`` replaces the built-in httpx HEAD probe entirely (used by tests
    to observe concurrency); ``transport`` keeps the HTTP probe but routes it
    through a custom httpx transport.
    """

    def __init__(
        self,
        probe: Optional[ProbeFn] = None,
        max_concurrent: Optional[int] = None,
        timeout: Optional[float] = None,
        min_content_length: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._probe = probe
        self.max_concurrent = settings.max_concurrent_probes if max_concurrent is None else max_concurrent
        if self.max_concurrent < 1:
            raise ValueError(f"max_concurrent must be at least 1, got {self.max_concurrent}")
        self.timeout = settings.probe_timeout_seconds if timeout is None else timeout
        self.min_content_length = (
            settings.min_content_length_bytes if min_content_length is None else min_content_length
        )
        self._transport = transport

    async def _http_probe(self, client: httpx.AsyncClient, url: str) -> ProbeResult:
        try:
            response = await client.head(url)
        except httpx.TimeoutException:
            logger.debug(f"Probe timed out: {url}")
            return ProbeResult(url, ProbeOutcome.TIMEOUT)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.debug(f"Probe failed: {url}: {e!r}")
            return ProbeResult(url, ProbeOutcome.TRANSPORT_ERROR)

        result = classify_response(url, response.status_code, response.headers, self.min_content_length)
        logger.debug(f"Probe {url} -> {response.status_code} {result.outcome.value}")
        return result

    @staticmethod
    async def _collect(report: RetrievabilityReport, coros: List[Awaitable[ProbeResult]]) -> None:
        # Probes still running when the caller is cancelled are cancelled too
        tasks = [asyncio.ensure_future(coro) for coro in coros]
        try:
            for future in asyncio.as_completed(tasks):
                report.record(await future)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()

    async def test_urls(self, urls: List[str]) -> RetrievabilityReport:
        """Probe every URL and aggregate the outcomes."""
        report = RetrievabilityReport()
        if not urls:
            return report

        semaphore = asyncio.Semaphore(self.max_concurrent)

        async def run(probe_fn: ProbeFn, url: str) -> ProbeResult:
            async with semaphore:
                return await probe_fn(url)

        if self._probe is not None:
            await self._collect(report, [run(self._probe, url) for url in urls])
        else:
            limits = httpx.Limits(max_connections=self.max_concurrent, max_keepalive_connections=self.max_concurrent)
            async with httpx.AsyncClient(
                timeout=self.timeout,
                limits=limits,
                follow_redirects=True,
                transport=self._transport,
            ) as client:

                async def http_probe(url: str) -> ProbeResult:
                    return await self._http_probe(client, url)

                await self._collect(report, [run(http_probe, url) for url in urls])

        report.finalize()
        logger.info(
            f"Tested {report.tested_count} URL(s): {report.valid_count} valid, "
            f"{report.reachable_invalid_count} reachable-invalid, {report.timeout_count} timed out or unreachable"
        )
        return report

    async def test(self, endpoints: List[str], piece_cids: List[str]) -> RetrievabilityReport:
        """Probe the cross product of ``endpoints`` and ``piece_cids``."""
        return await self.test_urls(build_piece_urls(endpoints, piece_cids))
