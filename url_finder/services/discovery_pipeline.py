# url_finder/services/discovery_pipeline.py
"""
Discovery pipeline: resolve -> sample -> test -> aggregate.

One run covers a provider (``Provider`` discovery) or a provider/client pair
(``ProviderClient`` discovery) and yields a ``DiscoveryOutcome``. A failure
at the resolver or sampler stage ends the run with that stage's code; the
tester is only invoked when there are both endpoints and pieces to probe.

Two entry points:
    - ``discover``: used by the background job queue and the scheduler.
      Refreshed peer ids / endpoints and fetched deal labels are cached.
    - ``discover_direct``: synchronous request mode. Nothing is written,
      and a caller-side timeout yields a ``TimedOut`` outcome.

Usage:
    from url_finder.services.discovery_pipeline import discovery_pipeline

    outcome = await discovery_pipeline.discover("1234", client_id="5678")
    outcome.result_code, outcome.retrievability_percent
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from ..database.models import DealLabel, StorageProvider
from ..exceptions import DealSamplingError, EndpointResolutionError
from ..types import DiscoveryType, ErrorCode, ProbeOutcome, ResultCode
from .database_service import DatabaseService, database_service
from .deal_label_service import DealLabelService, deal_label_service
from .deal_sampler import DealSampler, PieceSample, deal_sampler
from .endpoint_resolver import EndpointResolver
from .provider_eligibility_service import compute_reliability, provider_eligibility_service
from .retrievability_tester import RetrievabilityReport, RetrievabilityTester

logger = logging.getLogger("url_finder.services.discovery_pipeline")


@dataclass
class DiscoveryOutcome:
    """
    Result of one pipeline run, shaped like a ``url_results`` row plus the
    tester counts the eligibility tracker needs.
    """
    provider_id: str
    client_id: Optional[str]
    result_type: DiscoveryType
    result_code: ResultCode
    error_code: Optional[ErrorCode] = None
    working_url: Optional[str] = None
    retrievability_percent: Optional[float] = None
    content_length: Optional[int] = None
    invalid_evidence_url: Optional[str] = None
    car_files_percent: Optional[float] = None
    large_files_percent: Optional[float] = None
    is_consistent: Optional[bool] = None
    is_reliable: Optional[bool] = None
    url_metadata: Optional[Dict[str, Any]] = None
    tested_count: int = 0
    valid_count: int = 0
    timeout_count: int = 0
    endpoints: List[str] = field(default_factory=list)
    tested_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def message(self) -> Optional[str]:
        return self.result_code.message()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": f"f0{self.provider_id}",
            "client": f"f0{self.client_id}" if self.client_id else None,
            "result_type": self.result_type.value,
            "result_code": self.result_code.value,
            "error_code": self.error_code.value if self.error_code else None,
            "message": self.message,
            "working_url": self.working_url,
            "retrievability_percent": self.retrievability_percent,
            "content_length": self.content_length,
            "invalid_evidence_url": self.invalid_evidence_url,
            "car_files_percent": self.car_files_percent,
            "large_files_percent": self.large_files_percent,
            "is_consistent": self.is_consistent,
            "is_reliable": self.is_reliable,
            "tested_at": self.tested_at.isoformat(),
        }


def _piece_cid_from_url(url: str) -> str:
    return url.rsplit("/piece/", 1)[-1]


def _label_summary(
    report: RetrievabilityReport,
    samples: List[PieceSample],
    labels: Dict[int, DealLabel],
) -> Dict[str, Any]:
    """Match valid probes to their deals' labels."""
    deal_by_piece: Dict[str, int] = {}
    for sample in samples:
        if sample.deal_id is not None:
            deal_by_piece.setdefault(sample.piece_cid, sample.deal_id)

    valid_urls = [p.url for p in report.probes if p.outcome == ProbeOutcome.VALID]
    with_payload = 0
    for url in valid_urls:
        label = labels.get(deal_by_piece.get(_piece_cid_from_url(url)))
        if label is not None and label.payload_cid:
            with_payload += 1

    summary: Dict[str, Any] = {
        "valid_urls": len(valid_urls),
        "with_payload_cid": with_payload,
        "car_files_percent": round(with_payload / len(valid_urls) * 100, 2) if valid_urls else None,
    }

    if report.working_url:
        piece_cid = _piece_cid_from_url(report.working_url)
        deal_id = deal_by_piece.get(piece_cid)
        label = labels.get(deal_id) if deal_id is not None else None
        summary["working_url"] = {
            "deal_id": deal_id,
            "piece_cid": piece_cid,
            "payload_cid": label.payload_cid if label else None,
            "verified": bool(label and label.piece_cid == piece_cid),
        }
    return summary


class DiscoveryPipeline:
    """Runs one provider or provider/client discovery end to end."""

    def __init__(
        self,
        resolver: Optional[EndpointResolver] = None,
        sampler: Optional[DealSampler] = None,
        tester: Optional[RetrievabilityTester] = None,
        label_service: Optional[DealLabelService] = None,
        db: Optional[DatabaseService] = None,
        verify_labels: bool = True,
    ):
        self.resolver = resolver or EndpointResolver()
        self.sampler = sampler or deal_sampler
        self.tester = tester or RetrievabilityTester()
        self.label_service = label_service or deal_label_service
        self.db = db or database_service
        self.verify_labels = verify_labels

    async def _cache_resolution(self, provider_id: str, resolution) -> None:
        if not (resolution.peer_id_refreshed or resolution.endpoints_refreshed):
            return
        async with self.db.get_session() as session:
            if resolution.peer_id_refreshed and resolution.peer_id:
                await provider_eligibility_service.cache_peer_id(session, provider_id, resolution.peer_id)
            if resolution.endpoints_refreshed:
                await provider_eligibility_service.cache_endpoints(session, provider_id, resolution.endpoints)

    async def _load_labels(
        self,
        report: RetrievabilityReport,
        samples: List[PieceSample],
        persist: bool,
    ) -> Optional[Dict[str, Any]]:
        valid_pieces = {_piece_cid_from_url(p.url) for p in report.probes if p.outcome == ProbeOutcome.VALID}
        deal_ids = [s.deal_id for s in samples if s.deal_id is not None and s.piece_cid in valid_pieces]
        if not deal_ids:
            return None
        try:
            async with self.db.get_session() as session:
                if persist:
                    labels = await self.label_service.fetch_labels(session, deal_ids)
                else:
                    labels = await self.label_service.get_many(session, deal_ids)
        except SQLAlchemyError as e:
            logger.warning(f"Label verification skipped: {e}")
            return None
        return _label_summary(report, samples, labels)

    async def discover(
        self,
        provider_id: str,
        client_id: Optional[str] = None,
        provider_state: Optional[StorageProvider] = None,
        persist: bool = True,
    ) -> DiscoveryOutcome:
        """
        Run the full pipeline once.

        Args:
            provider_id: Bare numeric provider id
            client_id: Bare numeric client id for a ProviderClient run
            provider_state: Provider row whose peer id / endpoint caches may
                be reused
            persist: Write refreshed resolution caches and fetched deal labels

        Returns:
            DiscoveryOutcome (never raises for upstream or probe failures)
        """
        result_type = DiscoveryType.PROVIDER_CLIENT if client_id else DiscoveryType.PROVIDER

        def outcome(code: ResultCode, error: Optional[ErrorCode] = None, **kwargs) -> DiscoveryOutcome:
            return DiscoveryOutcome(
                provider_id=provider_id,
                client_id=client_id,
                result_type=result_type,
                result_code=code,
                error_code=error,
                **kwargs,
            )

        # Stage 1: endpoints
        try:
            resolution = await self.resolver.resolve(provider_id, provider_state=provider_state)
        except EndpointResolutionError as e:
            return outcome(ResultCode.ERROR, e.error_code)

        if persist:
            try:
                await self._cache_resolution(provider_id, resolution)
            except SQLAlchemyError as e:
                logger.warning(f"Failed to cache resolution for provider {provider_id}: {e}")

        if not resolution.ok:
            return outcome(resolution.result_code)

        # Stage 2: deals
        try:
            async with self.db.get_session() as session:
                samples = await self.sampler.sample(session, provider_id, client_id=client_id)
        except DealSamplingError as e:
            logger.error(f"Deal sampling failed for provider {provider_id}: {e}")
            return outcome(ResultCode.ERROR, ErrorCode.FAILED_TO_GET_DEALS, endpoints=resolution.endpoints)

        if not samples:
            return outcome(ResultCode.NO_DEALS_FOUND, endpoints=resolution.endpoints)

        # Stage 3: probe
        report = await self.tester.test(resolution.endpoints, [s.piece_cid for s in samples])

        # Stage 4: aggregate
        label_summary = None
        if self.verify_labels and report.valid_count:
            label_summary = await self._load_labels(report, samples, persist)

        metadata: Dict[str, Any] = {
            "endpoints": resolution.endpoints,
            "sampled_deals": len(samples),
            "tested": report.tested_count,
            "valid": report.valid_count,
            "reachable_invalid": report.reachable_invalid_count,
            "timeouts": report.timeout_count,
        }
        if label_summary is not None:
            metadata["labels"] = label_summary

        result = outcome(
            report.result_code(),
            working_url=report.working_url,
            retrievability_percent=report.retrievability_percent,
            content_length=report.content_length,
            invalid_evidence_url=report.evidence_url,
            car_files_percent=label_summary["car_files_percent"] if label_summary else None,
            large_files_percent=report.large_files_percent,
            is_reliable=compute_reliability(report.tested_count, report.timeout_count),
            url_metadata=metadata,
            tested_count=report.tested_count,
            valid_count=report.valid_count,
            timeout_count=report.timeout_count,
            endpoints=resolution.endpoints,
        )
        logger.info(
            f"Discovery f0{provider_id}"
            + (f"/f0{client_id}" if client_id else "")
            + f": {result.result_code.value} ({result.retrievability_percent}%)"
        )
        return result

    async def discover_direct(
        self,
        provider_id: str,
        client_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> DiscoveryOutcome:
        """
        Synchronous request mode: run the pipeline and return the outcome.

        Cached provider state is read but nothing is written. When
        ``timeout`` elapses the in-flight probes are cancelled and a
        ``TimedOut`` outcome is returned.
        """
        async with self.db.get_session() as session:
            provider_state = await provider_eligibility_service.get_provider(session, provider_id)

        try:
            return await asyncio.wait_for(
                self.discover(provider_id, client_id, provider_state=provider_state, persist=False),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Direct discovery for provider {provider_id} timed out after {timeout}s")
            return DiscoveryOutcome(
                provider_id=provider_id,
                client_id=client_id,
                result_type=DiscoveryType.PROVIDER_CLIENT if client_id else DiscoveryType.PROVIDER,
                result_code=ResultCode.TIMED_OUT,
            )


discovery_pipeline = DiscoveryPipeline()
