# url_finder/services/bms_scheduler.py
"""
Bandwidth (BMS) test scheduling.

Two periodic steps, each run from its own Celery beat entry:

    create_jobs   For every BMS-eligible provider that is due, push its next
                  test out by ``bms_test_interval_days``, create a BMS job
                  against its last working URL and record a ``Pending`` row.
    poll_results  For every ``Pending`` row, fetch the job; store metrics once
                  it is finished, or close it as ``Timeout`` after
                  ``bms_job_timeout_hours``.

The next test is scheduled before the job is created so a failing BMS never
causes the same provider to be retried every sweep. Consecutive BMS failures
open a circuit breaker and the remaining providers of the sweep are skipped.

Both steps are no-ops when ``BMS_URL`` is not configured.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Dict, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from ..clients.bms_client import BmsClient, extract_metrics, is_job_finished
from ..clients.circuit_breaker import CircuitBreaker
from ..config import settings
from ..database.models import BmsBandwidthResult
from ..exceptions import BmsError, CircuitOpenError
from ..types import to_address
from .database_service import DatabaseService, database_service
from .provider_eligibility_service import provider_eligibility_service

logger = logging.getLogger("url_finder.services.bms_scheduler")

STATUS_PENDING = "Pending"
STATUS_TIMEOUT = "Timeout"

bms_circuit_breaker = CircuitBreaker("BMS", failure_threshold=5, cooldown_seconds=300)


class BmsScheduler:
    def __init__(
        self,
        client: Optional[BmsClient] = None,
        breaker: Optional[CircuitBreaker] = None,
        db: Optional[DatabaseService] = None,
    ):
        self._client = client
        self.breaker = breaker or bms_circuit_breaker
        self.db = db or database_service

    @property
    def enabled(self) -> bool:
        return self._client is not None or bool(settings.bms_url)

    @property
    def client(self) -> BmsClient:
        if self._client is None:
            self._client = BmsClient()
        return self._client

    async def create_jobs(self, limit: Optional[int] = None) -> Dict[str, int]:
        """
        Create BMS jobs for due providers.

        Returns:
            ``{"due", "created", "failed", "skipped"}`` counts.
        """
        stats = {"due": 0, "created": 0, "failed": 0, "skipped": 0}
        if not self.enabled:
            logger.debug("BMS_URL not configured, skipping job creation")
            return stats

        async with self.db.get_session() as session:
            providers = await provider_eligibility_service.due_for_bms_test(session, limit=limit)
        stats["due"] = len(providers)

        for provider in providers:
            try:
                self.breaker.check_allowed()
            except CircuitOpenError as e:
                logger.warning(f"Skipping BMS test for f0{provider.provider_id}: {e}")
                stats["skipped"] += 1
                continue

            async with self.db.get_session() as session:
                await provider_eligibility_service.schedule_next_bms_test(session, provider.provider_id)

            worker_count = settings.bms_default_worker_count
            try:
                job = await self.client.create_job(
                    url=provider.last_working_url,
                    worker_count=worker_count,
                    entity=to_address(provider.provider_id),
                )
            except BmsError as e:
                self.breaker.record_failure()
                logger.error(f"Failed to create BMS job for f0{provider.provider_id}: {e}")
                async with self.db.get_session() as session:
                    await provider_eligibility_service.complete_bms_test(session, provider.provider_id)
                stats["failed"] += 1
                continue

            self.breaker.record_success()
            try:
                async with self.db.get_session() as session:
                    session.add(
                        BmsBandwidthResult(
                            provider_id=provider.provider_id,
                            bms_job_id=str(job["id"]),
                            url_tested=provider.last_working_url,
                            routing_key=job.get("routing_key") or self.client.routing_key,
                            worker_count=worker_count,
                            status=STATUS_PENDING,
                        )
                    )
            except SQLAlchemyError as e:
                # Without a pending row nothing would ever complete the test
                logger.error(f"Failed to store BMS job {job['id']} for f0{provider.provider_id}: {e}")
                async with self.db.get_session() as session:
                    await provider_eligibility_service.complete_bms_test(session, provider.provider_id)
                stats["failed"] += 1
                continue
            stats["created"] += 1
            logger.info(f"Created BMS job {job['id']} for f0{provider.provider_id}")

        if stats["due"]:
            logger.info(
                f"BMS job creation: {stats['created']} created, {stats['failed']} failed, "
                f"{stats['skipped']} skipped of {stats['due']} due"
            )
        return stats

    async def poll_results(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Check every pending BMS job once.

        Returns:
            ``{"pending", "completed", "timed_out", "errors"}`` counts.
        """
        stats = {"pending": 0, "completed": 0, "timed_out": 0, "errors": 0}
        if not self.enabled:
            return stats

        now = now or datetime.utcnow()
        timeout_cutoff = now - timedelta(hours=settings.bms_job_timeout_hours)

        async with self.db.get_session() as session:
            result = await session.execute(
                select(BmsBandwidthResult)
                .where(BmsBandwidthResult.status == STATUS_PENDING)
                .order_by(BmsBandwidthResult.created_at)
            )
            pending = list(result.scalars().all())
        stats["pending"] = len(pending)

        for row in pending:
            if row.created_at <= timeout_cutoff:
                async with self.db.get_session() as session:
                    await self._close(session, row.id, row.provider_id, STATUS_TIMEOUT, {}, now)
                logger.warning(f"BMS job {row.bms_job_id} for f0{row.provider_id} timed out")
                stats["timed_out"] += 1
                continue

            try:
                job = await self.client.get_job(row.bms_job_id)
            except BmsError as e:
                logger.error(f"Failed to poll BMS job {row.bms_job_id}: {e}")
                stats["errors"] += 1
                continue

            status = job.get("status") or ""
            if not is_job_finished(status):
                continue

            async with self.db.get_session() as session:
                await self._close(session, row.id, row.provider_id, status, extract_metrics(job), now)
            logger.info(f"BMS job {row.bms_job_id} for f0{row.provider_id} finished: {status}")
            stats["completed"] += 1

        return stats

    async def _close(self, session, row_id, provider_id: str, status: str, metrics: Dict, now: datetime) -> None:
        row = await session.get(BmsBandwidthResult, row_id)
        row.status = status
        row.completed_at = now
        for name, value in metrics.items():
            setattr(row, name, value)
        await provider_eligibility_service.complete_bms_test(session, provider_id)


bms_scheduler = BmsScheduler()
