# url_finder/services/provider_eligibility_service.py
"""
Provider eligibility tracker.

Owns the scheduling state on ``storage_providers``: when each provider is
next due for URL discovery and for a bandwidth (BMS) test, whether it is
currently mid-run, and the two health flags that gate bandwidth testing.

Key behaviors:
    - ``due_for_discovery`` / ``due_for_bms_test`` are plain reads ordered by
      the due timestamp; calling them never changes a schedule.
    - Providers whose status is ``in_progress`` are never returned as due.
    - BMS eligibility (consistent, reliable, has a working URL) is a SQL
      filter, not a ranking.
    - ``record_discovery`` applies a finished run as one UPDATE keyed by
      provider_id; consistency is computed in SQL from the row's prior state.

Usage:
    from url_finder.services.provider_eligibility_service import provider_eligibility_service

    async with database_service.get_session() as session:
        due = await provider_eligibility_service.due_for_discovery(session, limit=100)
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Iterable, List, Optional, Tuple

from sqlalchemy import and_, case, exists, false, or_, select, true, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..database.models import BmsBandwidthResult, StorageProvider
from ..types import STATUS_COMPLETED, STATUS_FAILED, STATUS_IN_PROGRESS

if TYPE_CHECKING:
    from .discovery_pipeline import DiscoveryOutcome

logger = logging.getLogger("url_finder.services.provider_eligibility")


def compute_reliability(tested_count: int, timeout_count: int, threshold: Optional[float] = None) -> bool:
    """False when timeouts exceed ``threshold`` of tested URLs (exactly at it is reliable)."""
    threshold = settings.reliability_timeout_threshold if threshold is None else threshold
    if tested_count <= 0:
        return True
    return timeout_count / tested_count <= threshold


def _not_in_progress(column):
    return or_(column.is_(None), column != STATUS_IN_PROGRESS)


class ProviderEligibilityService:
    """Per-provider scheduling state machine."""

    # =========================================================================
    # Rows
    # =========================================================================

    async def ensure_providers(self, session: AsyncSession, provider_ids: Iterable[str]) -> int:
        """Insert any missing providers (due immediately). Returns rows inserted."""
        ids = sorted(set(provider_ids))
        if not ids:
            return 0

        now = datetime.utcnow()
        insert = sqlite.insert if session.get_bind().dialect.name == "sqlite" else postgresql.insert
        inserted = 0
        for provider_id in ids:
            stmt = (
                insert(StorageProvider)
                .values(provider_id=provider_id, next_url_discovery_at=now, next_bms_test_at=now)
                .on_conflict_do_nothing(index_elements=["provider_id"])
            )
            result = await session.execute(stmt)
            inserted += max(result.rowcount or 0, 0)

        if inserted:
            logger.info(f"Registered {inserted} new storage provider(s)")
        return inserted

    async def ensure_provider(self, session: AsyncSession, provider_id: str) -> StorageProvider:
        """Return the provider row, creating it on first request."""
        await self.ensure_providers(session, [provider_id])
        return await self.get_provider(session, provider_id)

    async def get_provider(self, session: AsyncSession, provider_id: str) -> Optional[StorageProvider]:
        result = await session.execute(
            select(StorageProvider)
            .where(StorageProvider.provider_id == provider_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    # =========================================================================
    # Due queries (read-only)
    # =========================================================================

    async def due_for_discovery(
        self,
        session: AsyncSession,
        limit: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> List[StorageProvider]:
        """Providers due for URL discovery, soonest first."""
        now = now or datetime.utcnow()
        query = (
            select(StorageProvider)
            .where(
                and_(
                    StorageProvider.next_url_discovery_at <= now,
                    _not_in_progress(StorageProvider.url_discovery_status),
                )
            )
            .order_by(StorageProvider.next_url_discovery_at, StorageProvider.provider_id)
            .limit(settings.discovery_batch_size if limit is None else limit)
        )
        result = await session.execute(query)
        return list(result.scalars().all())

    async def due_for_bms_test(
        self,
        session: AsyncSession,
        limit: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> List[StorageProvider]:
        """
        BMS-eligible providers due for a bandwidth test, soonest first.

        Providers that are inconsistent, unreliable or without a working URL
        are excluded outright.
        """
        now = now or datetime.utcnow()
        query = (
            select(StorageProvider)
            .where(
                and_(
                    StorageProvider.next_bms_test_at <= now,
                    _not_in_progress(StorageProvider.bms_test_status),
                    StorageProvider.is_consistent.is_(True),
                    StorageProvider.is_reliable.is_(True),
                    StorageProvider.last_working_url.isnot(None),
                )
            )
            .order_by(StorageProvider.next_bms_test_at, StorageProvider.provider_id)
            .limit(settings.bms_batch_size if limit is None else limit)
        )
        result = await session.execute(query)
        return list(result.scalars().all())

    # =========================================================================
    # Discovery transitions
    # =========================================================================

    async def mark_discovery_in_progress(self, session: AsyncSession, provider_id: str) -> None:
        await session.execute(
            update(StorageProvider)
            .where(StorageProvider.provider_id == provider_id)
            .values(url_discovery_status=STATUS_IN_PROGRESS)
            .execution_options(synchronize_session=False)
        )

    async def record_discovery(
        self,
        session: AsyncSession,
        outcome: "DiscoveryOutcome",
        now: Optional[datetime] = None,
    ) -> Tuple[bool, bool]:
        """
        Apply a finished provider-level run to the provider's state.

        Sets the next discovery time, the last working URL, the run metadata
        and both health flags in a single UPDATE. Consistency compares the
        run's validity class (working URL found or not) with the row's prior
        ``last_working_url``; a provider with no completed run yet is
        consistent.

        Returns:
            (is_consistent, is_reliable) as written.
        """
        now = now or datetime.utcnow()
        await self.ensure_providers(session, [outcome.provider_id])

        is_reliable = compute_reliability(outcome.tested_count, outcome.timeout_count)
        if outcome.working_url:
            same_class = StorageProvider.last_working_url.isnot(None)
        else:
            same_class = StorageProvider.last_working_url.is_(None)
        is_consistent_expr = case(
            (StorageProvider.is_consistent.is_(None), true()),
            (same_class, true()),
            else_=false(),
        )

        stmt = (
            update(StorageProvider)
            .where(StorageProvider.provider_id == outcome.provider_id)
            .values(
                next_url_discovery_at=now + timedelta(hours=settings.discovery_interval_hours),
                url_discovery_status=STATUS_COMPLETED,
                last_working_url=outcome.working_url,
                is_consistent=is_consistent_expr,
                is_reliable=is_reliable,
                url_metadata=outcome.url_metadata,
                updated_at=now,
            )
            .returning(StorageProvider.is_consistent, StorageProvider.is_reliable)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        row = result.one()
        logger.info(
            f"Provider {outcome.provider_id}: {outcome.result_code.value}, "
            f"consistent={row.is_consistent}, reliable={row.is_reliable}"
        )
        return bool(row.is_consistent), bool(row.is_reliable)

    async def reschedule_discovery_delayed(
        self,
        session: AsyncSession,
        provider_id: str,
        now: Optional[datetime] = None,
    ) -> None:
        """Retry soon after an infrastructure error; flags are left untouched."""
        now = now or datetime.utcnow()
        await session.execute(
            update(StorageProvider)
            .where(StorageProvider.provider_id == provider_id)
            .values(
                next_url_discovery_at=now + timedelta(minutes=settings.discovery_retry_delay_minutes),
                url_discovery_status=STATUS_FAILED,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )

    async def recover_stale_runs(
        self,
        session: AsyncSession,
        max_age_hours: int = 6,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Clear ``in_progress`` statuses left behind by a crashed worker.

        Discovery runs older than ``max_age_hours`` are marked failed and made
        due again. A BMS test is released when it has no open job row to wait
        on; its next test time is left as scheduled.
        """
        now = now or datetime.utcnow()
        result = await session.execute(
            update(StorageProvider)
            .where(
                and_(
                    StorageProvider.url_discovery_status == STATUS_IN_PROGRESS,
                    StorageProvider.updated_at < now - timedelta(hours=max_age_hours),
                )
            )
            .values(url_discovery_status=STATUS_FAILED, next_url_discovery_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        recovered = max(result.rowcount or 0, 0)
        if recovered:
            logger.warning(f"Recovered {recovered} provider(s) stuck in discovery")

        open_job = exists().where(
            and_(
                BmsBandwidthResult.provider_id == StorageProvider.provider_id,
                BmsBandwidthResult.completed_at.is_(None),
            )
        ).correlate(StorageProvider)
        result = await session.execute(
            update(StorageProvider)
            .where(
                and_(
                    StorageProvider.bms_test_status == STATUS_IN_PROGRESS,
                    StorageProvider.updated_at < now - timedelta(hours=max_age_hours),
                    ~open_job,
                )
            )
            .values(bms_test_status=STATUS_COMPLETED, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        released = max(result.rowcount or 0, 0)
        if released:
            logger.warning(f"Released {released} provider(s) stuck in BMS testing")
        return recovered + released

    # =========================================================================
    # Resolution caches
    # =========================================================================

    async def cache_peer_id(
        self,
        session: AsyncSession,
        provider_id: str,
        peer_id: str,
        now: Optional[datetime] = None,
    ) -> None:
        await session.execute(
            update(StorageProvider)
            .where(StorageProvider.provider_id == provider_id)
            .values(peer_id=peer_id, peer_id_fetched_at=now or datetime.utcnow())
            .execution_options(synchronize_session=False)
        )

    async def cache_endpoints(
        self,
        session: AsyncSession,
        provider_id: str,
        endpoints: List[str],
        now: Optional[datetime] = None,
    ) -> None:
        await session.execute(
            update(StorageProvider)
            .where(StorageProvider.provider_id == provider_id)
            .values(cached_http_endpoints=list(endpoints), endpoints_fetched_at=now or datetime.utcnow())
            .execution_options(synchronize_session=False)
        )

    # =========================================================================
    # Bandwidth test transitions
    # =========================================================================

    async def schedule_next_bms_test(
        self,
        session: AsyncSession,
        provider_id: str,
        now: Optional[datetime] = None,
    ) -> None:
        """Push the next BMS test out by the test interval and mark the test running."""
        now = now or datetime.utcnow()
        await session.execute(
            update(StorageProvider)
            .where(StorageProvider.provider_id == provider_id)
            .values(
                next_bms_test_at=now + timedelta(days=settings.bms_test_interval_days),
                bms_test_status=STATUS_IN_PROGRESS,
                bms_routing_key=settings.bms_routing_key,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )

    async def complete_bms_test(self, session: AsyncSession, provider_id: str) -> None:
        await session.execute(
            update(StorageProvider)
            .where(StorageProvider.provider_id == provider_id)
            .values(bms_test_status=STATUS_COMPLETED)
            .execution_options(synchronize_session=False)
        )

    # =========================================================================
    # Admin
    # =========================================================================

    async def reset_provider(self, session: AsyncSession, provider_id: str) -> bool:
        """
        Make a provider due for discovery and BMS testing right away.

        Clears both statuses and the resolution caches. Returns False when the
        provider does not exist.
        """
        now = datetime.utcnow()
        result = await session.execute(
            update(StorageProvider)
            .where(StorageProvider.provider_id == provider_id)
            .values(
                next_url_discovery_at=now,
                url_discovery_status=None,
                next_bms_test_at=now,
                bms_test_status=None,
                cached_http_endpoints=None,
                endpoints_fetched_at=None,
                peer_id=None,
                peer_id_fetched_at=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return (result.rowcount or 0) > 0


provider_eligibility_service = ProviderEligibilityService()
