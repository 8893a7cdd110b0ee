# url_finder/services/url_result_service.py
"""
Persistence for discovery results (``url_results``).

Rows are append-only: one per discovery run, written at the end of the run
and never updated.

Usage:
    from url_finder.services.url_result_service import url_result_service

    async with database_service.get_session() as session:
        row = await url_result_service.create_from_outcome(session, outcome)
        latest = await url_result_service.get_latest(session, "1234")
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, List, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..database.models import UrlResult

if TYPE_CHECKING:
    from .discovery_pipeline import DiscoveryOutcome

logger = logging.getLogger("url_finder.services.url_results")


class UrlResultService:
    async def create_from_outcome(self, session: AsyncSession, outcome: "DiscoveryOutcome") -> UrlResult:
        """Insert the row for one finished run and return it."""
        row = UrlResult(
            provider_id=outcome.provider_id,
            client_id=outcome.client_id,
            result_type=outcome.result_type.value,
            working_url=outcome.working_url,
            retrievability_percent=outcome.retrievability_percent,
            result_code=outcome.result_code.value,
            error_code=outcome.error_code.value if outcome.error_code else None,
            content_length=outcome.content_length,
            invalid_evidence_url=outcome.invalid_evidence_url,
            car_files_percent=outcome.car_files_percent,
            large_files_percent=outcome.large_files_percent,
            is_consistent=outcome.is_consistent,
            is_reliable=outcome.is_reliable,
            url_metadata=outcome.url_metadata,
            tested_at=outcome.tested_at,
        )
        session.add(row)
        await session.flush()
        logger.debug(f"Stored url_result {row.id} for provider {row.provider_id} ({row.result_code})")
        return row

    async def get(self, session: AsyncSession, result_id: UUID) -> Optional[UrlResult]:
        result = await session.execute(select(UrlResult).where(UrlResult.id == result_id))
        return result.scalar_one_or_none()

    async def get_latest(
        self,
        session: AsyncSession,
        provider_id: str,
        client_id: Optional[str] = None,
    ) -> Optional[UrlResult]:
        """Most recent result for a provider, or for a provider/client pair."""
        rows = await self.list_for_provider(session, provider_id, client_id=client_id, limit=1)
        return rows[0] if rows else None

    async def list_for_provider(
        self,
        session: AsyncSession,
        provider_id: str,
        client_id: Optional[str] = None,
        limit: int = 50,
    ) -> List[UrlResult]:
        """
        Result history, newest first.

        Without ``client_id`` only provider-level rows are returned.
        """
        query = select(UrlResult).where(UrlResult.provider_id == provider_id)
        if client_id is None:
            query = query.where(UrlResult.client_id.is_(None))
        else:
            query = query.where(UrlResult.client_id == client_id)
        query = query.order_by(UrlResult.tested_at.desc()).limit(limit)

        result = await session.execute(query)
        return list(result.scalars().all())


url_result_service = UrlResultService()
