# url_finder/services/deal_sampler.py
"""
Deal sampler: random piece samples for a provider (and optional client).

Samples are drawn in SQL with ``ORDER BY random()`` so every matching,
non-removed deal with a piece CID is equally likely and no fixed seed is
involved. An empty sample is how ``NoDealsFound`` is signalled; the
pipeline maps it to the result code.

Usage:
    from url_finder.services.deal_sampler import deal_sampler

    async with database_service.get_session() as session:
        samples = await deal_sampler.sample(session, "1234", client_id="5678")
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import distinct, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..database.models import UnifiedVerifiedDeal
from ..exceptions import DealSamplingError

logger = logging.getLogger("url_finder.services.deal_sampler")


@dataclass(frozen=True)
class PieceSample:
    """One sampled deal: the piece to probe and the deal it came from."""
    piece_cid: str
    deal_id: Optional[int] = None


class DealSampler:
    """Reads the shared deal table; never writes to it."""

    async def sample(
        self,
        session: AsyncSession,
        provider_id: str,
        client_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[PieceSample]:
        """
        Draw up to ``limit`` deals uniformly at random without replacement.

        Args:
            session: Database session
            provider_id: Bare numeric provider id
            client_id: Restrict to this client's deals when given
            limit: Sample cap (defaults to settings.deal_sample_cap)

        Returns:
            List of PieceSample; empty when the provider has no matching deals.

        Raises:
            DealSamplingError: The deal table could not be queried.
        """
        if limit is None:
            limit = settings.deal_sample_cap
        filters = [
            UnifiedVerifiedDeal.provider_id == provider_id,
            UnifiedVerifiedDeal.piece_cid.isnot(None),
            UnifiedVerifiedDeal.removed.is_(False),
        ]
        if client_id is not None:
            filters.append(UnifiedVerifiedDeal.client_id == client_id)

        query = (
            select(UnifiedVerifiedDeal.piece_cid, UnifiedVerifiedDeal.deal_id)
            .where(*filters)
            .order_by(func.random())
            .limit(limit)
        )

        try:
            result = await session.execute(query)
        except SQLAlchemyError as e:
            logger.error(f"Failed to sample deals for provider {provider_id}: {e}")
            raise DealSamplingError(f"Failed to get deals for provider {provider_id}") from e

        samples = [PieceSample(piece_cid=row.piece_cid, deal_id=row.deal_id) for row in result]
        logger.debug(
            f"Sampled {len(samples)} deal(s) for provider {provider_id}"
            + (f" client {client_id}" if client_id else "")
        )
        return samples

    async def distinct_providers_for_client(self, session: AsyncSession, client_id: str) -> List[str]:
        """Return every provider holding deals for ``client_id``."""
        query = (
            select(distinct(UnifiedVerifiedDeal.provider_id))
            .where(
                UnifiedVerifiedDeal.client_id == client_id,
                UnifiedVerifiedDeal.provider_id.isnot(None),
            )
            .order_by(UnifiedVerifiedDeal.provider_id)
        )
        try:
            result = await session.execute(query)
        except SQLAlchemyError as e:
            logger.error(f"Failed to list providers for client {client_id}: {e}")
            raise DealSamplingError(f"Failed to get providers for client {client_id}") from e
        return [row[0] for row in result]

    async def clients_for_provider(self, session: AsyncSession, provider_id: str) -> List[str]:
        """Return every client with deals stored by ``provider_id``."""
        query = (
            select(distinct(UnifiedVerifiedDeal.client_id))
            .where(
                UnifiedVerifiedDeal.provider_id == provider_id,
                UnifiedVerifiedDeal.client_id.isnot(None),
            )
            .order_by(UnifiedVerifiedDeal.client_id)
        )
        try:
            result = await session.execute(query)
        except SQLAlchemyError as e:
            logger.error(f"Failed to list clients for provider {provider_id}: {e}")
            raise DealSamplingError(f"Failed to get clients for provider {provider_id}") from e
        return [row[0] for row in result]

    async def distinct_providers(self, session: AsyncSession) -> List[str]:
        """Return every provider present in the deal table."""
        query = (
            select(distinct(UnifiedVerifiedDeal.provider_id))
            .where(UnifiedVerifiedDeal.provider_id.isnot(None))
            .order_by(UnifiedVerifiedDeal.provider_id)
        )
        try:
            result = await session.execute(query)
        except SQLAlchemyError as e:
            raise DealSamplingError("Failed to list providers") from e
        return [row[0] for row in result]


deal_sampler = DealSampler()
