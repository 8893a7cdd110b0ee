# url_finder/services/discovery_scheduler.py
"""
Periodic URL discovery sweep.

Each sweep picks up to ``discovery_batch_size`` due providers and, for each
one, runs a provider-level discovery followed by one run per client that
has deals with the provider. Providers are processed one after another.

Per provider:
    1. Mark ``in_progress`` (committed on its own so concurrent sweeps skip it)
    2. Provider-level run; an ``Error`` result is stored and the provider is
       retried after ``discovery_retry_delay_minutes``
    3. One run per client
    4. In a single transaction: update the provider's schedule and flags from
       the provider-level run, then store every result row

Usage:
    from url_finder.services.discovery_scheduler import discovery_scheduler

    stats = await discovery_scheduler.run_sweep()
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from ..database.models import StorageProvider
from ..types import ResultCode
from .database_service import DatabaseService, database_service
from .deal_sampler import DealSampler, deal_sampler
from .discovery_pipeline import DiscoveryOutcome, DiscoveryPipeline, discovery_pipeline
from .provider_eligibility_service import provider_eligibility_service
from .url_result_service import url_result_service

logger = logging.getLogger("url_finder.services.discovery_scheduler")


class DiscoveryScheduler:
    """Drives scheduled discovery for providers whose next run is due."""

    def __init__(
        self,
        pipeline: Optional[DiscoveryPipeline] = None,
        sampler: Optional[DealSampler] = None,
        db: Optional[DatabaseService] = None,
    ):
        self.pipeline = pipeline or discovery_pipeline
        self.sampler = sampler or deal_sampler
        self.db = db or database_service

    async def sync_providers(self) -> int:
        """Register every provider that appears in the deal view."""
        async with self.db.get_session() as session:
            provider_ids = await self.sampler.distinct_providers(session)
            inserted = await provider_eligibility_service.ensure_providers(session, provider_ids)
        logger.info(f"Provider sync: {len(provider_ids)} in deals, {inserted} new")
        return inserted

    async def run_sweep(self, limit: Optional[int] = None) -> Dict[str, Any]:
        """
        Process every provider currently due.

        Returns:
            Stats dict with ``total``, ``succeeded``, ``failed`` (no working
            URL), ``errors`` (retried later) and ``consistent``.
        """
        async with self.db.get_session() as session:
            providers = await provider_eligibility_service.due_for_discovery(session, limit=limit)

        stats = {"total": len(providers), "succeeded": 0, "failed": 0, "errors": 0, "consistent": 0}
        if not providers:
            logger.debug("URL discovery: no providers due")
            return stats

        logger.info(f"URL discovery: starting {len(providers)} provider(s)")
        for provider in providers:
            try:
                outcome = await self.process_provider(provider)
            except Exception as e:
                logger.exception(f"Discovery failed for provider {provider.provider_id}: {e}")
                async with self.db.get_session() as session:
                    await provider_eligibility_service.reschedule_discovery_delayed(session, provider.provider_id)
                stats["errors"] += 1
                continue

            if outcome.result_code == ResultCode.ERROR:
                stats["errors"] += 1
            elif outcome.working_url:
                stats["succeeded"] += 1
            else:
                stats["failed"] += 1
            if outcome.is_consistent:
                stats["consistent"] += 1

        logger.info(
            f"URL discovery finished: {stats['total']} total, {stats['succeeded']} ok, "
            f"{stats['failed']} without working URL, {stats['errors']} errors"
        )
        return stats

    async def process_provider(self, provider: StorageProvider) -> DiscoveryOutcome:
        """Run provider-level and per-client discovery for one provider."""
        provider_id = provider.provider_id

        async with self.db.get_session() as session:
            await provider_eligibility_service.mark_discovery_in_progress(session, provider_id)

        provider_outcome = await self.pipeline.discover(provider_id, provider_state=provider)

        if provider_outcome.result_code == ResultCode.ERROR:
            logger.warning(
                f"System error for provider {provider_id} "
                f"({provider_outcome.error_code.value if provider_outcome.error_code else 'unknown'}), retrying later"
            )
            async with self.db.get_session() as session:
                await url_result_service.create_from_outcome(session, provider_outcome)
                await provider_eligibility_service.reschedule_discovery_delayed(session, provider_id)
            return provider_outcome

        # The provider-level run may have refreshed the resolution caches.
        async with self.db.get_session() as session:
            provider_state = await provider_eligibility_service.get_provider(session, provider_id)
            client_ids = await self.sampler.clients_for_provider(session, provider_id)

        outcomes: List[DiscoveryOutcome] = [provider_outcome]
        for client_id in client_ids:
            outcomes.append(await self.pipeline.discover(provider_id, client_id, provider_state=provider_state))

        async with self.db.get_session() as session:
            is_consistent, is_reliable = await provider_eligibility_service.record_discovery(
                session, provider_outcome
            )
            provider_outcome.is_consistent = is_consistent
            provider_outcome.is_reliable = is_reliable
            for outcome in outcomes:
                await url_result_service.create_from_outcome(session, outcome)

        logger.info(
            f"f0{provider_id} ({len(client_ids)} clients): {provider_outcome.result_code.value} "
            f"retri={provider_outcome.retrievability_percent} consistent={is_consistent}"
        )
        return provider_outcome


discovery_scheduler = DiscoveryScheduler()
