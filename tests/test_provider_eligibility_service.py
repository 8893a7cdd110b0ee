"""
Tests for provider scheduling state: due queries, discovery transitions,
health flags and BMS eligibility.
"""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import update

from url_finder.database.models import BmsBandwidthResult, StorageProvider
from url_finder.services.discovery_pipeline import DiscoveryOutcome
from url_finder.services.provider_eligibility_service import (
    ProviderEligibilityService,
    compute_reliability,
)
from url_finder.types import STATUS_COMPLETED, STATUS_FAILED, STATUS_IN_PROGRESS, DiscoveryType, ResultCode

NOW = datetime(2026, 1, 10, 12, 0, 0)


def _outcome(provider_id="1000", working_url=None, tested=10, timeouts=0, code=None):
    return DiscoveryOutcome(
        provider_id=provider_id,
        client_id=None,
        result_type=DiscoveryType.PROVIDER,
        result_code=code or (ResultCode.SUCCESS if working_url else ResultCode.FAILED_TO_GET_WORKING_URL),
        working_url=working_url,
        tested_count=tested,
        timeout_count=timeouts,
        url_metadata={"tested": tested},
    )


async def _set(db, provider_id, **values):
    async with db.get_session() as session:
        await session.execute(
            update(StorageProvider).where(StorageProvider.provider_id == provider_id).values(**values)
        )


class TestComputeReliability:
    def test_boundary_is_reliable(self):
        assert compute_reliability(10, 3, threshold=0.30) is True

    def test_above_threshold_is_unreliable(self):
        assert compute_reliability(10, 4, threshold=0.30) is False

    def test_nothing_tested_is_reliable(self):
        assert compute_reliability(0, 0) is True

    def test_default_threshold_from_settings(self):
        assert compute_reliability(100, 30) is True
        assert compute_reliability(100, 31) is False


class TestEnsureProviders:
    @pytest.mark.asyncio
    async def test_insert_is_idempotent(self, db):
        service = ProviderEligibilityService()
        async with db.get_session() as session:
            assert await service.ensure_providers(session, ["1000", "1001", "1000"]) == 2
        async with db.get_session() as session:
            assert await service.ensure_providers(session, ["1000", "1002"]) == 1
            provider = await service.get_provider(session, "1002")
        assert provider is not None
        assert provider.url_discovery_status is None


class TestDueQueries:
    @pytest.mark.asyncio
    async def test_due_for_discovery_order_and_status(self, db):
        service = ProviderEligibilityService()
        async with db.get_session() as session:
            await service.ensure_providers(session, ["1000", "1001", "1002", "1003"])
        await _set(db, "1000", next_url_discovery_at=NOW - timedelta(hours=1))
        await _set(db, "1001", next_url_discovery_at=NOW - timedelta(hours=5))
        await _set(db, "1002", next_url_discovery_at=NOW + timedelta(hours=1))
        await _set(db, "1003", next_url_discovery_at=NOW - timedelta(hours=9), url_discovery_status=STATUS_IN_PROGRESS)

        async with db.get_session() as session:
            first = await service.due_for_discovery(session, limit=10, now=NOW)
            second = await service.due_for_discovery(session, limit=10, now=NOW)

        assert [p.provider_id for p in first] == ["1001", "1000"]
        assert [p.provider_id for p in second] == ["1001", "1000"]

    @pytest.mark.asyncio
    async def test_due_for_bms_requires_eligibility(self, db):
        service = ProviderEligibilityService()
        async with db.get_session() as session:
            await service.ensure_providers(session, ["1000", "1001", "1002", "1003", "1004"])
        due = NOW - timedelta(hours=1)
        eligible = dict(next_bms_test_at=due, is_consistent=True, is_reliable=True, last_working_url="http://sp/piece/x")
        await _set(db, "1000", **eligible)
        await _set(db, "1001", **{**eligible, "is_consistent": False})
        await _set(db, "1002", **{**eligible, "is_reliable": False})
        await _set(db, "1003", **{**eligible, "last_working_url": None})
        await _set(db, "1004", **{**eligible, "bms_test_status": STATUS_IN_PROGRESS})

        async with db.get_session() as session:
            providers = await service.due_for_bms_test(session, limit=10, now=NOW)

        assert [p.provider_id for p in providers] == ["1000"]
        assert providers[0].is_bms_eligible


class TestRecordDiscovery:
    @pytest.mark.asyncio
    async def test_first_run_is_consistent(self, db):
        service = ProviderEligibilityService()
        async with db.get_session() as session:
            result = await service.record_discovery(session, _outcome(working_url="http://sp/piece/a"), now=NOW)
            provider = await service.get_provider(session, "1000")

        assert result == (True, True)
        assert provider.last_working_url == "http://sp/piece/a"
        assert provider.url_discovery_status == STATUS_COMPLETED
        assert provider.next_url_discovery_at == NOW + timedelta(hours=24)
        assert provider.url_metadata == {"tested": 10}

    @pytest.mark.asyncio
    async def test_validity_flip_is_inconsistent(self, db):
        service = ProviderEligibilityService()
        async with db.get_session() as session:
            await service.record_discovery(session, _outcome(working_url="http://sp/piece/a"), now=NOW)
        async with db.get_session() as session:
            flipped = await service.record_discovery(session, _outcome(working_url=None), now=NOW)
        async with db.get_session() as session:
            steady = await service.record_discovery(session, _outcome(working_url=None), now=NOW)

        assert flipped == (False, True)
        assert steady == (True, True)

    @pytest.mark.asyncio
    async def test_different_working_url_is_still_consistent(self, db):
        service = ProviderEligibilityService()
        async with db.get_session() as session:
            await service.record_discovery(session, _outcome(working_url="http://sp/piece/a"), now=NOW)
        async with db.get_session() as session:
            result = await service.record_discovery(session, _outcome(working_url="http://sp/piece/b"), now=NOW)
        assert result[0] is True

    @pytest.mark.asyncio
    async def test_timeouts_mark_unreliable(self, db):
        service = ProviderEligibilityService()
        async with db.get_session() as session:
            result = await service.record_discovery(session, _outcome(tested=10, timeouts=4), now=NOW)
        assert result == (True, False)

    @pytest.mark.asyncio
    async def test_reschedule_delayed_keeps_flags(self, db):
        service = ProviderEligibilityService()
        async with db.get_session() as session:
            await service.record_discovery(session, _outcome(working_url="http://sp/piece/a"), now=NOW)
        async with db.get_session() as session:
            await service.reschedule_discovery_delayed(session, "1000", now=NOW)
            provider = await service.get_provider(session, "1000")

        assert provider.next_url_discovery_at == NOW + timedelta(minutes=15)
        assert provider.url_discovery_status == STATUS_FAILED
        assert provider.is_consistent is True
        assert provider.last_working_url == "http://sp/piece/a"


class TestMaintenance:
    @pytest.mark.asyncio
    async def test_recover_stale_runs(self, db):
        service = ProviderEligibilityService()
        async with db.get_session() as session:
            await service.ensure_providers(session, ["1000", "1001"])
        await _set(db, "1000", url_discovery_status=STATUS_IN_PROGRESS, updated_at=NOW - timedelta(hours=12))
        await _set(db, "1001", url_discovery_status=STATUS_IN_PROGRESS, updated_at=NOW - timedelta(minutes=5))

        async with db.get_session() as session:
            assert await service.recover_stale_runs(session, max_age_hours=6, now=NOW) == 1
            stale = await service.get_provider(session, "1000")
            fresh = await service.get_provider(session, "1001")

        assert stale.url_discovery_status == STATUS_FAILED
        assert fresh.url_discovery_status == STATUS_IN_PROGRESS

    @pytest.mark.asyncio
    async def test_recover_releases_bms_tests_without_open_job(self, db):
        service = ProviderEligibilityService()
        async with db.get_session() as session:
            await service.ensure_providers(session, ["1000", "1001"])
            session.add(
                BmsBandwidthResult(
                    provider_id="1001",
                    bms_job_id="job-open",
                    url_tested="http://sp/piece/a",
                    routing_key="us_east",
                    worker_count=10,
                    status="Pending",
                )
            )
        for provider_id in ("1000", "1001"):
            await _set(db, provider_id, bms_test_status=STATUS_IN_PROGRESS, updated_at=NOW - timedelta(hours=12))

        async with db.get_session() as session:
            assert await service.recover_stale_runs(session, max_age_hours=6, now=NOW) == 1
            orphaned = await service.get_provider(session, "1000")
            waiting = await service.get_provider(session, "1001")

        assert orphaned.bms_test_status == STATUS_COMPLETED
        assert waiting.bms_test_status == STATUS_IN_PROGRESS

    @pytest.mark.asyncio
    async def test_bms_schedule_and_complete(self, db):
        service = ProviderEligibilityService()
        async with db.get_session() as session:
            await service.ensure_providers(session, ["1000"])
            await service.schedule_next_bms_test(session, "1000", now=NOW)
            provider = await service.get_provider(session, "1000")
            assert provider.next_bms_test_at == NOW + timedelta(days=7)
            assert provider.bms_test_status == STATUS_IN_PROGRESS
            assert provider.bms_routing_key == "us_east"

            await service.complete_bms_test(session, "1000")
            provider = await service.get_provider(session, "1000")
            assert provider.bms_test_status == STATUS_COMPLETED

    @pytest.mark.asyncio
    async def test_reset_provider(self, db):
        service = ProviderEligibilityService()
        async with db.get_session() as session:
            await service.ensure_providers(session, ["1000"])
            await service.cache_endpoints(session, "1000", ["http://sp:80"])
            await service.cache_peer_id(session, "1000", "12D3KooWPeer")

        async with db.get_session() as session:
            assert await service.reset_provider(session, "1000") is True
            assert await service.reset_provider(session, "4242") is False
            provider = await service.get_provider(session, "1000")

        assert provider.cached_http_endpoints is None
        assert provider.peer_id is None
        assert provider.url_discovery_status is None
