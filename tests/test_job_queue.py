"""
Tests for background discovery jobs: validation, FIFO sequential execution,
client fan-out and persistence.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from url_finder.exceptions import InvalidJobRequest
from url_finder.services.deal_sampler import DealSampler
from url_finder.services.discovery_pipeline import DiscoveryOutcome
from url_finder.services.job_queue import JobQueue
from url_finder.services.url_result_service import url_result_service
from url_finder.types import DiscoveryType, ErrorCode, JobStatus, ResultCode


def _outcome(provider_id, client_id=None, code=ResultCode.SUCCESS):
    return DiscoveryOutcome(
        provider_id=provider_id,
        client_id=client_id,
        result_type=DiscoveryType.PROVIDER_CLIENT if client_id else DiscoveryType.PROVIDER,
        result_code=code,
        working_url=f"http://sp/piece/{provider_id}" if code == ResultCode.SUCCESS else None,
        retrievability_percent=100.0 if code == ResultCode.SUCCESS else 0.0,
    )


def _pipeline(codes=None, delay=0.0):
    """Pipeline mock that records call order and peak concurrency."""
    pipeline = MagicMock()
    pipeline.calls = []
    pipeline.peak = 0
    in_flight = 0

    async def discover(provider_id, client_id=None, provider_state=None, persist=True):
        nonlocal in_flight
        in_flight += 1
        pipeline.peak = max(pipeline.peak, in_flight)
        pipeline.calls.append((provider_id, client_id))
        await asyncio.sleep(delay)
        in_flight -= 1
        return _outcome(provider_id, client_id, (codes or {}).get(provider_id, ResultCode.SUCCESS))

    pipeline.discover = AsyncMock(side_effect=discover)
    return pipeline


class TestSubmit:
    @pytest.mark.asyncio
    async def test_requires_provider_or_client(self, db):
        queue = JobQueue(pipeline=_pipeline(), sampler=DealSampler(), db=db)
        with pytest.raises(InvalidJobRequest) as exc:
            queue.submit()
        assert exc.value.error_code == ErrorCode.NO_PROVIDER_OR_CLIENT
        assert queue._jobs == {}

    @pytest.mark.asyncio
    async def test_invalid_id_rejected(self, db):
        queue = JobQueue(pipeline=_pipeline(), sampler=DealSampler(), db=db)
        with pytest.raises(ValueError):
            queue.submit(provider="not-an-id")

    @pytest.mark.asyncio
    async def test_returns_created_job(self, db):
        queue = JobQueue(pipeline=_pipeline(), sampler=DealSampler(), db=db)
        job = queue.submit(provider="f01000", client="f02000")
        try:
            assert job.status == JobStatus.CREATED
            assert job.result_code == ResultCode.JOB_CREATED
            assert job.provider_id == "1000"
            assert job.client_id == "2000"
            assert queue.get_job(job.id) is job
        finally:
            await queue.join()
            await queue.stop()


class TestExecution:
    @pytest.mark.asyncio
    async def test_jobs_run_one_at_a_time_in_order(self, db):
        pipeline = _pipeline(delay=0.01)
        queue = JobQueue(pipeline=pipeline, sampler=DealSampler(), db=db)

        jobs = [queue.submit(provider=p) for p in ("1000", "1001", "1002")]
        await queue.join()
        await queue.stop()

        assert [c[0] for c in pipeline.calls] == ["1000", "1001", "1002"]
        assert pipeline.peak == 1
        assert all(j.status == JobStatus.SUCCEEDED for j in jobs)
        assert all(len(j.url_result_ids) == 1 for j in jobs)

    @pytest.mark.asyncio
    async def test_error_result_still_succeeds(self, db):
        queue = JobQueue(pipeline=_pipeline({"1000": ResultCode.ERROR}), sampler=DealSampler(), db=db)

        job = queue.submit(provider="1000")
        await queue.join()
        await queue.stop()

        assert job.status == JobStatus.SUCCEEDED
        assert job.result_code == ResultCode.ERROR

    @pytest.mark.asyncio
    async def test_results_are_persisted(self, db):
        queue = JobQueue(pipeline=_pipeline(), sampler=DealSampler(), db=db)

        job = queue.submit(provider="1000", client="2000")
        await queue.join()
        await queue.stop()

        async with db.get_session() as session:
            row = await url_result_service.get(session, job.url_result_ids[0])
        assert row.provider_id == "1000"
        assert row.client_id == "2000"
        assert row.result_type == "ProviderClient"
        assert row.result_code == "Success"

    @pytest.mark.asyncio
    async def test_client_only_job_fans_out(self, db, seed_deals):
        await seed_deals([("1000", "2000", "a"), ("1001", "2000", "b"), ("1002", "3000", "c")])
        pipeline = _pipeline({"1000": ResultCode.FAILED_TO_GET_WORKING_URL})
        queue = JobQueue(pipeline=pipeline, sampler=DealSampler(), db=db)

        job = queue.submit(client="f02000")
        await queue.join()
        await queue.stop()

        assert pipeline.calls == [("1000", "2000"), ("1001", "2000")]
        assert job.status == JobStatus.SUCCEEDED
        assert job.result_code == ResultCode.SUCCESS
        assert len(job.results) == 2

    @pytest.mark.asyncio
    async def test_client_without_providers_fails(self, db):
        pipeline = _pipeline()
        queue = JobQueue(pipeline=pipeline, sampler=DealSampler(), db=db)

        job = queue.submit(client="2000")
        await queue.join()
        await queue.stop()

        assert job.status == JobStatus.FAILED
        assert job.error_code == ErrorCode.NO_PROVIDERS_FOUND
        pipeline.discover.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_persistence_failure_fails_job(self, db):
        queue = JobQueue(pipeline=_pipeline(), sampler=DealSampler(), db=db)
        error = OperationalError("INSERT", {}, Exception("disk full"))

        with patch(
            "url_finder.services.job_queue.url_result_service.create_from_outcome",
            new=AsyncMock(side_effect=error),
        ):
            job = queue.submit(provider="1000")
            await queue.join()
        await queue.stop()

        assert job.status == JobStatus.FAILED
        assert job.url_result_ids == []
        assert job.error_message

    @pytest.mark.asyncio
    async def test_crash_in_one_job_does_not_stop_worker(self, db):
        pipeline = _pipeline()
        original = pipeline.discover.side_effect
        calls = {"n": 0}

        async def flaky(*args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("unexpected")
            return await original(*args, **kwargs)

        pipeline.discover = AsyncMock(side_effect=flaky)
        queue = JobQueue(pipeline=pipeline, sampler=DealSampler(), db=db)

        first = queue.submit(provider="1000")
        second = queue.submit(provider="1001")
        await queue.join()
        await queue.stop()

        assert first.status == JobStatus.FAILED
        assert second.status == JobStatus.SUCCEEDED
