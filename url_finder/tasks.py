"""
Celery tasks for URL Finder.

Each task is a thin synchronous wrapper that runs one async service call
with ``asyncio.run``. The database engine is disposed at the end of every
run because pooled connections cannot outlive the event loop they were
opened on.
"""
import asyncio
import logging
from typing import Any, Awaitable, Dict, Optional

from celery import shared_task

from .services.bms_scheduler import bms_scheduler
from .services.database_service import database_service
from .services.discovery_scheduler import discovery_scheduler
from .services.job_queue import JobQueue
from .services.provider_eligibility_service import provider_eligibility_service

logger = logging.getLogger("url_finder.tasks")


def _run(coro: Awaitable[Any]) -> Any:
    async def runner():
        try:
            return await coro
        finally:
            await database_service.close()

    return asyncio.run(runner())


@shared_task(bind=True, name="url_finder.tasks.run_url_discovery_task")
def run_url_discovery_task(self, limit: Optional[int] = None) -> Dict[str, Any]:
    """Run one scheduled discovery sweep over due providers."""
    logger.info(f"Starting URL discovery sweep (task {self.request.id})")
    return _run(discovery_scheduler.run_sweep(limit=limit))


@shared_task(bind=True, name="url_finder.tasks.run_discovery_job_task")
def run_discovery_job_task(self, provider: Optional[str] = None, client: Optional[str] = None) -> Dict[str, Any]:
    """
    Run a discovery job to completion inside the worker.

    Same semantics as an in-process job: validation errors are raised before
    anything runs, pipeline failures end up on the returned job record.
    Ordering and single concurrency come from the discovery queue, whose
    only worker runs one task at a time alongside the sweeps.
    """
    queue = JobQueue()

    async def run():
        job = queue.submit(provider=provider, client=client)
        await queue.join()
        await queue.stop()
        return job.to_dict()

    return _run(run())


@shared_task(bind=True, name="url_finder.tasks.sync_providers_task")
def sync_providers_task(self) -> Dict[str, Any]:
    """Register providers that appeared in the deal table since the last sync."""
    inserted = _run(discovery_scheduler.sync_providers())
    return {"inserted": inserted}


@shared_task(bind=True, name="url_finder.tasks.create_bms_jobs_task")
def create_bms_jobs_task(self, limit: Optional[int] = None) -> Dict[str, Any]:
    return _run(bms_scheduler.create_jobs(limit=limit))


@shared_task(bind=True, name="url_finder.tasks.poll_bms_results_task")
def poll_bms_results_task(self) -> Dict[str, Any]:
    return _run(bms_scheduler.poll_results())


@shared_task(bind=True, name="url_finder.tasks.recover_stale_runs_task")
def recover_stale_runs_task(self, max_age_hours: int = 6) -> Dict[str, Any]:
    """
    Release providers stuck ``in_progress`` after a worker crash.

    Should be called:
    1. On worker startup (via celery signal)
    2. Manually after an unclean shutdown
    """
    logger.info(f"Starting stale discovery run recovery (max_age={max_age_hours}h)")

    async def recover():
        async with database_service.get_session() as session:
            return await provider_eligibility_service.recover_stale_runs(session, max_age_hours=max_age_hours)

    recovered = _run(recover())
    logger.info(f"Recovery complete: {recovered} provider(s) released")
    return {"recovered": recovered}
