# url_finder/services/job_queue.py
"""
Background discovery jobs.

Jobs are queued on an ``asyncio.Queue`` drained by exactly one worker task,
so they run one at a time in submission order. This bounds the load placed
on the peer-id and directory upstreams.

Job lifecycle:
    Created -> Running -> Succeeded | Failed

    - A job reaches Succeeded once every produced result is stored, whatever
      the result codes were.
    - Failed means no results could be produced (``NoProvidersFound`` for a
      client-only job) or storing them failed.

Job records live in memory; their results are persisted as ``url_results``
rows whose ids are kept on the job.

Usage:
    from url_finder.services.job_queue import job_queue

    job = job_queue.submit(provider="f01234")
    ...
    job_queue.get_job(job.id).status
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from ..exceptions import DealSamplingError, InvalidJobRequest
from ..types import ErrorCode, JobStatus, ResultCode, normalize_client_id, normalize_provider_id
from .database_service import DatabaseService, database_service
from .deal_sampler import DealSampler, deal_sampler
from .discovery_pipeline import DiscoveryOutcome, DiscoveryPipeline, discovery_pipeline
from .provider_eligibility_service import provider_eligibility_service
from .url_result_service import url_result_service

logger = logging.getLogger("url_finder.services.job_queue")


@dataclass
class DiscoveryJob:
    """In-memory record of one background job."""
    provider_id: Optional[str]
    client_id: Optional[str]
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    status: JobStatus = JobStatus.CREATED
    result_code: ResultCode = ResultCode.JOB_CREATED
    error_code: Optional[ErrorCode] = None
    error_message: Optional[str] = None
    results: List[DiscoveryOutcome] = field(default_factory=list)
    url_result_ids: List[uuid.UUID] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    def _set(self, status: JobStatus, **changes: Any) -> None:
        self.status = status
        for name, value in changes.items():
            setattr(self, name, value)
        self.updated_at = datetime.utcnow()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "provider": f"f0{self.provider_id}" if self.provider_id else None,
            "client": f"f0{self.client_id}" if self.client_id else None,
            "status": self.status.value,
            "result_code": self.result_code.value,
            "error_code": self.error_code.value if self.error_code else None,
            "error_message": self.error_message,
            "results": [r.to_dict() for r in self.results],
            "url_result_ids": [str(i) for i in self.url_result_ids],
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


class JobQueue:
    """Sequential FIFO executor for discovery jobs."""

    def __init__(
        self,
        pipeline: Optional[DiscoveryPipeline] = None,
        sampler: Optional[DealSampler] = None,
        db: Optional[DatabaseService] = None,
    ):
        self.pipeline = pipeline or discovery_pipeline
        self.sampler = sampler or deal_sampler
        self.db = db or database_service
        self._jobs: Dict[uuid.UUID, DiscoveryJob] = {}
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None

    # =========================================================================
    # Public API
    # =========================================================================

    def submit(self, provider: Optional[str] = None, client: Optional[str] = None) -> DiscoveryJob:
        """
        Validate the request, enqueue a job and return it immediately.

        Args:
            provider: Provider address (``f01234``) or bare id
            client: Client address or bare id

        Raises:
            InvalidJobRequest: Neither provider nor client was given; no job
                is created.
            ValueError: An identifier is malformed.
        """
        if not provider and not client:
            raise InvalidJobRequest("Either provider or client is required")

        job = DiscoveryJob(
            provider_id=normalize_provider_id(provider) if provider else None,
            client_id=normalize_client_id(client) if client else None,
        )
        self._jobs[job.id] = job
        self.start()
        self._queue.put_nowait(job.id)
        logger.info(f"Queued discovery job {job.id} (provider={job.provider_id}, client={job.client_id})")
        return job

    def get_job(self, job_id: uuid.UUID) -> Optional[DiscoveryJob]:
        return self._jobs.get(job_id)

    def start(self) -> None:
        """Start the single worker on the running loop if it isn't running."""
        if self._queue is None:
            self._queue = asyncio.Queue()
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._run(), name="discovery-job-worker")

    async def join(self) -> None:
        """Wait until every queued job has finished."""
        if self._queue is not None:
            await self._queue.join()

    async def stop(self) -> None:
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

    # =========================================================================
    # Worker
    # =========================================================================

    async def _run(self) -> None:
        logger.info("Discovery job worker started")
        while True:
            job_id = await self._queue.get()
            try:
                job = self._jobs.get(job_id)
                if job is not None:
                    try:
                        await self.process(job)
                    except Exception as e:
                        logger.exception(f"Job {job_id} crashed: {e}")
                        job._set(JobStatus.FAILED, result_code=ResultCode.ERROR, error_message=str(e))
            finally:
                self._queue.task_done()

    async def _run_pipelines(self, job: DiscoveryJob) -> List[DiscoveryOutcome]:
        if job.provider_id:
            async with self.db.get_session() as session:
                provider_state = await provider_eligibility_service.get_provider(session, job.provider_id)
            return [await self.pipeline.discover(job.provider_id, job.client_id, provider_state=provider_state)]

        async with self.db.get_session() as session:
            providers = await self.sampler.distinct_providers_for_client(session, job.client_id)
        if not providers:
            return []

        outcomes = []
        for provider_id in providers:
            logger.debug(f"Job {job.id}: provider f0{provider_id} for client f0{job.client_id}")
            outcomes.append(await self.pipeline.discover(provider_id, job.client_id))
        return outcomes

    async def process(self, job: DiscoveryJob) -> DiscoveryJob:
        """Run one job to a terminal status."""
        job._set(JobStatus.RUNNING)

        try:
            outcomes = await self._run_pipelines(job)
        except DealSamplingError as e:
            job._set(
                JobStatus.FAILED,
                result_code=ResultCode.ERROR,
                error_code=ErrorCode.FAILED_TO_GET_DEALS,
                error_message=str(e),
            )
            return job

        if not outcomes:
            job._set(
                JobStatus.FAILED,
                result_code=ResultCode.ERROR,
                error_code=ErrorCode.NO_PROVIDERS_FOUND,
                error_message=f"No providers found for client f0{job.client_id}",
            )
            logger.info(f"Job {job.id} failed: no providers for client {job.client_id}")
            return job

        try:
            async with self.db.get_session() as session:
                rows = [await url_result_service.create_from_outcome(session, o) for o in outcomes]
        except SQLAlchemyError as e:
            logger.error(f"Job {job.id}: failed to store results: {e}")
            job._set(JobStatus.FAILED, result_code=ResultCode.ERROR, error_message=str(e), results=outcomes)
            return job

        codes = [o.result_code for o in outcomes]
        job._set(
            JobStatus.SUCCEEDED,
            result_code=ResultCode.SUCCESS if ResultCode.SUCCESS in codes else codes[0],
            error_code=next((o.error_code for o in outcomes if o.error_code), None),
            results=outcomes,
            url_result_ids=[row.id for row in rows],
        )
        logger.info(f"Job {job.id} succeeded with {len(rows)} result(s): {job.result_code.value}")
        return job


job_queue = JobQueue()
