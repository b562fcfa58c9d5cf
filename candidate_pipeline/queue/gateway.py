"""Queue and worker factories for candidate evaluation.

Hides the Redis connection details behind two constructors bound to the
``candidate-evaluation`` queue. Both sides are BullMQ handles, so jobs
enqueued here are interoperable with BullMQ producers and workers in
other languages.
"""
from __future__ import annotations

import logging
import time
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from bullmq import Queue

from .connection import ConnectionDescriptor, build_connection_descriptor, create_redis, ping
from .consumer import CandidateEvaluationWorker, Processor, WorkerOptions
from .jobs import (
    CANDIDATE_EVALUATION_JOB_NAME,
    CANDIDATE_EVALUATION_QUEUE_NAME,
    JobOptions,
    JobRecord,
    QueuedJob,
)

logger = logging.getLogger(__name__)

DEFAULT_JOB_OPTIONS = JobOptions()

RecordLike = Union[JobRecord, Mapping[str, Any]]


def evaluation_job_id(application_id: str, force: bool = False) -> str:
    """Deterministic job id for an application.

    The plain id deduplicates repeat submissions; ``force`` appends the
    current epoch milliseconds so a re-evaluation is always queued.
    """
    if force:
        return f"eval-{application_id}-{int(time.time() * 1000)}"
    return f"eval-{application_id}"


def _as_record(record: RecordLike) -> JobRecord:
    if isinstance(record, JobRecord):
        return record
    return JobRecord.model_validate(record)


class CandidateEvaluationQueue:
    """Producer-side handle for enqueuing candidate evaluations."""

    def __init__(
        self,
        connection: ConnectionDescriptor,
        default_options: JobOptions = DEFAULT_JOB_OPTIONS,
        queue_name: str = CANDIDATE_EVALUATION_QUEUE_NAME,
    ) -> None:
        self.connection = connection
        self.default_options = default_options
        self._queue = Queue(
            queue_name,
            {
                "connection": connection.to_redis_kwargs(),
                "defaultJobOptions": default_options.to_job_opts(),
            },
        )

    @property
    def name(self) -> str:
        return self._queue.name

    async def enqueue(
        self,
        record: RecordLike,
        job_id: Optional[str] = None,
        options: Optional[JobOptions] = None,
    ) -> str:
        """Submit a job record.

        Args:
            record: Job record, or its wire form
            job_id: Explicit job id; an id that already exists is not re-added
            options: Delivery options (default: queue defaults)

        Returns:
            The job id
        """
        record = _as_record(record)
        opts: Dict[str, Any] = options.to_job_opts() if options is not None else {}
        if job_id is not None:
            opts["jobId"] = job_id

        job = await self._queue.add(CANDIDATE_EVALUATION_JOB_NAME, record.to_payload(), opts)
        logger.debug(f"Enqueued job id={job.id} on {self.name}")
        return str(job.id)

    async def enqueue_application(
        self,
        application_id: str,
        organization_id: str,
        job_id: str,
        force: bool = False,
    ) -> str:
        """Queue an evaluation for a submitted application."""
        record = JobRecord(
            application_id=application_id,
            organization_id=organization_id,
            job_id=job_id,
        )
        return await self.enqueue(record, job_id=evaluation_job_id(record.application_id, force))

    async def enqueue_bulk(self, records: Iterable[RecordLike], force: bool = False) -> List[str]:
        """Queue evaluations for many applications in one round trip.

        Every record is validated before anything is sent, so an invalid
        entry queues nothing. Ids follow ``evaluation_job_id``.

        Returns:
            Job ids in input order
        """
        entries = []
        for record in records:
            record = _as_record(record)
            entries.append({
                "name": CANDIDATE_EVALUATION_JOB_NAME,
                "data": record.to_payload(),
                "opts": {"jobId": evaluation_job_id(record.application_id, force)},
            })
        if not entries:
            return []

        jobs = await self._queue.addBulk(entries)
        logger.info(f"Enqueued {len(jobs)} jobs on {self.name}")
        return [str(job.id) for job in jobs]

    async def get_job(self, job_id: str) -> Optional[QueuedJob]:
        job = await self._queue.getJob(job_id)
        if job is None:
            return None
        state = await self._queue.getJobState(job_id)
        return QueuedJob.from_job(job, state)

    async def get_job_counts(self) -> Dict[str, int]:
        return await self._queue.getJobCounts()

    async def is_available(self) -> bool:
        # BullMQ connections retry for minutes; ping with a short-lived plain client
        client = create_redis(self.connection)
        try:
            return await ping(client)
        finally:
            await client.aclose()

    async def close(self) -> None:
        await self._queue.close()


def create_candidate_evaluation_queue(redis_url: str) -> CandidateEvaluationQueue:
    """Create the producer handle with the default retry and retention policy.

    Args:
        redis_url: ``redis://`` or ``rediss://`` URL

    Returns:
        CandidateEvaluationQueue owning its own connection
    """
    return CandidateEvaluationQueue(build_connection_descriptor(redis_url))


def create_candidate_evaluation_worker(
    redis_url: str,
    processor: Processor,
    options: Optional[WorkerOptions] = None,
) -> CandidateEvaluationWorker:
    """Create the consumer handle.

    Args:
        redis_url: ``redis://`` or ``rediss://`` URL
        processor: Called with each JobRecord; sync callables run in a thread
        options: Concurrency and rate-limit overrides

    Returns:
        CandidateEvaluationWorker owning its own connection
    """
    return CandidateEvaluationWorker(build_connection_descriptor(redis_url), processor, options)
