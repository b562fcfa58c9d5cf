"""Consumption handle for the candidate-evaluation queue.

Wraps a ``bullmq.Worker``. BullMQ owns delivery: job locks and their
renewal, stalled-job recovery, retries with backoff, retention and the
shared rate limiter all run in its Lua scripts. This module decodes each
job into a ``JobRecord``, runs the processor on it and logs the outcome.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from bullmq import Job, UnrecoverableError, Worker
from pydantic import BaseModel, ValidationError
from redis.exceptions import RedisError

from .connection import ConnectionDescriptor, create_redis
from .jobs import CANDIDATE_EVALUATION_QUEUE_NAME, JobRecord

logger = logging.getLogger("worker")

Processor = Callable[[JobRecord], Union[Any, Awaitable[Any]]]


class WorkerState(str, Enum):
    """Lifecycle of a consumption handle."""
    STARTING = "starting"
    READY = "ready"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


@dataclass(frozen=True)
class RateLimit:
    """At most ``max`` jobs started per ``duration_ms`` window, across all workers."""
    max: int
    duration_ms: int = 60_000

    def __post_init__(self) -> None:
        if self.max < 1:
            raise ValueError(f"rate limit max must be a positive integer, got {self.max}")
        if self.duration_ms < 1:
            raise ValueError(f"rate limit duration must be a positive integer, got {self.duration_ms}")


@dataclass(frozen=True)
class WorkerOptions:
    """Worker settings"""
    concurrency: int = 1
    limiter: Optional[RateLimit] = None
    lock_duration_ms: int = 30_000
    stalled_interval_ms: int = 30_000
    max_stalled_count: int = 1

    def __post_init__(self) -> None:
        if self.concurrency < 1:
            raise ValueError(f"concurrency must be a positive integer, got {self.concurrency}")
        if self.lock_duration_ms < 1:
            raise ValueError("lock_duration_ms must be positive")
        if self.stalled_interval_ms < 1:
            raise ValueError("stalled_interval_ms must be positive")
        if self.max_stalled_count < 0:
            raise ValueError("max_stalled_count cannot be negative")

    def to_worker_opts(self, descriptor: ConnectionDescriptor) -> Dict[str, Any]:
        """BullMQ worker options for a connection."""
        opts: Dict[str, Any] = {
            "connection": descriptor.to_redis_kwargs(),
            "autorun": False,
            "concurrency": self.concurrency,
            "lockDuration": self.lock_duration_ms,
            "stalledInterval": self.stalled_interval_ms,
            "maxStalledCount": self.max_stalled_count,
        }
        if self.limiter is not None:
            opts["limiter"] = {"max": self.limiter.max, "duration": self.limiter.duration_ms}
        return opts


def describe_error(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


def _is_async(processor: Processor) -> bool:
    return inspect.iscoroutinefunction(processor) or inspect.iscoroutinefunction(
        getattr(processor, "__call__", None)
    )


def _to_jsonable(result: Any) -> Any:
    if isinstance(result, BaseModel):
        return result.model_dump(mode="json")
    return result


class CandidateEvaluationWorker:
    """Runs ``processor`` for every job delivered on the queue.

    STARTING -> READY -> SHUTTING_DOWN -> STOPPED. ``run()`` returns only
    after every in-flight job has finished.
    """

    def __init__(
        self,
        connection: ConnectionDescriptor,
        processor: Processor,
        options: Optional[WorkerOptions] = None,
        queue_name: str = CANDIDATE_EVALUATION_QUEUE_NAME,
    ) -> None:
        self.options = options or WorkerOptions()
        self.state = WorkerState.STARTING
        self.connection = connection

        self._queue_name = queue_name
        self._processor = processor
        self._processor_is_async = _is_async(processor)
        self._in_flight = 0
        self._worker: Optional[Worker] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._stopped: Optional[asyncio.Event] = None

    @property
    def queue_name(self) -> str:
        return self._queue_name

    @property
    def running_job_count(self) -> int:
        return self._in_flight

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Consume jobs until ``stop_event`` is set.

        Args:
            stop_event: Cancellation token. Setting it stops new claims and
                lets in-flight jobs finish before this returns.

        Raises:
            RedisError: If Redis is unreachable at startup
            RuntimeError: If the worker was already started
        """
        if self.state is not WorkerState.STARTING:
            raise RuntimeError(f"Worker is {self.state.value}, it can only be run once")

        self._stop_event = stop_event or asyncio.Event()
        self._stopped = asyncio.Event()

        try:
            await self._check_connection()
        except (RedisError, OSError):
            self._mark_stopped()
            raise

        self._worker = Worker(
            self.queue_name,
            self._handle,
            self.options.to_worker_opts(self.connection),
        )
        self._worker.on("completed", self._on_completed)
        self._worker.on("failed", self._on_failed)
        self._worker.on("error", self._on_error)
        self._worker.on("stalled", self._on_stalled)

        self.state = WorkerState.READY
        logger.info(f"[worker] {self.queue_name} worker ready")

        runner = asyncio.create_task(self._worker.run())
        stopper = asyncio.create_task(self._stop_event.wait())
        try:
            await asyncio.wait({runner, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopper.cancel()
            self.state = WorkerState.SHUTTING_DOWN
            logger.info(f"[worker] shutting down, {self.running_job_count} jobs in flight")
            try:
                # close() waits for in-flight jobs before releasing connections
                await self._worker.close()
                await runner
            finally:
                self._mark_stopped()
                logger.info(f"[worker] {self.queue_name} worker stopped")

    async def close(self) -> None:
        """Stop claiming jobs and wait for in-flight ones to finish."""
        if self._stop_event is None:
            self._mark_stopped()
            return
        self._stop_event.set()
        await self._stopped.wait()

    async def _check_connection(self) -> None:
        client = create_redis(self.connection)
        try:
            await client.ping()
        finally:
            await client.aclose()

    def _mark_stopped(self) -> None:
        self.state = WorkerState.STOPPED
        if self._stopped is not None:
            self._stopped.set()

    async def _invoke(self, record: JobRecord) -> Any:
        if self._processor_is_async:
            return await self._processor(record)
        result = await asyncio.to_thread(self._processor, record)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _handle(self, job: Job, token: str) -> Any:
        """BullMQ processor: decode the payload and run the processor on it."""
        try:
            record = JobRecord.model_validate(job.data)
        except ValidationError as exc:
            # Retrying cannot fix the payload
            raise UnrecoverableError(f"INVALID_JOB_PAYLOAD: {exc}") from exc

        logger.debug(f"[worker] processing job id={job.id} attempt={job.attemptsMade + 1}")
        self._in_flight += 1
        try:
            result = await self._invoke(record)
        finally:
            self._in_flight -= 1
        return _to_jsonable(result)

    def _on_completed(self, job: Job, result: Any) -> None:
        logger.info(f"[worker] completed job id={job.id}")

    def _on_failed(self, job: Job, exc: Exception) -> None:
        attempts = job.opts.get("attempts", 1)
        if job.finishedOn or isinstance(exc, UnrecoverableError) or job.attemptsMade >= attempts:
            logger.error(
                f"[worker] failed job id={job.id} after {job.attemptsMade} attempts: "
                f"{describe_error(exc)}",
                exc_info=exc,
            )
            return
        logger.warning(
            f"[worker] job id={job.id} failed attempt {job.attemptsMade}/{attempts}, "
            f"retrying in {job.delay}ms: {describe_error(exc)}"
        )

    def _on_stalled(self, job_id: str) -> None:
        logger.warning(f"[worker] job id={job_id} stalled, lock expired before it finished")

    def _on_error(self, exc: Exception, job: Optional[Job] = None) -> None:
        suffix = f" (job id={job.id})" if job is not None else ""
        logger.error(f"[worker] queue error{suffix}: {describe_error(exc)}")
