"""Queue module for BullMQ-based candidate evaluation jobs.

Provides the producer handle (``CandidateEvaluationQueue``) used by the API
and the consumer handle (``CandidateEvaluationWorker``) run by the worker
process, both bound to the ``candidate-evaluation`` queue.
"""
from .connection import ConnectionDescriptor, build_connection_descriptor, create_redis, ping
from .consumer import CandidateEvaluationWorker, RateLimit, WorkerOptions, WorkerState
from .gateway import (
    CandidateEvaluationQueue,
    create_candidate_evaluation_queue,
    create_candidate_evaluation_worker,
    evaluation_job_id,
)
from .jobs import (
    CANDIDATE_EVALUATION_QUEUE_NAME,
    Backoff,
    JobOptions,
    JobRecord,
    JobState,
    QueuedJob,
)

__all__ = [
    "CANDIDATE_EVALUATION_QUEUE_NAME",
    "Backoff",
    "CandidateEvaluationQueue",
    "CandidateEvaluationWorker",
    "ConnectionDescriptor",
    "JobOptions",
    "JobRecord",
    "JobState",
    "QueuedJob",
    "RateLimit",
    "WorkerOptions",
    "WorkerState",
    "build_connection_descriptor",
    "create_candidate_evaluation_queue",
    "create_candidate_evaluation_worker",
    "create_redis",
    "evaluation_job_id",
    "ping",
]
