"""Tests for the submission handle.

Test items:
    - enqueue stores a waiting job with the default delivery policy
    - deterministic ids deduplicate; forced ids do not
    - bulk enqueue validates every record before sending
    - lookups of unknown ids and job counts
    - factory binds the queue name and connection
"""

import itertools

import pytest
from pydantic import ValidationError

from candidate_pipeline.queue import gateway
from candidate_pipeline.queue.connection import build_connection_descriptor
from candidate_pipeline.queue.gateway import (
    CandidateEvaluationQueue,
    create_candidate_evaluation_queue,
    evaluation_job_id,
)
from candidate_pipeline.queue.jobs import (
    CANDIDATE_EVALUATION_JOB_NAME,
    Backoff,
    JobOptions,
    JobRecord,
    JobState,
)


def make_record(application_id="app-1"):
    return JobRecord(application_id=application_id, organization_id="org-1", job_id="job-1")


class RecordingQueue:
    """Stands in for ``bullmq.Queue`` where no Redis round trip is wanted."""

    def __init__(self):
        self.bulk_calls = []

    async def addBulk(self, entries):
        self.bulk_calls.append(entries)
        return []


def offline_queue():
    return CandidateEvaluationQueue(build_connection_descriptor("redis://localhost:6379/0"))


# ============================================================
# Ids and options
# ============================================================

def test_evaluation_job_id():
    assert evaluation_job_id("abc") == "eval-abc"
    assert evaluation_job_id("abc", force=True).startswith("eval-abc-")


async def test_default_job_options_handed_to_bullmq():
    q = offline_queue()
    try:
        assert q._queue.jobsOpts == {
            "attempts": 3,
            "backoff": {"type": "exponential", "delay": 5000},
            "removeOnComplete": 1000,
            "removeOnFail": 1000,
        }
    finally:
        await q.close()


async def test_factory_binds_queue_name():
    q = create_candidate_evaluation_queue("redis://localhost:6379/3")
    try:
        assert q.name == "candidate-evaluation"
        assert q.connection.db == 3
        assert q.connection.host == "localhost"
    finally:
        await q.close()


async def test_bulk_validates_before_sending():
    q = offline_queue()
    recorder = RecordingQueue()
    q._queue = recorder

    with pytest.raises(ValidationError):
        await q.enqueue_bulk([
            make_record("a"),
            {"applicationId": "", "organizationId": "org-1", "jobId": "job-1"},
        ])

    assert recorder.bulk_calls == []


async def test_bulk_with_no_records_sends_nothing():
    q = offline_queue()
    recorder = RecordingQueue()
    q._queue = recorder

    assert await q.enqueue_bulk([]) == []
    assert recorder.bulk_calls == []


# ============================================================
# Against Redis
# ============================================================

async def test_enqueue_stores_waiting_job(queue):
    job_id = await queue.enqueue(make_record())

    job = await queue.get_job(job_id)
    assert job.name == CANDIDATE_EVALUATION_JOB_NAME
    assert job.state is JobState.WAITING
    assert job.record.application_id == "app-1"
    assert set(job.data) == {"applicationId", "organizationId", "jobId", "enqueuedAt"}
    assert job.timestamp > 0
    assert (await queue.get_job_counts())["waiting"] == 1


async def test_enqueue_accepts_wire_payload(queue):
    job_id = await queue.enqueue(
        {"applicationId": "app-9", "organizationId": "org-1", "jobId": "job-1", "source": "api"},
        job_id="custom",
    )

    assert job_id == "custom"
    job = await queue.get_job("custom")
    assert job.record.application_id == "app-9"
    assert "source" not in job.data


async def test_duplicate_job_id_is_not_added_twice(queue):
    first = await queue.enqueue_application("app-1", "org-1", "job-1")
    second = await queue.enqueue_application("app-1", "org-1", "job-1")

    assert first == second == "eval-app-1"
    assert (await queue.get_job_counts())["waiting"] == 1


async def test_forced_ids_are_unique(queue, monkeypatch):
    clock = itertools.count(1700000000)
    monkeypatch.setattr(gateway.time, "time", lambda: next(clock))

    first = await queue.enqueue_application("app-1", "org-1", "job-1", force=True)
    second = await queue.enqueue_application("app-1", "org-1", "job-1", force=True)

    assert first.startswith("eval-app-1-")
    assert second.startswith("eval-app-1-")
    assert first != second
    assert (await queue.get_job_counts())["waiting"] == 2


async def test_enqueue_bulk(queue):
    ids = await queue.enqueue_bulk([
        make_record("a"),
        {"applicationId": "b", "organizationId": "org-1", "jobId": "job-2"},
    ])

    assert ids == ["eval-a", "eval-b"]
    assert (await queue.get_job_counts())["waiting"] == 2
    assert (await queue.get_job("eval-b")).record.job_id == "job-2"


async def test_per_job_options_override_defaults(connection, queue_name):
    q = CandidateEvaluationQueue(connection, queue_name=queue_name)
    options = JobOptions(attempts=1, backoff=Backoff(type="fixed", delay=100))
    try:
        job_id = await q.enqueue(make_record(), options=options)
        job = await q._queue.getJob(job_id)
    finally:
        await q.close()

    assert job.opts["attempts"] == 1
    assert job.opts["backoff"] == {"type": "fixed", "delay": 100}


async def test_missing_job(queue):
    assert await queue.get_job("nope") is None


async def test_job_counts_start_empty(queue):
    counts = await queue.get_job_counts()

    assert counts["waiting"] == 0
    assert counts["completed"] == 0
    assert counts["failed"] == 0


async def test_is_available(queue):
    assert await queue.is_available() is True


async def test_unreachable_redis_is_unavailable():
    q = CandidateEvaluationQueue(build_connection_descriptor("redis://127.0.0.1:1/0"))
    try:
        assert await q.is_available() is False
    finally:
        await q.close()
