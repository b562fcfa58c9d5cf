"""Job models for queue-based processing.

Defines the candidate-evaluation payload, the per-job delivery options
handed to BullMQ and a read-only snapshot of a queued job.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Literal, Optional

from bullmq import Job
from pydantic import BaseModel, ConfigDict, Field, field_validator

CANDIDATE_EVALUATION_QUEUE_NAME = "candidate-evaluation"
CANDIDATE_EVALUATION_JOB_NAME = "evaluate-candidate"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class JobState(str, Enum):
    """States reported by ``Queue.getJobState``."""
    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"
    PRIORITIZED = "prioritized"
    WAITING_CHILDREN = "waiting-children"
    COMPLETED = "completed"
    FAILED = "failed"
    UNKNOWN = "unknown"


class JobRecord(BaseModel):
    """Job payload for one candidate evaluation.

    Immutable once built. Serialized with the camelCase keys the API
    producer writes (``applicationId`` etc.). Keys this version does not
    know about are dropped, since producers may attach their own.
    """
    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    application_id: str = Field(..., alias="applicationId")
    organization_id: str = Field(..., alias="organizationId")
    job_id: str = Field(..., alias="jobId")
    enqueued_at: str = Field(default_factory=utc_now_iso, alias="enqueuedAt")

    @field_validator("application_id", "organization_id", "job_id", mode="before")
    @classmethod
    def _validate_identifier(cls, value: Any) -> str:
        if value is None:
            raise ValueError("Value cannot be null")
        if not isinstance(value, str):
            raise ValueError("Value must be a string")
        if not value.strip():
            raise ValueError("Value cannot be empty")
        return value

    @field_validator("enqueued_at", mode="before")
    @classmethod
    def _validate_timestamp(cls, value: Any) -> str:
        if isinstance(value, datetime):
            return value.isoformat()
        if not isinstance(value, str):
            raise ValueError("enqueuedAt must be an ISO-8601 string")
        datetime.fromisoformat(value)
        return value

    def to_payload(self) -> Dict[str, str]:
        """Wire form of the record."""
        return self.model_dump(by_alias=True)


class Backoff(BaseModel):
    """Delay policy between delivery attempts."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    type: Literal["exponential", "fixed"] = "exponential"
    delay_ms: int = Field(default=5_000, ge=0, alias="delay")

    def delay_for(self, attempts_made: int) -> int:
        """Delay before the next attempt, after ``attempts_made`` failures."""
        if self.type == "fixed":
            return self.delay_ms
        return self.delay_ms * 2 ** max(attempts_made - 1, 0)


class JobOptions(BaseModel):
    """Per-job delivery options.

    Defaults give each job 3 attempts with exponential backoff starting at
    5 seconds and keep the newest 1000 completed and 1000 failed jobs.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    attempts: int = Field(default=3, ge=1)
    backoff: Backoff = Field(default_factory=Backoff)
    remove_on_complete: int = Field(default=1000, ge=0, alias="removeOnComplete")
    remove_on_fail: int = Field(default=1000, ge=0, alias="removeOnFail")

    def to_job_opts(self) -> Dict[str, Any]:
        """BullMQ job options (``attempts``, ``backoff``, ``removeOnComplete``...)."""
        return self.model_dump(by_alias=True)


class QueuedJob(BaseModel):
    """Snapshot of a job as BullMQ stores it."""
    id: str
    name: str
    state: JobState
    data: Dict[str, Any]
    attempts_made: int = 0
    failed_reason: Optional[str] = None
    return_value: Optional[Any] = None
    timestamp: int = 0
    processed_on: Optional[int] = None
    finished_on: Optional[int] = None

    @property
    def record(self) -> JobRecord:
        return JobRecord.model_validate(self.data)

    @classmethod
    def from_job(cls, job: Job, state: str) -> "QueuedJob":
        try:
            job_state = JobState(state)
        except ValueError:
            job_state = JobState.UNKNOWN
        return cls(
            id=str(job.id),
            name=job.name or CANDIDATE_EVALUATION_JOB_NAME,
            state=job_state,
            data=job.data or {},
            attempts_made=job.attemptsMade,
            failed_reason=job.failedReason,
            return_value=job.returnvalue,
            timestamp=job.timestamp,
            processed_on=job.processedOn or None,
            finished_on=job.finishedOn or None,
        )
