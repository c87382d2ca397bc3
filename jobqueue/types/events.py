"""
Event type definitions for the engine's logging collaborator.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from jobqueue.constants import (
    EVENT_JOB_CANCELLED,
    EVENT_JOB_CLAIMED,
    EVENT_JOB_COMPLETED,
    EVENT_JOB_DEAD,
    EVENT_JOB_ENQUEUED,
    EVENT_JOB_FAILED,
    EVENT_JOB_RECLAIMED,
    JobState,
)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class JobEvent(BaseModel):
    """
    Event emitted when a job changes state.
    Delivered to the injected EventSink.
    """

    event_type: str
    job_id: UUID
    kind: str
    state: JobState
    timestamp: datetime = Field(default_factory=_utcnow)
    data: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def job_enqueued(
        cls,
        job_id: UUID,
        kind: str,
        priority: int,
        run_after: datetime,
        dedupe_key: str | None = None,
    ) -> "JobEvent":
        """Create a job enqueued event."""
        return cls(
            event_type=EVENT_JOB_ENQUEUED,
            job_id=job_id,
            kind=kind,
            state=JobState.PENDING,
            data={
                "priority": priority,
                "run_after": run_after.isoformat(),
                "dedupe_key": dedupe_key,
            },
        )

    @classmethod
    def job_claimed(
        cls,
        job_id: UUID,
        kind: str,
        worker_id: str,
        attempt: int,
        lease_expires_at: datetime,
    ) -> "JobEvent":
        """Create a job claimed event."""
        return cls(
            event_type=EVENT_JOB_CLAIMED,
            job_id=job_id,
            kind=kind,
            state=JobState.ACTIVE,
            data={
                "worker_id": worker_id,
                "attempt": attempt,
                "lease_expires_at": lease_expires_at.isoformat(),
            },
        )

    @classmethod
    def job_completed(
        cls,
        job_id: UUID,
        kind: str,
        attempt: int,
        duration_ms: float | None = None,
    ) -> "JobEvent":
        """Create a job completed event."""
        return cls(
            event_type=EVENT_JOB_COMPLETED,
            job_id=job_id,
            kind=kind,
            state=JobState.COMPLETED,
            data={"attempt": attempt, "duration_ms": duration_ms},
        )

    @classmethod
    def job_failed(
        cls,
        job_id: UUID,
        kind: str,
        error: str,
        attempt: int,
        retry_at: datetime,
    ) -> "JobEvent":
        """Create a job failed event for an attempt that will be retried."""
        return cls(
            event_type=EVENT_JOB_FAILED,
            job_id=job_id,
            kind=kind,
            state=JobState.PENDING,
            data={
                "error": error,
                "attempt": attempt,
                "retry_at": retry_at.isoformat(),
            },
        )

    @classmethod
    def job_dead(
        cls,
        job_id: UUID,
        kind: str,
        error: str,
        attempts: int,
    ) -> "JobEvent":
        """Create a job dead-lettered event."""
        return cls(
            event_type=EVENT_JOB_DEAD,
            job_id=job_id,
            kind=kind,
            state=JobState.DEAD,
            data={"error": error, "total_attempts": attempts},
        )

    @classmethod
    def job_reclaimed(
        cls,
        job_id: UUID,
        kind: str,
        previous_owner: str | None,
        attempts: int,
        state: JobState,
    ) -> "JobEvent":
        """Create an expired-lease reclaimed event."""
        return cls(
            event_type=EVENT_JOB_RECLAIMED,
            job_id=job_id,
            kind=kind,
            state=state,
            data={"previous_owner": previous_owner, "attempts": attempts},
        )

    @classmethod
    def job_cancelled(cls, job_id: UUID, kind: str) -> "JobEvent":
        """Create a job cancelled event."""
        return cls(
            event_type=EVENT_JOB_CANCELLED,
            job_id=job_id,
            kind=kind,
            state=JobState.FAILED,
        )

    def log_fields(self) -> dict[str, Any]:
        """Flatten the event for a structured log line."""
        return {
            "job_id": str(self.job_id),
            "kind": self.kind,
            "state": self.state.value,
            **{k: v for k, v in self.data.items() if v is not None},
        }
