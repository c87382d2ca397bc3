"""
SQLAlchemy database models.
Defines the jobs and job_schedules tables.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from jobqueue.constants import (
    DEFAULT_MAX_ATTEMPTS,
    LIVE_STATES,
    MAX_DEDUPE_KEY_LENGTH,
    MAX_KIND_LENGTH,
    MAX_SCHEDULE_NAME_LENGTH,
    JobState,
    PayloadEncoding,
)


def utcnow() -> datetime:
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware UTC timestamp on every backend.

    SQLite has no timezone support and hands back naive values; those are
    stored and read as UTC.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        value = value.astimezone(UTC)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


JSONType = JSON().with_variant(JSONB(), "postgresql")

LIVE_STATES_CLAUSE = text(
    "state IN ({})".format(", ".join(f"'{s.value}'" for s in LIVE_STATES))
)
ACTIVE_STATE_CLAUSE = text(f"state = '{JobState.ACTIVE.value}'")


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class Job(Base):
    """
    Job model representing a unit of work in the queue.

    This is the authoritative source of truth for job state.
    All job lifecycle transitions are managed through this table.

    Key constraints:
    - dedupe_key is unique among pending/active jobs (partial unique index)
    - state transitions follow the JobState state machine
    - lease_owner and lease_expires_at are set only while state is active
    """

    __tablename__ = "jobs"

    # Primary key
    id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )

    kind: Mapped[str] = mapped_column(String(MAX_KIND_LENGTH), nullable=False)

    # Job payload, stored as produced by types.job.encode_payload
    payload: Mapped[Any] = mapped_column(JSONType, nullable=True)
    payload_encoding: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=PayloadEncoding.JSON.value,
        server_default=PayloadEncoding.JSON.value,
    )

    state: Mapped[JobState] = mapped_column(
        Enum(
            JobState,
            name="job_state",
            native_enum=True,
            create_constraint=True,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        default=JobState.PENDING,
    )
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Scheduling
    run_after: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        default=utcnow,
    )

    # Retry tracking
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=DEFAULT_MAX_ATTEMPTS,
    )

    # Lease management
    lease_owner: Mapped[str | None] = mapped_column(String(255), nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )

    # Idempotent enqueue
    dedupe_key: Mapped[str | None] = mapped_column(
        String(MAX_DEDUPE_KEY_LENGTH),
        nullable=True,
    )

    # Error tracking
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Result storage (optional)
    result: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )

    __table_args__ = (
        # Claim query: state = pending AND run_after <= now ORDER BY priority, run_after, created_at
        Index("ix_jobs_claim", "state", "run_after", "priority", "created_at"),
        Index("ix_jobs_dedupe_key", "dedupe_key"),
        # At most one live job per dedupe key
        Index(
            "uq_jobs_live_dedupe_key",
            "dedupe_key",
            unique=True,
            postgresql_where=LIVE_STATES_CLAUSE,
            sqlite_where=LIVE_STATES_CLAUSE,
        ),
        # Reclaim sweep
        Index(
            "ix_jobs_lease_expiry",
            "lease_expires_at",
            postgresql_where=ACTIVE_STATE_CLAUSE,
            sqlite_where=ACTIVE_STATE_CLAUSE,
        ),
    )

    @property
    def is_retryable(self) -> bool:
        """Check if another attempt is allowed."""
        return self.attempts < self.max_attempts

    @property
    def is_terminal(self) -> bool:
        return self.state in (JobState.COMPLETED, JobState.FAILED, JobState.DEAD)

    def lease_valid(self, now: datetime | None = None) -> bool:
        """Check if the job holds a non-expired lease."""
        if self.state != JobState.ACTIVE or self.lease_expires_at is None:
            return False
        return self.lease_expires_at > (now or utcnow())

    def __repr__(self) -> str:
        return (
            f"Job(id={self.id}, kind={self.kind}, "
            f"state={self.state}, attempts={self.attempts}/{self.max_attempts})"
        )


class JobSchedule(Base):
    """
    A recurring job: enqueues one job of ``kind`` per cron slot.

    ``last_slot_at`` is the latest slot already enqueued. Sweepers advance it
    with a conditional update, so each slot fires at most once however many
    reapers run.
    """

    __tablename__ = "job_schedules"

    name: Mapped[str] = mapped_column(String(MAX_SCHEDULE_NAME_LENGTH), primary_key=True)
    kind: Mapped[str] = mapped_column(String(MAX_KIND_LENGTH), nullable=False)
    cron: Mapped[str] = mapped_column(String(255), nullable=False)

    payload: Mapped[Any] = mapped_column(JSONType, nullable=True)
    payload_encoding: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=PayloadEncoding.JSON.value,
        server_default=PayloadEncoding.JSON.value,
    )
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=DEFAULT_MAX_ATTEMPTS,
    )

    last_slot_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    def __repr__(self) -> str:
        return f"JobSchedule(name={self.name}, kind={self.kind}, cron={self.cron!r})"
