"""
Job repository for database operations.
Implements the core data access patterns for job management.
"""

import logging
from collections.abc import Sequence
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.constants import (
    CANCELLED_ERROR,
    LIVE_STATES,
    MAX_ERROR_LENGTH,
    JobState,
    PayloadEncoding,
)
from jobqueue.db.models import LIVE_STATES_CLAUSE, Job, JobSchedule, utcnow
from jobqueue.errors import InvalidStateError

logger = logging.getLogger(__name__)

# Refresh identity-mapped rows from RETURNING instead of keeping stale copies
_RETURNING_OPTIONS = {"synchronize_session": False, "populate_existing": True}

# Dedupe insert retries when the conflicting job finishes between insert and lookup
_DEDUPE_INSERT_ROUNDS = 3


def claim_order_key(job: Job) -> tuple:
    """Sort key matching the claim query's ORDER BY."""
    return (-job.priority, job.run_after, job.created_at)


def truncate_error(error: str) -> str:
    if len(error) <= MAX_ERROR_LENGTH:
        return error
    return error[: MAX_ERROR_LENGTH - 3] + "..."


class JobRepository:
    """
    Repository for job database operations.

    Implements atomic operations for:
    - Job submission with dedupe keys
    - Claims with FOR UPDATE SKIP LOCKED (a single conditional UPDATE)
    - Lease-fenced state transitions
    - Expired lease discovery and reclaim
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize the repository with a database session.

        Args:
            session: The async database session.
        """
        self._session = session
        self._dialect = session.bind.dialect.name if session.bind is not None else ""

    async def create_job(
        self,
        kind: str,
        payload: Any,
        priority: int = 0,
        run_after: datetime | None = None,
        max_attempts: int = 3,
        dedupe_key: str | None = None,
        payload_encoding: PayloadEncoding = PayloadEncoding.JSON,
    ) -> tuple[Job, bool]:
        """
        Create a new pending job.

        With a dedupe_key, uses INSERT ... ON CONFLICT DO NOTHING against the
        partial unique index over live states, so concurrent producers cannot
        both insert.

        Args:
            kind: Handler kind.
            payload: JSON-ready payload.
            priority: Higher is claimed first.
            run_after: Earliest claim time. Defaults to now.
            max_attempts: Dispatch attempts before dead-lettering.
            dedupe_key: Optional idempotency key.
            payload_encoding: How payload maps back to the handler value.

        Returns:
            Tuple of (Job, created) where created is False for a dedupe hit.
        """
        now = utcnow()
        values = {
            "id": uuid4(),
            "kind": kind,
            "payload": payload,
            "payload_encoding": PayloadEncoding(payload_encoding).value,
            "state": JobState.PENDING,
            "priority": priority,
            "run_after": run_after or now,
            "attempts": 0,
            "max_attempts": max_attempts,
            "dedupe_key": dedupe_key,
            "created_at": now,
            "updated_at": now,
        }

        if dedupe_key is None:
            job = Job(**values)
            self._session.add(job)
            await self._session.flush()
            return job, True

        for _ in range(_DEDUPE_INSERT_ROUNDS):
            existing = await self.get_live_job_by_dedupe_key(dedupe_key)
            if existing is not None:
                logger.info(
                    "Returned existing job (dedupe)",
                    extra={"job_id": str(existing.id), "dedupe_key": dedupe_key},
                )
                return existing, False

            job = await self._insert_unless_live_duplicate(values)
            if job is not None:
                return job, True

        raise RuntimeError(f"Could not resolve dedupe conflict for key {dedupe_key!r}")

    async def _insert_unless_live_duplicate(self, values: dict[str, Any]) -> Job | None:
        if self._dialect in ("postgresql", "sqlite"):
            insert = postgresql.insert if self._dialect == "postgresql" else sqlite.insert
            stmt = (
                insert(Job)
                .values(**values)
                .on_conflict_do_nothing(
                    index_elements=["dedupe_key"],
                    index_where=LIVE_STATES_CLAUSE,
                )
                .returning(Job)
                .execution_options(populate_existing=True)
            )
            result = await self._session.execute(stmt)
            return result.scalar_one_or_none()

        # Other dialects: rely on the unique index raising
        try:
            async with self._session.begin_nested():
                job = Job(**values)
                self._session.add(job)
            return job
        except IntegrityError:
            return None

    async def get_job(self, job_id: UUID) -> Job | None:
        """
        Get a job by ID.

        Args:
            job_id: The job UUID.

        Returns:
            The Job or None if not found.
        """
        stmt = select(Job).where(Job.id == job_id).execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_live_job_by_dedupe_key(self, dedupe_key: str) -> Job | None:
        """Get the pending or active job holding a dedupe key."""
        stmt = select(Job).where(
            and_(
                Job.dedupe_key == dedupe_key,
                Job.state.in_(LIVE_STATES),
            )
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_jobs(
        self,
        state: JobState | None = None,
        kind: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[Sequence[Job], int]:
        """
        List jobs with optional filtering, newest first.

        Returns:
            Tuple of (jobs, total_count).
        """
        filters = []
        if state is not None:
            filters.append(Job.state == state)
        if kind is not None:
            filters.append(Job.kind == kind)

        count_stmt = select(func.count()).select_from(Job)
        stmt = select(Job).order_by(Job.created_at.desc()).limit(limit).offset(offset)
        if filters:
            count_stmt = count_stmt.where(and_(*filters))
            stmt = stmt.where(and_(*filters))

        total = (await self._session.execute(count_stmt)).scalar() or 0
        jobs = (await self._session.execute(stmt)).scalars().all()
        return jobs, total

    async def claim_jobs(
        self,
        worker_id: str,
        batch_size: int,
        lease_duration: timedelta,
        now: datetime | None = None,
    ) -> list[Job]:
        """
        Claim up to batch_size eligible jobs in one atomic statement.

        The inner SELECT takes row locks with SKIP LOCKED on PostgreSQL, and the
        outer UPDATE re-checks state = pending, so concurrent claimers never
        receive the same job. Each claim consumes one attempt.

        Args:
            worker_id: The claiming worker.
            batch_size: Maximum number of jobs.
            lease_duration: Lease length.
            now: Clock override.

        Returns:
            Claimed jobs in claim order.
        """
        if batch_size < 1:
            return []

        now = now or utcnow()
        candidates = (
            select(Job.id)
            .where(
                and_(
                    Job.state == JobState.PENDING,
                    Job.run_after <= now,
                )
            )
            .order_by(Job.priority.desc(), Job.run_after.asc(), Job.created_at.asc())
            .limit(batch_size)
            .with_for_update(skip_locked=True)
        )
        stmt = (
            update(Job)
            .where(
                and_(
                    Job.id.in_(candidates.scalar_subquery()),
                    Job.state == JobState.PENDING,
                )
            )
            .values(
                state=JobState.ACTIVE,
                lease_owner=worker_id,
                lease_expires_at=now + lease_duration,
                attempts=Job.attempts + 1,
                updated_at=now,
            )
            .returning(Job)
            .execution_options(**_RETURNING_OPTIONS)
        )

        result = await self._session.execute(stmt)
        jobs = sorted(result.scalars().all(), key=claim_order_key)

        if jobs:
            logger.debug(
                "Claimed jobs",
                extra={"worker_id": worker_id, "job_count": len(jobs)},
            )
        return jobs

    async def extend_lease(
        self,
        job_id: UUID,
        worker_id: str,
        extension: timedelta,
        now: datetime | None = None,
    ) -> Job | None:
        """
        Extend a lease that is still valid and owned by worker_id.

        Returns:
            Updated Job, or None if the lease was lost.
        """
        now = now or utcnow()
        stmt = (
            update(Job)
            .where(
                and_(
                    Job.id == job_id,
                    Job.state == JobState.ACTIVE,
                    Job.lease_owner == worker_id,
                    Job.lease_expires_at > now,
                )
            )
            .values(lease_expires_at=now + extension, updated_at=now)
            .returning(Job)
            .execution_options(**_RETURNING_OPTIONS)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def complete_job(
        self,
        job_id: UUID,
        worker_id: str,
        attempts: int,
        result: dict | None = None,
    ) -> Job | None:
        """
        Mark an active job as completed.

        The update is fenced on (lease_owner, attempts) so a worker whose lease
        was reclaimed cannot complete a later attempt.

        Returns:
            Updated Job or None if the lease was lost.
        """
        now = utcnow()
        stmt = (
            update(Job)
            .where(self._lease_fence(job_id, worker_id, attempts))
            .values(
                state=JobState.COMPLETED,
                completed_at=now,
                updated_at=now,
                lease_owner=None,
                lease_expires_at=None,
                result=result,
            )
            .returning(Job)
            .execution_options(**_RETURNING_OPTIONS)
        )
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def fail_job(
        self,
        job_id: UUID,
        worker_id: str,
        attempts: int,
        error: str,
        retry_at: datetime | None,
    ) -> Job | None:
        """
        Record a failed attempt.

        Args:
            retry_at: Reschedule time, or None to dead-letter.

        Returns:
            Updated Job or None if the lease was lost.
        """
        now = utcnow()
        values: dict[str, Any] = {
            "last_error": truncate_error(error),
            "updated_at": now,
            "lease_owner": None,
            "lease_expires_at": None,
        }
        if retry_at is None:
            values.update(state=JobState.DEAD, completed_at=now)
        else:
            values.update(state=JobState.PENDING, run_after=retry_at)

        stmt = (
            update(Job)
            .where(self._lease_fence(job_id, worker_id, attempts))
            .values(**values)
            .returning(Job)
            .execution_options(**_RETURNING_OPTIONS)
        )
        return (await self._session.execute(stmt)).scalar_one_or_none()

    def _lease_fence(self, job_id: UUID, worker_id: str, attempts: int):
        return and_(
            Job.id == job_id,
            Job.state == JobState.ACTIVE,
            Job.lease_owner == worker_id,
            Job.attempts == attempts,
        )

    async def find_expired_leases(
        self,
        now: datetime | None = None,
        limit: int = 100,
    ) -> Sequence[Job]:
        """
        Find active jobs whose lease has expired.

        Rows are locked with SKIP LOCKED so parallel reapers split the work.
        """
        now = now or utcnow()
        stmt = (
            select(Job)
            .where(
                and_(
                    Job.state == JobState.ACTIVE,
                    Job.lease_expires_at < now,
                )
            )
            .order_by(Job.lease_expires_at.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def reclaim_job(
        self,
        job: Job,
        retry_at: datetime | None,
        now: datetime | None = None,
    ) -> Job | None:
        """
        Return an expired job to pending (retry_at set) or dead-letter it.

        The attempt was already counted at claim time. Conditional on the lease
        still being expired and unchanged since it was read.
        """
        now = now or utcnow()
        error = f"lease expired (owner {job.lease_owner})"
        values: dict[str, Any] = {
            "last_error": truncate_error(error),
            "updated_at": now,
            "lease_owner": None,
            "lease_expires_at": None,
        }
        if retry_at is None:
            values.update(state=JobState.DEAD, completed_at=now)
        else:
            values.update(state=JobState.PENDING, run_after=retry_at)

        stmt = (
            update(Job)
            .where(
                and_(
                    Job.id == job.id,
                    Job.state == JobState.ACTIVE,
                    Job.lease_expires_at < now,
                    Job.attempts == job.attempts,
                )
            )
            .values(**values)
            .returning(Job)
            .execution_options(**_RETURNING_OPTIONS)
        )
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def cancel_job(self, job_id: UUID) -> Job | None:
        """
        Cancel a pending job.

        Returns:
            The cancelled Job, or None when it does not exist.

        Raises:
            InvalidStateError: If the job is no longer pending.
        """
        now = utcnow()
        stmt = (
            update(Job)
            .where(and_(Job.id == job_id, Job.state == JobState.PENDING))
            .values(
                state=JobState.FAILED,
                last_error=CANCELLED_ERROR,
                completed_at=now,
                updated_at=now,
            )
            .returning(Job)
            .execution_options(**_RETURNING_OPTIONS)
        )
        job = (await self._session.execute(stmt)).scalar_one_or_none()
        if job is not None:
            return job

        existing = await self.get_job(job_id)
        if existing is None:
            return None
        raise InvalidStateError(job_id, existing.state.value, "cancel")

    async def requeue_dead(
        self,
        job_id: UUID,
        reset_attempts: bool = True,
    ) -> Job | None:
        """
        Operator action: return a dead-lettered job to pending.

        Without reset_attempts the job keeps its attempt count, so only a job
        that still has attempts left (e.g. one dead-lettered by a permanent
        error) can be requeued that way.

        Returns:
            The requeued Job, or None when it does not exist.

        Raises:
            InvalidStateError: If the job is not dead, has no attempts left
                and reset_attempts is False, or its dedupe_key is held by
                another live job.
        """
        now = utcnow()
        values: dict[str, Any] = {
            "state": JobState.PENDING,
            "run_after": now,
            "updated_at": now,
            "completed_at": None,
            "last_error": None,
        }
        conditions = [Job.id == job_id, Job.state == JobState.DEAD]
        if reset_attempts:
            values["attempts"] = 0
        else:
            conditions.append(Job.attempts < Job.max_attempts)

        stmt = (
            update(Job)
            .where(and_(*conditions))
            .values(**values)
            .returning(Job)
            .execution_options(**_RETURNING_OPTIONS)
        )
        try:
            job = (await self._session.execute(stmt)).scalar_one_or_none()
        except IntegrityError as exc:
            raise InvalidStateError(
                job_id, JobState.DEAD.value, "requeue", reason="dedupe_key is held by a live job"
            ) from exc

        if job is not None:
            logger.info("Job requeued from dead-letter", extra={"job_id": str(job_id)})
            return job

        existing = await self.get_job(job_id)
        if existing is None:
            return None
        if existing.state == JobState.DEAD:
            raise InvalidStateError(
                job_id,
                existing.state.value,
                "requeue",
                reason="no attempts left; reset attempts to requeue",
            )
        raise InvalidStateError(job_id, existing.state.value, "requeue")

    async def get_queue_depth(self, now: datetime | None = None) -> int:
        """Number of pending jobs eligible to run now."""
        now = now or utcnow()
        stmt = select(func.count()).select_from(Job).where(
            and_(Job.state == JobState.PENDING, Job.run_after <= now)
        )
        return (await self._session.execute(stmt)).scalar() or 0

    async def get_job_stats(self) -> dict[str, int]:
        """
        Get job counts by state.

        Returns:
            Dictionary of state -> count, including zero counts.
        """
        stmt = select(Job.state, func.count()).group_by(Job.state)
        result = await self._session.execute(stmt)
        counts = {state.value: 0 for state in JobState}
        for state, count in result.all():
            counts[JobState(state).value] = count
        return counts


class ScheduleRepository:
    """
    Data access for recurring job schedules.

    Runs inside the caller's session so a sweep can advance a schedule and
    create its job in one transaction.
    """

    def __init__(self, session: AsyncSession):
        self._session = session
        self._dialect = session.bind.dialect.name if session.bind is not None else ""

    async def upsert_schedule(
        self,
        name: str,
        kind: str,
        cron: str,
        payload: Any,
        payload_encoding: PayloadEncoding = PayloadEncoding.JSON,
        priority: int = 0,
        max_attempts: int = 3,
    ) -> JobSchedule:
        """
        Create a schedule, or replace the definition of an existing one.

        An existing schedule keeps its ``last_slot_at``, so redefining it
        never re-fires a slot that was already enqueued.
        """
        now = utcnow()
        definition = {
            "kind": kind,
            "cron": cron,
            "payload": payload,
            "payload_encoding": PayloadEncoding(payload_encoding).value,
            "priority": priority,
            "max_attempts": max_attempts,
            "updated_at": now,
        }

        if self._dialect in ("postgresql", "sqlite"):
            insert = postgresql.insert if self._dialect == "postgresql" else sqlite.insert
            stmt = (
                insert(JobSchedule)
                .values(name=name, created_at=now, **definition)
                .on_conflict_do_update(index_elements=["name"], set_=definition)
                .returning(JobSchedule)
                .execution_options(populate_existing=True)
            )
            return (await self._session.execute(stmt)).scalar_one()

        schedule = await self.get_schedule(name)
        if schedule is None:
            schedule = JobSchedule(name=name, created_at=now, **definition)
            self._session.add(schedule)
        else:
            for key, value in definition.items():
                setattr(schedule, key, value)
        await self._session.flush()
        return schedule

    async def get_schedule(self, name: str) -> JobSchedule | None:
        stmt = (
            select(JobSchedule)
            .where(JobSchedule.name == name)
            .execution_options(populate_existing=True)
        )
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def list_schedules(self) -> Sequence[JobSchedule]:
        stmt = select(JobSchedule).order_by(JobSchedule.name)
        return (await self._session.execute(stmt)).scalars().all()

    async def delete_schedule(self, name: str) -> bool:
        stmt = delete(JobSchedule).where(JobSchedule.name == name)
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def advance_schedule(self, name: str, slot: datetime) -> bool:
        """
        Claim a slot for firing.

        Moves ``last_slot_at`` forward to slot only if it is still behind it.
        The row lock taken by the update makes concurrent sweepers of the same
        slot serialize, and all but the first see no matching row.

        Returns:
            True if this caller owns the slot and must enqueue its job.
        """
        stmt = (
            update(JobSchedule)
            .where(
                and_(
                    JobSchedule.name == name,
                    or_(JobSchedule.last_slot_at.is_(None), JobSchedule.last_slot_at < slot),
                )
            )
            .values(last_slot_at=slot, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1
