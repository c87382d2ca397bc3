"""
Lease manager.

Turns claims into time-bounded exclusive leases, extends them on heartbeat,
commits attempt outcomes through one transition primitive, and reclaims
leases whose workers went away.
"""

import logging
from datetime import timedelta
from uuid import UUID

from jobqueue.constants import SPAN_CLAIM_JOBS, SPAN_RECLAIM_LEASES, JobState
from jobqueue.context import QueueContext
from jobqueue.db.models import Job, utcnow
from jobqueue.db.repository import JobRepository
from jobqueue.errors import LeaseLostError
from jobqueue.types.events import JobEvent

logger = logging.getLogger(__name__)


class LeaseManager:
    """
    Lease operations for one worker identity.

    All coordination happens in the Store: claim is a single conditional
    UPDATE, and every later transition is fenced on the lease owner and the
    attempt number recorded at claim time.
    """

    def __init__(self, ctx: QueueContext, worker_id: str | None = None):
        self._ctx = ctx
        self.worker_id = worker_id or ctx.settings.worker_id
        self._policy = ctx.retry_policy

    @property
    def default_lease_duration(self) -> timedelta:
        return timedelta(seconds=self._ctx.settings.worker_lease_duration_seconds)

    async def claim(
        self,
        batch_size: int,
        lease_duration: timedelta | float | None = None,
    ) -> list[Job]:
        """
        Atomically claim up to batch_size eligible jobs.

        Args:
            batch_size: Maximum number of jobs.
            lease_duration: Lease length (timedelta or seconds).

        Returns:
            Claimed jobs, ordered by priority desc, run_after asc, created_at asc.

        Raises:
            StoreUnavailableError: Nothing was claimed.
        """
        if batch_size < 1:
            return []
        duration = self._as_timedelta(lease_duration) or self.default_lease_duration

        with self._ctx.tracer.start_as_current_span(SPAN_CLAIM_JOBS) as span:
            span.set_attribute("worker.id", self.worker_id)
            span.set_attribute("claim.batch_size", batch_size)
            async with self._ctx.database.session() as session:
                jobs = await JobRepository(session).claim_jobs(
                    worker_id=self.worker_id,
                    batch_size=batch_size,
                    lease_duration=duration,
                )
            span.set_attribute("claim.count", len(jobs))

        if jobs:
            self._ctx.metrics.record_jobs_claimed(self.worker_id, len(jobs))
        for job in jobs:
            self._ctx.events.emit(
                JobEvent.job_claimed(
                    job_id=job.id,
                    kind=job.kind,
                    worker_id=self.worker_id,
                    attempt=job.attempts,
                    lease_expires_at=job.lease_expires_at,
                )
            )
        return jobs

    async def heartbeat(
        self,
        job_id: UUID,
        extension: timedelta | float | None = None,
    ) -> bool:
        """
        Extend the lease on a job this worker holds.

        A lost lease is logged and reported as False, never raised: another
        worker may own the job by now.

        Returns:
            True if the lease was extended.
        """
        duration = self._as_timedelta(extension) or self.default_lease_duration
        async with self._ctx.database.session() as session:
            job = await JobRepository(session).extend_lease(
                job_id=job_id,
                worker_id=self.worker_id,
                extension=duration,
            )

        if job is None:
            self._lease_lost(LeaseLostError(job_id, self.worker_id, "heartbeat"))
            return False

        logger.debug(
            "Extended lease",
            extra={"job_id": str(job_id), "lease_expires_at": job.lease_expires_at.isoformat()},
        )
        return True

    async def complete(
        self,
        job: Job,
        output: dict | None = None,
        duration_seconds: float | None = None,
    ) -> Job | None:
        """
        Mark a claimed job completed.

        Returns:
            The updated row, or None if the lease was lost (logged).
        """
        async with self._ctx.database.session() as session:
            updated = await JobRepository(session).complete_job(
                job_id=job.id,
                worker_id=self.worker_id,
                attempts=job.attempts,
                result=output,
            )

        if updated is None:
            self._lease_lost(LeaseLostError(job.id, self.worker_id, "complete"))
            return None

        self._ctx.metrics.record_job_finished(job.kind, "completed", duration_seconds)
        self._ctx.events.emit(
            JobEvent.job_completed(
                job_id=job.id,
                kind=job.kind,
                attempt=job.attempts,
                duration_ms=duration_seconds * 1000 if duration_seconds is not None else None,
            )
        )
        return updated

    async def fail(
        self,
        job: Job,
        error: str,
        *,
        permanent: bool = False,
        duration_seconds: float | None = None,
    ) -> Job | None:
        """
        Record a failed attempt: reschedule with backoff or dead-letter.

        Args:
            job: The claimed job (its attempts is the fencing token).
            error: Failure reason stored in last_error.
            permanent: Skip remaining attempts.

        Returns:
            The updated row, or None if the lease was lost (logged).
        """
        decision = self._policy.decide(job.attempts, job.max_attempts, permanent=permanent)
        async with self._ctx.database.session() as session:
            updated = await JobRepository(session).fail_job(
                job_id=job.id,
                worker_id=self.worker_id,
                attempts=job.attempts,
                error=error,
                retry_at=decision.retry_at,
            )

        if updated is None:
            self._lease_lost(LeaseLostError(job.id, self.worker_id, "fail"))
            return None

        outcome = "dead" if decision.dead else "retried"
        self._ctx.metrics.record_job_finished(job.kind, outcome, duration_seconds)
        if decision.dead:
            self._ctx.events.emit(
                JobEvent.job_dead(job.id, job.kind, error=error, attempts=updated.attempts)
            )
        else:
            self._ctx.events.emit(
                JobEvent.job_failed(
                    job.id,
                    job.kind,
                    error=error,
                    attempt=updated.attempts,
                    retry_at=decision.retry_at,
                )
            )
        return updated

    async def reclaim(self, limit: int | None = None) -> list[Job]:
        """
        Recover jobs whose lease expired without completion.

        Each one counts as a failed attempt (consumed at claim time) and is
        returned to pending with backoff or dead-lettered.

        Returns:
            The reclaimed rows in their new state.
        """
        limit = limit or self._ctx.settings.reaper_batch_size
        reclaimed: list[tuple[Job, str | None]] = []

        with self._ctx.tracer.start_as_current_span(SPAN_RECLAIM_LEASES) as span:
            async with self._ctx.database.session() as session:
                repo = JobRepository(session)
                now = utcnow()
                expired = await repo.find_expired_leases(now=now, limit=limit)
                for job in expired:
                    previous_owner = job.lease_owner
                    decision = self._policy.decide(job.attempts, job.max_attempts, now=now)
                    updated = await repo.reclaim_job(job, retry_at=decision.retry_at, now=now)
                    if updated is not None:
                        reclaimed.append((updated, previous_owner))
            span.set_attribute("reclaim.count", len(reclaimed))

        for job, previous_owner in reclaimed:
            self._emit_reclaimed(job, previous_owner)
        if reclaimed:
            self._ctx.metrics.record_lease_reclaimed(len(reclaimed))
            logger.info("Reclaimed expired leases", extra={"count": len(reclaimed)})
        return [job for job, _ in reclaimed]

    def _emit_reclaimed(self, job: Job, previous_owner: str | None) -> None:
        self._ctx.events.emit(
            JobEvent.job_reclaimed(
                job_id=job.id,
                kind=job.kind,
                previous_owner=previous_owner,
                attempts=job.attempts,
                state=job.state,
            )
        )
        if job.state == JobState.DEAD:
            self._ctx.events.emit(
                JobEvent.job_dead(job.id, job.kind, error=job.last_error or "", attempts=job.attempts)
            )

    def _lease_lost(self, error: LeaseLostError) -> None:
        self._ctx.metrics.record_lease_lost()
        logger.warning(error.message, extra=error.details)

    @staticmethod
    def _as_timedelta(value: timedelta | float | None) -> timedelta | None:
        if value is None or isinstance(value, timedelta):
            return value
        return timedelta(seconds=value)
