"""
Producer-facing queue client.

Enqueues, cancels and inspects jobs against the Store, and manages recurring
schedules. Every call runs in its own transaction: enqueue either commits a
pending row or raises with no row written.
"""

import logging
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

import pydantic

from jobqueue.constants import (
    MAX_SCHEDULE_NAME_LENGTH,
    SPAN_ENQUEUE_JOB,
    JobState,
)
from jobqueue.context import QueueContext
from jobqueue.db.models import Job, JobSchedule, utcnow
from jobqueue.db.repository import JobRepository, ScheduleRepository
from jobqueue.errors import UnknownKindError, ValidationError
from jobqueue.schedule.cron import CronExpression
from jobqueue.types.events import JobEvent
from jobqueue.types.job import EnqueueOptions, encode_payload
from jobqueue.worker.registry import HandlerRegistry

logger = logging.getLogger(__name__)

EnqueueListener = Callable[[Job], None]


def _format_validation_error(exc: pydantic.ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(p) for p in error["loc"]) or "arguments"
        parts.append(f"{location}: {error['msg']}")
    return "; ".join(parts)


class QueueClient:
    """
    Library used by producers to submit and manage jobs.

    Example:
        client = QueueClient(ctx)
        job_id = await client.enqueue("send_email", {"to": "a@example.com"},
                                      dedupe_key="welcome:42")
    """

    def __init__(
        self,
        ctx: QueueContext,
        registry: HandlerRegistry | None = None,
    ):
        """
        Args:
            ctx: The process context.
            registry: Optional registry; when given, payloads of kinds with a
                declared schema are validated at enqueue time.
        """
        self._ctx = ctx
        self._registry = registry
        self._listeners: list[EnqueueListener] = []

    def add_listener(self, listener: EnqueueListener) -> None:
        """Call listener(job) after each committed enqueue in this process."""
        self._listeners.append(listener)

    def remove_listener(self, listener: EnqueueListener) -> None:
        self._listeners.remove(listener)

    async def enqueue(
        self,
        kind: str,
        payload: Any = None,
        *,
        delay: float | timedelta | None = None,
        run_after: datetime | None = None,
        priority: int = 0,
        max_attempts: int | None = None,
        dedupe_key: str | None = None,
    ) -> UUID:
        """
        Submit a job.

        Args:
            kind: Handler kind.
            payload: JSON-serializable value or bytes.
            delay: Seconds (or timedelta) before the job becomes claimable.
            run_after: Absolute earliest claim time. Exclusive with delay.
            priority: Higher is claimed first.
            max_attempts: Dispatch attempts before dead-lettering.
            dedupe_key: If a pending or active job holds this key, its id is
                returned and nothing is written.

        Returns:
            The job id.

        Raises:
            ValidationError: Arguments rejected; nothing was written.
            StoreUnavailableError: The Store could not be reached.
        """
        options = self._validate(
            kind=kind,
            payload=payload,
            delay=delay,
            run_after=run_after,
            priority=priority,
            max_attempts=max_attempts,
            dedupe_key=dedupe_key,
        )

        if options.run_after is not None:
            eligible_at = options.run_after
        elif options.delay is not None:
            eligible_at = utcnow() + options.delay
        else:
            eligible_at = None

        with self._ctx.tracer.start_as_current_span(SPAN_ENQUEUE_JOB) as span:
            span.set_attribute("job.kind", options.kind)
            payload, encoding = encode_payload(options.payload)
            async with self._ctx.database.session() as session:
                repo = JobRepository(session)
                job, created = await repo.create_job(
                    kind=options.kind,
                    payload=payload,
                    payload_encoding=encoding,
                    priority=options.priority,
                    run_after=eligible_at,
                    max_attempts=options.max_attempts,
                    dedupe_key=options.dedupe_key,
                )
            span.set_attribute("job.id", str(job.id))
            span.set_attribute("job.created", created)

        if not created:
            return job.id

        self._ctx.metrics.record_job_enqueued(job.kind)
        self._ctx.events.emit(
            JobEvent.job_enqueued(
                job_id=job.id,
                kind=job.kind,
                priority=job.priority,
                run_after=job.run_after,
                dedupe_key=job.dedupe_key,
            )
        )
        self._notify(job)
        return job.id

    def _notify(self, job: Job) -> None:
        for listener in self._listeners:
            try:
                listener(job)
            except Exception:
                logger.exception("Enqueue listener failed", extra={"job_id": str(job.id)})

    def _validate(self, **kwargs: Any) -> EnqueueOptions:
        if kwargs["delay"] is not None and kwargs["run_after"] is not None:
            raise ValidationError("delay and run_after are mutually exclusive")
        if kwargs["max_attempts"] is None:
            kwargs["max_attempts"] = self._ctx.settings.default_max_attempts
        if not isinstance(kwargs["kind"], str):
            raise ValidationError("kind must be a string")

        try:
            options = EnqueueOptions(**kwargs)
        except pydantic.ValidationError as exc:
            raise ValidationError(
                _format_validation_error(exc), {"errors": exc.errors()}
            ) from exc

        if self._registry is not None:
            try:
                entry = self._registry.get(options.kind)
            except UnknownKindError:
                entry = None
            if entry is not None and entry.schema is not None:
                try:
                    entry.validate_payload(options.payload)
                except pydantic.ValidationError as exc:
                    raise ValidationError(
                        f"Invalid payload for kind {options.kind}: "
                        f"{_format_validation_error(exc)}"
                    ) from exc
        return options

    async def cancel(self, job_id: UUID) -> bool:
        """
        Cancel a job that has not been dispatched yet.

        Returns:
            True if the pending job was cancelled, False if no such job exists.

        Raises:
            InvalidStateError: The job is not pending.
        """
        async with self._ctx.database.session() as session:
            job = await JobRepository(session).cancel_job(job_id)

        if job is None:
            return False

        self._ctx.events.emit(JobEvent.job_cancelled(job.id, job.kind))
        return True

    async def get_job(self, job_id: UUID) -> Job | None:
        """Fetch the current row for a job."""
        async with self._ctx.database.session() as session:
            return await JobRepository(session).get_job(job_id)

    async def list_jobs(
        self,
        state: JobState | None = None,
        kind: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[Sequence[Job], int]:
        """List jobs newest first. Returns (jobs, total)."""
        async with self._ctx.database.session() as session:
            return await JobRepository(session).list_jobs(
                state=state, kind=kind, limit=limit, offset=offset
            )

    async def stats(self) -> dict[str, int]:
        """Job counts per state."""
        async with self._ctx.database.session() as session:
            counts = await JobRepository(session).get_job_stats()
        self._ctx.metrics.update_queue_depth(counts)
        return counts

    async def requeue_dead(self, job_id: UUID, reset_attempts: bool = True) -> Job | None:
        """
        Operator action: move a dead job back to pending.

        Returns:
            The requeued job, or None if it does not exist.

        Raises:
            InvalidStateError: The job is not dead, or reset_attempts is False
                and it has no attempts left.
        """
        async with self._ctx.database.session() as session:
            job = await JobRepository(session).requeue_dead(job_id, reset_attempts)

        if job is not None:
            self._notify(job)
        return job

    async def schedule(
        self,
        name: str,
        kind: str,
        cron: str,
        payload: Any = None,
        *,
        priority: int = 0,
        max_attempts: int | None = None,
    ) -> JobSchedule:
        """
        Create or replace a recurring job.

        One job of ``kind`` is enqueued for each slot of the cron expression
        (evaluated in UTC) by the reaper's schedule sweep.

        Example:
            await client.schedule("cleanup_auth_tokens", "cleanup_auth_tokens", "0 */6 * * *")

        Raises:
            ValidationError: Bad name, cron expression or job arguments.
        """
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("schedule name must be a non-empty string")
        name = name.strip()
        if len(name) > MAX_SCHEDULE_NAME_LENGTH:
            raise ValidationError(
                f"schedule name must be at most {MAX_SCHEDULE_NAME_LENGTH} characters"
            )
        try:
            expression = CronExpression(cron)
            expression.next_after(utcnow())
        except ValueError as exc:
            raise ValidationError(f"Invalid cron expression: {exc}") from exc

        options = self._validate(
            kind=kind,
            payload=payload,
            delay=None,
            run_after=None,
            priority=priority,
            max_attempts=max_attempts,
            dedupe_key=None,
        )
        stored, encoding = encode_payload(options.payload)

        async with self._ctx.database.session() as session:
            schedule = await ScheduleRepository(session).upsert_schedule(
                name=name,
                kind=options.kind,
                cron=expression.expression,
                payload=stored,
                payload_encoding=encoding,
                priority=options.priority,
                max_attempts=options.max_attempts,
            )

        logger.info(
            "Schedule saved",
            extra={"schedule": name, "kind": schedule.kind, "cron": schedule.cron},
        )
        return schedule

    async def unschedule(self, name: str) -> bool:
        """Remove a recurring job. Jobs it already enqueued are unaffected."""
        async with self._ctx.database.session() as session:
            removed = await ScheduleRepository(session).delete_schedule(name)
        if removed:
            logger.info("Schedule removed", extra={"schedule": name})
        return removed

    async def list_schedules(self) -> Sequence[JobSchedule]:
        async with self._ctx.database.session() as session:
            return await ScheduleRepository(session).list_schedules()
