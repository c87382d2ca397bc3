"""
Recurring job sweeps.

A sweep looks at every schedule and enqueues one job for the latest cron
slot that has come due since the schedule last fired. Missed slots are not
backfilled: after an outage only the most recent slot runs.
"""

import logging
from datetime import datetime

from jobqueue.constants import SPAN_SWEEP_SCHEDULES
from jobqueue.context import QueueContext
from jobqueue.db.models import Job, JobSchedule, utcnow
from jobqueue.db.repository import JobRepository, ScheduleRepository
from jobqueue.schedule.cron import CronExpression
from jobqueue.types.events import JobEvent

logger = logging.getLogger(__name__)


def slot_dedupe_key(name: str, slot: datetime) -> str:
    """Dedupe key of the job enqueued for one slot of a schedule."""
    return f"schedule:{name}:{slot:%Y-%m-%dT%H:%MZ}"


def due_slot(schedule: JobSchedule, now: datetime) -> datetime | None:
    """
    The slot a sweep at ``now`` should fire, if any.

    Slots at or before the schedule's anchor (the last fired slot, or its
    creation time) are never due.

    Raises:
        ValueError: The stored cron expression is invalid.
    """
    slot = CronExpression(schedule.cron).latest_at_or_before(now)
    anchor = schedule.last_slot_at or schedule.created_at
    if slot <= anchor:
        return None
    return slot


class ScheduleManager:
    """
    Fires recurring jobs.

    Any number of managers may sweep concurrently; each slot is enqueued
    exactly once because firing first advances the schedule with a
    conditional update in the same transaction that creates the job.
    """

    def __init__(self, ctx: QueueContext):
        self._ctx = ctx

    async def sweep(self, now: datetime | None = None) -> list[Job]:
        """
        Enqueue the due slot of every schedule.

        Args:
            now: Sweep time. Defaults to the current time.

        Returns:
            The jobs created by this sweep.
        """
        now = now or utcnow()
        fired: list[Job] = []

        with self._ctx.tracer.start_as_current_span(SPAN_SWEEP_SCHEDULES) as span:
            async with self._ctx.database.session() as session:
                schedules = await ScheduleRepository(session).list_schedules()

            for schedule in schedules:
                try:
                    slot = due_slot(schedule, now)
                except ValueError as exc:
                    logger.error(
                        f"Skipping schedule with invalid cron: {exc}",
                        extra={"schedule": schedule.name, "cron": schedule.cron},
                    )
                    continue
                if slot is None:
                    continue

                job = await self._fire(schedule, slot)
                if job is not None:
                    fired.append(job)
            span.set_attribute("schedule.fired", len(fired))

        return fired

    async def _fire(self, schedule: JobSchedule, slot: datetime) -> Job | None:
        async with self._ctx.database.session() as session:
            if not await ScheduleRepository(session).advance_schedule(schedule.name, slot):
                # Another sweeper fired this slot, or the schedule was removed
                return None
            job, created = await JobRepository(session).create_job(
                kind=schedule.kind,
                payload=schedule.payload,
                payload_encoding=schedule.payload_encoding,
                priority=schedule.priority,
                max_attempts=schedule.max_attempts,
                dedupe_key=slot_dedupe_key(schedule.name, slot),
            )

        if not created:
            return None

        logger.info(
            "Enqueued scheduled job",
            extra={
                "schedule": schedule.name,
                "slot": slot.isoformat(),
                "job_id": str(job.id),
                "kind": job.kind,
            },
        )
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
        return job
