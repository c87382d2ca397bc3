"""
Dispatcher and worker pool.

Claims jobs into a fixed number of execution slots, runs each through its
registered handler, commits the outcome through the lease manager, keeps
leases alive with heartbeats, and drains in-flight work on shutdown.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from jobqueue.constants import SPAN_EXECUTE_JOB
from jobqueue.context import QueueContext
from jobqueue.db.models import Job, utcnow
from jobqueue.errors import StoreUnavailableError, UnknownKindError
from jobqueue.lease.manager import LeaseManager
from jobqueue.observability.logging import bind_job_context
from jobqueue.retry.policy import RetryPolicy
from jobqueue.types.job import JobContext, JobResult
from jobqueue.worker.executor import execute_job
from jobqueue.worker.registry import HandlerRegistry

logger = logging.getLogger(__name__)


@dataclass
class _Slot:
    job: Job
    lease_expires_at: datetime
    task: asyncio.Task | None = None
    lease_lost: bool = False
    started: float = field(default_factory=time.monotonic)


class Dispatcher:
    """
    Bounded pool of execution slots fed by Store claims.

    Features:
    - Claims at most ``concurrency - active`` jobs per cycle
    - Idles between polls, or wakes early via wake()
    - Heartbeats extend the leases of running slots
    - Store outages back off and retry without assuming job state
    - stop() stops claiming at once; run() then waits up to the grace period
      and abandons what is still running (its lease expires and the reaper
      returns it to the queue)
    """

    def __init__(
        self,
        ctx: QueueContext,
        registry: HandlerRegistry,
        *,
        worker_id: str | None = None,
        concurrency: int | None = None,
        poll_interval: float | None = None,
        lease_duration: float | None = None,
        heartbeat_interval: float | None = None,
        shutdown_grace: float | None = None,
    ):
        settings = ctx.settings
        self._ctx = ctx
        self._registry = registry
        self._leases = LeaseManager(ctx, worker_id)

        self.worker_id = self._leases.worker_id
        self.concurrency = concurrency or settings.worker_concurrency
        self.poll_interval = poll_interval or settings.worker_poll_interval_seconds
        self.lease_duration = timedelta(
            seconds=lease_duration or settings.worker_lease_duration_seconds
        )
        self.heartbeat_interval = (
            heartbeat_interval or settings.worker_heartbeat_interval_seconds
        )
        self.shutdown_grace = (
            shutdown_grace
            if shutdown_grace is not None
            else settings.worker_shutdown_grace_seconds
        )
        self.job_timeout = settings.worker_job_timeout_seconds

        if self.concurrency < 1:
            raise ValueError("concurrency must be >= 1")

        self._store_backoff = RetryPolicy(
            base_seconds=settings.store_retry_base_seconds,
            max_seconds=settings.store_retry_max_seconds,
            jitter=settings.retry_backoff_jitter,
        )
        self._slots: dict[UUID, _Slot] = {}
        self._wake = asyncio.Event()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._stopping = False
        self._running = False

    @property
    def active_count(self) -> int:
        return len(self._slots)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def leases(self) -> LeaseManager:
        return self._leases

    def stop(self) -> None:
        """
        Stop claiming new jobs and begin the graceful drain.

        Synchronous and idempotent; safe to call from a signal handler or
        another thread.
        """
        if not self._stopping:
            logger.info("Dispatcher stopping", extra={"worker_id": self.worker_id})
        self._stopping = True
        self._set_wake()

    def wake(self) -> None:
        """Cut the current idle wait short, e.g. after a local enqueue."""
        self._set_wake()

    def _set_wake(self) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._wake.set()
        else:
            loop.call_soon_threadsafe(self._wake.set)

    async def run(self) -> None:
        """
        Run the claim loop until stop() is called, then drain.
        """
        if self._running:
            raise RuntimeError("Dispatcher is already running")

        self._loop = asyncio.get_running_loop()
        self._running = True
        logger.info(
            "Dispatcher starting",
            extra={
                "worker_id": self.worker_id,
                "concurrency": self.concurrency,
                "poll_interval": self.poll_interval,
            },
        )

        heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        store_failures = 0
        try:
            while not self._stopping:
                capacity = self.concurrency - self.active_count
                if capacity <= 0:
                    await self._idle(None)
                    continue

                try:
                    jobs = await self._leases.claim(capacity, self.lease_duration)
                    store_failures = 0
                except StoreUnavailableError as exc:
                    store_failures += 1
                    delay = self._store_backoff.jittered_delay(store_failures)
                    self._ctx.metrics.record_store_error("claim")
                    logger.warning(
                        "Store unavailable, backing off",
                        extra={
                            "worker_id": self.worker_id,
                            "error": str(exc),
                            "retry_in": round(delay, 3),
                        },
                    )
                    await self._idle(delay)
                    continue
                except Exception as e:
                    logger.exception(
                        f"Error in dispatcher loop: {e}",
                        extra={"worker_id": self.worker_id},
                    )
                    await self._idle(self.poll_interval)
                    continue

                for job in jobs:
                    self._start_slot(job)

                if not jobs:
                    await self._idle(self.poll_interval)
        finally:
            await self._drain()
            heartbeat_task.cancel()
            try:
                await heartbeat_task
            except asyncio.CancelledError:
                pass
            self._running = False
            self._ctx.metrics.set_active_slots(self.worker_id, 0)
            logger.info("Dispatcher stopped", extra={"worker_id": self.worker_id})

    async def _idle(self, timeout: float | None) -> None:
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=timeout)
        except TimeoutError:
            pass
        finally:
            self._wake.clear()

    def _start_slot(self, job: Job) -> None:
        slot = _Slot(job=job, lease_expires_at=job.lease_expires_at)
        slot.task = asyncio.create_task(self._run_slot(slot), name=f"job-{job.id}")
        slot.task.add_done_callback(lambda _t, job_id=job.id: self._on_slot_done(job_id))
        self._slots[job.id] = slot
        self._ctx.metrics.set_active_slots(self.worker_id, self.active_count)

    def _on_slot_done(self, job_id: UUID) -> None:
        self._slots.pop(job_id, None)
        self._ctx.metrics.set_active_slots(self.worker_id, self.active_count)
        self._wake.set()

    async def _run_slot(self, slot: _Slot) -> None:
        """
        Execute a single claimed job.

        Handles the full lifecycle:
        1. Resolve the handler (unknown kind -> dead)
        2. Execute the handler
        3. Commit completed, or a failure through the retry policy
        """
        job = slot.job
        job_id = job.id
        bind_job_context(job_id, job.kind, job.attempts)

        try:
            entry = self._registry.get(job.kind)
        except UnknownKindError as exc:
            logger.error(exc.message, extra={"job_id": str(job_id)})
            await self._commit(
                slot, lambda: self._leases.fail(job, exc.message, permanent=True)
            )
            return

        context = JobContext(
            job_id=job_id,
            kind=job.kind,
            attempt=job.attempts,
            max_attempts=job.max_attempts,
            lease_owner=self.worker_id,
            lease_expires_at=job.lease_expires_at,
            _heartbeat=lambda extension: self._heartbeat_slot(slot, extension),
        )

        logger.info("Executing job")

        try:
            with self._ctx.tracer.start_as_current_span(SPAN_EXECUTE_JOB) as span:
                span.set_attribute("job.id", str(job_id))
                span.set_attribute("job.kind", job.kind)
                span.set_attribute("job.attempt", job.attempts)

                result = await execute_job(
                    entry,
                    job.payload,
                    context,
                    default_timeout=self.job_timeout,
                    payload_encoding=job.payload_encoding,
                )
                span.set_attribute("job.success", result.success)
        except asyncio.CancelledError:
            logger.warning("Abandoned in-flight job")
            raise
        except Exception as exc:
            # The slot must always commit; a bug here would otherwise strand the job
            logger.exception("Job execution failed outside the handler")
            result = JobResult.failure(f"{type(exc).__name__}: {exc}", retryable=True)

        duration = time.monotonic() - slot.started
        await self._commit(slot, lambda: self._commit_result(job, result, duration))

    async def _commit_result(self, job: Job, result: JobResult, duration: float) -> Any:
        if result.success:
            return await self._leases.complete(job, result.output, duration_seconds=duration)
        return await self._leases.fail(
            job,
            result.error or "Handler reported failure",
            permanent=not result.retryable,
            duration_seconds=duration,
        )

    async def _commit(self, slot: _Slot, operation) -> None:
        """
        Run a commit, retrying through Store outages while the lease lasts.

        Once the lease has run out the commit is dropped: the reaper owns the
        job from then on.
        """
        failures = 0
        while True:
            try:
                await operation()
                return
            except StoreUnavailableError as exc:
                failures += 1
                self._ctx.metrics.record_store_error("commit")
                delay = self._store_backoff.jittered_delay(failures)
                remaining = (slot.lease_expires_at - utcnow()).total_seconds()
                if remaining <= delay:
                    logger.error(
                        "Could not commit job outcome before lease expiry",
                        extra={"job_id": str(slot.job.id), "error": str(exc)},
                    )
                    return
                logger.warning(
                    "Store unavailable during commit, retrying",
                    extra={"job_id": str(slot.job.id), "retry_in": round(delay, 3)},
                )
                await asyncio.sleep(delay)

    async def _heartbeat_slot(self, slot: _Slot, extension: float | None = None) -> bool:
        """Extend one slot's lease. Returns False once the lease is lost."""
        if slot.lease_lost:
            return False
        seconds = extension or self.lease_duration.total_seconds()
        try:
            extended = await self._leases.heartbeat(slot.job.id, seconds)
        except StoreUnavailableError as exc:
            self._ctx.metrics.record_store_error("heartbeat")
            logger.warning(
                "Store unavailable during heartbeat",
                extra={"job_id": str(slot.job.id), "error": str(exc)},
            )
            return slot.lease_expires_at > utcnow()

        if extended:
            slot.lease_expires_at = utcnow() + timedelta(seconds=seconds)
        else:
            slot.lease_lost = True
        return extended

    async def _heartbeat_loop(self) -> None:
        """
        Periodically extend leases on running jobs.

        Keeps the reaper from reclaiming jobs that are still executing,
        including during the shutdown grace period.
        """
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            for slot in list(self._slots.values()):
                try:
                    await self._heartbeat_slot(slot)
                except Exception as e:
                    logger.exception(f"Error in heartbeat loop: {e}")

    async def _drain(self) -> None:
        """Wait for in-flight slots up to the grace period, then abandon the rest."""
        tasks = [slot.task for slot in self._slots.values() if slot.task is not None]
        if not tasks:
            return

        logger.info(
            f"Waiting for {len(tasks)} jobs to complete",
            extra={"worker_id": self.worker_id, "grace_seconds": self.shutdown_grace},
        )
        # A zero grace period abandons everything still running at once
        _, pending = await asyncio.wait(tasks, timeout=self.shutdown_grace)

        if pending:
            logger.warning(
                f"Abandoning {len(pending)} jobs after grace period",
                extra={"worker_id": self.worker_id},
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
