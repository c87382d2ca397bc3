"""
Lease reaper for recovering expired job leases.

The reaper runs periodically to find active jobs whose lease ran out and
routes them back through the retry policy. This handles worker crashes and
ensures at-least-once delivery. Each pass also enqueues due recurring jobs.
"""

import asyncio
import logging
import signal

from jobqueue.config import Settings, get_settings
from jobqueue.context import QueueContext, create_context
from jobqueue.db.models import Job
from jobqueue.errors import StoreUnavailableError
from jobqueue.lease.manager import LeaseManager
from jobqueue.observability.logging import setup_logging
from jobqueue.retry.policy import RetryPolicy
from jobqueue.schedule.manager import ScheduleManager

logger = logging.getLogger(__name__)


class Reaper:
    """
    Lease reaper that recovers expired job leases.

    Runs periodically to:
    1. Find active jobs with an expired lease_expires_at
    2. Return them to pending with backoff, or dead-letter them
    3. Enqueue recurring jobs whose cron slot came due
    4. Record metrics for monitoring
    """

    def __init__(
        self,
        ctx: QueueContext,
        interval_seconds: float | None = None,
        batch_size: int | None = None,
        sweep_schedules: bool | None = None,
    ):
        """
        Initialize the reaper.

        Args:
            ctx: Queue context.
            interval_seconds: Seconds between reaper runs.
            batch_size: Maximum leases reclaimed per run.
            sweep_schedules: Also fire due recurring jobs on each run.
        """
        settings = ctx.settings
        self.interval = interval_seconds or settings.reaper_interval_seconds
        self.batch_size = batch_size or settings.reaper_batch_size
        self._ctx = ctx
        self._leases = LeaseManager(ctx, f"{settings.worker_id}-reaper")
        self._store_backoff = RetryPolicy(
            base_seconds=settings.store_retry_base_seconds,
            max_seconds=settings.store_retry_max_seconds,
            jitter=settings.retry_backoff_jitter,
        )
        if sweep_schedules is None:
            sweep_schedules = settings.reaper_sweep_schedules
        self._schedules = ScheduleManager(ctx) if sweep_schedules else None
        self._running = False
        self._stopping = False
        self._wake = asyncio.Event()

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the reaper loop."""
        logger.info(f"Reaper starting with interval {self.interval}s")
        self._running = True
        store_failures = 0

        while not self._stopping:
            delay = self.interval
            try:
                await self.run_once()
                await self.sweep_schedules()
                store_failures = 0
            except StoreUnavailableError as exc:
                store_failures += 1
                self._ctx.metrics.record_store_error("reclaim")
                delay = min(self.interval, self._store_backoff.jittered_delay(store_failures))
                logger.warning(
                    "Store unavailable, reaper backing off",
                    extra={"error": str(exc), "retry_in": round(delay, 3)},
                )
            except Exception as e:
                logger.exception(f"Error in reaper loop: {e}")

            try:
                await asyncio.wait_for(self._wake.wait(), timeout=delay)
            except TimeoutError:
                pass

        self._running = False
        logger.info("Reaper stopped")

    def stop(self) -> None:
        """Stop the reaper. Safe to call from a signal handler."""
        logger.info("Reaper stopping")
        self._stopping = True
        self._wake.set()

    async def run_once(self) -> list[Job]:
        """
        Run the reaper once (for testing or cron-style execution).

        Returns:
            The reclaimed jobs in their new state.
        """
        return await self._leases.reclaim(self.batch_size)

    async def sweep_schedules(self) -> list[Job]:
        """Enqueue due recurring jobs. Returns the jobs created."""
        if self._schedules is None:
            return []
        return await self._schedules.sweep()


async def run_async(settings: Settings | None = None) -> None:
    """Run the reaper asynchronously."""
    settings = settings or get_settings()
    setup_logging(settings)

    async with create_context(settings) as ctx:
        if settings.is_sqlite:
            await ctx.database.create_all()

        reaper = Reaper(ctx)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, reaper.stop)

        await reaper.start()


def run() -> None:
    """Run the reaper."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
