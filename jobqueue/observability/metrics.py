"""
Prometheus metrics collection.
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from jobqueue.constants import (
    METRIC_ACTIVE_SLOTS,
    METRIC_JOB_DURATION,
    METRIC_JOBS_CLAIMED,
    METRIC_JOBS_ENQUEUED,
    METRIC_JOBS_FINISHED,
    METRIC_LEASES_LOST,
    METRIC_LEASES_RECLAIMED,
    METRIC_QUEUE_DEPTH,
    METRIC_STORE_ERRORS,
)


class MetricsCollector:
    """
    Prometheus metrics collector for the job queue.

    Collects metrics for:
    - Enqueues, claims and finished attempts by outcome
    - Job execution duration
    - Lease reclaims and losses
    - Active execution slots and queue depth
    - Store connectivity errors

    Each collector owns its registry so several contexts can live in one
    process (tests, embedded producers).
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional registry. A private one is created if omitted.
        """
        self._registry = registry or CollectorRegistry()

        self.jobs_enqueued = Counter(
            METRIC_JOBS_ENQUEUED,
            "Total number of jobs enqueued",
            ["kind"],
            registry=self._registry,
        )

        self.jobs_claimed = Counter(
            METRIC_JOBS_CLAIMED,
            "Total number of jobs claimed",
            ["worker_id"],
            registry=self._registry,
        )

        # outcome: completed, retried, dead
        self.jobs_finished = Counter(
            METRIC_JOBS_FINISHED,
            "Total number of finished job attempts",
            ["kind", "outcome"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Job execution duration in seconds",
            ["kind", "outcome"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
            registry=self._registry,
        )

        self.leases_reclaimed = Counter(
            METRIC_LEASES_RECLAIMED,
            "Total number of expired leases reclaimed",
            registry=self._registry,
        )

        self.leases_lost = Counter(
            METRIC_LEASES_LOST,
            "Total number of heartbeats or commits that found the lease lost",
            registry=self._registry,
        )

        self.active_slots = Gauge(
            METRIC_ACTIVE_SLOTS,
            "Execution slots currently running a job",
            ["worker_id"],
            registry=self._registry,
        )

        self.queue_depth = Gauge(
            METRIC_QUEUE_DEPTH,
            "Number of jobs per state",
            ["state"],
            registry=self._registry,
        )

        self.store_errors = Counter(
            METRIC_STORE_ERRORS,
            "Total number of Store connectivity errors",
            ["operation"],
            registry=self._registry,
        )

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    def record_job_enqueued(self, kind: str) -> None:
        """Record a job submission."""
        self.jobs_enqueued.labels(kind=kind).inc()

    def record_jobs_claimed(self, worker_id: str, count: int = 1) -> None:
        """Record claimed jobs."""
        self.jobs_claimed.labels(worker_id=worker_id).inc(count)

    def record_job_finished(
        self,
        kind: str,
        outcome: str,
        duration_seconds: float | None = None,
    ) -> None:
        """Record the end of an attempt."""
        self.jobs_finished.labels(kind=kind, outcome=outcome).inc()
        if duration_seconds is not None:
            self.job_duration.labels(kind=kind, outcome=outcome).observe(
                duration_seconds
            )

    def record_lease_reclaimed(self, count: int = 1) -> None:
        """Record expired leases taken back by the reaper."""
        self.leases_reclaimed.inc(count)

    def record_lease_lost(self) -> None:
        self.leases_lost.inc()

    def set_active_slots(self, worker_id: str, count: int) -> None:
        self.active_slots.labels(worker_id=worker_id).set(count)

    def update_queue_depth(self, counts: dict[str, int]) -> None:
        """Update per-state job gauges."""
        for state, count in counts.items():
            self.queue_depth.labels(state=state).set(count)

    def record_store_error(self, operation: str) -> None:
        self.store_errors.labels(operation=operation).inc()

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)

    def get_content_type(self) -> str:
        """Get the content type for metrics response."""
        return CONTENT_TYPE_LATEST
