"""
Explicit per-process context for the engine.

Replaces module-level engine/settings/metrics singletons: a QueueContext is
built once at process start, passed into every engine entry point, and
closed at process stop.
"""

import logging
from dataclasses import dataclass, field
from types import TracebackType

from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.trace import Tracer

from jobqueue.config import Settings, get_settings
from jobqueue.db.connection import Database
from jobqueue.observability.events import EventSink, LoggingEventSink
from jobqueue.observability.metrics import MetricsCollector
from jobqueue.observability.tracing import get_tracer, setup_tracing
from jobqueue.retry.policy import RetryPolicy

logger = logging.getLogger(__name__)


@dataclass
class QueueContext:
    """Settings, Store handle and observability collaborators for one process."""

    settings: Settings
    database: Database
    metrics: MetricsCollector
    events: EventSink
    tracer_provider: TracerProvider
    retry_policy: RetryPolicy
    tracer: Tracer = field(init=False)
    _closed: bool = field(default=False, init=False, repr=False)

    def __post_init__(self) -> None:
        self.tracer = get_tracer(self.tracer_provider, self.settings)

    async def close(self) -> None:
        """Dispose the Store connection pool and flush spans."""
        if self._closed:
            return
        self._closed = True
        await self.database.close()
        self.tracer_provider.shutdown()
        logger.info("Queue context closed")

    async def __aenter__(self) -> "QueueContext":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()


def create_context(
    settings: Settings | None = None,
    *,
    events: EventSink | None = None,
    metrics: MetricsCollector | None = None,
    retry_policy: RetryPolicy | None = None,
    database: Database | None = None,
) -> QueueContext:
    """
    Build a QueueContext.

    Args:
        settings: Settings to use. Defaults to the environment.
        events: Event sink. Defaults to a structlog-backed LoggingEventSink.
        metrics: Metrics collector. Defaults to one with a private registry.
        retry_policy: Backoff policy. Defaults to one built from settings.
        database: Store handle. Defaults to one built from settings.

    Returns:
        QueueContext: The context. Close it with ``await ctx.close()``.
    """
    settings = settings or get_settings()
    return QueueContext(
        settings=settings,
        database=database or Database(settings),
        metrics=metrics or MetricsCollector(),
        events=events or LoggingEventSink(),
        tracer_provider=setup_tracing(settings),
        retry_policy=retry_policy or RetryPolicy.from_settings(settings),
    )
