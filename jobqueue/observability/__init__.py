"""
Observability module.
Contains logging, metrics, tracing setup and the engine event sinks.
"""

from jobqueue.observability.events import (
    EventSink,
    FanoutEventSink,
    LoggingEventSink,
    RecordingEventSink,
)
from jobqueue.observability.logging import (
    bind_job_context,
    get_event_logger,
    setup_logging,
)
from jobqueue.observability.metrics import MetricsCollector
from jobqueue.observability.tracing import get_tracer, setup_tracing

__all__ = [
    "setup_logging",
    "get_event_logger",
    "bind_job_context",
    "MetricsCollector",
    "setup_tracing",
    "get_tracer",
    "EventSink",
    "LoggingEventSink",
    "RecordingEventSink",
    "FanoutEventSink",
]
