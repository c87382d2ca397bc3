"""
Structured logging for engine processes.

Engine modules log through ``logging.getLogger(__name__)`` with ``extra=``
fields; engine events go to the ``jobqueue.events`` structlog logger. Both
end up in one structlog pipeline that stamps every line with the process
identity (service, worker id, version) and, inside a slot, the job being run.
"""

import logging
import sys
from typing import IO, Any
from uuid import UUID

import structlog
from opentelemetry import trace

import jobqueue
from jobqueue.config import Settings

EVENTS_LOGGER = "jobqueue.events"

# Libraries that are chatty at INFO
QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "aiosqlite", "asyncio")

EventDict = dict[str, Any]


class ProcessContext:
    """Processor adding the identity of this worker or reaper process."""

    def __init__(self, settings: Settings):
        self._fields = {
            "service": settings.otel_service_name,
            "worker_id": settings.worker_id,
            "version": jobqueue.__version__,
        }

    def __call__(self, logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
        # Explicit fields (e.g. the reaper's own identity) win
        for key, value in self._fields.items():
            event_dict.setdefault(key, value)
        return event_dict


def add_trace_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Attach the current OpenTelemetry trace and span ids, if recording."""
    span = trace.get_current_span()
    if span.is_recording():
        ctx = span.get_span_context()
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


def drop_color_message(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    # uvicorn duplicates its message with ANSI codes under this extra key
    event_dict.pop("color_message", None)
    return event_dict


def shared_processors(settings: Settings) -> list[Any]:
    """Processors applied to structlog and stdlib records alike."""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.ExtraAdder(),
        drop_color_message,
        ProcessContext(settings),
        add_trace_context,
    ]


def setup_logging(settings: Settings, stream: IO[str] | None = None) -> None:
    """
    Route stdlib logging and structlog through one renderer.

    Args:
        settings: Supplies level, format (json or console) and process identity.
        stream: Output stream. Defaults to stdout.
    """
    processors = shared_processors(settings)

    if settings.log_format == "json":
        renderer: Any = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=stream is None and sys.stdout.isatty())

    structlog.configure(
        processors=[
            *processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=processors,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                renderer,
            ],
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_event_logger() -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(EVENTS_LOGGER)


def bind_job_context(job_id: UUID, kind: str, attempt: int) -> None:
    """
    Tag every log line of the current task with the job it is running.

    Slot tasks run in a copied context, so the binding ends with the slot.
    """
    structlog.contextvars.bind_contextvars(job_id=str(job_id), kind=kind, attempt=attempt)
