"""
Engine event sinks.

The engine reports job state changes as JobEvent objects to an injected
sink. It never formats or ships log lines itself.
"""

import logging
from typing import Protocol

import structlog

from jobqueue.constants import EVENT_JOB_DEAD, EVENT_JOB_FAILED, EVENT_JOB_RECLAIMED
from jobqueue.observability.logging import get_event_logger
from jobqueue.types.events import JobEvent

_WARNING_EVENTS = {EVENT_JOB_FAILED, EVENT_JOB_RECLAIMED}


class EventSink(Protocol):
    """Receiver for engine events."""

    def emit(self, event: JobEvent) -> None: ...


class LoggingEventSink:
    """Writes each event as one structured log line."""

    def __init__(self, logger: structlog.stdlib.BoundLogger | None = None):
        self._logger = logger or get_event_logger()

    def emit(self, event: JobEvent) -> None:
        fields = event.log_fields()
        if event.event_type == EVENT_JOB_DEAD:
            self._logger.error(event.event_type, **fields)
        elif event.event_type in _WARNING_EVENTS:
            self._logger.warning(event.event_type, **fields)
        else:
            self._logger.info(event.event_type, **fields)


class RecordingEventSink:
    """Keeps events in memory. Used by tests and embedded tooling."""

    def __init__(self) -> None:
        self.events: list[JobEvent] = []

    def emit(self, event: JobEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> list[JobEvent]:
        return [e for e in self.events if e.event_type == event_type]

    def clear(self) -> None:
        self.events.clear()


class FanoutEventSink:
    """Delivers each event to several sinks; a failing sink does not stop the others."""

    def __init__(self, *sinks: EventSink):
        self._sinks = list(sinks)

    def emit(self, event: JobEvent) -> None:
        for sink in self._sinks:
            try:
                sink.emit(event)
            except Exception:
                logging.getLogger(__name__).exception(
                    "Event sink failed", extra={"event_type": event.event_type}
                )
