"""
Unit tests for log configuration.
"""

import asyncio
import io
import json
import logging
from uuid import uuid4

import pytest
import structlog

import jobqueue
from jobqueue.config import Settings
from jobqueue.observability.logging import (
    EVENTS_LOGGER,
    ProcessContext,
    bind_job_context,
    drop_color_message,
    get_event_logger,
    setup_logging,
)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        worker_id="worker-7",
        otel_service_name="billing-jobs",
        log_level="INFO",
        log_format="json",
    )


@pytest.fixture
def stream():
    """Capture rendered log lines; restore global logging afterwards."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield io.StringIO()
    root.handlers = handlers
    root.setLevel(level)
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()


def read_lines(stream: io.StringIO) -> list[dict]:
    return [json.loads(line) for line in stream.getvalue().splitlines() if line]


class TestProcessors:
    """Tests for the custom processors."""

    def test_process_context_adds_identity(self, settings: Settings):
        event = ProcessContext(settings)(None, "info", {"event": "hello"})

        assert event["service"] == "billing-jobs"
        assert event["worker_id"] == "worker-7"
        assert event["version"] == jobqueue.__version__

    def test_process_context_keeps_explicit_fields(self, settings: Settings):
        """Test that a line logged with its own worker_id keeps it."""
        event = ProcessContext(settings)(None, "info", {"event": "x", "worker_id": "reaper-1"})

        assert event["worker_id"] == "reaper-1"

    def test_drop_color_message(self):
        event = drop_color_message(None, "info", {"event": "GET /", "color_message": "\x1b[1mGET"})

        assert event == {"event": "GET /"}


class TestSetupLogging:
    """Tests for the configured pipeline end to end."""

    def test_stdlib_records_carry_identity_and_extra(self, settings: Settings, stream):
        setup_logging(settings, stream)

        logging.getLogger("jobqueue.worker.dispatcher").info(
            "Dispatcher starting", extra={"concurrency": 4}
        )

        [line] = read_lines(stream)
        assert line["event"] == "Dispatcher starting"
        assert line["level"] == "info"
        assert line["logger"] == "jobqueue.worker.dispatcher"
        assert line["service"] == "billing-jobs"
        assert line["worker_id"] == "worker-7"
        assert line["version"] == jobqueue.__version__
        assert line["concurrency"] == 4
        assert "timestamp" in line

    def test_events_logger(self, settings: Settings, stream):
        """Test that engine events go out under their own logger name."""
        setup_logging(settings, stream)

        get_event_logger().info("job.completed", kind="email")

        [line] = read_lines(stream)
        assert line["logger"] == EVENTS_LOGGER
        assert line["event"] == "job.completed"
        assert line["kind"] == "email"
        assert line["worker_id"] == "worker-7"

    def test_level_filters(self, settings: Settings, stream):
        setup_logging(settings.model_copy(update={"log_level": "WARNING"}), stream)

        logging.getLogger("jobqueue.reaper.main").info("Reaper starting")
        logging.getLogger("jobqueue.reaper.main").warning("Store unavailable")

        assert [line["event"] for line in read_lines(stream)] == ["Store unavailable"]

    def test_noisy_libraries_quieted(self, settings: Settings, stream):
        setup_logging(settings, stream)

        assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING
        assert logging.getLogger("uvicorn.access").level == logging.WARNING

    def test_console_format(self, settings: Settings, stream):
        setup_logging(settings.model_copy(update={"log_format": "console"}), stream)

        logging.getLogger("jobqueue.worker.main").info("Worker starting")

        output = stream.getvalue()
        assert "Worker starting" in output
        assert "worker-7" in output
        assert "\x1b[" not in output

    @pytest.mark.asyncio
    async def test_job_binding_is_scoped_to_its_task(self, settings: Settings, stream):
        """Test that job fields tag a slot's lines and nothing else."""
        setup_logging(settings, stream)
        logger = logging.getLogger("jobqueue.worker.dispatcher")
        job_id = uuid4()

        async def slot():
            bind_job_context(job_id, "email", 2)
            logger.info("Executing job")

        await asyncio.create_task(slot())
        logger.info("Dispatcher stopped")

        in_slot, after = read_lines(stream)
        assert in_slot["job_id"] == str(job_id)
        assert in_slot["kind"] == "email"
        assert in_slot["attempt"] == 2
        assert "job_id" not in after
