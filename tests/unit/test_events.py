"""
Unit tests for engine events, event sinks and metrics.
"""

from datetime import UTC, datetime
from uuid import uuid4

from structlog.testing import capture_logs

from jobqueue.constants import (
    EVENT_JOB_DEAD,
    EVENT_JOB_ENQUEUED,
    EVENT_JOB_FAILED,
    JobState,
)
from jobqueue.observability.events import (
    FanoutEventSink,
    LoggingEventSink,
    RecordingEventSink,
)
from jobqueue.observability.metrics import MetricsCollector
from jobqueue.types.events import JobEvent


class TestJobEvent:
    """Tests for event construction."""

    def test_enqueued_event(self):
        job_id = uuid4()
        run_after = datetime(2026, 1, 1, tzinfo=UTC)

        event = JobEvent.job_enqueued(job_id, "email", priority=5, run_after=run_after)

        assert event.event_type == EVENT_JOB_ENQUEUED
        assert event.state == JobState.PENDING
        assert event.data["priority"] == 5
        assert event.data["run_after"] == run_after.isoformat()

    def test_log_fields_drop_empty_values(self):
        """Test that None-valued data is not logged."""
        event = JobEvent.job_completed(uuid4(), "email", attempt=1)

        fields = event.log_fields()

        assert fields["state"] == "completed"
        assert fields["attempt"] == 1
        assert "duration_ms" not in fields

    def test_cancelled_event_is_failed_state(self):
        event = JobEvent.job_cancelled(uuid4(), "email")

        assert event.state == JobState.FAILED


class TestEventSinks:
    """Tests for event sinks."""

    def test_recording_sink(self):
        sink = RecordingEventSink()
        job_id = uuid4()
        sink.emit(JobEvent.job_dead(job_id, "email", error="boom", attempts=3))
        sink.emit(JobEvent.job_cancelled(job_id, "email"))

        assert len(sink.events) == 2
        assert [e.job_id for e in sink.of_type(EVENT_JOB_DEAD)] == [job_id]

        sink.clear()
        assert sink.events == []

    def test_logging_sink_levels(self):
        """Test that dead is an error and a retried failure a warning."""
        sink = LoggingEventSink()
        job_id = uuid4()

        with capture_logs() as logs:
            sink.emit(JobEvent.job_dead(job_id, "email", error="boom", attempts=3))
            sink.emit(
                JobEvent.job_failed(
                    job_id, "email", error="busy", attempt=1, retry_at=datetime.now(UTC)
                )
            )
            sink.emit(JobEvent.job_cancelled(job_id, "email"))

        assert [entry["log_level"] for entry in logs] == ["error", "warning", "info"]
        assert logs[0]["event"] == EVENT_JOB_DEAD
        assert logs[0]["job_id"] == str(job_id)
        assert logs[1]["event"] == EVENT_JOB_FAILED

    def test_fanout_isolates_failing_sink(self):
        """Test that one broken sink does not starve the others."""

        class BrokenSink:
            def emit(self, event):
                raise RuntimeError("down")

        recorder = RecordingEventSink()
        sink = FanoutEventSink(BrokenSink(), recorder)

        sink.emit(JobEvent.job_cancelled(uuid4(), "email"))

        assert len(recorder.events) == 1


class TestMetricsCollector:
    """Tests for the per-context Prometheus collector."""

    def test_collectors_are_independent(self):
        """Test that two collectors in one process do not share state."""
        first = MetricsCollector()
        second = MetricsCollector()

        first.record_job_enqueued("email")

        assert first.registry.get_sample_value(
            "jobqueue_jobs_enqueued_total", {"kind": "email"}
        ) == 1.0
        assert second.registry.get_sample_value(
            "jobqueue_jobs_enqueued_total", {"kind": "email"}
        ) is None

    def test_finished_and_gauges(self):
        metrics = MetricsCollector()

        metrics.record_job_finished("email", "dead", duration_seconds=0.2)
        metrics.set_active_slots("w1", 3)
        metrics.update_queue_depth({"pending": 7, "dead": 1})
        metrics.record_store_error("claim")

        registry = metrics.registry
        assert registry.get_sample_value(
            "jobqueue_jobs_finished_total", {"kind": "email", "outcome": "dead"}
        ) == 1.0
        assert registry.get_sample_value("jobqueue_active_slots", {"worker_id": "w1"}) == 3
        assert registry.get_sample_value("jobqueue_queue_depth", {"state": "pending"}) == 7
        assert registry.get_sample_value(
            "jobqueue_store_errors_total", {"operation": "claim"}
        ) == 1.0

    def test_exposition_format(self):
        metrics = MetricsCollector()
        metrics.record_lease_reclaimed(2)

        body = metrics.get_metrics().decode()

        assert "jobqueue_leases_reclaimed_total 2.0" in body
        assert metrics.get_content_type().startswith("text/plain")
