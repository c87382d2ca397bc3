"""
Unit tests for settings.
"""

import pytest
from pydantic import ValidationError

from jobqueue.config import Settings


class TestSettings:
    """Tests for environment-driven configuration."""

    def test_defaults(self):
        """Test the documented defaults."""
        settings = Settings()

        assert settings.worker_concurrency == 10
        assert settings.default_max_attempts == 3
        assert settings.retry_backoff_jitter == 0.25
        assert settings.health_port is None
        assert settings.worker_run_reaper is True
        assert settings.worker_id

    def test_reads_environment(self, monkeypatch):
        """Test that environment variables override defaults."""
        monkeypatch.setenv("WORKER_CONCURRENCY", "3")
        monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///./jobs.db")
        monkeypatch.setenv("WORKER_HANDLER_MODULES", '["app.jobs", "app.reports"]')

        settings = Settings()

        assert settings.worker_concurrency == 3
        assert settings.is_sqlite is True
        assert settings.worker_handler_modules == ["app.jobs", "app.reports"]

    def test_postgres_is_not_sqlite(self):
        settings = Settings(database_url="postgresql+asyncpg://u:p@db/jobs")

        assert settings.is_sqlite is False

    @pytest.mark.parametrize(
        "field,value",
        [
            ("worker_concurrency", 0),
            ("worker_poll_interval_seconds", 0),
            ("worker_lease_duration_seconds", -1),
            ("reaper_interval_seconds", 0),
            ("retry_backoff_jitter", 1.0),
            ("worker_shutdown_grace_seconds", -1),
            ("default_max_attempts", 0),
            ("log_format", "xml"),
        ],
    )
    def test_rejects_invalid_values(self, field, value):
        """Test that field validators reject out-of-range values."""
        with pytest.raises(ValidationError):
            Settings(**{field: value})

    def test_zero_grace_allowed(self):
        settings = Settings(worker_shutdown_grace_seconds=0)

        assert settings.worker_shutdown_grace_seconds == 0
