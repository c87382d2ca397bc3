"""
Pytest configuration and shared fixtures.
"""

import os
from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.api.main import create_app
from jobqueue.config import Settings
from jobqueue.context import QueueContext, create_context
from jobqueue.lease.manager import LeaseManager
from jobqueue.observability.events import RecordingEventSink
from jobqueue.queue.client import QueueClient
from jobqueue.worker.handlers import register_builtin_handlers
from jobqueue.worker.registry import HandlerRegistry

# PostgreSQL when set; otherwise a throwaway SQLite file per test
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    """Get the test database URL."""
    return TEST_DATABASE_URL or f"sqlite+aiosqlite:///{tmp_path / 'jobqueue.db'}"


@pytest.fixture
def test_settings(database_url: str) -> Settings:
    """Create test settings with short intervals and no jitter."""
    return Settings(
        database_url=database_url,
        worker_id="test-worker",
        log_level="DEBUG",
        log_format="console",
        worker_concurrency=4,
        worker_poll_interval_seconds=0.05,
        worker_lease_duration_seconds=5,
        worker_heartbeat_interval_seconds=1,
        worker_job_timeout_seconds=10,
        worker_shutdown_grace_seconds=2,
        worker_run_reaper=False,
        reaper_interval_seconds=0.1,
        retry_backoff_base_seconds=0.01,
        retry_backoff_max_seconds=0.05,
        retry_backoff_jitter=0.0,
        store_retry_base_seconds=0.01,
        store_retry_max_seconds=0.05,
    )


@pytest.fixture
def events() -> RecordingEventSink:
    return RecordingEventSink()


@pytest_asyncio.fixture
async def ctx(
    test_settings: Settings,
    events: RecordingEventSink,
) -> AsyncGenerator[QueueContext]:
    """Create a context against a clean schema."""
    context = create_context(test_settings, events=events)
    await context.database.drop_all()
    await context.database.create_all()

    yield context

    await context.close()


@pytest_asyncio.fixture
async def db_session(ctx: QueueContext) -> AsyncGenerator[AsyncSession]:
    """Transactional session; committed when the test body finishes."""
    async with ctx.database.session() as session:
        yield session


@pytest.fixture
def registry() -> HandlerRegistry:
    """Registry with the built-in diagnostic handlers."""
    handlers = HandlerRegistry()
    register_builtin_handlers(handlers)
    return handlers


@pytest.fixture
def queue_client(ctx: QueueContext, registry: HandlerRegistry) -> QueueClient:
    return QueueClient(ctx, registry)


@pytest.fixture
def leases(ctx: QueueContext) -> LeaseManager:
    return LeaseManager(ctx, "worker-a")


@pytest_asyncio.fixture
async def app(ctx: QueueContext) -> FastAPI:
    return create_app(ctx)


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient]:
    """Create an async HTTP client for testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def sample_job_payload() -> dict[str, Any]:
    """Create a sample job payload."""
    return {"message": "Hello, World!"}
