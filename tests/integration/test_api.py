"""
Integration tests for the status API.
"""

from uuid import uuid4

import pytest
from httpx import AsyncClient

from jobqueue.constants import JobState
from jobqueue.errors import StoreUnavailableError
from jobqueue.lease.manager import LeaseManager
from jobqueue.queue.client import QueueClient


class TestHealthEndpoints:
    """Tests for health and metrics endpoints."""

    @pytest.mark.asyncio
    async def test_health_check(self, client: AsyncClient):
        """Test the health endpoint."""
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] == "healthy"
        assert data["worker_id"] == "test-worker"
        assert data["service"] == "jobqueue"

    @pytest.mark.asyncio
    async def test_metrics_endpoint(self, client: AsyncClient, queue_client: QueueClient):
        """Test the Prometheus metrics endpoint."""
        await queue_client.enqueue("echo")

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert 'jobqueue_jobs_enqueued_total{kind="echo"} 1.0' in response.text


class TestJobEndpoints:
    """Tests for job inspection and operator endpoints."""

    @pytest.mark.asyncio
    async def test_get_job(self, client: AsyncClient, queue_client: QueueClient, sample_job_payload):
        job_id = await queue_client.enqueue("echo", sample_job_payload, dedupe_key="greet")

        response = await client.get(f"/v1/jobs/{job_id}")

        assert response.status_code == 200
        data = response.json()
        assert data["id"] == str(job_id)
        assert data["state"] == "pending"
        assert data["payload"] == sample_job_payload
        assert data["payload_encoding"] == "json"
        assert data["dedupe_key"] == "greet"

    @pytest.mark.asyncio
    async def test_get_job_not_found(self, client: AsyncClient):
        response = await client.get(f"/v1/jobs/{uuid4()}")

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_list_jobs_with_filters(self, client: AsyncClient, queue_client: QueueClient):
        """Test listing with state and kind filters and pagination."""
        for _ in range(3):
            await queue_client.enqueue("echo")
        cancelled = await queue_client.enqueue("sleep", {"duration_seconds": 0})
        await queue_client.cancel(cancelled)

        response = await client.get("/v1/jobs", params={"kind": "echo", "limit": 2})
        data = response.json()
        assert response.status_code == 200
        assert data["total"] == 3
        assert len(data["jobs"]) == 2
        assert data["has_next"] is True

        response = await client.get("/v1/jobs", params={"state": "failed"})
        data = response.json()
        assert [job["id"] for job in data["jobs"]] == [str(cancelled)]

    @pytest.mark.asyncio
    async def test_list_jobs_rejects_bad_state(self, client: AsyncClient):
        response = await client.get("/v1/jobs", params={"state": "bogus"})

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_stats(self, client: AsyncClient, queue_client: QueueClient):
        await queue_client.enqueue("echo")
        await queue_client.enqueue("echo")

        response = await client.get("/v1/jobs/stats")

        assert response.status_code == 200
        data = response.json()
        assert data["counts"]["pending"] == 2
        assert data["counts"]["dead"] == 0
        assert data["total"] == 2

    @pytest.mark.asyncio
    async def test_requeue_dead_job(
        self, client: AsyncClient, queue_client: QueueClient, leases: LeaseManager
    ):
        """Test the operator requeue action."""
        job_id = await queue_client.enqueue("echo", max_attempts=1)
        [job] = await leases.claim(1)
        await leases.fail(job, "boom")

        response = await client.post(f"/v1/jobs/{job_id}/requeue")

        assert response.status_code == 200
        data = response.json()
        assert data["state"] == "pending"
        assert data["attempts"] == 0
        assert data["last_error"] is None

    @pytest.mark.asyncio
    async def test_requeue_without_reset_on_exhausted_job(
        self, client: AsyncClient, queue_client: QueueClient, leases: LeaseManager
    ):
        """Test that keeping attempts on an exhausted job is a conflict."""
        job_id = await queue_client.enqueue("echo", max_attempts=1)
        [job] = await leases.claim(1)
        await leases.fail(job, "boom")

        response = await client.post(
            f"/v1/jobs/{job_id}/requeue", json={"reset_attempts": False}
        )

        assert response.status_code == 409
        assert "no attempts left" in response.json()["detail"]
        assert (await queue_client.get_job(job_id)).state == JobState.DEAD

    @pytest.mark.asyncio
    async def test_requeue_without_reset_keeps_attempts(
        self, client: AsyncClient, queue_client: QueueClient, leases: LeaseManager
    ):
        job_id = await queue_client.enqueue("echo", max_attempts=3)
        [job] = await leases.claim(1)
        await leases.fail(job, "bad input", permanent=True)

        response = await client.post(
            f"/v1/jobs/{job_id}/requeue", json={"reset_attempts": False}
        )

        assert response.status_code == 200
        assert response.json()["attempts"] == 1


    @pytest.mark.asyncio
    async def test_requeue_requires_dead_state(self, client: AsyncClient, queue_client: QueueClient):
        job_id = await queue_client.enqueue("echo")

        response = await client.post(f"/v1/jobs/{job_id}/requeue")

        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_requeue_not_found(self, client: AsyncClient):
        response = await client.post(f"/v1/jobs/{uuid4()}/requeue")

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_store_outage_returns_503(self, client: AsyncClient, monkeypatch):
        """Test that Store connectivity errors map to Service Unavailable."""

        async def unavailable(self):
            raise StoreUnavailableError("connection refused")

        monkeypatch.setattr(QueueClient, "stats", unavailable)

        response = await client.get("/v1/jobs/stats")

        assert response.status_code == 503
