"""
Integration tests for JobRepository against the Store.
"""

from datetime import timedelta
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.constants import CANCELLED_ERROR, MAX_ERROR_LENGTH, JobState
from jobqueue.db.models import utcnow
from jobqueue.db.repository import JobRepository, truncate_error
from jobqueue.errors import InvalidStateError

LEASE = timedelta(seconds=30)


class TestJobRepository:
    """Tests for Store operations, one transaction per test."""

    @pytest_asyncio.fixture
    async def repo(self, db_session: AsyncSession) -> JobRepository:
        """Create a repository instance."""
        return JobRepository(db_session)

    @pytest.mark.asyncio
    async def test_create_job(self, repo: JobRepository):
        """Test creating a pending job."""
        job, created = await repo.create_job(kind="email", payload={"to": "a"}, priority=5)

        assert created is True
        assert job.state == JobState.PENDING
        assert job.attempts == 0
        assert job.priority == 5
        assert job.run_after <= utcnow()
        assert job.run_after.tzinfo is not None

    @pytest.mark.asyncio
    async def test_dedupe_returns_live_job(self, repo: JobRepository):
        """Test that a second create with the same key returns the first job."""
        first, created_first = await repo.create_job(kind="email", payload=1, dedupe_key="x")
        second, created_second = await repo.create_job(kind="email", payload=2, dedupe_key="x")

        assert created_first is True
        assert created_second is False
        assert second.id == first.id
        _, total = await repo.list_jobs()
        assert total == 1

    @pytest.mark.asyncio
    async def test_dedupe_ignores_terminal_jobs(self, repo: JobRepository):
        """Test that a finished job frees its dedupe key."""
        first, _ = await repo.create_job(kind="email", payload=1, dedupe_key="x")
        await repo.cancel_job(first.id)

        second, created = await repo.create_job(kind="email", payload=2, dedupe_key="x")

        assert created is True
        assert second.id != first.id

    @pytest.mark.asyncio
    async def test_claim_order(self, repo: JobRepository):
        """Test priority desc, then run_after asc, then created_at asc."""
        now = utcnow()
        low, _ = await repo.create_job(kind="k", payload=None, priority=0, run_after=now - timedelta(seconds=30))
        high, _ = await repo.create_job(kind="k", payload=None, priority=10, run_after=now)
        early, _ = await repo.create_job(kind="k", payload=None, priority=0, run_after=now - timedelta(seconds=60))
        future, _ = await repo.create_job(kind="k", payload=None, priority=100, run_after=now + timedelta(hours=1))

        claimed = await repo.claim_jobs("w1", batch_size=10, lease_duration=LEASE)

        assert [job.id for job in claimed] == [high.id, early.id, low.id]
        assert future.id not in {job.id for job in claimed}

    @pytest.mark.asyncio
    async def test_claim_sets_lease_and_counts_attempt(self, repo: JobRepository):
        job, _ = await repo.create_job(kind="k", payload=None)
        now = utcnow()

        [claimed] = await repo.claim_jobs("w1", batch_size=1, lease_duration=LEASE, now=now)

        assert claimed.id == job.id
        assert claimed.state == JobState.ACTIVE
        assert claimed.lease_owner == "w1"
        assert claimed.lease_expires_at == now + LEASE
        assert claimed.attempts == 1
        assert await repo.claim_jobs("w2", batch_size=1, lease_duration=LEASE) == []

    @pytest.mark.asyncio
    async def test_claim_respects_batch_size(self, repo: JobRepository):
        for _ in range(5):
            await repo.create_job(kind="k", payload=None)

        claimed = await repo.claim_jobs("w1", batch_size=3, lease_duration=LEASE)

        assert len(claimed) == 3
        assert await repo.claim_jobs("w1", batch_size=0, lease_duration=LEASE) == []

    @pytest.mark.asyncio
    async def test_complete_is_fenced(self, repo: JobRepository):
        """Test that only the lease holder at the claimed attempt can complete."""
        await repo.create_job(kind="k", payload=None)
        [job] = await repo.claim_jobs("w1", batch_size=1, lease_duration=LEASE)

        assert await repo.complete_job(job.id, "w2", job.attempts) is None
        assert await repo.complete_job(job.id, "w1", job.attempts + 1) is None

        done = await repo.complete_job(job.id, "w1", job.attempts, result={"ok": True})

        assert done.state == JobState.COMPLETED
        assert done.result == {"ok": True}
        assert done.lease_owner is None
        assert done.completed_at is not None
        assert await repo.complete_job(job.id, "w1", job.attempts) is None

    @pytest.mark.asyncio
    async def test_fail_reschedules_or_dead_letters(self, repo: JobRepository):
        await repo.create_job(kind="k", payload=None, max_attempts=2)
        [job] = await repo.claim_jobs("w1", batch_size=1, lease_duration=LEASE)
        retry_at = utcnow() + timedelta(seconds=5)

        retried = await repo.fail_job(job.id, "w1", job.attempts, "busy", retry_at=retry_at)

        assert retried.state == JobState.PENDING
        assert retried.run_after == retry_at
        assert retried.last_error == "busy"
        assert retried.lease_owner is None

        [again] = await repo.claim_jobs(
            "w1", batch_size=1, lease_duration=LEASE, now=retry_at + timedelta(seconds=1)
        )
        dead = await repo.fail_job(again.id, "w1", again.attempts, "still busy", retry_at=None)

        assert dead.state == JobState.DEAD
        assert dead.attempts == 2

    @pytest.mark.asyncio
    async def test_extend_lease_only_while_valid(self, repo: JobRepository):
        await repo.create_job(kind="k", payload=None)
        now = utcnow()
        [job] = await repo.claim_jobs("w1", batch_size=1, lease_duration=LEASE, now=now)

        extended = await repo.extend_lease(job.id, "w1", timedelta(seconds=60), now=now)
        assert extended.lease_expires_at == now + timedelta(seconds=60)

        assert await repo.extend_lease(job.id, "w2", LEASE) is None
        expired_at = now + timedelta(seconds=120)
        assert await repo.extend_lease(job.id, "w1", LEASE, now=expired_at) is None

    @pytest.mark.asyncio
    async def test_reclaim_expired_lease(self, repo: JobRepository):
        """Test that an expired job returns to pending without a second attempt charge."""
        await repo.create_job(kind="k", payload=None)
        now = utcnow()
        [job] = await repo.claim_jobs("w1", batch_size=1, lease_duration=LEASE, now=now)

        assert await repo.find_expired_leases(now=now) == []

        later = now + LEASE + timedelta(seconds=1)
        [expired] = await repo.find_expired_leases(now=later)
        reclaimed = await repo.reclaim_job(expired, retry_at=later, now=later)

        assert reclaimed.state == JobState.PENDING
        assert reclaimed.attempts == 1
        assert reclaimed.lease_owner is None
        assert "w1" in reclaimed.last_error
        assert await repo.complete_job(job.id, "w1", job.attempts) is None

    @pytest.mark.asyncio
    async def test_cancel(self, repo: JobRepository):
        """Test cancelling pending, active and missing jobs."""
        pending, _ = await repo.create_job(kind="k", payload=None)

        cancelled = await repo.cancel_job(pending.id)

        assert cancelled.state == JobState.FAILED
        assert cancelled.last_error == CANCELLED_ERROR

        await repo.create_job(kind="k", payload=None)
        [active] = await repo.claim_jobs("w1", batch_size=1, lease_duration=LEASE)
        with pytest.raises(InvalidStateError):
            await repo.cancel_job(active.id)

        assert await repo.cancel_job(uuid4()) is None

    @pytest.mark.asyncio
    async def test_requeue_dead(self, repo: JobRepository):
        await repo.create_job(kind="k", payload=None, max_attempts=1)
        [job] = await repo.claim_jobs("w1", batch_size=1, lease_duration=LEASE)
        await repo.fail_job(job.id, "w1", job.attempts, "boom", retry_at=None)

        requeued = await repo.requeue_dead(job.id)

        assert requeued.state == JobState.PENDING
        assert requeued.attempts == 0
        assert requeued.last_error is None
        with pytest.raises(InvalidStateError):
            await repo.requeue_dead(job.id)

    @pytest.mark.asyncio
    async def test_requeue_keeping_attempts_refused_when_exhausted(self, repo: JobRepository):
        """Test that attempts can never be pushed past max_attempts."""
        await repo.create_job(kind="k", payload=None, max_attempts=1)
        [job] = await repo.claim_jobs("w1", batch_size=1, lease_duration=LEASE)
        await repo.fail_job(job.id, "w1", job.attempts, "boom", retry_at=None)

        with pytest.raises(InvalidStateError, match="no attempts left"):
            await repo.requeue_dead(job.id, reset_attempts=False)

        unchanged = await repo.get_job(job.id)
        assert unchanged.state == JobState.DEAD
        assert unchanged.attempts == 1

    @pytest.mark.asyncio
    async def test_requeue_keeping_attempts_with_attempts_left(self, repo: JobRepository):
        """Test that a permanently failed job keeps its count when requeued."""
        await repo.create_job(kind="k", payload=None, max_attempts=3)
        [job] = await repo.claim_jobs("w1", batch_size=1, lease_duration=LEASE)
        await repo.fail_job(job.id, "w1", job.attempts, "bad input", retry_at=None)

        requeued = await repo.requeue_dead(job.id, reset_attempts=False)

        assert requeued.state == JobState.PENDING
        assert requeued.attempts == 1
        assert requeued.attempts < requeued.max_attempts


    @pytest.mark.asyncio
    async def test_stats_and_depth(self, repo: JobRepository):
        await repo.create_job(kind="a", payload=None)
        await repo.create_job(kind="b", payload=None)
        await repo.create_job(kind="b", payload=None, run_after=utcnow() + timedelta(hours=1))

        stats = await repo.get_job_stats()

        assert stats["pending"] == 3
        assert stats["dead"] == 0
        assert set(stats) == {state.value for state in JobState}
        assert await repo.get_queue_depth() == 2

        jobs, total = await repo.list_jobs(kind="b", limit=1)
        assert total == 2
        assert len(jobs) == 1

    def test_truncate_error(self):
        truncated = truncate_error("x" * (MAX_ERROR_LENGTH + 50))

        assert len(truncated) == MAX_ERROR_LENGTH
        assert truncated.endswith("...")
        assert truncate_error("short") == "short"
