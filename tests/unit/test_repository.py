"""
Unit tests for the job repository.
"""

from datetime import datetime, timedelta
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession

from queuectl.constants import FailOutcome, JobState
from queuectl.db.repository import JobRepository
from queuectl.exceptions import NotFoundError, ValidationError
from queuectl.types.job import JobSpec, RuntimeConfig

T0 = datetime(2026, 1, 1, 12, 0, 0)


class TestJobRepository:
    """Tests for JobRepository."""

    @pytest_asyncio.fixture
    async def repo(
        self,
        db_session: AsyncSession,
        runtime_config: RuntimeConfig,
    ) -> JobRepository:
        """Create a repository instance."""
        return JobRepository(db_session, config=runtime_config)

    async def test_enqueue_success(self, repo: JobRepository, db_session: AsyncSession):
        """Test successful job creation."""
        job = await repo.enqueue({"command": "echo hi"}, now=T0)
        await db_session.commit()

        assert job.id is not None
        assert job.command == "echo hi"
        assert job.state == JobState.PENDING
        assert job.attempts == 0
        assert job.max_retries == 3
        assert job.run_at == T0
        assert job.claim_token is None

    async def test_enqueue_with_schedule_and_retries(self, repo: JobRepository):
        """Test that run_at and max_retries from the spec are kept."""
        run_at = T0 + timedelta(hours=1)

        job = await repo.enqueue(
            {"command": "echo later", "run_at": "2026-01-01T13:00:00Z", "max_retries": 0},
            now=T0,
        )

        assert job.run_at == run_at
        assert job.max_retries == 0

    async def test_enqueue_accepts_job_spec(self, repo: JobRepository):
        """Test that a JobSpec model is accepted as-is."""
        job = await repo.enqueue(JobSpec(command="  true  "), now=T0)
        assert job.command == "true"

    @pytest.mark.parametrize(
        "spec",
        [
            {},
            {"command": ""},
            {"command": "   "},
            {"command": "true", "run_at": "not a timestamp"},
            {"command": "true", "max_retries": -1},
            "echo hi",
        ],
    )
    async def test_enqueue_rejects_malformed_spec(self, repo: JobRepository, spec):
        """Test that malformed specs raise ValidationError and write nothing."""
        with pytest.raises(ValidationError):
            await repo.enqueue(spec)

        _, total = await repo.list_jobs()
        assert total == 0

    async def test_get_job_not_found(self, repo: JobRepository):
        """Test getting a non-existent job."""
        assert await repo.get_job(uuid4()) is None

    async def test_list_jobs_newest_first(self, repo: JobRepository):
        """Test listing order, filtering and pagination."""
        first = await repo.enqueue({"command": "echo 1"}, now=T0)
        second = await repo.enqueue({"command": "echo 2"}, now=T0 + timedelta(seconds=1))
        third = await repo.enqueue({"command": "echo 3"}, now=T0 + timedelta(seconds=2))

        jobs, total = await repo.list_jobs()
        assert total == 3
        assert [j.id for j in jobs] == [third.id, second.id, first.id]

        page, total = await repo.list_jobs(limit=1, offset=1)
        assert total == 3
        assert [j.id for j in page] == [second.id]

        await repo.claim("worker-1", now=T0 + timedelta(seconds=5))
        processing, total = await repo.list_jobs(state=JobState.PROCESSING)
        assert total == 1
        assert processing[0].id == first.id

    async def test_list_jobs_rejects_negative_paging(self, repo: JobRepository):
        with pytest.raises(ValidationError):
            await repo.list_jobs(limit=-1)

    async def test_enqueue_then_claim_round_trip(self, repo: JobRepository):
        """Test that a fresh job is claimed in processing with attempts 0."""
        job = await repo.enqueue({"command": "echo hi"}, now=T0)

        claimed = await repo.claim("worker-1", now=T0)

        assert claimed is not None
        assert claimed.id == job.id
        assert claimed.state == JobState.PROCESSING
        assert claimed.attempts == 0
        assert claimed.command == "echo hi"
        assert claimed.claimed_by == "worker-1"
        assert claimed.claim_token

    async def test_claim_empty_queue(self, repo: JobRepository):
        assert await repo.claim("worker-1", now=T0) is None

    async def test_claim_orders_by_run_at_then_created_at(self, repo: JobRepository):
        """Test that the most overdue job is claimed first."""
        late = await repo.enqueue(
            {"command": "echo late", "run_at": T0 - timedelta(minutes=1)}, now=T0
        )
        early = await repo.enqueue(
            {"command": "echo early", "run_at": T0 - timedelta(minutes=5)},
            now=T0 + timedelta(seconds=1),
        )
        tie = await repo.enqueue(
            {"command": "echo tie", "run_at": T0 - timedelta(minutes=1)},
            now=T0 + timedelta(seconds=2),
        )

        now = T0 + timedelta(seconds=10)
        order = [(await repo.claim("worker-1", now=now)).id for _ in range(3)]

        assert order == [early.id, late.id, tie.id]
        assert await repo.claim("worker-1", now=now) is None

    async def test_claim_respects_future_run_at(self, repo: JobRepository):
        """Test that a job scheduled an hour ahead is only claimed once due."""
        job = await repo.enqueue(
            {"command": "echo later", "run_at": T0 + timedelta(hours=1)}, now=T0
        )

        assert await repo.claim("worker-1", now=T0) is None
        assert await repo.claim("worker-1", now=T0 + timedelta(minutes=59)) is None

        claimed = await repo.claim("worker-1", now=T0 + timedelta(hours=1))
        assert claimed is not None
        assert claimed.id == job.id

    async def test_claim_tokens_are_unique(self, repo: JobRepository):
        await repo.enqueue({"command": "true"}, now=T0)
        await repo.enqueue({"command": "true"}, now=T0)

        first = await repo.claim("worker-1", now=T0)
        second = await repo.claim("worker-2", now=T0)

        assert first.id != second.id
        assert first.claim_token != second.claim_token

    async def test_complete_success(self, repo: JobRepository):
        """Test successful job completion."""
        job = await repo.enqueue({"command": "true"}, now=T0)
        claimed = await repo.claim("worker-1", now=T0)

        assert await repo.complete(job.id, claimed.claim_token, now=T0) is True

        completed = await repo.get_job(job.id)
        assert completed.state == JobState.COMPLETED
        assert completed.completed_at == T0
        assert completed.claim_token is None
        assert completed.last_exit_code == 0

    async def test_complete_with_wrong_token_is_noop(self, repo: JobRepository):
        job = await repo.enqueue({"command": "true"}, now=T0)
        await repo.claim("worker-1", now=T0)

        assert await repo.complete(job.id, "not-the-token", now=T0) is False
        assert (await repo.get_job(job.id)).state == JobState.PROCESSING

    async def test_complete_unknown_job(self, repo: JobRepository):
        with pytest.raises(NotFoundError):
            await repo.complete(uuid4(), "token")

    async def test_fail_with_retry(self, repo: JobRepository):
        """Test job failure with retries left."""
        job = await repo.enqueue({"command": "false"}, now=T0)
        claimed = await repo.claim("worker-1", now=T0)

        outcome = await repo.fail(
            job.id, claimed.claim_token, "exit_code=1", exit_code=1, now=T0, jitter=0
        )

        assert outcome == FailOutcome.RETRY_SCHEDULED
        failed = await repo.get_job(job.id)
        assert failed.state == JobState.PENDING
        assert failed.attempts == 1
        assert failed.last_error == "exit_code=1"
        assert failed.last_exit_code == 1
        assert failed.run_at == T0 + timedelta(seconds=2)
        assert failed.claim_token is None
        assert failed.claimed_by is None

    async def test_fail_with_wrong_token_is_ignored(self, repo: JobRepository):
        job = await repo.enqueue({"command": "false"}, now=T0)
        await repo.claim("worker-1", now=T0)

        outcome = await repo.fail(job.id, "not-the-token", "boom", now=T0)

        assert outcome == FailOutcome.IGNORED
        unchanged = await repo.get_job(job.id)
        assert unchanged.state == JobState.PROCESSING
        assert unchanged.attempts == 0

    async def test_fail_unknown_job(self, repo: JobRepository):
        with pytest.raises(NotFoundError):
            await repo.fail(uuid4(), "token", "boom")

    async def test_fail_truncates_error(self, repo: JobRepository):
        job = await repo.enqueue({"command": "false"}, now=T0)
        claimed = await repo.claim("worker-1", now=T0)

        await repo.fail(job.id, claimed.claim_token, "x" * 10_000, now=T0, jitter=0)

        assert len((await repo.get_job(job.id)).last_error) == 2000

    async def test_three_failures_with_two_retries_reach_dlq(self, repo: JobRepository):
        """Test pending, pending, dead after three consecutive failures."""
        job = await repo.enqueue({"command": "false", "max_retries": 2}, now=T0)
        now = T0
        history = []

        for _ in range(3):
            claimed = await repo.claim("worker-1", now=now)
            assert claimed is not None and claimed.id == job.id
            await repo.fail(job.id, claimed.claim_token, "boom", exit_code=1, now=now, jitter=0)

            current = await repo.get_job(job.id)
            history.append((current.state, current.attempts))
            now = max(now, current.run_at)

        assert history == [
            (JobState.PENDING, 1),
            (JobState.PENDING, 2),
            (JobState.DEAD, 3),
        ]

    async def test_backoff_grows_between_retries(self, repo: JobRepository):
        job = await repo.enqueue({"command": "false", "max_retries": 5}, now=T0)
        delays = []
        now = T0

        for _ in range(3):
            claimed = await repo.claim("worker-1", now=now)
            await repo.fail(job.id, claimed.claim_token, "boom", now=now, jitter=0)
            current = await repo.get_job(job.id)
            delays.append(current.run_at - now)
            now = current.run_at

        assert delays == [timedelta(seconds=2), timedelta(seconds=4), timedelta(seconds=8)]

    async def test_max_retries_zero_goes_straight_to_dlq(self, repo: JobRepository):
        job = await repo.enqueue({"command": "false", "max_retries": 0}, now=T0)
        claimed = await repo.claim("worker-1", now=T0)

        outcome = await repo.fail(job.id, claimed.claim_token, "boom", now=T0)

        assert outcome == FailOutcome.DEAD
        dead = await repo.get_job(job.id)
        assert dead.state == JobState.DEAD
        assert dead.attempts == 1

    async def test_dead_job_is_never_claimed(self, repo: JobRepository):
        job = await repo.enqueue({"command": "false", "max_retries": 0}, now=T0)
        claimed = await repo.claim("worker-1", now=T0)
        await repo.fail(job.id, claimed.claim_token, "boom", now=T0)

        far_future = T0 + timedelta(days=365)
        assert await repo.claim("worker-1", now=far_future) is None
        assert await repo.release_expired_claims(now=far_future) == 0
        assert (await repo.get_job(job.id)).state == JobState.DEAD

    async def test_stale_claim_is_taken_over(self, repo: JobRepository):
        """Test that an expired claim is lost and the old token becomes a no-op."""
        job = await repo.enqueue({"command": "sleep 100"}, now=T0)
        first = await repo.claim("worker-1", now=T0)
        first_token = first.claim_token

        # Lease still valid
        assert await repo.claim("worker-2", now=T0 + timedelta(seconds=29)) is None

        second = await repo.claim("worker-2", now=T0 + timedelta(seconds=30))
        assert second is not None
        assert second.id == job.id
        assert second.claimed_by == "worker-2"
        assert second.claim_token != first_token

        assert await repo.complete(job.id, first_token) is False
        assert await repo.fail(job.id, first_token, "late") == FailOutcome.IGNORED

        current = await repo.get_job(job.id)
        assert current.state == JobState.PROCESSING
        assert current.claimed_by == "worker-2"
        assert current.attempts == 0

        assert await repo.complete(job.id, second.claim_token) is True

    async def test_heartbeat_extends_claim(self, repo: JobRepository):
        job = await repo.enqueue({"command": "sleep 100"}, now=T0)
        claimed = await repo.claim("worker-1", now=T0)
        token = claimed.claim_token

        assert await repo.heartbeat(job.id, token, now=T0 + timedelta(seconds=20))
        assert await repo.claim("worker-2", now=T0 + timedelta(seconds=40)) is None
        assert await repo.claim("worker-2", now=T0 + timedelta(seconds=50)) is not None

        assert not await repo.heartbeat(job.id, token)

    async def test_complete_on_pending_job_is_noop(self, repo: JobRepository):
        job = await repo.enqueue({"command": "true"}, now=T0)

        assert await repo.complete(job.id, "token", now=T0) is False
        assert (await repo.get_job(job.id)).state == JobState.PENDING

    async def test_completed_job_is_absorbing(self, repo: JobRepository):
        """Test that a completed job rejects every further transition."""
        job = await repo.enqueue({"command": "true"}, now=T0)
        claimed = await repo.claim("worker-1", now=T0)
        token = claimed.claim_token
        assert await repo.complete(job.id, token, now=T0) is True

        assert await repo.complete(job.id, token, now=T0) is False
        assert await repo.fail(job.id, token, "late", now=T0) == FailOutcome.IGNORED
        assert await repo.dlq_retry(job.id, now=T0) is False
        assert await repo.claim("worker-2", now=T0 + timedelta(days=1)) is None
        assert await repo.release_expired_claims(now=T0 + timedelta(days=1)) == 0

        current = await repo.get_job(job.id)
        assert current.state == JobState.COMPLETED
        assert current.attempts == 0
        assert current.last_error is None

    async def test_release_expired_claims(self, repo: JobRepository):
        """Test that the reaper sweep returns stale jobs to pending."""
        stale = await repo.enqueue({"command": "sleep 100"}, now=T0)
        await repo.claim("worker-1", now=T0)
        fresh = await repo.enqueue({"command": "sleep 100"}, now=T0)
        await repo.claim("worker-2", now=T0 + timedelta(seconds=20))

        released = await repo.release_expired_claims(now=T0 + timedelta(seconds=35))

        assert released == 1
        released_job = await repo.get_job(stale.id)
        assert released_job.state == JobState.PENDING
        assert released_job.claim_token is None
        assert released_job.attempts == 0
        assert (await repo.get_job(fresh.id)).state == JobState.PROCESSING

    async def test_dlq_list_and_retry(self, repo: JobRepository):
        job = await repo.enqueue({"command": "false", "max_retries": 0}, now=T0)
        claimed = await repo.claim("worker-1", now=T0)
        await repo.fail(job.id, claimed.claim_token, "boom", now=T0)

        dead = await repo.dlq_list()
        assert [j.id for j in dead] == [job.id]

        retry_at = T0 + timedelta(minutes=5)
        assert await repo.dlq_retry(job.id, now=retry_at) is True

        retried = await repo.get_job(job.id)
        assert retried.state == JobState.PENDING
        assert retried.attempts == 0
        assert retried.run_at == retry_at
        assert retried.last_error == "boom"
        assert await repo.dlq_list() == []

        assert (await repo.claim("worker-1", now=retry_at)).id == job.id

    async def test_dlq_retry_on_non_dead_job(self, repo: JobRepository):
        job = await repo.enqueue({"command": "true"}, now=T0)

        assert await repo.dlq_retry(job.id) is False
        assert (await repo.get_job(job.id)).state == JobState.PENDING

    async def test_dlq_retry_on_unknown_job(self, repo: JobRepository):
        assert await repo.dlq_retry(uuid4()) is False

    async def test_attempts_never_decrease_without_dlq_retry(self, repo: JobRepository):
        job = await repo.enqueue({"command": "false", "max_retries": 3}, now=T0)
        seen = [0]
        now = T0

        for step in range(4):
            claimed = await repo.claim("worker-1", now=now)
            if step == 1:
                # Let the claim expire once; expiry must not touch attempts
                now += timedelta(seconds=31)
                claimed = await repo.claim("worker-2", now=now)
            await repo.fail(job.id, claimed.claim_token, "boom", now=now, jitter=0.5)
            current = await repo.get_job(job.id)
            seen.append(current.attempts)
            now = max(now, current.run_at or now)

        assert seen == sorted(seen)
        assert seen[-1] == 4

    async def test_get_job_stats(self, repo: JobRepository):
        await repo.enqueue({"command": "true"}, now=T0)
        await repo.enqueue({"command": "true"}, now=T0)
        await repo.claim("worker-1", now=T0)

        stats = await repo.get_job_stats()

        assert stats == {
            "pending": 1,
            "processing": 1,
            "completed": 0,
            "failed": 0,
            "dead": 0,
        }
