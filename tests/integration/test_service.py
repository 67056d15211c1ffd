"""
Integration tests for the queue operations used by the CLI.
"""

from uuid import uuid4

import pytest

from queuectl import service
from queuectl.constants import JobState
from queuectl.exceptions import NotFoundError, ValidationError

pytestmark = pytest.mark.usefixtures("initialized_db")


class TestQueueOperations:
    async def test_enqueue_and_get(self):
        job = await service.enqueue({"command": "echo hi"})

        fetched = await service.get_job(str(job.id))

        assert fetched.id == job.id
        assert fetched.state == JobState.PENDING

    async def test_enqueue_rejects_missing_command(self):
        with pytest.raises(ValidationError):
            await service.enqueue({"run_at": "2026-01-01T00:00:00Z"})

        assert await service.list_jobs() == []

    async def test_get_unknown_job(self):
        with pytest.raises(NotFoundError):
            await service.get_job(uuid4())

    async def test_get_malformed_id(self):
        with pytest.raises(ValidationError):
            await service.get_job("job-1")

    async def test_list_jobs_state_filter(self):
        await service.enqueue({"command": "true"})

        assert len(await service.list_jobs("PENDING")) == 1
        assert await service.list_jobs("dead") == []
        with pytest.raises(ValidationError):
            await service.list_jobs("exploded")

    async def test_status_zero_fills_states(self):
        status = await service.get_status()

        assert status.total == 0
        assert status.active_workers == 0
        assert set(status.counts) == {state.value for state in JobState}

    async def test_dlq_retry_on_pending_job(self):
        job = await service.enqueue({"command": "true"})

        assert await service.dlq_retry(job.id) is False
        assert (await service.get_job(job.id)).state == JobState.PENDING

    @pytest.mark.parametrize("job_id", ["nope", str(uuid4())])
    async def test_dlq_retry_on_unknown_job(self, job_id: str):
        assert await service.dlq_retry(job_id) is False


class TestConfigOperations:
    async def test_set_and_get(self):
        assert await service.set_config("max_retries", "5") == "5"

        assert await service.get_config("max_retries") == "5"
        assert (await service.enqueue({"command": "true"})).max_retries == 5

    async def test_get_all(self):
        values = await service.get_all_config()

        assert set(values) == {
            "max_retries",
            "backoff_base",
            "backoff_max",
            "backoff_jitter",
            "lease_timeout",
            "job_timeout",
        }

    async def test_unknown_key(self):
        with pytest.raises(ValidationError):
            await service.get_config("nope")
        with pytest.raises(ValidationError):
            await service.set_config("nope", "1")

    @pytest.mark.parametrize(("key", "value"), [("backoff_base", "nan"), ("lease_timeout", "inf")])
    async def test_non_finite_values_are_rejected(self, key: str, value: str):
        with pytest.raises(ValidationError):
            await service.set_config(key, value)

        job = await service.enqueue({"command": "true"})
        assert (await service.get_status()).counts["pending"] == 1
        assert (await service.get_job(job.id)).state == JobState.PENDING

    async def test_request_stop_without_workers(self):
        assert await service.request_stop() == 0
