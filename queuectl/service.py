"""
Queue operations exposed to the CLI and other glue code.

Each function runs in its own transaction. Callers must have called
init_db() first.
"""

import logging
from collections.abc import Mapping, Sequence
from datetime import timedelta
from typing import Any
from uuid import UUID

from queuectl.config import get_settings
from queuectl.constants import DEFAULT_LIST_LIMIT, SPAN_ENQUEUE_JOB, JobState
from queuectl.db import Job, get_session_context
from queuectl.db.repository import ConfigRepository, JobRepository, WorkerRepository
from queuectl.exceptions import NotFoundError, ValidationError
from queuectl.observability.metrics import get_metrics
from queuectl.observability.tracing import get_tracer
from queuectl.types.job import JobSpec, QueueStatus

logger = logging.getLogger(__name__)


def parse_job_id(job_id: UUID | str) -> UUID:
    """
    Parse a job id given as text.

    Raises:
        ValidationError: If the value is not a UUID.
    """
    if isinstance(job_id, UUID):
        return job_id
    try:
        return UUID(str(job_id).strip())
    except ValueError:
        raise ValidationError(f"Invalid job id: {job_id!r}") from None


def parse_state(state: JobState | str | None) -> JobState | None:
    """
    Parse a job state filter.

    Raises:
        ValidationError: If the value is not a known state.
    """
    if state is None or isinstance(state, JobState):
        return state
    try:
        return JobState(state.strip().lower())
    except ValueError:
        allowed = ", ".join(s.value for s in JobState)
        raise ValidationError(f"Unknown state {state!r}. Expected one of: {allowed}") from None


async def enqueue(job_spec: JobSpec | Mapping[str, Any]) -> Job:
    """
    Validate and store a new job.

    Raises:
        ValidationError: If the spec is malformed.
    """
    with get_tracer().start_as_current_span(SPAN_ENQUEUE_JOB) as span:
        async with get_session_context() as session:
            job = await JobRepository(session).enqueue(job_spec)
        span.set_attribute("job_id", str(job.id))

    get_metrics().record_job_enqueued()
    return job


async def get_job(job_id: UUID | str) -> Job:
    """
    Get a job by id.

    Raises:
        NotFoundError: If the job does not exist.
    """
    job_id = parse_job_id(job_id)
    async with get_session_context() as session:
        job = await JobRepository(session).get_job(job_id)
    if job is None:
        raise NotFoundError(f"Job {job_id} not found", {"job_id": str(job_id)})
    return job


async def list_jobs(
    state: JobState | str | None = None,
    limit: int = DEFAULT_LIST_LIMIT,
    offset: int = 0,
) -> Sequence[Job]:
    """List jobs, newest first."""
    async with get_session_context() as session:
        jobs, _ = await JobRepository(session).list_jobs(parse_state(state), limit, offset)
    return jobs


async def get_status() -> QueueStatus:
    """
    Get per-state job counts and the number of live workers.

    Workers are counted across processes through their liveness records.
    """
    async with get_session_context() as session:
        repo = JobRepository(session)
        config = await repo.runtime_config()
        counts = await repo.get_job_stats()
        # Workers silent for a lease or two heartbeats, whichever is longer, are presumed dead
        heartbeat = timedelta(seconds=get_settings().worker_heartbeat_interval_seconds)
        active = await WorkerRepository(session).count_active(
            stale_after=max(config.lease_timeout, 2 * heartbeat)
        )

    get_metrics().update_queue_depth(counts)
    return QueueStatus(counts=counts, active_workers=active)


async def dlq_list(limit: int = DEFAULT_LIST_LIMIT, offset: int = 0) -> Sequence[Job]:
    """List jobs in the dead letter queue, most recently failed first."""
    async with get_session_context() as session:
        return await JobRepository(session).dlq_list(limit, offset)


async def dlq_retry(job_id: UUID | str) -> bool:
    """
    Move a dead job back to pending with attempts reset to 0.

    Returns:
        False if the job is unknown or not dead.
    """
    try:
        job_id = parse_job_id(job_id)
    except ValidationError:
        return False
    async with get_session_context() as session:
        return await JobRepository(session).dlq_retry(job_id)


async def get_config(key: str) -> str:
    """Get the effective value of a runtime config key."""
    values = await get_all_config()
    if key not in values:
        raise ValidationError(f"Unknown config key {key!r}")
    return values[key]


async def get_all_config() -> dict[str, str]:
    """Get every runtime config key with its effective value."""
    async with get_session_context() as session:
        return await ConfigRepository(session).get_all()


async def set_config(key: str, value: str) -> str:
    """
    Persist a runtime config override.

    Raises:
        ValidationError: If the key is unknown or the value is malformed.
    """
    async with get_session_context() as session:
        return await ConfigRepository(session).set(key, value)


async def request_stop() -> int:
    """
    Ask workers in every process to stop after their current job.

    Returns:
        Number of workers signalled.
    """
    async with get_session_context() as session:
        count = await WorkerRepository(session).request_stop()
    logger.info(f"Requested stop for {count} worker(s)")
    return count
