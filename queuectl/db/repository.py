"""
Repositories for database operations.
Implements the core data access patterns for the job lifecycle,
runtime configuration and worker liveness.
"""

import logging
import math
import secrets
from collections.abc import Mapping, Sequence
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from queuectl.config import Settings, get_settings
from queuectl.constants import (
    CONFIG_BACKOFF_BASE,
    CONFIG_BACKOFF_JITTER,
    CONFIG_BACKOFF_MAX,
    CONFIG_JOB_TIMEOUT,
    CONFIG_KEYS,
    CONFIG_LEASE_TIMEOUT,
    CONFIG_MAX_RETRIES,
    FailOutcome,
    JobState,
)
from queuectl.db.models import ConfigEntry, Job, WorkerRecord
from queuectl.exceptions import NotFoundError, ValidationError
from queuectl.retry import RetryPolicy
from queuectl.timeutil import utcnow
from queuectl.types.job import JobSpec, RuntimeConfig

logger = logging.getLogger(__name__)


def new_claim_token() -> str:
    """Generate an unguessable claim token."""
    return secrets.token_hex(16)


class JobRepository:
    """
    Repository for job database operations.

    Implements atomic operations for:
    - Job submission with validation
    - Claim acquisition as a single conditional UPDATE
    - Token-guarded completion and failure reporting
    - Claim expiry handling
    - Dead letter queue listing and replay
    """

    def __init__(
        self,
        session: AsyncSession,
        config: RuntimeConfig | None = None,
    ):
        """
        Initialize the repository with a database session.

        Args:
            session: The async database session.
            config: Effective job configuration. Loaded from the config
                table on first use when omitted.
        """
        self._session = session
        self._config = config

    async def runtime_config(self) -> RuntimeConfig:
        """Get the effective job configuration for this repository."""
        if self._config is None:
            self._config = await ConfigRepository(self._session).get_runtime_config()
        return self._config

    async def enqueue(
        self,
        spec: JobSpec | Mapping[str, Any],
        now: datetime | None = None,
    ) -> Job:
        """
        Create a new pending job.

        Args:
            spec: Job spec with a required command, optional run_at and
                optional max_retries.
            now: Reference time, defaults to the current time.

        Returns:
            The created Job.

        Raises:
            ValidationError: If the spec is malformed. Nothing is written.
        """
        spec = JobSpec.parse(spec)
        config = await self.runtime_config()
        now = now or utcnow()

        job = Job(
            id=uuid4(),
            command=spec.command,
            state=JobState.PENDING,
            run_at=spec.run_at or now,
            attempts=0,
            max_retries=(
                spec.max_retries if spec.max_retries is not None else config.max_retries
            ),
            created_at=now,
            updated_at=now,
        )
        self._session.add(job)
        await self._session.flush()

        logger.info(
            "Enqueued job",
            extra={"job_id": str(job.id), "run_at": job.run_at.isoformat()},
        )
        return job

    async def get_job(self, job_id: UUID) -> Job | None:
        """
        Get a job by ID.

        Args:
            job_id: The job UUID.

        Returns:
            The Job or None if not found.
        """
        stmt = (
            select(Job)
            .where(Job.id == job_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def _require_job(self, job_id: UUID) -> Job:
        job = await self.get_job(job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found", {"job_id": str(job_id)})
        return job

    async def list_jobs(
        self,
        state: JobState | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[Sequence[Job], int]:
        """
        List jobs, newest first, with optional state filtering.

        Args:
            state: Optional state filter.
            limit: Maximum number of jobs to return.
            offset: Offset for pagination.

        Returns:
            Tuple of (jobs, total_count).
        """
        if limit < 0 or offset < 0:
            raise ValidationError("limit and offset must be non-negative")

        filters = []
        if state is not None:
            filters.append(Job.state == JobState(state))

        count_stmt = select(func.count()).select_from(Job).where(*filters)
        total = (await self._session.execute(count_stmt)).scalar() or 0

        stmt = (
            select(Job)
            .where(*filters)
            .order_by(Job.created_at.desc(), Job.id.desc())
            .limit(limit)
            .offset(offset)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all(), total

    def _claimable(self, job: Any, now: datetime, stale_before: datetime):
        """Filter for jobs a worker may claim right now."""
        return or_(
            and_(job.state == JobState.PENDING, job.run_at <= now),
            and_(job.state == JobState.PROCESSING, job.updated_at <= stale_before),
        )

    async def claim(self, worker_id: str, now: datetime | None = None) -> Job | None:
        """
        Atomically claim the most overdue claimable job.

        Claimable jobs are pending jobs whose run_at has passed and
        processing jobs whose claim has not been refreshed within the lease
        timeout. Selection and transition happen in one UPDATE statement;
        the subquery row lock uses SKIP LOCKED where the backend supports it.

        Args:
            worker_id: The claiming worker's identity.
            now: Reference time, defaults to the current time.

        Returns:
            The claimed Job in PROCESSING state, or None.
        """
        config = await self.runtime_config()
        now = now or utcnow()
        stale_before = now - config.lease_timeout
        token = new_claim_token()

        candidate = aliased(Job, name="candidate")
        candidate_id = (
            select(candidate.id)
            .where(self._claimable(candidate, now, stale_before))
            .order_by(
                candidate.run_at.asc(),
                candidate.created_at.asc(),
                candidate.id.asc(),
            )
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )

        stmt = (
            update(Job)
            .where(
                and_(
                    Job.id == candidate_id,
                    self._claimable(Job, now, stale_before),
                )
            )
            .values(
                state=JobState.PROCESSING,
                claimed_by=worker_id,
                claim_token=token,
                updated_at=now,
            )
            .returning(Job)
            .execution_options(synchronize_session=False, populate_existing=True)
        )

        result = await self._session.execute(stmt)
        job = result.scalar_one_or_none()

        if job is not None:
            logger.info(
                "Claimed job",
                extra={
                    "job_id": str(job.id),
                    "worker_id": worker_id,
                    "attempt": job.attempts + 1,
                },
            )
        return job

    async def complete(
        self,
        job_id: UUID,
        claim_token: str,
        now: datetime | None = None,
    ) -> bool:
        """
        Mark a claimed job as completed.

        Args:
            job_id: The job UUID.
            claim_token: Token received from claim().
            now: Reference time, defaults to the current time.

        Returns:
            True if the job transitioned, False if the claim was lost.

        Raises:
            NotFoundError: If the job does not exist.
        """
        now = now or utcnow()
        stmt = (
            update(Job)
            .where(
                and_(
                    Job.id == job_id,
                    Job.state == JobState.PROCESSING,
                    Job.claim_token == claim_token,
                )
            )
            .values(
                state=JobState.COMPLETED,
                completed_at=now,
                updated_at=now,
                claim_token=None,
                last_exit_code=0,
            )
            .returning(Job.id)
            .execution_options(synchronize_session=False)
        )

        result = await self._session.execute(stmt)
        if result.scalar_one_or_none() is None:
            await self._require_job(job_id)
            logger.warning(
                "Ignoring completion for a lost claim",
                extra={"job_id": str(job_id)},
            )
            return False

        logger.info("Job completed successfully", extra={"job_id": str(job_id)})
        return True

    async def fail(
        self,
        job_id: UUID,
        claim_token: str,
        error: str,
        exit_code: int | None = None,
        now: datetime | None = None,
        jitter: float | None = None,
    ) -> FailOutcome:
        """
        Record a failed attempt. Either reschedule with backoff or move to DLQ.

        Args:
            job_id: The job UUID.
            claim_token: Token received from claim().
            error: Failure detail stored as last_error.
            exit_code: Exit status of the command, if any.
            now: Reference time, defaults to the current time.
            jitter: Fixed jitter sample for the backoff, random if omitted.

        Returns:
            RETRY_SCHEDULED, DEAD, or IGNORED when the claim was lost.

        Raises:
            NotFoundError: If the job does not exist.
        """
        job = await self._require_job(job_id)

        if job.state != JobState.PROCESSING or job.claim_token != claim_token:
            logger.warning(
                "Ignoring failure report for a lost claim",
                extra={"job_id": str(job_id)},
            )
            return FailOutcome.IGNORED

        config = await self.runtime_config()
        now = now or utcnow()
        policy = RetryPolicy.from_config(config)
        decision = policy.decide(job.attempts + 1, job.max_retries, now, jitter)

        values: dict[str, Any] = {
            "attempts": decision.attempts,
            "last_error": error[: get_settings().max_error_length],
            "last_exit_code": exit_code,
            "updated_at": now,
            "claim_token": None,
            "claimed_by": None,
        }
        if decision.retry:
            values["state"] = JobState.PENDING
            values["run_at"] = decision.run_at
        else:
            values["state"] = JobState.DEAD

        # Compare-and-swap on the state read above
        stmt = (
            update(Job)
            .where(
                and_(
                    Job.id == job_id,
                    Job.state == JobState.PROCESSING,
                    Job.claim_token == claim_token,
                    Job.attempts == job.attempts,
                )
            )
            .values(**values)
            .returning(Job.id)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.scalar_one_or_none() is None:
            return FailOutcome.IGNORED

        if decision.retry:
            logger.info(
                "Job queued for retry",
                extra={
                    "job_id": str(job_id),
                    "attempts": decision.attempts,
                    "run_at": decision.run_at.isoformat(),
                },
            )
            return FailOutcome.RETRY_SCHEDULED

        logger.warning(
            f"Job moved to DLQ after {decision.attempts} attempts",
            extra={"job_id": str(job_id), "error": values["last_error"]},
        )
        return FailOutcome.DEAD

    async def heartbeat(
        self,
        job_id: UUID,
        claim_token: str,
        now: datetime | None = None,
    ) -> bool:
        """
        Refresh a held claim so it does not expire.

        Returns:
            True if the claim is still held, False otherwise.
        """
        now = now or utcnow()
        stmt = (
            update(Job)
            .where(
                and_(
                    Job.id == job_id,
                    Job.state == JobState.PROCESSING,
                    Job.claim_token == claim_token,
                )
            )
            .values(updated_at=now)
            .returning(Job.id)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def release_expired_claims(self, now: datetime | None = None) -> int:
        """
        Return jobs with expired claims to the pending state.

        Called by the reaper to recover from worker crashes.

        Returns:
            Number of released jobs.
        """
        config = await self.runtime_config()
        now = now or utcnow()
        stale_before = now - config.lease_timeout

        stmt = (
            update(Job)
            .where(
                and_(
                    Job.state == JobState.PROCESSING,
                    Job.updated_at <= stale_before,
                )
            )
            .values(
                state=JobState.PENDING,
                claim_token=None,
                claimed_by=None,
                updated_at=now,
            )
            .returning(Job.id)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        released = result.scalars().all()

        if released:
            logger.info(
                f"Released {len(released)} jobs with expired claims",
                extra={"job_ids": [str(job_id) for job_id in released]},
            )
        return len(released)

    async def dlq_list(self, limit: int = 50, offset: int = 0) -> Sequence[Job]:
        """
        List dead jobs, most recently failed first.
        """
        stmt = (
            select(Job)
            .where(Job.state == JobState.DEAD)
            .order_by(Job.updated_at.desc(), Job.id.desc())
            .limit(limit)
            .offset(offset)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def dlq_retry(self, job_id: UUID, now: datetime | None = None) -> bool:
        """
        Re-enqueue a job from the dead letter queue.

        The attempt counter is reset to 0 and the job becomes due
        immediately. last_error is kept for inspection.

        Args:
            job_id: The job UUID.
            now: Reference time, defaults to the current time.

        Returns:
            True if the job was re-enqueued, False if it is unknown or
            not dead.
        """
        now = now or utcnow()
        stmt = (
            update(Job)
            .where(and_(Job.id == job_id, Job.state == JobState.DEAD))
            .values(
                state=JobState.PENDING,
                attempts=0,
                run_at=now,
                claim_token=None,
                claimed_by=None,
                completed_at=None,
                updated_at=now,
            )
            .returning(Job.id)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        retried = result.scalar_one_or_none() is not None

        if retried:
            logger.info("Job retried from DLQ", extra={"job_id": str(job_id)})
        return retried

    async def get_job_stats(self) -> dict[str, int]:
        """
        Get job counts by state.

        Returns:
            Dictionary of state -> count, including zero counts.
        """
        stmt = select(Job.state, func.count()).group_by(Job.state)
        result = await self._session.execute(stmt)

        stats = {state.value: 0 for state in JobState}
        for state, count in result.all():
            stats[JobState(state).value] = count
        return stats


def _parse_number(key: str, value: str, minimum: float, inclusive: bool) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be a number, got {value!r}") from None
    if not math.isfinite(number):
        raise ValidationError(f"{key} must be a finite number, got {value!r}")
    if number < minimum or (not inclusive and number == minimum):
        bound = ">=" if inclusive else ">"
        raise ValidationError(f"{key} must be {bound} {minimum:g}")
    return number


def normalize_config_value(key: str, value: str) -> str:
    """
    Validate a runtime config value and return its canonical string form.

    Raises:
        ValidationError: If the key is unknown or the value is malformed.
    """
    if key not in CONFIG_KEYS:
        allowed = ", ".join(sorted(CONFIG_KEYS))
        raise ValidationError(f"Unknown config key {key!r}. Allowed keys: {allowed}")

    value = str(value).strip()
    if key == CONFIG_MAX_RETRIES:
        try:
            number = int(value)
        except ValueError:
            raise ValidationError(f"{key} must be an integer, got {value!r}") from None
        if number < 0:
            raise ValidationError(f"{key} must be >= 0")
        return str(number)
    if key == CONFIG_JOB_TIMEOUT and value.lower() in ("", "0", "none", "off"):
        return "none"
    if key == CONFIG_BACKOFF_JITTER:
        return f"{_parse_number(key, value, 0, inclusive=True):g}"
    return f"{_parse_number(key, value, 0, inclusive=False):g}"


class ConfigRepository:
    """
    Repository for runtime configuration overrides.

    Values are stored as strings and layered over the environment
    settings when building the effective RuntimeConfig.
    """

    def __init__(self, session: AsyncSession, settings: Settings | None = None):
        self._session = session
        self._settings = settings or get_settings()

    async def get(self, key: str) -> str | None:
        """Get a stored override, or None if unset."""
        if key not in CONFIG_KEYS:
            raise ValidationError(f"Unknown config key {key!r}")
        entry = await self._session.get(ConfigEntry, key)
        return entry.value if entry is not None else None

    async def get_all(self) -> dict[str, str]:
        """Get every config key with its effective value as a string."""
        effective = await self.get_runtime_config()
        values = {
            CONFIG_MAX_RETRIES: str(effective.max_retries),
            CONFIG_BACKOFF_BASE: f"{effective.backoff_base_seconds:g}",
            CONFIG_BACKOFF_MAX: f"{effective.backoff_max_seconds:g}",
            CONFIG_BACKOFF_JITTER: f"{effective.backoff_jitter_seconds:g}",
            CONFIG_LEASE_TIMEOUT: f"{effective.lease_timeout_seconds:g}",
            CONFIG_JOB_TIMEOUT: (
                "none"
                if effective.job_timeout_seconds is None
                else f"{effective.job_timeout_seconds:g}"
            ),
        }
        return dict(sorted(values.items()))

    async def set(self, key: str, value: str) -> str:
        """
        Store an override.

        Returns:
            The canonical stored value.

        Raises:
            ValidationError: If the key is unknown or the value is malformed.
        """
        normalized = normalize_config_value(key, value)
        entry = await self._session.get(ConfigEntry, key)
        if entry is None:
            self._session.add(ConfigEntry(key=key, value=normalized, updated_at=utcnow()))
        else:
            entry.value = normalized
            entry.updated_at = utcnow()
        await self._session.flush()

        logger.info("Config updated", extra={"key": key, "value": normalized})
        return normalized

    async def get_runtime_config(self) -> RuntimeConfig:
        """
        Build the effective job configuration.

        Raises:
            ValidationError: If a stored override no longer validates.
        """
        result = await self._session.execute(select(ConfigEntry))
        overrides = {entry.key: entry.value for entry in result.scalars().all()}
        settings = self._settings

        job_timeout: str | float | None = overrides.get(
            CONFIG_JOB_TIMEOUT, settings.job_timeout_seconds
        )
        if job_timeout == "none":
            job_timeout = None

        values = {
            "max_retries": overrides.get(CONFIG_MAX_RETRIES, settings.default_max_retries),
            "backoff_base_seconds": overrides.get(
                CONFIG_BACKOFF_BASE, settings.backoff_base_seconds
            ),
            "backoff_max_seconds": overrides.get(CONFIG_BACKOFF_MAX, settings.backoff_max_seconds),
            "backoff_jitter_seconds": overrides.get(
                CONFIG_BACKOFF_JITTER, settings.backoff_jitter_seconds
            ),
            "lease_timeout_seconds": overrides.get(
                CONFIG_LEASE_TIMEOUT, settings.lease_timeout_seconds
            ),
            "job_timeout_seconds": job_timeout,
        }
        try:
            return RuntimeConfig.model_validate(values)
        except PydanticValidationError as e:
            problems = {".".join(str(p) for p in err["loc"]): err["msg"] for err in e.errors()}
            raise ValidationError(
                "Stored runtime config is invalid; fix it with `queuectl config set`",
                problems,
            ) from e


class WorkerRepository:
    """Repository for worker liveness records."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def register(
        self,
        worker_id: str,
        hostname: str,
        pid: int,
        now: datetime | None = None,
    ) -> WorkerRecord:
        """Create or reset the liveness record of a starting worker."""
        now = now or utcnow()
        record = await self._session.get(WorkerRecord, worker_id)
        if record is None:
            record = WorkerRecord(id=worker_id, hostname=hostname, pid=pid)
            self._session.add(record)
        record.hostname = hostname
        record.pid = pid
        record.started_at = now
        record.heartbeat_at = now
        record.stopped_at = None
        record.stop_requested = False
        await self._session.flush()
        return record

    async def heartbeat(self, worker_id: str, now: datetime | None = None) -> bool:
        """
        Refresh a worker's liveness record.

        Returns:
            True if a stop was requested for this worker.
        """
        now = now or utcnow()
        stmt = (
            update(WorkerRecord)
            .where(WorkerRecord.id == worker_id)
            .values(heartbeat_at=now)
            .returning(WorkerRecord.stop_requested)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return bool(result.scalar_one_or_none())

    async def mark_stopped(self, worker_id: str, now: datetime | None = None) -> None:
        """Record that a worker exited."""
        stmt = (
            update(WorkerRecord)
            .where(WorkerRecord.id == worker_id)
            .values(stopped_at=now or utcnow())
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)

    def _active_filter(self, now: datetime, stale_after: timedelta):
        return and_(
            WorkerRecord.stopped_at.is_(None),
            WorkerRecord.heartbeat_at >= now - stale_after,
        )

    async def count_active(
        self,
        stale_after: timedelta,
        now: datetime | None = None,
    ) -> int:
        """Count workers that have not stopped and heartbeated recently."""
        now = now or utcnow()
        stmt = (
            select(func.count())
            .select_from(WorkerRecord)
            .where(self._active_filter(now, stale_after))
        )
        result = await self._session.execute(stmt)
        return result.scalar() or 0

    async def list_active(
        self,
        stale_after: timedelta,
        now: datetime | None = None,
    ) -> Sequence[WorkerRecord]:
        """List live worker records, oldest first."""
        now = now or utcnow()
        stmt = (
            select(WorkerRecord)
            .where(self._active_filter(now, stale_after))
            .order_by(WorkerRecord.started_at.asc())
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def request_stop(self) -> int:
        """
        Ask every running worker to stop after its current job.

        Returns:
            Number of workers signalled.
        """
        stmt = (
            update(WorkerRecord)
            .where(WorkerRecord.stopped_at.is_(None))
            .values(stop_requested=True)
            .returning(WorkerRecord.id)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return len(result.scalars().all())
