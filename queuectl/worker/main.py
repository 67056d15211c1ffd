"""
Worker loop for executing jobs.

The worker claims one due job at a time, runs its command, and reports
the outcome back to the store, where the retry policy decides between
completion, a backoff reschedule and the dead letter queue.
"""

import asyncio
import logging
import os
import socket
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

from queuectl.config import get_settings
from queuectl.constants import SPAN_CLAIM_JOB, SPAN_EXECUTE_JOB, FailOutcome
from queuectl.db import get_session_context
from queuectl.db.repository import JobRepository, WorkerRepository
from queuectl.exceptions import ClaimConflictError, ExecutionFailure, StoreUnavailable
from queuectl.observability.logging import bind_context, clear_context
from queuectl.observability.metrics import get_metrics
from queuectl.observability.tracing import get_tracer
from queuectl.timeutil import utcnow
from queuectl.types.job import ClaimedJob, ExecutionResult
from queuectl.worker.executor import run_command

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Attempts at reporting an outcome while the store is unavailable
REPORT_ATTEMPTS = 5


def default_worker_id(index: int | None = None) -> str:
    """Build a worker identity from hostname, PID and an optional index."""
    base = f"{socket.gethostname()}-{os.getpid()}"
    return base if index is None else f"{base}-{index}"


class Worker:
    """
    Job worker that polls for and executes jobs.

    Features:
    - Atomic claim acquisition, one job per tick
    - Heartbeat to keep the in-flight claim and the liveness record fresh
    - Cooperative shutdown: the in-flight command always finishes
    - Store backoff, separate from job retry backoff
    """

    def __init__(
        self,
        worker_id: str | None = None,
        poll_interval: float | None = None,
        heartbeat_interval: float | None = None,
        store_backoff: float | None = None,
    ):
        """
        Initialize the worker.

        Args:
            worker_id: Unique worker identifier. Defaults to hostname + PID.
            poll_interval: Seconds between polls when no job is due.
            heartbeat_interval: Seconds between claim/liveness refreshes.
            store_backoff: Seconds to wait after the store was unreachable.
        """
        settings = get_settings()

        self.worker_id = worker_id or default_worker_id()
        self.poll_interval = poll_interval or settings.worker_poll_interval_seconds
        self.heartbeat_interval = (
            heartbeat_interval or settings.worker_heartbeat_interval_seconds
        )
        self.store_backoff = store_backoff or settings.worker_store_backoff_seconds

        self.jobs_processed = 0
        self._stop_event = asyncio.Event()
        self._running = False
        self._current_job: ClaimedJob | None = None
        self._heartbeat_task: asyncio.Task | None = None
        self._metrics = get_metrics()

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def current_job(self) -> ClaimedJob | None:
        return self._current_job

    async def start(self) -> None:
        """Run the polling loop until stop() is called."""
        logger.info("Worker starting", extra={"worker_id": self.worker_id})

        self._running = True
        await self._register()
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

        try:
            while not self._stop_event.is_set():
                try:
                    processed = await self.run_once()
                    if not processed:
                        await self._sleep(self.poll_interval)
                except StoreUnavailable as e:
                    logger.warning(
                        f"Job store unavailable, backing off: {e}",
                        extra={"worker_id": self.worker_id},
                    )
                    await self._sleep(self.store_backoff)
                except Exception as e:
                    logger.exception(
                        f"Error in worker loop: {e}",
                        extra={"worker_id": self.worker_id},
                    )
                    await self._sleep(self.poll_interval)
        finally:
            if self._heartbeat_task:
                self._heartbeat_task.cancel()
                try:
                    await self._heartbeat_task
                except asyncio.CancelledError:
                    pass
            await self._unregister()
            self._running = False
            logger.info(
                "Worker stopped",
                extra={"worker_id": self.worker_id, "jobs_processed": self.jobs_processed},
            )

    async def stop(self) -> None:
        """Ask the worker to exit after its current job."""
        if not self._stop_event.is_set():
            logger.info("Worker stopping", extra={"worker_id": self.worker_id})
        self._stop_event.set()

    async def _sleep(self, seconds: float) -> None:
        """Sleep, waking early when a stop is requested."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def run_once(self) -> bool:
        """
        Run a single poll tick.

        Returns:
            True if a job was claimed and executed.
        """
        job = await self._claim()
        if job is None:
            return False

        await self._execute(job)
        self.jobs_processed += 1
        return True

    async def _claim(self) -> ClaimedJob | None:
        with get_tracer().start_as_current_span(SPAN_CLAIM_JOB) as span:
            span.set_attribute("worker_id", self.worker_id)

            async with get_session_context() as session:
                repo = JobRepository(session)
                config = await repo.runtime_config()
                job = await repo.claim(self.worker_id)
                if job is None:
                    return None

                claimed = ClaimedJob(
                    id=job.id,
                    command=job.command,
                    claim_token=job.claim_token,
                    attempts=job.attempts,
                    max_retries=job.max_retries,
                    claimed_by=self.worker_id,
                    claimed_at=job.updated_at,
                    timeout_seconds=config.job_timeout_seconds,
                    lease_seconds=config.lease_timeout_seconds,
                )

            span.set_attribute("job_id", str(claimed.id))

        self._metrics.record_claim_acquired(self.worker_id)
        return claimed

    async def _execute(self, job: ClaimedJob) -> None:
        """
        Execute a claimed job and report its outcome.

        Args:
            job: The claimed job.
        """
        self._current_job = job
        bind_context(job_id=str(job.id), worker_id=self.worker_id)
        start_time = time.monotonic()
        outcome = FailOutcome.IGNORED.value

        logger.info(
            "Executing job",
            extra={
                "job_id": str(job.id),
                "worker_id": self.worker_id,
                "attempt": job.attempt_number,
                "command": job.command,
            },
        )

        try:
            with get_tracer().start_as_current_span(SPAN_EXECUTE_JOB) as span:
                span.set_attribute("job_id", str(job.id))
                span.set_attribute("attempt", job.attempt_number)

                try:
                    result = await self._run_command(job)
                except ExecutionFailure as e:
                    error = e.message if not e.output else f"{e.message}: {e.output}"
                    outcome = await self._report_failure(job, error, e.exit_code)
                else:
                    span.set_attribute("exit_code", result.exit_code)
                    if result.success:
                        outcome = await self._report_success(job)
                    else:
                        outcome = await self._report_failure(
                            job,
                            result.error_text(get_settings().max_error_length),
                            result.exit_code,
                        )
        except ClaimConflictError as e:
            logger.info(
                f"Discarding outcome of a lost claim: {e}",
                extra={"job_id": str(job.id), "worker_id": self.worker_id},
            )
        finally:
            self._current_job = None
            clear_context("job_id", "worker_id")
            self._metrics.record_job_finished(outcome, time.monotonic() - start_time)

    async def _run_command(self, job: ClaimedJob) -> ExecutionResult:
        """Run the job's command while keeping its claim fresh."""
        keeper = asyncio.create_task(self._keep_claim(job))
        try:
            return await run_command(job.command, timeout=job.timeout_seconds)
        finally:
            keeper.cancel()
            try:
                await keeper
            except asyncio.CancelledError:
                pass

    async def _report_success(self, job: ClaimedJob) -> str:
        async def complete() -> bool:
            async with get_session_context() as session:
                return await JobRepository(session).complete(job.id, job.claim_token)

        if not await self._with_store_retry(complete):
            raise ClaimConflictError(f"Claim on job {job.id} was lost before completion")
        return "completed"

    async def _report_failure(
        self,
        job: ClaimedJob,
        error: str,
        exit_code: int | None,
    ) -> str:
        async def fail() -> FailOutcome:
            async with get_session_context() as session:
                return await JobRepository(session).fail(
                    job.id,
                    job.claim_token,
                    error,
                    exit_code=exit_code,
                )

        outcome = await self._with_store_retry(fail)
        if outcome == FailOutcome.IGNORED:
            raise ClaimConflictError(f"Claim on job {job.id} was lost before failure")

        logger.warning(
            "Job failed",
            extra={
                "job_id": str(job.id),
                "attempt": job.attempt_number,
                "outcome": outcome.value,
                "error": error,
            },
        )
        return outcome.value

    async def _with_store_retry(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Retry a store call through short outages before giving up."""
        attempt = 1
        while True:
            try:
                return await operation()
            except StoreUnavailable:
                if attempt >= REPORT_ATTEMPTS:
                    raise
                logger.warning(
                    f"Store unavailable while reporting, retry {attempt}/{REPORT_ATTEMPTS}",
                    extra={"worker_id": self.worker_id},
                )
                attempt += 1
                await asyncio.sleep(self.store_backoff)

    async def _register(self) -> None:
        try:
            async with get_session_context() as session:
                await WorkerRepository(session).register(
                    self.worker_id,
                    hostname=socket.gethostname(),
                    pid=os.getpid(),
                )
        except StoreUnavailable as e:
            logger.warning(f"Could not register worker: {e}", extra={"worker_id": self.worker_id})

    async def _unregister(self) -> None:
        try:
            async with get_session_context() as session:
                await WorkerRepository(session).mark_stopped(self.worker_id, utcnow())
        except StoreUnavailable as e:
            logger.warning(f"Could not unregister worker: {e}", extra={"worker_id": self.worker_id})

    async def _heartbeat_loop(self) -> None:
        """
        Periodically refresh the in-flight claim and the liveness record.

        Also picks up stop requests written by `queuectl worker stop`.
        """
        while not self._stop_event.is_set():
            try:
                await asyncio.sleep(self.heartbeat_interval)
                await self.heartbeat()
            except asyncio.CancelledError:
                break
            except StoreUnavailable as e:
                logger.warning(f"Heartbeat failed: {e}", extra={"worker_id": self.worker_id})
            except Exception as e:
                logger.exception(f"Error in heartbeat loop: {e}")

    async def heartbeat(self) -> None:
        """Refresh the claim of the in-flight job and the worker record."""
        async with get_session_context() as session:
            stop_requested = await WorkerRepository(session).heartbeat(self.worker_id)

            job = self._current_job
            if job is not None:
                await self._refresh_claim(session, job)

        if stop_requested:
            logger.info("Stop requested", extra={"worker_id": self.worker_id})
            await self.stop()

    def claim_refresh_interval(self, job: ClaimedJob) -> float:
        """Seconds between claim refreshes, short enough to fit the lease three times."""
        if job.lease_seconds is None:
            return self.heartbeat_interval
        return min(self.heartbeat_interval, job.lease_seconds / 3)

    async def _keep_claim(self, job: ClaimedJob) -> None:
        """Refresh the claim of a running job until cancelled."""
        interval = self.claim_refresh_interval(job)
        while True:
            await asyncio.sleep(interval)
            try:
                async with get_session_context() as session:
                    await self._refresh_claim(session, job)
            except StoreUnavailable as e:
                logger.warning(f"Claim refresh failed: {e}", extra={"job_id": str(job.id)})
            except Exception as e:
                logger.exception(f"Error refreshing claim: {e}")

    async def _refresh_claim(self, session: AsyncSession, job: ClaimedJob) -> bool:
        held = await JobRepository(session).heartbeat(job.id, job.claim_token)
        if held:
            logger.debug("Extended claim", extra={"job_id": str(job.id)})
        else:
            logger.warning(
                "Claim lost while the command is running",
                extra={"job_id": str(job.id), "worker_id": self.worker_id},
            )
        return held
