"""
Worker pool supervisor.

Owns the worker handles of this process: starts a configurable number of
workers plus the claim reaper as asyncio tasks, stops them as a unit, and
reports liveness.
"""

import asyncio
import logging
import signal

from queuectl.config import get_settings
from queuectl.db import get_session_context
from queuectl.db.repository import JobRepository
from queuectl.exceptions import ValidationError
from queuectl.observability.metrics import get_metrics
from queuectl.reaper import Reaper
from queuectl.types.job import QueueStatus
from queuectl.worker.main import Worker, default_worker_id

logger = logging.getLogger(__name__)


class Supervisor:
    """
    Supervises a pool of workers sharing one job store.

    Stopping is cooperative: every worker finishes its in-flight command
    before its task ends.
    """

    def __init__(
        self,
        reaper_interval: float | None = None,
        enable_reaper: bool = True,
    ):
        """
        Initialize the supervisor.

        Args:
            reaper_interval: Seconds between expired-claim sweeps.
            enable_reaper: Whether to run the reaper alongside the workers.
        """
        self._workers: list[Worker] = []
        self._tasks: list[asyncio.Task] = []
        self._reaper = Reaper(reaper_interval) if enable_reaper else None
        self._reaper_task: asyncio.Task | None = None

    @property
    def workers(self) -> list[Worker]:
        return list(self._workers)

    @property
    def live_count(self) -> int:
        """Number of worker tasks that have not exited."""
        return sum(1 for task in self._tasks if not task.done())

    @property
    def is_running(self) -> bool:
        return self.live_count > 0

    async def start_workers(self, count: int, poll_interval_ms: int | None = None) -> None:
        """
        Spawn `count` workers, each with its own identity.

        Args:
            count: Number of workers.
            poll_interval_ms: Idle polling interval in milliseconds.

        Raises:
            ValidationError: If count or poll interval is not positive.
            RuntimeError: If workers are already running.
        """
        if count < 1:
            raise ValidationError("count must be at least 1")
        if poll_interval_ms is not None and poll_interval_ms <= 0:
            raise ValidationError("poll interval must be positive")
        if self.is_running:
            raise RuntimeError("Workers are already running; stop them first")

        settings = get_settings()
        poll_interval = (
            poll_interval_ms / 1000
            if poll_interval_ms is not None
            else settings.worker_poll_interval_seconds
        )

        self._workers = []
        self._tasks = []
        for index in range(1, count + 1):
            worker = Worker(worker_id=default_worker_id(index), poll_interval=poll_interval)
            self._workers.append(worker)
            self._tasks.append(asyncio.create_task(worker.start(), name=worker.worker_id))

        if self._reaper is not None:
            self._reaper_task = asyncio.create_task(self._reaper.start(), name="reaper")

        logger.info(
            f"Started {count} worker(s)",
            extra={"poll_interval_seconds": poll_interval},
        )

    async def stop_workers(self) -> None:
        """
        Signal all workers to finish their current job and exit, then wait.
        Safe to call more than once.
        """
        if self._workers:
            logger.info(f"Stopping {self.live_count} worker(s)")
        for worker in self._workers:
            await worker.stop()
        if self._reaper is not None:
            await self._reaper.stop()

        tasks = [*self._tasks, *([self._reaper_task] if self._reaper_task else [])]
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for task, result in zip(tasks, results):
            if isinstance(result, Exception):
                logger.error(
                    f"Task {task.get_name()} exited with error: {result!r}",
                )

        self._reaper_task = None
        logger.info("All workers stopped")

    async def wait(self) -> None:
        """Block until every worker has exited, then stop the reaper."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        await self.stop_workers()

    async def status(self) -> QueueStatus:
        """Aggregate per-state job counts with this pool's live workers."""
        async with get_session_context() as session:
            counts = await JobRepository(session).get_job_stats()
        get_metrics().update_queue_depth(counts)
        return QueueStatus(counts=counts, active_workers=self.live_count)


async def run_workers(count: int, poll_interval_ms: int | None = None) -> None:
    """
    Run a worker pool until SIGINT/SIGTERM or a stop request.

    Args:
        count: Number of workers.
        poll_interval_ms: Idle polling interval in milliseconds.
    """
    supervisor = Supervisor()
    loop = asyncio.get_running_loop()
    stop_tasks: set[asyncio.Task] = set()

    def request_shutdown() -> None:
        task = asyncio.create_task(supervisor.stop_workers())
        stop_tasks.add(task)
        task.add_done_callback(stop_tasks.discard)

    handled: list[signal.Signals] = []
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, request_shutdown)
            handled.append(sig)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops
            pass

    try:
        await supervisor.start_workers(count, poll_interval_ms)
        await supervisor.wait()
        if stop_tasks:
            await asyncio.gather(*stop_tasks)
    finally:
        for sig in handled:
            loop.remove_signal_handler(sig)
