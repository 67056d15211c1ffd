"""
Claim reaper for recovering jobs held by crashed workers.

The reaper runs periodically to find processing jobs whose claim has not
been refreshed within the lease timeout and returns them to the pending
state, so they are picked up again even when no worker polls them as
stale claims first.
"""

import asyncio
import logging

from queuectl.config import get_settings
from queuectl.db import get_session_context
from queuectl.db.repository import JobRepository
from queuectl.exceptions import StoreUnavailable
from queuectl.observability.metrics import get_metrics

logger = logging.getLogger(__name__)


class Reaper:
    """
    Claim reaper that recovers expired claims.

    Runs periodically to:
    1. Find jobs in PROCESSING state with a stale updated_at
    2. Return them to PENDING with the claim token cleared
    3. Record metrics for monitoring
    """

    def __init__(self, interval_seconds: float | None = None):
        """
        Initialize the reaper.

        Args:
            interval_seconds: Seconds between reaper runs.
        """
        settings = get_settings()
        self.interval = interval_seconds or settings.reaper_interval_seconds
        self._stop_event = asyncio.Event()
        self._metrics = get_metrics()

    async def start(self) -> None:
        """Start the reaper loop."""
        logger.info(f"Reaper starting with interval {self.interval}s")
        self._stop_event.clear()

        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except StoreUnavailable as e:
                logger.warning(f"Reaper could not reach the job store: {e}")
            except Exception as e:
                logger.exception(f"Error in reaper loop: {e}")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

        logger.info("Reaper stopped")

    async def stop(self) -> None:
        """Stop the reaper."""
        logger.info("Reaper stopping")
        self._stop_event.set()

    async def run_once(self) -> int:
        """
        Release expired claims once.

        Returns:
            Number of jobs released.
        """
        async with get_session_context() as session:
            repo = JobRepository(session)
            count = await repo.release_expired_claims()

        if count > 0:
            self._metrics.record_claims_expired(count)
        return count
