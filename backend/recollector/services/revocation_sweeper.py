"""Revocation sweeper - periodically deletes revoked tokens that have expired anyway."""

import asyncio
from collections.abc import Callable
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from recollector.core.clock import Clock
from recollector.core.logging import get_logger
from recollector.services.revocation import RevocationStore

logger = get_logger("revocation_sweeper")

# How often to sweep (in seconds)
SWEEP_INTERVAL_SECONDS = 60


class RevocationSweeper:
    """Background task evicting revocation rows whose token is past its expiry.

    Owned by the application lifespan: ``start()`` at boot, ``stop()`` at
    shutdown. Tests call ``sweep_now()`` directly instead of waiting.
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        clock: Clock | None = None,
        interval_seconds: int = SWEEP_INTERVAL_SECONDS,
    ):
        self._session_factory = session_factory
        self._clock = clock or Clock()
        self._interval_seconds = interval_seconds
        self._running = False
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def task(self) -> asyncio.Task | None:
        return self._task

    async def start(self):
        """Start the background sweep task."""
        if self._running:
            logger.warning("Revocation sweeper is already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info(f"Revocation sweeper started (interval: {self._interval_seconds}s)")

    async def stop(self):
        """Stop the background sweep task."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Revocation sweeper stopped")

    async def _sweep_loop(self):
        """Sweep, then sleep, until stopped."""
        while self._running:
            try:
                await self.sweep_now()
            except Exception as e:
                # The next cycle retries
                logger.error(f"Error in revocation sweep: {e}")

            await asyncio.sleep(self._interval_seconds)

    async def sweep_now(self, before: datetime | None = None) -> int:
        """Run a single sweep.

        Args:
            before: Reference time; rows expiring strictly before it are
                deleted. Defaults to the clock's current time.

        Returns:
            Number of rows deleted
        """
        reference = before or self._clock.now()
        async with self._session_factory() as db:
            deleted_count = await RevocationStore(db, self._clock).sweep_expired(reference)

        if deleted_count > 0:
            logger.info(
                f"Revocation sweep: deleted {deleted_count} expired entries",
                extra={"removed": deleted_count},
            )
        else:
            logger.debug("Revocation sweep: nothing to delete")
        return deleted_count
