"""Periodic background deletion of expired events and sessions."""

import asyncio
from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog
from prometheus_client import Counter
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..storage.models import AuthSession, ErrorEvent, utcnow

logger = structlog.get_logger(__name__)

ROWS_PRUNED = Counter(
    "spectraops_rows_pruned_total",
    "Rows deleted by background sweepers",
    ["table"],
)


class PeriodicSweeper:
    """
    Runs ``sweep_once`` every ``interval_seconds`` until stopped.

    A failing sweep is logged and retried on the next tick; it never ends
    the loop.
    """

    name = "sweeper"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        interval_seconds: float,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.interval_seconds = interval_seconds
        self.clock = clock
        self._task: Optional[asyncio.Task] = None
        self._running = False

    async def sweep_once(self) -> int:
        raise NotImplementedError

    async def start(self) -> None:
        """Start the background sweep task."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info(f"{self.name} started (interval={self.interval_seconds}s)")

    async def stop(self) -> None:
        """Cancel the background task and wait for it to finish."""
        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        logger.info(f"{self.name} stopped")

    async def run_tick(self) -> int:
        """Run one sweep, logging instead of raising on failure."""
        try:
            return await self.sweep_once()
        except Exception as e:
            logger.error(f"{self.name} failed", error=str(e))
            return 0

    async def _loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.interval_seconds)
                await self.run_tick()
            except asyncio.CancelledError:
                break

    @property
    def is_running(self) -> bool:
        return self._running


class RetentionSweeper(PeriodicSweeper):
    """Deletes events received before the retention horizon."""

    name = "retention_sweeper"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        retention_days: int = 90,
        interval_seconds: float = 3600,
        clock: Callable[[], datetime] = utcnow,
    ):
        super().__init__(session_factory, interval_seconds, clock)
        self.retention_days = retention_days

    async def sweep_once(self) -> int:
        cutoff = self.clock() - timedelta(days=self.retention_days)

        async with self.session_factory() as db:
            result = await db.execute(delete(ErrorEvent).where(ErrorEvent.created_at < cutoff))
            await db.commit()

        pruned = result.rowcount or 0
        if pruned:
            ROWS_PRUNED.labels(table="errors").inc(pruned)
            logger.info("errors_pruned", count=pruned, retention_days=self.retention_days)
        return pruned


class SessionSweeper(PeriodicSweeper):
    """Deletes dashboard sessions past their expiry."""

    name = "session_sweeper"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        interval_seconds: float = 900,
        clock: Callable[[], datetime] = utcnow,
    ):
        super().__init__(session_factory, interval_seconds, clock)

    async def sweep_once(self) -> int:
        async with self.session_factory() as db:
            result = await db.execute(delete(AuthSession).where(AuthSession.expires_at <= self.clock()))
            await db.commit()

        pruned = result.rowcount or 0
        if pruned:
            ROWS_PRUNED.labels(table="sessions").inc(pruned)
            logger.info("sessions_pruned", count=pruned)
        return pruned
