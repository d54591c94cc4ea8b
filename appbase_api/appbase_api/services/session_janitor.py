"""Background removal of expired end-user sessions.

Expired sessions are already rejected by validation; the janitor only
keeps the table from growing without bound.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from datetime import UTC, datetime

from appbase_core.state.database import set_maintenance_context
from appbase_core.state.repository import SessionRepository
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)


class SessionJanitor:
    """AsyncIO background task that purges expired sessions.

    Parameters
    ----------
    session_factory:
        An ``async_sessionmaker`` used to open one session per sweep.
    interval_seconds:
        Delay between sweeps.
    clock:
        Returns the cut-off time for a sweep.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        interval_seconds: float = 3600,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._interval = interval_seconds
        self._clock = clock or (lambda: datetime.now(UTC))
        self._running = False
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        """Whether the janitor loop is active."""
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("SessionJanitor already running; ignoring start()")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("SessionJanitor started (interval=%ss)", self._interval)

    async def stop(self) -> None:
        """Stop the janitor and wait for the current sweep to be cancelled."""
        self._running = False
        task, self._task = self._task, None
        # A task that already died has logged its error in _run_loop.
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        logger.info("SessionJanitor stopped")

    async def sweep(self) -> int:
        """Delete every expired session once.  Returns the number removed."""
        async with self._session_factory() as session:
            await set_maintenance_context(session)
            removed = await SessionRepository.purge_all_expired(session, self._clock())
            await session.commit()
        if removed:
            logger.info("SessionJanitor removed %d expired sessions", removed)
        return removed

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.sweep()
            except asyncio.CancelledError:
                raise
            except (OperationalError, InterfaceError) as exc:
                logger.error("SessionJanitor database error: %s", exc, exc_info=True)
            except Exception as exc:
                self._running = False
                logger.critical("SessionJanitor unexpected error, stopping: %s", exc, exc_info=True)
                raise
            await asyncio.sleep(self._interval)
