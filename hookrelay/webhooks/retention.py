"""Retention observer: periodic age and size cleanup of stored webhook events."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable

from hookrelay.log_context import set_log_context

logger = logging.getLogger(__name__)

# Cleanup runner: () -> number of deleted events
CleanupRunner = Callable[[], Awaitable[int]]


class RetentionObserver:
    """Runs the retention sweep every ``interval_seconds``.

    Same lifecycle as the other background services: ``start()`` / ``stop()``
    around a single asyncio task. A failing sweep is logged and the loop
    keeps going.
    """

    def __init__(self, run_cleanup: CleanupRunner, *, interval_seconds: float) -> None:
        self._run_cleanup = run_cleanup
        self._interval = interval_seconds
        self._task: asyncio.Task[None] | None = None
        self._running = False
        self.last_deleted: int | None = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        self._task.add_done_callback(_log_task_crash)
        logger.info("Event retention started (every %.0fs)", self._interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            task = self._task
            self._task = None
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        logger.info("Event retention stopped")

    async def _loop(self) -> None:
        """Sleep -> sweep -> repeat."""
        set_log_context(operation="cleanup")
        try:
            while self._running:
                await asyncio.sleep(self._interval)
                if not self._running:
                    break
                try:
                    await self.run_once()
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("Retention sweep failed (continuing)")
        except asyncio.CancelledError:
            logger.debug("Retention loop cancelled")

    async def run_once(self) -> int:
        deleted = await self._run_cleanup()
        self.last_deleted = deleted
        if deleted:
            logger.info("Retention sweep removed %d event(s)", deleted)
        else:
            logger.debug("Retention sweep: nothing to delete")
        return deleted


def _log_task_crash(task: asyncio.Task[None]) -> None:
    """Log if the retention background task crashes unexpectedly."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Retention loop crashed: %s", exc, exc_info=exc)
