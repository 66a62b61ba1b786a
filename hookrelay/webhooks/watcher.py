"""Filesystem watcher that reports newly written webhook event files.

A directory-level watch on ``events/`` picks up new per-webhook
sub-directories; each sub-directory gets its own watch that reports event
files it has not seen before. This is a convenience notifier: events written
before a watch is attached are not reported, so consumers that need
completeness still poll ``list_events(pending_only=True)``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from pathlib import Path

from watchfiles import Change, awatch

from hookrelay.errors import WatcherError
from hookrelay.log_context import set_log_context
from hookrelay.webhooks.storage import INDEX_FILENAME, SAFE_ID_PATTERN

logger = logging.getLogger(__name__)

# Callback signature: (webhook_id, event_id) -> None
NewEventCallback = Callable[[str, str], Awaitable[None]]

RETRY_DELAY = 5.0
POLL_INTERVAL = 5.0


def _is_event_filename(name: str) -> bool:
    return name.endswith(".json") and name != INDEX_FILENAME


def _snapshot_event_files(directory: Path) -> set[str] | None:
    """Names of event files currently in *directory*, or None if it is gone."""
    try:
        return {p.name for p in directory.iterdir() if _is_event_filename(p.name)}
    except (FileNotFoundError, NotADirectoryError):
        return None


def _list_webhook_dirs(root: Path) -> set[str]:
    try:
        return {p.name for p in root.iterdir() if p.is_dir() and SAFE_ID_PATTERN.match(p.name)}
    except (FileNotFoundError, NotADirectoryError):
        return set()


class WebhookEventWatcher:
    """Watches ``events/`` and notifies subscribers of new event files.

    ``start()`` is idempotent. If the events directory does not exist yet it
    is polled for every ``poll_interval`` seconds. A failing watch is closed
    and re-attached after ``retry_delay`` seconds while the watcher runs.
    """

    def __init__(
        self,
        events_root: Path,
        *,
        retry_delay: float = RETRY_DELAY,
        poll_interval: float = POLL_INTERVAL,
        force_polling: bool | None = None,
    ) -> None:
        self._root = events_root
        self._retry_delay = retry_delay
        self._poll_interval = poll_interval
        self._force_polling = force_polling
        self._callbacks: set[NewEventCallback] = set()
        self._known: dict[str, set[str]] = {}
        self._watches: dict[str, asyncio.Task[None]] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self._root_task: asyncio.Task[None] | None = None
        self._running = False

    def on_new_event(self, callback: NewEventCallback) -> Callable[[], None]:
        """Subscribe *callback*; returns a function that unsubscribes it."""
        self._callbacks.add(callback)

        def _unsubscribe() -> None:
            self._callbacks.discard(callback)

        return _unsubscribe

    def is_running(self) -> bool:
        return self._running

    def watched_webhooks(self) -> set[str]:
        return set(self._watches)

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._root_task = asyncio.create_task(self._run_root())
        self._root_task.add_done_callback(_log_task_crash)
        logger.info("Webhook event watcher started on %s", self._root)

    async def stop(self) -> None:
        """Close every watch and clear subscribers."""
        self._running = False
        tasks = list(self._tasks)
        if self._root_task is not None:
            tasks.append(self._root_task)
            self._root_task = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._watches.clear()
        self._known.clear()
        self._callbacks.clear()
        logger.info("Webhook event watcher stopped")

    # -- Directory-level watch --

    async def _run_root(self) -> None:
        set_log_context(operation="watch")
        while self._running:
            if not await asyncio.to_thread(self._root.is_dir):
                logger.debug("Events directory missing, polling: %s", self._root)
                await asyncio.sleep(self._poll_interval)
                continue
            try:
                await self._sync_webhook_dirs()
                async for _changes in awatch(
                    self._root,
                    recursive=False,
                    force_polling=self._force_polling,
                ):
                    await self._sync_webhook_dirs()
                msg = f"Watch on {self._root} ended"
                raise WatcherError(msg)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning(
                    "Events directory watch failed, retrying in %.0fs",
                    self._retry_delay,
                    exc_info=True,
                )
            if self._running:
                await asyncio.sleep(self._retry_delay)

    async def _sync_webhook_dirs(self) -> None:
        """Attach watches for new sub-directories and close those whose directory is gone."""
        present = await asyncio.to_thread(_list_webhook_dirs, self._root)
        for webhook_id in sorted(present - set(self._watches)):
            self._attach(webhook_id)
        for webhook_id in set(self._watches) - present:
            self._close(webhook_id)

    # -- Per-webhook watches --

    def _attach(self, webhook_id: str) -> None:
        if not self._running or webhook_id in self._watches:
            return
        task = asyncio.create_task(self._watch_webhook_dir(webhook_id))
        self._watches[webhook_id] = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.debug("Watching events for %s", webhook_id)

    def _close(self, webhook_id: str) -> None:
        task = self._watches.pop(webhook_id, None)
        self._known.pop(webhook_id, None)
        if task is not None:
            task.cancel()
        logger.debug("Stopped watching events for %s", webhook_id)

    async def _watch_webhook_dir(self, webhook_id: str) -> None:
        directory = self._root / webhook_id
        try:
            known = await asyncio.to_thread(_snapshot_event_files, directory)
            if known is None:
                self._watches.pop(webhook_id, None)
                return
            self._known[webhook_id] = known
            async for changes in awatch(
                directory,
                recursive=False,
                force_polling=self._force_polling,
            ):
                await self._handle_webhook_changes(webhook_id, changes)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.warning(
                "Event watch failed for %s, retrying in %.0fs",
                webhook_id,
                self._retry_delay,
                exc_info=True,
            )

        # Watch ended or failed: drop the handle and try again after a pause.
        if self._watches.get(webhook_id) is asyncio.current_task():
            del self._watches[webhook_id]
        await asyncio.sleep(self._retry_delay)
        if self._running and await asyncio.to_thread(directory.is_dir):
            self._attach(webhook_id)

    async def _handle_webhook_changes(
        self,
        webhook_id: str,
        changes: Iterable[tuple[Change, str]],
    ) -> None:
        known = self._known.get(webhook_id)
        if known is None:
            return
        names = sorted(
            {Path(path).name for change, path in changes if change != Change.deleted},
        )
        for name in names:
            if not _is_event_filename(name) or name in known:
                continue
            known.add(name)
            await self._notify(webhook_id, name.removesuffix(".json"))

    async def _notify(self, webhook_id: str, event_id: str) -> None:
        for callback in list(self._callbacks):
            try:
                await callback(webhook_id, event_id)
            except Exception:
                logger.exception("Event callback failed for %s/%s", webhook_id, event_id)


def _log_task_crash(task: asyncio.Task[None]) -> None:
    """Log if the watcher's root task crashes unexpectedly."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Webhook event watcher crashed: %s", exc, exc_info=exc)

