"""Local JSON file storage for webhook registrations, events and deliveries.

Directory structure under ``base_path``::

    index.json                            global registration index
    registrations/{webhookId}.json        registration details
    events/{webhookId}/index.json         per-webhook event index
    events/{webhookId}/{eventId}.json     individual events
    deliveries/{webhookId}/{dlvId}.json   delivery records

Every write is atomic (temp file + rename). File I/O runs in worker threads
so callers on the event loop are never blocked. There is no locking:
concurrent writers to the same index race last-writer-wins.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import shutil
import tempfile
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, TypeVar

from hookrelay.errors import InvalidIdError, StorageError
from hookrelay.webhooks.crypto import canonical_json
from hookrelay.webhooks.models import (
    WebhookDelivery,
    WebhookEvent,
    WebhookEventIndex,
    WebhookEventListItem,
    WebhookEventStatus,
    WebhookIndex,
    WebhookListItem,
    WebhookRegistration,
    parse_timestamp,
    timestamp_sort_key,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

SAFE_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
INDEX_FILENAME = "index.json"
PREVIEW_LENGTH = 100

_T = TypeVar("_T")


def validate_safe_id(value: str, id_type: str = "id") -> str:
    """Return *value* unchanged, or raise ``InvalidIdError`` if it is unsafe as a path part."""
    if not value or not isinstance(value, str):
        msg = f"Invalid {id_type}: must be a non-empty string"
        raise InvalidIdError(msg)
    if not SAFE_ID_PATTERN.match(value):
        msg = (
            f'Invalid {id_type}: "{value}" contains invalid characters. '
            "Only alphanumeric characters, hyphens, and underscores are allowed."
        )
        raise InvalidIdError(msg)
    return value


def make_preview(payload: dict[str, Any]) -> str:
    """Compact JSON of *payload*, cut to 100 characters with ``...`` if longer."""
    text = canonical_json(payload)
    if len(text) > PREVIEW_LENGTH:
        return text[:PREVIEW_LENGTH] + "..."
    return text


# -- Synchronous file primitives (run via asyncio.to_thread) --


def _read_json_file(path: Path) -> Any | None:
    """Parsed JSON content, or None for a missing or corrupt file."""
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.warning("Corrupt JSON file: %s", path)
        return None


def _write_json_file(path: Path, data: Any) -> None:
    """Atomically write *data* as JSON (temp write + rename).

    Raises ``StorageError`` if the file cannot be written.
    """
    content = json.dumps(data, indent=2, ensure_ascii=False) + "\n"
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp")
    except OSError as exc:
        msg = f"Failed to write {path}: {exc}"
        raise StorageError(msg) from exc
    tmp = Path(tmp_path)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        tmp.replace(path)
    except OSError as exc:
        tmp.unlink(missing_ok=True)
        msg = f"Failed to write {path}: {exc}"
        raise StorageError(msg) from exc
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


def _unlink_quietly(path: Path) -> bool:
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    except OSError:
        logger.warning("Failed to delete %s", path)
        return False
    return True


def _json_files(directory: Path) -> list[Path]:
    if not directory.is_dir():
        return []
    return [p for p in directory.iterdir() if p.suffix == ".json" and p.is_file()]


def _parse(cls: type[_T], data: Any, path: Path) -> _T | None:
    if not isinstance(data, dict):
        if data is not None:
            logger.warning("Unexpected JSON shape in %s", path)
        return None
    try:
        return cls.from_dict(data)  # type: ignore[attr-defined,no-any-return]
    except (KeyError, TypeError, ValueError):
        logger.warning("Corrupt record in %s", path)
        return None


class LocalWebhookStorage:
    """Directory-structured persistence. No business logic lives here."""

    def __init__(self, base_path: Path) -> None:
        self._base = Path(base_path)

    @property
    def base_path(self) -> Path:
        return self._base

    @property
    def events_root(self) -> Path:
        return self._base / "events"

    async def ensure_directories(self, webhook_id: str | None = None) -> None:
        """Create the base layout, plus the per-webhook directories if *webhook_id* is given."""
        dirs = [
            self._base,
            self._base / "registrations",
            self.events_root,
            self._base / "deliveries",
        ]
        if webhook_id is not None:
            validate_safe_id(webhook_id, "webhookId")
            dirs.append(self.events_root / webhook_id)
            dirs.append(self._base / "deliveries" / webhook_id)

        def _mkdirs() -> None:
            for d in dirs:
                d.mkdir(parents=True, exist_ok=True)

        await asyncio.to_thread(_mkdirs)

    # -- Path helpers --

    def _index_path(self) -> Path:
        return self._base / INDEX_FILENAME

    def _registration_path(self, webhook_id: str) -> Path:
        validate_safe_id(webhook_id, "webhookId")
        return self._base / "registrations" / f"{webhook_id}.json"

    def _event_dir(self, webhook_id: str) -> Path:
        validate_safe_id(webhook_id, "webhookId")
        return self.events_root / webhook_id

    def _event_index_path(self, webhook_id: str) -> Path:
        return self._event_dir(webhook_id) / INDEX_FILENAME

    def _event_path(self, webhook_id: str, event_id: str) -> Path:
        validate_safe_id(event_id, "eventId")
        return self._event_dir(webhook_id) / f"{event_id}.json"

    def _delivery_dir(self, webhook_id: str) -> Path:
        validate_safe_id(webhook_id, "webhookId")
        return self._base / "deliveries" / webhook_id

    def _delivery_path(self, webhook_id: str, delivery_id: str) -> Path:
        validate_safe_id(delivery_id, "deliveryId")
        return self._delivery_dir(webhook_id) / f"{delivery_id}.json"

    # -- Global index --

    async def load_index(self) -> WebhookIndex:
        path = self._index_path()
        data = await asyncio.to_thread(_read_json_file, path)
        return _parse(WebhookIndex, data, path) or WebhookIndex(last_updated=utc_now_iso())

    async def save_index(self, index: WebhookIndex) -> None:
        index.last_updated = utc_now_iso()
        await asyncio.to_thread(_write_json_file, self._index_path(), index.to_dict())

    # -- Registrations --

    async def save_registration(self, registration: WebhookRegistration) -> None:
        """Write the registration file, then insert or replace its index entry.

        Replacement keeps the entry's position; new entries go to the front.
        """
        await self.ensure_directories(registration.id)
        await asyncio.to_thread(
            _write_json_file,
            self._registration_path(registration.id),
            registration.to_dict(),
        )

        index = await self.load_index()
        item = registration.to_list_item()
        for i, existing in enumerate(index.webhooks):
            if existing.id == registration.id:
                index.webhooks[i] = item
                break
        else:
            index.webhooks.insert(0, item)
        await self.save_index(index)

    async def load_registration(self, webhook_id: str) -> WebhookRegistration | None:
        """Return the registration, or None when missing, corrupt or the ID is unsafe."""
        try:
            path = self._registration_path(webhook_id)
        except InvalidIdError:
            logger.warning("Rejected unsafe webhook id: %r", webhook_id)
            return None
        data = await asyncio.to_thread(_read_json_file, path)
        return _parse(WebhookRegistration, data, path)

    async def delete_registration(self, webhook_id: str) -> bool:
        """Remove a registration and its index entry, then its events and deliveries.

        Returns False when nothing existed. Failure to remove the event or
        delivery subtrees is logged and does not change the result.
        """
        try:
            reg_path = self._registration_path(webhook_id)
        except InvalidIdError:
            logger.warning("Rejected unsafe webhook id: %r", webhook_id)
            return False
        if not await asyncio.to_thread(_unlink_quietly, reg_path):
            return False

        index = await self.load_index()
        remaining = [w for w in index.webhooks if w.id != webhook_id]
        if len(remaining) != len(index.webhooks):
            index.webhooks = remaining
            await self.save_index(index)

        for subtree in (self._event_dir(webhook_id), self._delivery_dir(webhook_id)):
            try:
                await asyncio.to_thread(shutil.rmtree, subtree)
            except FileNotFoundError:
                pass
            except OSError:
                logger.warning("Partial cascade delete for %s: %s", webhook_id, subtree)

        logger.info("Webhook registration deleted: %s", webhook_id)
        return True

    async def list_registrations(self) -> list[WebhookListItem]:
        index = await self.load_index()
        return index.webhooks

    # -- Events --

    async def load_event_index(self, webhook_id: str) -> WebhookEventIndex:
        try:
            path = self._event_index_path(webhook_id)
        except InvalidIdError:
            logger.warning("Rejected unsafe webhook id: %r", webhook_id)
            return WebhookEventIndex(last_updated=utc_now_iso())
        data = await asyncio.to_thread(_read_json_file, path)
        return _parse(WebhookEventIndex, data, path) or WebhookEventIndex(
            last_updated=utc_now_iso()
        )

    async def save_event_index(self, webhook_id: str, index: WebhookEventIndex) -> None:
        index.last_updated = utc_now_iso()
        await asyncio.to_thread(
            _write_json_file, self._event_index_path(webhook_id), index.to_dict()
        )

    async def save_event(self, event: WebhookEvent) -> None:
        """Write the event file and prepend its summary to the per-webhook index."""
        await self.ensure_directories(event.webhook_id)
        await asyncio.to_thread(
            _write_json_file,
            self._event_path(event.webhook_id, event.id),
            event.to_dict(),
        )

        index = await self.load_event_index(event.webhook_id)
        index.events.insert(
            0,
            WebhookEventListItem(
                id=event.id,
                source=event.source,
                event_type=event.event_type,
                preview=make_preview(event.payload),
                timestamp=event.timestamp,
                status=event.status,
            ),
        )
        index.total_events += 1
        if event.status == "pending":
            index.pending_count += 1
        await self.save_event_index(event.webhook_id, index)

    async def load_event(self, webhook_id: str, event_id: str) -> WebhookEvent | None:
        try:
            path = self._event_path(webhook_id, event_id)
        except InvalidIdError:
            logger.warning("Rejected unsafe event path: %r/%r", webhook_id, event_id)
            return None
        data = await asyncio.to_thread(_read_json_file, path)
        return _parse(WebhookEvent, data, path)

    async def update_event_status(
        self,
        webhook_id: str,
        event_id: str,
        status: WebhookEventStatus,
        timestamp: str | None = None,
    ) -> bool:
        """Rewrite the event file and its index entry with a new status.

        Returns False if the event does not exist. ``pendingCount`` is
        recounted from the index entries.
        """
        event = await self.load_event(webhook_id, event_id)
        if event is None:
            return False

        event.status = status
        if status == "injected" and timestamp:
            event.injected_at = timestamp
        await asyncio.to_thread(
            _write_json_file, self._event_path(webhook_id, event_id), event.to_dict()
        )

        index = await self.load_event_index(webhook_id)
        for item in index.events:
            if item.id == event_id:
                item.status = status
                break
        index.recount_pending()
        await self.save_event_index(webhook_id, index)
        return True

    async def list_events(
        self,
        webhook_id: str,
        *,
        limit: int | None = None,
        pending_only: bool = False,
    ) -> list[WebhookEventListItem]:
        """Index entries, most recent first."""
        index = await self.load_event_index(webhook_id)
        events = list(index.events)
        if pending_only:
            events = [e for e in events if e.status == "pending"]
        if limit is not None and limit > 0:
            events = events[:limit]
        return events

    # -- Deliveries --

    async def save_delivery(self, delivery: WebhookDelivery) -> None:
        await asyncio.to_thread(
            _write_json_file,
            self._delivery_path(delivery.webhook_id, delivery.id),
            delivery.to_dict(),
        )

    async def load_delivery(self, webhook_id: str, delivery_id: str) -> WebhookDelivery | None:
        try:
            path = self._delivery_path(webhook_id, delivery_id)
        except InvalidIdError:
            logger.warning("Rejected unsafe delivery path: %r/%r", webhook_id, delivery_id)
            return None
        data = await asyncio.to_thread(_read_json_file, path)
        return _parse(WebhookDelivery, data, path)

    async def list_deliveries(
        self,
        webhook_id: str,
        *,
        limit: int | None = None,
    ) -> list[WebhookDelivery]:
        """All readable delivery records, newest ``received_at`` first."""
        try:
            directory = self._delivery_dir(webhook_id)
        except InvalidIdError:
            logger.warning("Rejected unsafe webhook id: %r", webhook_id)
            return []

        def _read_all() -> list[WebhookDelivery]:
            records: list[WebhookDelivery] = []
            for path in _json_files(directory):
                delivery = _parse(WebhookDelivery, _read_json_file(path), path)
                if delivery is not None:
                    records.append(delivery)
            return records

        deliveries = await asyncio.to_thread(_read_all)
        deliveries.sort(key=lambda d: timestamp_sort_key(d.received_at), reverse=True)
        if limit is not None and limit > 0:
            deliveries = deliveries[:limit]
        return deliveries

    # -- Retention --

    async def cleanup_events(self, webhook_id: str, max_age_days: int) -> int:
        """Delete events whose timestamp is strictly older than *max_age_days*.

        Events with unparsable timestamps are kept. Returns the number removed.
        """
        cutoff = datetime.now(UTC) - timedelta(days=max_age_days)
        index = await self.load_event_index(webhook_id)
        expired: set[str] = set()
        for item in index.events:
            ts = parse_timestamp(item.timestamp)
            if ts is not None and ts < cutoff:
                expired.add(item.id)
        if not expired:
            return 0
        await self._remove_events(webhook_id, index, expired)
        logger.info("Cleaned up %d expired event(s) for %s", len(expired), webhook_id)
        return len(expired)

    async def enforce_max_events(self, webhook_id: str, max_events: int) -> int:
        """Evict the oldest events (by timestamp) until at most *max_events* remain."""
        index = await self.load_event_index(webhook_id)
        overflow = len(index.events) - max_events
        if overflow <= 0:
            return 0
        oldest = sorted(index.events, key=lambda e: timestamp_sort_key(e.timestamp))[:overflow]
        evicted = {e.id for e in oldest}
        await self._remove_events(webhook_id, index, evicted)
        logger.info("Evicted %d event(s) over the cap for %s", len(evicted), webhook_id)
        return len(evicted)

    async def _remove_events(
        self,
        webhook_id: str,
        index: WebhookEventIndex,
        event_ids: set[str],
    ) -> None:
        paths = [self._event_path(webhook_id, event_id) for event_id in event_ids]

        def _unlink_all() -> None:
            for path in paths:
                _unlink_quietly(path)

        await asyncio.to_thread(_unlink_all)
        index.events = [e for e in index.events if e.id not in event_ids]
        index.recount_pending()
        await self.save_event_index(webhook_id, index)
