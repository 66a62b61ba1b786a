"""WebhooksManager: registration CRUD, event reception, injection and watching.

Every public operation returns a result instead of raising: unknown IDs and
policy rejections are normal negative results, and unexpected I/O errors are
caught here and reported with their message.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable, Iterable
from datetime import UTC
from pathlib import Path

from hookrelay.config import WebhooksConfig, resolve_base_path
from hookrelay.log_context import ctx_operation, ctx_webhook_id, set_log_context
from hookrelay.webhooks.crypto import (
    canonical_json,
    generate_delivery_id,
    generate_event_id,
    generate_secret,
    generate_webhook_id,
    is_timestamp_fresh,
    sign_payload,
    verify_signature,
)
from hookrelay.webhooks.models import (
    WEBHOOK_STATUSES,
    CreateWebhookInput,
    InjectionRef,
    ReceiveEventInput,
    UpdateWebhookInput,
    WebhookDelivery,
    WebhookEvent,
    WebhookEventListItem,
    WebhookListItem,
    WebhookOperationResult,
    WebhookRegistration,
    parse_timestamp,
    timestamp_sort_key,
    utc_now_iso,
)
from hookrelay.webhooks.ratelimit import RateLimiter
from hookrelay.webhooks.retention import RetentionObserver
from hookrelay.webhooks.storage import LocalWebhookStorage
from hookrelay.webhooks.watcher import WebhookEventWatcher

logger = logging.getLogger(__name__)

RECEIVE_PATH = "/api/v1/webhooks/receive/{webhook_id}"
TEST_EVENT_TYPE = "test"

# Listener signature: (event) -> None
EventListener = Callable[[WebhookEvent], Awaitable[None]]


def _rejected(message: str, reason: str, webhook_id: str | None = None) -> WebhookOperationResult:
    return WebhookOperationResult(
        success=False,
        message=message,
        webhook_id=webhook_id,
        reason=reason,
    )


class WebhooksManager:
    """Orchestrates webhook storage, security checks and notification."""

    def __init__(
        self,
        config: WebhooksConfig,
        *,
        base_path: Path | None = None,
        storage: LocalWebhookStorage | None = None,
    ) -> None:
        self._config = config
        self._storage = storage or LocalWebhookStorage(base_path or resolve_base_path(config))
        self._rate_limiter = RateLimiter(config.security.rate_limit_per_minute)
        self._watcher: WebhookEventWatcher | None = None
        self._listeners: set[EventListener] = set()
        self._retention: RetentionObserver | None = None

    @property
    def config(self) -> WebhooksConfig:
        return self._config

    @property
    def storage(self) -> LocalWebhookStorage:
        return self._storage

    async def initialize(self) -> None:
        await self._storage.ensure_directories()

    # -- Lifecycle --

    async def start(self) -> None:
        """Start the event watcher and the retention loop if webhooks are enabled."""
        if not self._config.enabled:
            logger.info("Webhooks disabled in config")
            return
        await self.initialize()
        await self.start_watching()
        if self._retention is None:
            self._retention = RetentionObserver(
                self.cleanup,
                interval_seconds=self._config.storage.cleanup_interval_minutes * 60,
            )
            await self._retention.start()
        logger.info("WebhooksManager started (base=%s)", self._storage.base_path)

    async def stop(self) -> None:
        if self._retention is not None:
            await self._retention.stop()
            self._retention = None
        await self.stop_watching()

    # -- Registrations --

    async def create(self, data: CreateWebhookInput) -> WebhookOperationResult:
        """Register a new active webhook and return its ID, secret and receive URL."""
        if not data.name.strip() or not data.source.strip():
            return _rejected("Webhook name and source are required.", "invalid_input")
        try:
            registration = WebhookRegistration(
                id=generate_webhook_id(),
                name=data.name,
                source=data.source,
                description=data.description,
                secret=generate_secret(),
                events_filter=list(data.events_filter or []),
            )
            await self._storage.save_registration(registration)
        except Exception as exc:
            logger.exception("Failed to create webhook name=%s", data.name)
            return _rejected(f"Failed to create webhook: {exc}", "error")

        logger.info("Webhook created: %s (source=%s)", registration.id, registration.source)
        return WebhookOperationResult(
            success=True,
            message=f'Webhook "{data.name}" created for source "{data.source}"',
            webhook_id=registration.id,
            secret=registration.secret,
            url=RECEIVE_PATH.format(webhook_id=registration.id),
        )

    async def list(self) -> list[WebhookListItem]:
        return await self._storage.list_registrations()

    async def get(self, webhook_id: str) -> WebhookRegistration | None:
        return await self._storage.load_registration(webhook_id)

    async def update(self, data: UpdateWebhookInput) -> WebhookOperationResult:
        """Apply the provided fields; ``updated_at`` always moves forward."""
        if data.status is not None and data.status not in WEBHOOK_STATUSES:
            return _rejected(f'Unknown status "{data.status}".', "invalid_input", data.id)
        if data.status == "deleted":
            return _rejected(
                "Status \"deleted\" cannot be set directly; delete the webhook instead.",
                "invalid_input",
                data.id,
            )
        try:
            registration = await self._storage.load_registration(data.id)
            if registration is None:
                return _rejected(f'Webhook "{data.id}" not found.', "not_found", data.id)

            if data.name is not None:
                registration.name = data.name
            if data.description is not None:
                registration.description = data.description
            if data.events_filter is not None:
                registration.events_filter = list(data.events_filter)
            if data.status is not None:
                registration.status = data.status
            registration.updated_at = utc_now_iso()
            await self._storage.save_registration(registration)
        except Exception as exc:
            logger.exception("Failed to update webhook %s", data.id)
            return _rejected(f"Failed to update webhook: {exc}", "error", data.id)

        logger.info("Webhook updated: %s (status=%s)", registration.id, registration.status)
        return WebhookOperationResult(
            success=True,
            message=f'Webhook "{registration.name}" updated.',
            webhook_id=registration.id,
        )

    async def delete(self, webhook_id: str) -> WebhookOperationResult:
        try:
            deleted = await self._storage.delete_registration(webhook_id)
        except Exception as exc:
            logger.exception("Failed to delete webhook %s", webhook_id)
            return _rejected(f"Failed to delete webhook: {exc}", "error", webhook_id)
        if not deleted:
            return _rejected(f"Webhook {webhook_id} not found.", "not_found", webhook_id)
        self._rate_limiter.reset(webhook_id)
        return WebhookOperationResult(
            success=True,
            message=f"Webhook {webhook_id} deleted.",
            webhook_id=webhook_id,
        )

    # -- Event reception --

    async def receive_event(self, data: ReceiveEventInput) -> WebhookOperationResult:
        """Authenticate and store one inbound event.

        Checks run in order and stop at the first failure: registration
        exists, registration is active, rate limit, timestamp freshness,
        signature, event type filter. Nothing is persisted on rejection.
        """
        op_token = ctx_operation.set("recv")
        webhook_token = ctx_webhook_id.set(None)
        try:
            return await self._receive(data)
        except Exception as exc:
            logger.exception("Failed to process event for %s", data.webhook_id)
            return _rejected(f"Failed to process event: {exc}", "error", data.webhook_id)
        finally:
            ctx_webhook_id.reset(webhook_token)
            ctx_operation.reset(op_token)

    async def _receive(self, data: ReceiveEventInput) -> WebhookOperationResult:
        registration = await self._storage.load_registration(data.webhook_id)
        if registration is None:
            logger.warning("Event rejected: webhook not found")
            return _rejected("Webhook not found.", "not_found")

        webhook_id = registration.id
        set_log_context(webhook_id=webhook_id)

        if registration.status != "active":
            logger.warning("Event rejected: webhook %s is %s", webhook_id, registration.status)
            return _rejected("Webhook is not active.", "inactive", webhook_id)

        if not self._rate_limiter.check(webhook_id):
            return _rejected("Rate limit exceeded.", "rate_limited", webhook_id)

        max_age_ms = self._config.security.max_timestamp_age_ms
        if not is_timestamp_fresh(data.timestamp, max_age_ms):
            logger.warning("Event rejected: stale or invalid timestamp %r", data.timestamp)
            return _rejected("Timestamp too old or invalid.", "stale_timestamp", webhook_id)

        signed = data.raw_body if data.raw_body is not None else canonical_json(data.payload)
        if not verify_signature(signed, data.signature, registration.secret):
            logger.warning("Event rejected: invalid signature")
            return _rejected("Invalid signature.", "invalid_signature", webhook_id)

        if not registration.accepts(data.event_type):
            logger.warning("Event rejected: type %r filtered", data.event_type)
            return _rejected(
                f'Event type "{data.event_type}" not accepted by this webhook.',
                "event_filtered",
                webhook_id,
            )

        if not isinstance(data.payload, dict):
            return _rejected("Payload must be a JSON object.", "invalid_input", webhook_id)

        event_id = generate_event_id()
        delivery_id = generate_delivery_id()
        now = utc_now_iso()

        await self._storage.save_event(
            WebhookEvent(
                id=event_id,
                webhook_id=webhook_id,
                source=registration.source,
                event_type=data.event_type,
                payload=data.payload,
                timestamp=data.timestamp,
                signature=data.signature,
                status="pending",
            )
        )
        await self._storage.save_delivery(
            WebhookDelivery(
                id=delivery_id,
                webhook_id=webhook_id,
                event_id=event_id,
                received_at=now,
                status="accepted",
                http_status=200,
                remote_ip=data.remote_ip,
            )
        )

        registration.delivery_count += 1
        registration.last_delivery_at = now
        registration.updated_at = now
        await self._storage.save_registration(registration)

        logger.info("Event accepted: %s type=%s", event_id, data.event_type)
        return WebhookOperationResult(
            success=True,
            message="Event received.",
            webhook_id=webhook_id,
            event_id=event_id,
            delivery_id=delivery_id,
        )

    async def send_test_event(self, webhook_id: str) -> WebhookOperationResult:
        """Sign a synthetic payload with the webhook's secret and receive it normally."""
        set_log_context(operation="test")
        try:
            registration = await self._storage.load_registration(webhook_id)
        except Exception as exc:
            logger.exception("Failed to load webhook %s", webhook_id)
            return _rejected(f"Failed to send test event: {exc}", "error", webhook_id)
        if registration is None:
            return _rejected(f'Webhook "{webhook_id}" not found.', "not_found", webhook_id)

        now = utc_now_iso()
        payload = {"test": True, "message": "Test event from assistant", "timestamp": now}
        signature = sign_payload(canonical_json(payload), registration.secret)
        return await self.receive_event(
            ReceiveEventInput(
                webhook_id=webhook_id,
                payload=payload,
                signature=signature,
                timestamp=now,
                event_type=TEST_EVENT_TYPE,
            )
        )

    # -- Event listing --

    async def list_events(
        self,
        webhook_id: str,
        *,
        limit: int | None = None,
        pending_only: bool = False,
    ) -> list[WebhookEventListItem]:
        return await self._storage.list_events(webhook_id, limit=limit, pending_only=pending_only)

    async def list_deliveries(
        self,
        webhook_id: str,
        *,
        limit: int | None = None,
    ) -> list[WebhookDelivery]:
        return await self._storage.list_deliveries(webhook_id, limit=limit)

    # -- Context injection --

    async def get_pending_for_injection(self) -> list[WebhookEvent]:
        """Oldest pending events across all active webhooks, capped at ``max_per_turn``.

        Ordering is by event timestamp over the union of webhooks, not per webhook.
        """
        injection = self._config.injection
        if not injection.enabled:
            return []

        pending: list[WebhookEvent] = []
        try:
            for webhook in await self._storage.list_registrations():
                if webhook.status != "active":
                    continue
                items = await self._storage.list_events(webhook.id, pending_only=True)
                for item in items:
                    event = await self._storage.load_event(webhook.id, item.id)
                    if event is not None and event.status == "pending":
                        pending.append(event)
        except Exception:
            logger.exception("Failed to collect pending events")
            return []

        pending.sort(key=lambda e: timestamp_sort_key(e.timestamp))
        return pending[: injection.max_per_turn]

    async def mark_injected(
        self,
        events: Iterable[InjectionRef | WebhookEvent | tuple[str, str]],
    ) -> WebhookOperationResult:
        """Move each referenced event from ``pending`` to ``injected``."""
        set_log_context(operation="inject")
        now = utc_now_iso()
        marked = 0
        try:
            for item in events:
                webhook_id, event_id = item.ref if isinstance(item, WebhookEvent) else item
                if await self._storage.update_event_status(
                    webhook_id, event_id, "injected", now
                ):
                    marked += 1
        except Exception as exc:
            logger.exception("Failed to mark events as injected")
            return _rejected(f"Failed to mark events as injected: {exc}", "error")

        logger.info("Marked %d event(s) as injected", marked)
        return WebhookOperationResult(
            success=True,
            message=f"Marked {marked} event(s) as injected.",
        )

    @staticmethod
    def build_injection_context(events: list[WebhookEvent]) -> str:
        """Markdown digest of *events* for the assistant's context.

        One block per event: source and type, webhook and receipt time, the
        full JSON payload, and the event ID.
        """
        if not events:
            return ""

        lines = [
            "## Pending Webhook Events",
            "",
            f"You have {len(events)} pending webhook event(s):",
        ]
        for event in events:
            lines.extend(
                [
                    "",
                    f"### {event.source}: {event.event_type}",
                    f"**Webhook:** {event.webhook_id} | **Received:** {_format_time(event.timestamp)}",
                    "",
                    "```json",
                    json.dumps(event.payload, indent=2, ensure_ascii=False),
                    "```",
                    f"*Event ID: {event.id}*",
                    "---",
                ]
            )
        lines.extend(["", "Process these events as appropriate. Use webhook tools to manage webhooks."])
        return "\n".join(lines)

    # -- Real-time watching --

    async def start_watching(self) -> None:
        if self._watcher is not None:
            return
        self._watcher = WebhookEventWatcher(self._storage.events_root)
        self._watcher.on_new_event(self._forward_event)
        await self._watcher.start()

    async def stop_watching(self) -> None:
        """Stop the watcher and drop every listener."""
        if self._watcher is not None:
            await self._watcher.stop()
            self._watcher = None
        self._listeners.clear()

    def on_event(self, listener: EventListener) -> Callable[[], None]:
        """Register *listener* for newly stored events; returns an unsubscribe function."""
        self._listeners.add(listener)

        def _unsubscribe() -> None:
            self._listeners.discard(listener)

        return _unsubscribe

    def is_watching(self) -> bool:
        return self._watcher is not None and self._watcher.is_running()

    async def _forward_event(self, webhook_id: str, event_id: str) -> None:
        event = await self._storage.load_event(webhook_id, event_id)
        if event is None:
            logger.debug("Watcher reported unreadable event %s/%s", webhook_id, event_id)
            return
        for listener in list(self._listeners):
            try:
                await listener(event)
            except Exception:
                logger.exception("Event listener failed for %s", event_id)

    # -- Retention --

    async def cleanup(self) -> int:
        """Apply ``max_age_days`` and then ``max_events`` to every registered webhook."""
        storage_cfg = self._config.storage
        total = 0
        for webhook in await self._storage.list_registrations():
            try:
                total += await self._storage.cleanup_events(webhook.id, storage_cfg.max_age_days)
                total += await self._storage.enforce_max_events(webhook.id, storage_cfg.max_events)
            except Exception:
                logger.exception("Retention failed for %s", webhook.id)
        return total


def _format_time(value: str) -> str:
    parsed = parse_timestamp(value)
    if parsed is None:
        return value
    return parsed.astimezone(UTC).strftime("%Y-%m-%d %H:%M:%S UTC")
