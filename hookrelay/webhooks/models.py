"""Webhook data models and their on-disk JSON representation.

Persisted files use camelCase keys; optional keys are omitted when unset.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal, NamedTuple

WebhookStatus = Literal["active", "paused", "deleted"]
WebhookEventStatus = Literal["pending", "injected", "processed", "failed"]
WebhookDeliveryStatus = Literal["accepted", "rejected", "error"]

WEBHOOK_STATUSES: frozenset[str] = frozenset({"active", "paused", "deleted"})
EVENT_STATUSES: frozenset[str] = frozenset({"pending", "injected", "processed", "failed"})

_EPOCH = datetime.min.replace(tzinfo=UTC)


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


def parse_timestamp(value: object) -> datetime | None:
    """Parse an ISO-8601 string into an aware datetime (naive values read as UTC)."""
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip())
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def timestamp_sort_key(value: object) -> datetime:
    """Sort key for ISO timestamps; unparsable values sort first."""
    return parse_timestamp(value) or _EPOCH


def _without_none(data: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None}


@dataclass
class WebhookRegistration:
    """A named, secret-bearing endpoint that events are received against."""

    id: str
    name: str
    source: str
    secret: str
    description: str | None = None
    events_filter: list[str] = field(default_factory=list)
    status: WebhookStatus = "active"
    delivery_count: int = 0
    created_at: str = ""
    updated_at: str = ""
    last_delivery_at: str | None = None

    def __post_init__(self) -> None:
        now = utc_now_iso()
        if not self.created_at:
            self.created_at = now
        if not self.updated_at:
            self.updated_at = self.created_at or now

    def accepts(self, event_type: str) -> bool:
        """Empty filter accepts every event type."""
        return not self.events_filter or event_type in self.events_filter

    def to_list_item(self) -> WebhookListItem:
        return WebhookListItem(
            id=self.id,
            name=self.name,
            source=self.source,
            status=self.status,
            delivery_count=self.delivery_count,
            created_at=self.created_at,
            last_delivery_at=self.last_delivery_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return _without_none(
            {
                "id": self.id,
                "name": self.name,
                "source": self.source,
                "description": self.description,
                "secret": self.secret,
                "eventsFilter": list(self.events_filter),
                "status": self.status,
                "deliveryCount": self.delivery_count,
                "createdAt": self.created_at,
                "updatedAt": self.updated_at,
                "lastDeliveryAt": self.last_delivery_at,
            }
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WebhookRegistration:
        return cls(
            id=data["id"],
            name=data["name"],
            source=data["source"],
            secret=data["secret"],
            description=data.get("description"),
            events_filter=list(data.get("eventsFilter", [])),
            status=data.get("status", "active"),
            delivery_count=data.get("deliveryCount", 0),
            created_at=data.get("createdAt", ""),
            updated_at=data.get("updatedAt", ""),
            last_delivery_at=data.get("lastDeliveryAt"),
        )


@dataclass
class WebhookEvent:
    """One received push notification. Only ``status``/``injected_at`` ever change."""

    id: str
    webhook_id: str
    source: str
    event_type: str
    payload: dict[str, Any]
    timestamp: str
    signature: str
    status: WebhookEventStatus = "pending"
    injected_at: str | None = None

    @property
    def ref(self) -> InjectionRef:
        return InjectionRef(self.webhook_id, self.id)

    def to_dict(self) -> dict[str, Any]:
        return _without_none(
            {
                "id": self.id,
                "webhookId": self.webhook_id,
                "source": self.source,
                "eventType": self.event_type,
                "payload": self.payload,
                "timestamp": self.timestamp,
                "signature": self.signature,
                "status": self.status,
                "injectedAt": self.injected_at,
            }
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WebhookEvent:
        payload = data["payload"]
        if not isinstance(payload, dict):
            msg = "event payload must be a JSON object"
            raise TypeError(msg)
        return cls(
            id=data["id"],
            webhook_id=data["webhookId"],
            source=data["source"],
            event_type=data["eventType"],
            payload=payload,
            timestamp=data["timestamp"],
            signature=data.get("signature", ""),
            status=data.get("status", "pending"),
            injected_at=data.get("injectedAt"),
        )


@dataclass(frozen=True)
class WebhookDelivery:
    """Write-once audit record of an accepted receipt."""

    id: str
    webhook_id: str
    event_id: str
    received_at: str
    status: WebhookDeliveryStatus
    http_status: int
    error: str | None = None
    remote_ip: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return _without_none(
            {
                "id": self.id,
                "webhookId": self.webhook_id,
                "eventId": self.event_id,
                "receivedAt": self.received_at,
                "status": self.status,
                "error": self.error,
                "httpStatus": self.http_status,
                "remoteIp": self.remote_ip,
            }
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WebhookDelivery:
        return cls(
            id=data["id"],
            webhook_id=data["webhookId"],
            event_id=data["eventId"],
            received_at=data["receivedAt"],
            status=data["status"],
            http_status=data["httpStatus"],
            error=data.get("error"),
            remote_ip=data.get("remoteIp"),
        )


# -- Index projections --


@dataclass
class WebhookListItem:
    id: str
    name: str
    source: str
    status: WebhookStatus
    delivery_count: int
    created_at: str
    last_delivery_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return _without_none(
            {
                "id": self.id,
                "name": self.name,
                "source": self.source,
                "status": self.status,
                "deliveryCount": self.delivery_count,
                "createdAt": self.created_at,
                "lastDeliveryAt": self.last_delivery_at,
            }
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WebhookListItem:
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            source=data.get("source", ""),
            status=data.get("status", "active"),
            delivery_count=data.get("deliveryCount", 0),
            created_at=data.get("createdAt", ""),
            last_delivery_at=data.get("lastDeliveryAt"),
        )


@dataclass
class WebhookEventListItem:
    id: str
    source: str
    event_type: str
    preview: str
    timestamp: str
    status: WebhookEventStatus

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source,
            "eventType": self.event_type,
            "preview": self.preview,
            "timestamp": self.timestamp,
            "status": self.status,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WebhookEventListItem:
        return cls(
            id=data["id"],
            source=data.get("source", ""),
            event_type=data.get("eventType", ""),
            preview=data.get("preview", ""),
            timestamp=data.get("timestamp", ""),
            status=data.get("status", "pending"),
        )


@dataclass
class WebhookIndex:
    """Global registration index (``index.json``), most recently created first."""

    webhooks: list[WebhookListItem] = field(default_factory=list)
    last_updated: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "webhooks": [w.to_dict() for w in self.webhooks],
            "lastUpdated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WebhookIndex:
        return cls(
            webhooks=[WebhookListItem.from_dict(w) for w in data.get("webhooks", [])],
            last_updated=data.get("lastUpdated", ""),
        )


@dataclass
class WebhookEventIndex:
    """Per-webhook event index (``events/{id}/index.json``), newest first."""

    events: list[WebhookEventListItem] = field(default_factory=list)
    last_updated: str = ""
    total_events: int = 0
    pending_count: int = 0

    def recount_pending(self) -> None:
        self.pending_count = sum(1 for e in self.events if e.status == "pending")

    def to_dict(self) -> dict[str, Any]:
        return {
            "events": [e.to_dict() for e in self.events],
            "lastUpdated": self.last_updated,
            "totalEvents": self.total_events,
            "pendingCount": self.pending_count,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WebhookEventIndex:
        return cls(
            events=[WebhookEventListItem.from_dict(e) for e in data.get("events", [])],
            last_updated=data.get("lastUpdated", ""),
            total_events=data.get("totalEvents", 0),
            pending_count=data.get("pendingCount", 0),
        )


# -- Operation inputs and results --


@dataclass(frozen=True)
class CreateWebhookInput:
    name: str
    source: str
    description: str | None = None
    events_filter: list[str] | None = None


@dataclass(frozen=True)
class UpdateWebhookInput:
    """Fields left as None are not touched."""

    id: str
    name: str | None = None
    description: str | None = None
    events_filter: list[str] | None = None
    status: WebhookStatus | None = None


@dataclass(frozen=True)
class ReceiveEventInput:
    """Inbound event as handed over by the transport layer.

    ``raw_body`` carries the exact request bytes when the transport captured
    them; signatures are then verified over those bytes instead of a
    re-serialization of ``payload``.
    """

    webhook_id: str
    payload: dict[str, Any]
    signature: str
    timestamp: str
    event_type: str
    remote_ip: str | None = None
    raw_body: bytes | None = None


@dataclass(frozen=True)
class WebhookOperationResult:
    """Outcome of a public manager operation.

    ``reason`` is a machine-readable code for rejections: ``not_found``,
    ``inactive``, ``rate_limited``, ``stale_timestamp``, ``invalid_signature``,
    ``event_filtered``, ``invalid_input`` or ``error``.
    """

    success: bool
    message: str
    webhook_id: str | None = None
    event_id: str | None = None
    delivery_id: str | None = None
    secret: str | None = None
    url: str | None = None
    reason: str | None = None


class InjectionRef(NamedTuple):
    webhook_id: str
    event_id: str
