"""Tests for WebhooksManager: CRUD, reception, injection, watching, retention."""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, patch

import pytest

from hookrelay.config import WebhooksConfig
from hookrelay.log_context import ctx_operation, ctx_webhook_id
from hookrelay.webhooks.crypto import canonical_json, sign_payload
from hookrelay.webhooks.manager import WebhooksManager
from hookrelay.webhooks.models import (
    CreateWebhookInput,
    InjectionRef,
    ReceiveEventInput,
    UpdateWebhookInput,
    WebhookEvent,
    WebhookRegistration,
)

_MONOTONIC = "hookrelay.webhooks.ratelimit.time.monotonic"
_AWATCH = "hookrelay.webhooks.watcher.awatch"


def _make_config(**overrides: Any) -> WebhooksConfig:
    return WebhooksConfig.model_validate(overrides)


def _make_manager(tmp_path: Path, **overrides: Any) -> WebhooksManager:
    return WebhooksManager(_make_config(**overrides), base_path=tmp_path / "webhooks")


def _iso(delta: timedelta = timedelta(0)) -> str:
    return (datetime.now(UTC) - delta).isoformat()


def _signed(
    reg: WebhookRegistration,
    payload: dict[str, Any],
    event_type: str = "push",
    *,
    timestamp: str | None = None,
    **overrides: Any,
) -> ReceiveEventInput:
    fields: dict[str, Any] = {
        "webhook_id": reg.id,
        "payload": payload,
        "signature": sign_payload(canonical_json(payload), reg.secret),
        "timestamp": timestamp or _iso(),
        "event_type": event_type,
    }
    fields.update(overrides)
    return ReceiveEventInput(**fields)


async def _create(
    manager: WebhooksManager,
    name: str = "GitHub",
    source: str = "github",
    **kwargs: Any,
) -> WebhookRegistration:
    result = await manager.create(CreateWebhookInput(name=name, source=source, **kwargs))
    assert result.success, result.message
    reg = await manager.get(str(result.webhook_id))
    assert reg is not None
    return reg


async def _idle_awatch(*_args: Any, **_kwargs: Any) -> AsyncIterator[set[Any]]:
    await asyncio.Event().wait()
    yield set()


@pytest.fixture
def manager(tmp_path: Path) -> WebhooksManager:
    return _make_manager(tmp_path)


# ---------------------------------------------------------------------------
# Registration CRUD
# ---------------------------------------------------------------------------


class TestCreate:
    async def test_returns_id_secret_url(self, manager: WebhooksManager) -> None:
        result = await manager.create(CreateWebhookInput(name="Gmail", source="gmail"))
        assert result.success is True
        assert result.message == 'Webhook "Gmail" created for source "gmail"'
        assert result.webhook_id is not None
        assert result.webhook_id.startswith("whk_")
        assert result.secret is not None
        assert result.secret.startswith("whsec_")
        assert result.url == f"/api/v1/webhooks/receive/{result.webhook_id}"

    async def test_registration_defaults(self, manager: WebhooksManager) -> None:
        reg = await _create(manager, description="mail", events_filter=["a"])
        assert reg.status == "active"
        assert reg.delivery_count == 0
        assert reg.description == "mail"
        assert reg.events_filter == ["a"]

    async def test_listed_newest_first(self, manager: WebhooksManager) -> None:
        first = await _create(manager, name="one")
        second = await _create(manager, name="two")
        assert [w.id for w in await manager.list()] == [second.id, first.id]

    async def test_blank_name_rejected(self, manager: WebhooksManager) -> None:
        result = await manager.create(CreateWebhookInput(name="  ", source="x"))
        assert result.success is False
        assert result.reason == "invalid_input"
        assert await manager.list() == []

    async def test_storage_failure_reported(self, manager: WebhooksManager) -> None:
        with patch.object(
            manager.storage, "save_registration", AsyncMock(side_effect=OSError("read-only"))
        ):
            result = await manager.create(CreateWebhookInput(name="x", source="y"))
        assert result.success is False
        assert result.reason == "error"
        assert "read-only" in result.message


class TestUpdate:
    async def test_applies_fields(self, manager: WebhooksManager) -> None:
        reg = await _create(manager)
        result = await manager.update(
            UpdateWebhookInput(id=reg.id, name="Renamed", events_filter=["push"], status="paused")
        )
        assert result.success is True
        assert result.message == 'Webhook "Renamed" updated.'

        updated = await manager.get(reg.id)
        assert updated is not None
        assert updated.name == "Renamed"
        assert updated.events_filter == ["push"]
        assert updated.status == "paused"
        assert updated.source == reg.source
        assert updated.updated_at >= reg.updated_at
        assert (await manager.list())[0].name == "Renamed"

    async def test_not_found(self, manager: WebhooksManager) -> None:
        result = await manager.update(UpdateWebhookInput(id="whk_missing", name="x"))
        assert result.success is False
        assert result.reason == "not_found"
        assert result.message == 'Webhook "whk_missing" not found.'

    async def test_deleted_status_rejected(self, manager: WebhooksManager) -> None:
        reg = await _create(manager)
        result = await manager.update(UpdateWebhookInput(id=reg.id, status="deleted"))
        assert result.success is False
        assert result.reason == "invalid_input"
        current = await manager.get(reg.id)
        assert current is not None
        assert current.status == "active"

    async def test_unknown_status_rejected(self, manager: WebhooksManager) -> None:
        reg = await _create(manager)
        result = await manager.update(UpdateWebhookInput(id=reg.id, status="bogus"))  # type: ignore[arg-type]
        assert result.reason == "invalid_input"


class TestDelete:
    async def test_removes_everything(self, manager: WebhooksManager) -> None:
        reg = await _create(manager)
        assert (await manager.receive_event(_signed(reg, {"a": 1}))).success

        result = await manager.delete(reg.id)
        assert result.success is True
        assert result.message == f"Webhook {reg.id} deleted."
        assert await manager.get(reg.id) is None
        assert await manager.list() == []
        assert await manager.list_events(reg.id) == []
        assert await manager.list_deliveries(reg.id) == []

    async def test_not_found(self, manager: WebhooksManager) -> None:
        result = await manager.delete("whk_missing")
        assert result.success is False
        assert result.reason == "not_found"
        assert result.message == "Webhook whk_missing not found."

    async def test_unsafe_id_not_found(self, manager: WebhooksManager) -> None:
        result = await manager.delete("../../etc")
        assert result.reason == "not_found"


# ---------------------------------------------------------------------------
# Event reception
# ---------------------------------------------------------------------------


class TestReceiveEvent:
    async def test_accepts_and_persists(self, manager: WebhooksManager) -> None:
        reg = await _create(manager)
        result = await manager.receive_event(
            _signed(reg, {"ref": "main"}, remote_ip="10.1.2.3"),
        )
        assert result.success is True
        assert result.message == "Event received."
        assert result.event_id is not None
        assert result.delivery_id is not None

        event = await manager.storage.load_event(reg.id, result.event_id)
        assert event is not None
        assert event.status == "pending"
        assert event.payload == {"ref": "main"}
        assert event.source == "github"

        deliveries = await manager.list_deliveries(reg.id)
        assert len(deliveries) == 1
        assert deliveries[0].event_id == result.event_id
        assert deliveries[0].status == "accepted"
        assert deliveries[0].http_status == 200
        assert deliveries[0].remote_ip == "10.1.2.3"

        updated = await manager.get(reg.id)
        assert updated is not None
        assert updated.delivery_count == 1
        assert updated.last_delivery_at is not None
        assert (await manager.list())[0].delivery_count == 1

    async def test_not_found(self, manager: WebhooksManager) -> None:
        result = await manager.receive_event(
            ReceiveEventInput("whk_missing", {}, "00", _iso(), "push"),
        )
        assert result.success is False
        assert result.reason == "not_found"
        assert result.message == "Webhook not found."

    async def test_log_context_scoped_to_call(self, manager: WebhooksManager) -> None:
        reg = await _create(manager)
        before = (ctx_operation.get(), ctx_webhook_id.get())
        assert (await manager.receive_event(_signed(reg, {"n": 1}))).success is True
        assert (ctx_operation.get(), ctx_webhook_id.get()) == before

        seen: list[str | None] = []
        load_registration = manager.storage.load_registration

        async def _spy(webhook_id: str) -> WebhookRegistration | None:
            seen.append(ctx_webhook_id.get())
            return await load_registration(webhook_id)

        with patch.object(manager.storage, "load_registration", _spy):
            result = await manager.receive_event(
                ReceiveEventInput("whk_missing", {}, "00", _iso(), "push"),
            )
        assert result.reason == "not_found"
        assert seen == [None]

    async def test_unsafe_id_is_not_found(self, manager: WebhooksManager) -> None:
        result = await manager.receive_event(
            ReceiveEventInput("../registrations/x", {}, "00", _iso(), "push"),
        )
        assert result.reason == "not_found"

    async def test_paused_webhook_rejected(self, manager: WebhooksManager) -> None:
        reg = await _create(manager)
        await manager.update(UpdateWebhookInput(id=reg.id, status="paused"))
        result = await manager.receive_event(_signed(reg, {"a": 1}))
        assert result.reason == "inactive"
        assert result.message == "Webhook is not active."

    async def test_bad_signature_rejected(self, manager: WebhooksManager) -> None:
        reg = await _create(manager)
        data = _signed(reg, {"amount": 10})
        tampered = ReceiveEventInput(
            data.webhook_id, {"amount": 11}, data.signature, data.timestamp, data.event_type
        )
        result = await manager.receive_event(tampered)
        assert result.reason == "invalid_signature"
        assert result.message == "Invalid signature."

    async def test_garbage_signature_rejected(self, manager: WebhooksManager) -> None:
        reg = await _create(manager)
        result = await manager.receive_event(_signed(reg, {"a": 1}, signature="not-hex"))
        assert result.reason == "invalid_signature"

    async def test_raw_body_is_verified_verbatim(self, manager: WebhooksManager) -> None:
        reg = await _create(manager)
        raw = b'{ "a": 1,\n  "b": "x" }'
        payload = json.loads(raw)
        good = await manager.receive_event(
            _signed(reg, payload, signature=sign_payload(raw, reg.secret), raw_body=raw),
        )
        assert good.success is True

        canonical_sig = sign_payload(canonical_json(payload), reg.secret)
        bad = await manager.receive_event(
            _signed(reg, payload, signature=canonical_sig, raw_body=raw),
        )
        assert bad.reason == "invalid_signature"

    async def test_rejections_persist_nothing(self, manager: WebhooksManager) -> None:
        reg = await _create(manager)
        await manager.receive_event(_signed(reg, {"a": 1}, signature="00" * 32))
        await manager.receive_event(_signed(reg, {"a": 1}, timestamp=_iso(timedelta(hours=1))))
        assert await manager.list_events(reg.id) == []
        assert await manager.list_deliveries(reg.id) == []
        current = await manager.get(reg.id)
        assert current is not None
        assert current.delivery_count == 0

    async def test_checks_run_in_order(self, manager: WebhooksManager) -> None:
        """A stale, badly signed, filtered event on a paused hook reports ``inactive``."""
        reg = await _create(manager, events_filter=["only.this"])
        await manager.update(UpdateWebhookInput(id=reg.id, status="paused"))
        data = _signed(
            reg, {"a": 1}, "other", timestamp=_iso(timedelta(hours=2)), signature="00"
        )
        assert (await manager.receive_event(data)).reason == "inactive"

        await manager.update(UpdateWebhookInput(id=reg.id, status="active"))
        assert (await manager.receive_event(data)).reason == "stale_timestamp"

    async def test_storage_failure_reported(self, manager: WebhooksManager) -> None:
        reg = await _create(manager)
        with patch.object(manager.storage, "save_event", AsyncMock(side_effect=OSError("disk full"))):
            result = await manager.receive_event(_signed(reg, {"a": 1}))
        assert result.success is False
        assert result.reason == "error"
        assert result.message == "Failed to process event: disk full"


# ---------------------------------------------------------------------------
# Acceptance scenarios
# ---------------------------------------------------------------------------


class TestScenarios:
    async def test_receive_inject_cycle(self, manager: WebhooksManager) -> None:
        reg = await _create(manager, name="Gmail", source="gmail")
        result = await manager.receive_event(
            _signed(reg, {"from": "a@b.c", "subject": "hi"}, "message.received"),
        )
        assert result.success is True

        events = await manager.list_events(reg.id)
        assert len(events) == 1
        assert events[0].status == "pending"
        assert events[0].event_type == "message.received"

        pending = await manager.get_pending_for_injection()
        assert [e.id for e in pending] == [result.event_id]

        marked = await manager.mark_injected(pending)
        assert marked.success is True
        assert marked.message == "Marked 1 event(s) as injected."

        assert await manager.get_pending_for_injection() == []
        assert await manager.list_events(reg.id, pending_only=True) == []
        event = await manager.storage.load_event(reg.id, str(result.event_id))
        assert event is not None
        assert event.status == "injected"
        assert event.injected_at is not None

    async def test_event_filter_rejects(self, manager: WebhooksManager) -> None:
        reg = await _create(manager, events_filter=["issue.opened"])
        result = await manager.receive_event(_signed(reg, {"n": 1}, "issue.closed"))
        assert result.success is False
        assert result.reason == "event_filtered"
        assert "issue.closed" in result.message
        assert await manager.list_events(reg.id) == []

    async def test_stale_timestamp_rejects(self, manager: WebhooksManager) -> None:
        reg = await _create(manager)
        result = await manager.receive_event(
            _signed(reg, {"n": 1}, timestamp=_iso(timedelta(minutes=10))),
        )
        assert result.reason == "stale_timestamp"
        assert result.message == "Timestamp too old or invalid."

    async def test_rate_limit_window(self, manager: WebhooksManager) -> None:
        reg = await _create(manager)
        base = time.monotonic()
        with patch(_MONOTONIC, return_value=base):
            for i in range(60):
                assert (await manager.receive_event(_signed(reg, {"i": i}))).success
            result = await manager.receive_event(_signed(reg, {"i": 60}))
            assert result.reason == "rate_limited"
            assert result.message == "Rate limit exceeded."
        with patch(_MONOTONIC, return_value=base + 61):
            assert (await manager.receive_event(_signed(reg, {"i": 61}))).success

    async def test_age_cleanup(self, tmp_path: Path) -> None:
        manager = _make_manager(tmp_path, storage={"maxAgeDays": 30})
        reg = await _create(manager)
        for i in range(5):
            await manager.storage.save_event(
                WebhookEvent(
                    id=f"evt_old{i}",
                    webhook_id=reg.id,
                    source="github",
                    event_type="push",
                    payload={"i": i},
                    timestamp=_iso(timedelta(days=31 + i)),
                    signature="00",
                )
            )
        assert (await manager.receive_event(_signed(reg, {"fresh": True}))).success

        assert await manager.storage.cleanup_events(reg.id, 30) == 5
        remaining = await manager.list_events(reg.id)
        assert len(remaining) == 1
        assert remaining[0].preview == '{"fresh":true}'


# ---------------------------------------------------------------------------
# Test events
# ---------------------------------------------------------------------------


class TestSendTestEvent:
    async def test_goes_through_normal_receipt(self, manager: WebhooksManager) -> None:
        reg = await _create(manager)
        result = await manager.send_test_event(reg.id)
        assert result.success is True
        event = await manager.storage.load_event(reg.id, str(result.event_id))
        assert event is not None
        assert event.event_type == "test"
        assert event.payload["test"] is True
        assert event.payload["message"] == "Test event from assistant"

    async def test_respects_filter(self, manager: WebhooksManager) -> None:
        reg = await _create(manager, events_filter=["push"])
        result = await manager.send_test_event(reg.id)
        assert result.reason == "event_filtered"

    async def test_not_found(self, manager: WebhooksManager) -> None:
        result = await manager.send_test_event("whk_missing")
        assert result.reason == "not_found"
        assert result.message == 'Webhook "whk_missing" not found.'


# ---------------------------------------------------------------------------
# Injection
# ---------------------------------------------------------------------------


class TestInjection:
    async def test_oldest_first_across_webhooks(self, tmp_path: Path) -> None:
        manager = _make_manager(tmp_path, injection={"maxPerTurn": 2})
        one = await _create(manager, name="one")
        two = await _create(manager, name="two")
        await manager.receive_event(_signed(one, {"n": "one-3m"}, timestamp=_iso(timedelta(minutes=3))))
        await manager.receive_event(_signed(two, {"n": "two-1m"}, timestamp=_iso(timedelta(minutes=1))))
        await manager.receive_event(_signed(one, {"n": "one-2m"}, timestamp=_iso(timedelta(minutes=2))))

        pending = await manager.get_pending_for_injection()
        assert [e.payload["n"] for e in pending] == ["one-3m", "one-2m"]

    async def test_skips_inactive_webhooks(self, manager: WebhooksManager) -> None:
        reg = await _create(manager)
        await manager.receive_event(_signed(reg, {"a": 1}))
        await manager.update(UpdateWebhookInput(id=reg.id, status="paused"))
        assert await manager.get_pending_for_injection() == []

    async def test_disabled_returns_nothing(self, tmp_path: Path) -> None:
        manager = _make_manager(tmp_path, injection={"enabled": False})
        reg = await _create(manager)
        await manager.receive_event(_signed(reg, {"a": 1}))
        assert await manager.get_pending_for_injection() == []

    async def test_mark_injected_accepts_refs(self, manager: WebhooksManager) -> None:
        reg = await _create(manager)
        result = await manager.receive_event(_signed(reg, {"a": 1}))
        marked = await manager.mark_injected(
            [InjectionRef(reg.id, str(result.event_id)), InjectionRef(reg.id, "evt_missing")],
        )
        assert marked.message == "Marked 1 event(s) as injected."
        index = await manager.storage.load_event_index(reg.id)
        assert index.pending_count == 0

    async def test_mark_injected_empty(self, manager: WebhooksManager) -> None:
        result = await manager.mark_injected([])
        assert result.success is True
        assert result.message == "Marked 0 event(s) as injected."

    async def test_build_context(self, manager: WebhooksManager) -> None:
        reg = await _create(manager, source="stripe")
        await manager.receive_event(_signed(reg, {"amount": 42}, "charge.succeeded"))
        events = await manager.get_pending_for_injection()
        text = manager.build_injection_context(events)
        assert text.startswith("## Pending Webhook Events")
        assert "You have 1 pending webhook event(s)" in text
        assert "### stripe: charge.succeeded" in text
        assert f"**Webhook:** {reg.id}" in text
        assert '"amount": 42' in text
        assert f"*Event ID: {events[0].id}*" in text

    def test_build_context_empty(self) -> None:
        assert WebhooksManager.build_injection_context([]) == ""


# ---------------------------------------------------------------------------
# Watching
# ---------------------------------------------------------------------------


class TestWatching:
    async def test_forwards_loaded_event_to_listeners(self, manager: WebhooksManager) -> None:
        reg = await _create(manager)
        result = await manager.receive_event(_signed(reg, {"a": 1}))
        seen: list[WebhookEvent] = []

        async def _listener(event: WebhookEvent) -> None:
            seen.append(event)

        async def _broken(_event: WebhookEvent) -> None:
            msg = "listener failed"
            raise RuntimeError(msg)

        manager.on_event(_broken)
        unsubscribe = manager.on_event(_listener)
        await manager._forward_event(reg.id, str(result.event_id))
        assert [e.id for e in seen] == [result.event_id]

        unsubscribe()
        await manager._forward_event(reg.id, str(result.event_id))
        assert len(seen) == 1

    async def test_unreadable_event_not_forwarded(self, manager: WebhooksManager) -> None:
        listener = AsyncMock()
        manager.on_event(listener)
        await manager._forward_event("whk_x", "evt_missing")
        listener.assert_not_awaited()

    async def test_start_stop_watching(self, manager: WebhooksManager) -> None:
        listener = AsyncMock()
        with patch(_AWATCH, _idle_awatch):
            await manager.initialize()
            await manager.start_watching()
            await manager.start_watching()
            assert manager.is_watching() is True
            manager.on_event(listener)
            await manager.stop_watching()
        assert manager.is_watching() is False
        await manager._forward_event("whk_x", "evt_missing")
        assert manager._listeners == set()


# ---------------------------------------------------------------------------
# Retention and lifecycle
# ---------------------------------------------------------------------------


class TestCleanup:
    async def test_applies_age_then_cap(self, tmp_path: Path) -> None:
        manager = _make_manager(tmp_path, storage={"maxEvents": 2, "maxAgeDays": 30})
        reg = await _create(manager)
        await manager.storage.save_event(
            WebhookEvent(
                id="evt_ancient",
                webhook_id=reg.id,
                source="github",
                event_type="push",
                payload={},
                timestamp=_iso(timedelta(days=90)),
                signature="00",
            )
        )
        for i in range(3):
            await manager.receive_event(
                _signed(reg, {"i": i}, timestamp=_iso(timedelta(seconds=30 - i))),
            )

        assert await manager.cleanup() == 2
        remaining = await manager.list_events(reg.id)
        assert sorted(e.preview for e in remaining) == ['{"i":1}', '{"i":2}']

    async def test_no_webhooks(self, manager: WebhooksManager) -> None:
        assert await manager.cleanup() == 0


class TestLifecycle:
    async def test_disabled_start_is_noop(self, manager: WebhooksManager) -> None:
        await manager.start()
        assert manager.is_watching() is False
        await manager.stop()

    async def test_enabled_start_runs_watcher_and_retention(self, tmp_path: Path) -> None:
        manager = _make_manager(tmp_path, enabled=True)
        with patch(_AWATCH, _idle_awatch):
            await manager.start()
            try:
                assert manager.is_watching() is True
                assert manager._retention is not None
                assert manager._retention.running is True
                assert manager.storage.events_root.is_dir()
            finally:
                await manager.stop()
        assert manager.is_watching() is False
        assert manager._retention is None
