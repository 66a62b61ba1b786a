"""Logging context: ContextVar-based log enrichment for async operations.

Every log record is automatically enriched with a ``[op:webhook]`` prefix
via a `ContextFilter` attached to the root logger handlers.

Operation codes: ``recv`` (inbound event), ``test`` (self-signed test event),
``watch`` (filesystem notification), ``inject`` (injection batch),
``cleanup`` (retention run), ``http`` (ingress request).
"""

from __future__ import annotations

import logging
from contextvars import ContextVar

# Cross-cutting context propagated through asyncio tasks.
ctx_operation: ContextVar[str | None] = ContextVar("ctx_operation", default=None)
ctx_webhook_id: ContextVar[str | None] = ContextVar("ctx_webhook_id", default=None)


class ContextFilter(logging.Filter):
    """Inject ContextVar values into every LogRecord as ``record.ctx``."""

    def filter(self, record: logging.LogRecord) -> bool:
        op = ctx_operation.get(None)
        webhook_id = ctx_webhook_id.get(None)
        parts: list[str] = []
        if op:
            parts.append(op)
        if webhook_id:
            parts.append(webhook_id)
        record.ctx = f"[{':'.join(parts)}] " if parts else ""
        return True


def set_log_context(
    *,
    operation: str | None = None,
    webhook_id: str | None = None,
) -> None:
    """Set logging context for the current asyncio task.

    Values propagate to all coroutines called within the same task.
    Each ``asyncio.create_task()`` copies the current context automatically.
    """
    if operation is not None:
        ctx_operation.set(operation)
    if webhook_id is not None:
        ctx_webhook_id.set(webhook_id)
