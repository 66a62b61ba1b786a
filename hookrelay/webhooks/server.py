"""Webhook HTTP server: aiohttp-based ingress that feeds ``WebhooksManager``."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from aiohttp import web

from hookrelay.log_context import set_log_context
from hookrelay.webhooks.manager import RECEIVE_PATH
from hookrelay.webhooks.models import ReceiveEventInput, WebhookOperationResult

if TYPE_CHECKING:
    from hookrelay.config import ServerConfig
    from hookrelay.webhooks.manager import WebhooksManager

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"
TIMESTAMP_HEADER = "X-Webhook-Timestamp"
EVENT_HEADER = "X-Webhook-Event"

_REASON_STATUS: dict[str, int] = {
    "not_found": 404,
    "inactive": 403,
    "rate_limited": 429,
    "stale_timestamp": 401,
    "invalid_signature": 401,
    "event_filtered": 422,
    "invalid_input": 400,
    "error": 500,
}


def status_for(result: WebhookOperationResult) -> int:
    """HTTP status code for a ``receive_event`` result."""
    if result.success:
        return 200
    return _REASON_STATUS.get(result.reason or "error", 500)


def _error(error: str, message: str, status: int) -> web.Response:
    return web.json_response({"success": False, "error": error, "message": message}, status=status)


class WebhookServer:
    """HTTP server accepting signed webhook payloads.

    Routes:
    - ``GET  /health``                                 -- Health check.
    - ``POST /api/v1/webhooks/receive/{webhook_id}``   -- Event ingress.

    Authentication, rate limiting and persistence are delegated to the
    manager; this layer only parses the request and maps the result onto
    an HTTP status.
    """

    def __init__(self, config: ServerConfig, manager: WebhooksManager) -> None:
        self._config = config
        self._manager = manager
        self._runner: web.AppRunner | None = None

    def build_app(self) -> web.Application:
        app = web.Application(client_max_size=self._config.max_body_bytes)
        app.router.add_get("/health", self._handle_health)
        app.router.add_post(RECEIVE_PATH, self._handle_receive)
        return app

    async def start(self) -> None:
        """Create the aiohttp app and start listening."""
        self._runner = web.AppRunner(self.build_app(), access_log=None)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._config.host, self._config.port)
        await site.start()
        logger.info(
            "Webhook server listening on %s:%d",
            self._config.host,
            self._config.port,
        )

    async def stop(self) -> None:
        """Shut down the server."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        logger.info("Webhook server stopped")

    # -- Handlers --

    async def _handle_health(self, _request: web.Request) -> web.Response:
        return web.json_response({"status": "ok"})

    async def _handle_receive(self, request: web.Request) -> web.Response:  # noqa: PLR0911
        webhook_id = request.match_info["webhook_id"]
        set_log_context(operation="http")
        logger.debug("Webhook request received method=%s", request.method)

        if request.content_type != "application/json":
            logger.warning("Webhook rejected: bad content-type %s", request.content_type)
            return _error("content_type_must_be_json", "Content-Type must be application/json.", 415)

        signature = request.headers.get(SIGNATURE_HEADER, "").strip()
        timestamp = request.headers.get(TIMESTAMP_HEADER, "").strip()
        event_type = request.headers.get(EVENT_HEADER, "").strip()
        missing = [
            name
            for name, value in (
                (SIGNATURE_HEADER, signature),
                (TIMESTAMP_HEADER, timestamp),
                (EVENT_HEADER, event_type),
            )
            if not value
        ]
        if missing:
            logger.warning("Webhook rejected: missing headers %s", ", ".join(missing))
            return _error("missing_headers", f"Missing headers: {', '.join(missing)}.", 400)

        # Raw bytes are kept for signature verification.
        raw_body = await request.read()

        try:
            payload: Any = json.loads(raw_body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.warning("Webhook rejected: invalid JSON")
            return _error("invalid_json", "Body is not valid JSON.", 400)

        if not isinstance(payload, dict):
            logger.warning("Webhook rejected: body not object")
            return _error("body_must_be_object", "Body must be a JSON object.", 400)

        result = await self._manager.receive_event(
            ReceiveEventInput(
                webhook_id=webhook_id,
                payload=payload,
                signature=signature,
                timestamp=timestamp,
                event_type=event_type,
                remote_ip=request.remote,
                raw_body=raw_body,
            )
        )
        status = status_for(result)
        if not result.success:
            return _error(result.reason or "error", result.message, status)
        return web.json_response(
            {
                "success": True,
                "message": result.message,
                "eventId": result.event_id,
                "deliveryId": result.delivery_id,
            },
            status=status,
        )
