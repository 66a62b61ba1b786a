"""Webhook cryptography: secrets, HMAC-SHA256 signing, replay protection, IDs."""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import re
import secrets
import string
from datetime import UTC, datetime
from typing import Any

from hookrelay.webhooks.models import parse_timestamp

logger = logging.getLogger(__name__)

SECRET_PREFIX = "whsec_"
DEFAULT_MAX_TIMESTAMP_AGE_MS = 300_000

_ID_ALPHABET = string.ascii_lowercase + string.digits
_ID_LENGTH = 12
_HEX_RE = re.compile(r"[0-9a-fA-F]+")


def generate_secret() -> str:
    """Return a fresh 256-bit signing secret, hex-encoded with the ``whsec_`` prefix."""
    return f"{SECRET_PREFIX}{secrets.token_hex(32)}"


def _random_id(prefix: str) -> str:
    return prefix + "".join(secrets.choice(_ID_ALPHABET) for _ in range(_ID_LENGTH))


def generate_webhook_id() -> str:
    return _random_id("whk_")


def generate_event_id() -> str:
    return _random_id("evt_")


def generate_delivery_id() -> str:
    return _random_id("dlv_")


def canonical_json(payload: Any) -> str:
    """Compact JSON serialization used for signing and index previews.

    No whitespace, keys in insertion order, non-ASCII left unescaped.
    """
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def _key(secret: str) -> bytes:
    return secret.removeprefix(SECRET_PREFIX).encode()


def sign_payload(payload: str | bytes, secret: str) -> str:
    """HMAC-SHA256 of the exact *payload* bytes as lowercase hex.

    The ``whsec_`` prefix is stripped from *secret* if present, so the
    prefixed and bare forms produce the same signature.
    """
    body = payload.encode() if isinstance(payload, str) else payload
    return hmac.new(_key(secret), body, hashlib.sha256).hexdigest()


def verify_signature(payload: str | bytes, signature: str, secret: str) -> bool:
    """Constant-time check of *signature* against the payload's HMAC.

    Never raises: malformed hex, odd length or a digest of the wrong size
    all return False.
    """
    if not signature or not _HEX_RE.fullmatch(signature):
        return False
    try:
        provided = bytes.fromhex(signature)
    except ValueError:
        return False
    expected = bytes.fromhex(sign_payload(payload, secret))
    if len(provided) != len(expected):
        return False
    return hmac.compare_digest(provided, expected)


def is_timestamp_fresh(
    timestamp: str,
    max_age_ms: int = DEFAULT_MAX_TIMESTAMP_AGE_MS,
) -> bool:
    """Return True when *timestamp* is within *max_age_ms* of now, in either direction.

    Future timestamps are bounded as well so that a forged clock cannot
    extend the replay window. Unparsable values are never fresh.
    """
    parsed = parse_timestamp(timestamp)
    if parsed is None:
        return False
    delta_ms = abs((datetime.now(UTC) - parsed).total_seconds() * 1000)
    if delta_ms > max_age_ms:
        logger.debug("Timestamp outside window: %s (delta=%.0fms)", timestamp, delta_ms)
        return False
    return True
