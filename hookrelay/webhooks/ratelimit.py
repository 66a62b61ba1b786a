"""Per-webhook rate limiting."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60.0


@dataclass
class _Window:
    count: int
    window_start: float


class RateLimiter:
    """Fixed window counter per key, reset once 60 seconds have passed since it opened.

    State lives in process memory only, so a restart resets every window.
    No locking: concurrent checks for one key may over-admit slightly.
    """

    def __init__(self, max_per_minute: int) -> None:
        self._max = max_per_minute
        self._windows: dict[str, _Window] = {}

    @property
    def max_per_minute(self) -> int:
        return self._max

    def check(self, key: str) -> bool:
        """Count an attempt for *key*; return True if it is within the limit."""
        now = time.monotonic()
        window = self._windows.get(key)
        if window is None or now - window.window_start >= WINDOW_SECONDS:
            window = _Window(count=1, window_start=now)
            self._windows[key] = window
        else:
            window.count += 1
        allowed = window.count <= self._max
        if not allowed:
            logger.warning("Rate limit exceeded for %s (%d/%d)", key, window.count, self._max)
        return allowed

    def reset(self, key: str | None = None) -> None:
        """Forget the window for *key*, or all windows when *key* is None."""
        if key is None:
            self._windows.clear()
        else:
            self._windows.pop(key, None)
