"""Tests for the per-webhook fixed window rate limiter."""

from __future__ import annotations

import time
from unittest.mock import patch

from hookrelay.webhooks.ratelimit import RateLimiter

_MONOTONIC = "hookrelay.webhooks.ratelimit.time.monotonic"


class TestRateLimiter:
    def test_allows_within_limit(self) -> None:
        rl = RateLimiter(max_per_minute=5)
        for _ in range(5):
            assert rl.check("whk_a") is True

    def test_rejects_over_limit(self) -> None:
        rl = RateLimiter(max_per_minute=3)
        for _ in range(3):
            assert rl.check("whk_a") is True
        assert rl.check("whk_a") is False

    def test_keys_are_independent(self) -> None:
        rl = RateLimiter(max_per_minute=1)
        assert rl.check("whk_a") is True
        assert rl.check("whk_b") is True
        assert rl.check("whk_a") is False

    def test_window_resets_after_60s(self) -> None:
        rl = RateLimiter(max_per_minute=2)
        base = time.monotonic()
        with patch(_MONOTONIC, return_value=base):
            assert rl.check("whk_a") is True
            assert rl.check("whk_a") is True
            assert rl.check("whk_a") is False
        with patch(_MONOTONIC, return_value=base + 59.9):
            assert rl.check("whk_a") is False
        with patch(_MONOTONIC, return_value=base + 60.0):
            assert rl.check("whk_a") is True

    def test_rejected_attempts_still_counted(self) -> None:
        rl = RateLimiter(max_per_minute=1)
        base = 1000.0
        with patch(_MONOTONIC, return_value=base):
            assert rl.check("whk_a") is True
            for _ in range(10):
                assert rl.check("whk_a") is False

    def test_reset_single_key(self) -> None:
        rl = RateLimiter(max_per_minute=1)
        rl.check("whk_a")
        rl.check("whk_b")
        rl.reset("whk_a")
        assert rl.check("whk_a") is True
        assert rl.check("whk_b") is False

    def test_reset_all(self) -> None:
        rl = RateLimiter(max_per_minute=1)
        rl.check("whk_a")
        rl.check("whk_b")
        rl.reset()
        assert rl.check("whk_a") is True
        assert rl.check("whk_b") is True

    def test_max_per_minute_property(self) -> None:
        assert RateLimiter(max_per_minute=42).max_per_minute == 42
