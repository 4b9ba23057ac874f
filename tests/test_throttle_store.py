"""
tests/test_throttle_store.py -- Unit tests for the database-backed RateLimiter.

Covers:
  - first request allowed, second inside the interval denied with retry_after
  - retry_after counts down and is never below 1
  - keys are independent
  - interval 0 disables limiting
  - concurrent checks of one key at one instant admit exactly one
  - purge_expired() removes only stale entries
  - key sanitization for IPv4, IPv6, and missing addresses
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest

from throttle.store import RateLimiter, device_key, ip_key, sanitize_ip_key

from tests.conftest import FakeClock


class TestCheck:
    def test_first_allowed_second_denied(self, throttle: RateLimiter) -> None:
        assert throttle.check("device:abc", 60).allowed is True
        decision = throttle.check("device:abc", 60)
        assert decision.allowed is False
        assert decision.retry_after == 60

    def test_retry_after_counts_down(self, throttle: RateLimiter, clock) -> None:
        throttle.check("device:abc", 60)
        clock.advance(45.5)
        decision = throttle.check("device:abc", 60)
        assert decision.allowed is False
        assert decision.retry_after == 15

    def test_retry_after_at_least_one(self, throttle: RateLimiter, clock) -> None:
        throttle.check("ip:1-2-3-4", 5)
        clock.advance(4.9)
        assert throttle.check("ip:1-2-3-4", 5).retry_after == 1

    def test_allowed_again_after_interval(self, throttle: RateLimiter, clock) -> None:
        throttle.check("ip:1-2-3-4", 5)
        clock.advance(5)
        assert throttle.check("ip:1-2-3-4", 5).allowed is True
        # The allowed request restarted the window.
        assert throttle.check("ip:1-2-3-4", 5).allowed is False

    def test_denied_request_does_not_extend_window(self, throttle: RateLimiter, clock) -> None:
        throttle.check("device:abc", 60)
        clock.advance(30)
        throttle.check("device:abc", 60)
        clock.advance(30)
        assert throttle.check("device:abc", 60).allowed is True

    def test_keys_independent(self, throttle: RateLimiter) -> None:
        assert throttle.check(ip_key("10.0.0.1"), 5).allowed is True
        assert throttle.check(ip_key("10.0.0.2"), 5).allowed is True
        assert throttle.check(device_key("abc"), 5).allowed is True

    def test_zero_interval_always_allows(self, throttle: RateLimiter) -> None:
        for _ in range(3):
            assert throttle.check("ip:x", 0).allowed is True

    def test_concurrent_checks_single_winner(self, tmp_path) -> None:
        clock = FakeClock()
        limiter = RateLimiter(f"sqlite:///{tmp_path / 'throttle.db'}", clock=clock.time)
        try:
            with ThreadPoolExecutor(max_workers=8) as pool:
                decisions = list(pool.map(lambda _: limiter.check("ip:x", 5), range(16)))
            assert sum(d.allowed for d in decisions) == 1
            assert all(d.retry_after == 5 for d in decisions if not d.allowed)
        finally:
            limiter.close()


class TestPurge:
    def test_purges_only_stale(self, throttle: RateLimiter, clock) -> None:
        throttle.check("old", 60)
        clock.advance(120)
        throttle.check("new", 60)
        assert throttle.purge_expired(60) == 1
        # "new" is still tracked, "old" starts fresh.
        assert throttle.check("new", 60).allowed is False
        assert throttle.check("old", 60).allowed is True


class TestKeys:
    @pytest.mark.parametrize(
        "ip, expected",
        [
            ("203.0.113.7", "203-0-113-7"),
            ("2001:db8::1", "2001-db8--1"),
            ("a#b$c[d]e/f", "a-b-c-d-e-f"),
            (None, "unknown-ip"),
            ("", "unknown-ip"),
        ],
    )
    def test_sanitize(self, ip, expected) -> None:
        assert sanitize_ip_key(ip) == expected

    def test_namespaces(self) -> None:
        assert ip_key("10.0.0.1") == "ip:10-0-0-1"
        assert device_key("abc") == "device:abc"
