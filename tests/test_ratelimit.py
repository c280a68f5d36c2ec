"""
tests/test_ratelimit.py -- Sliding-window rate limiter.

Coverage:
  - N attempts allowed, N+1 rejected with a retry-after until the window rolls
  - identifier and IP windows are independent keys
  - login and password-reset kinds never share a window
  - both the SQL and in-memory attempt stores behave the same
  - storage failure fails closed (ServiceUnavailable)
  - through the gateway: the N+1-th login is rejected even with the right password
"""

from __future__ import annotations

import pytest
from conftest import STRONG_PASSWORD, FakeClock
from sqlalchemy.exc import OperationalError

from auth.errors import RateLimited, ServiceUnavailable
from auth.ratelimit import LOGIN, PASSWORD_RESET, InMemoryAttemptStore, RateLimiter, RateLimitPolicy, SqlAttemptStore
from core.config import Settings

POLICY = RateLimitPolicy(LOGIN, window_seconds=900, max_per_identifier=3, max_per_ip=5)


@pytest.fixture(params=["memory", "sql"])
def limiter(request, engine, clock: FakeClock) -> RateLimiter:
    store = InMemoryAttemptStore() if request.param == "memory" else SqlAttemptStore(engine)
    return RateLimiter(store, clock=clock)


class TestWindow:
    def test_allows_up_to_limit(self, limiter: RateLimiter) -> None:
        for _ in range(3):
            limiter.check(POLICY, "alice", "10.0.0.1")
            limiter.record(LOGIN, "alice", "10.0.0.1", success=False)

    def test_rejects_over_limit_with_retry_after(self, limiter: RateLimiter, clock: FakeClock) -> None:
        limiter.record(LOGIN, "alice", "10.0.0.1", success=False)
        clock.advance(100)
        limiter.record(LOGIN, "alice", "10.0.0.1", success=False)
        limiter.record(LOGIN, "alice", "10.0.0.1", success=True)
        with pytest.raises(RateLimited) as exc_info:
            limiter.check(POLICY, "alice", "10.0.0.1")
        # The first attempt leaves the window 800s from now.
        assert exc_info.value.retry_after == 800
        assert exc_info.value.hints() == {"retryAfter": 800}

    def test_window_rolls_over(self, limiter: RateLimiter, clock: FakeClock) -> None:
        for _ in range(3):
            limiter.record(LOGIN, "alice", "10.0.0.1", success=False)
        clock.advance(901)
        limiter.check(POLICY, "alice", "10.0.0.1")

    def test_ip_limit_spans_usernames(self, limiter: RateLimiter) -> None:
        for name in ("a", "b", "c", "d", "e"):
            limiter.record(LOGIN, name, "10.0.0.1", success=False)
        with pytest.raises(RateLimited):
            limiter.check(POLICY, "fresh-name", "10.0.0.1")
        limiter.check(POLICY, "fresh-name", "10.0.0.2")

    def test_identifier_limit_spans_ips(self, limiter: RateLimiter) -> None:
        for ip in ("10.0.0.1", "10.0.0.2", "10.0.0.3"):
            limiter.record(LOGIN, "alice", ip, success=False)
        with pytest.raises(RateLimited):
            limiter.check(POLICY, "alice", "10.0.0.99")

    def test_kinds_are_independent(self, limiter: RateLimiter) -> None:
        for _ in range(3):
            limiter.record(PASSWORD_RESET, "alice", "10.0.0.1", success=True)
        limiter.check(POLICY, "alice", "10.0.0.1")

    def test_purge_drops_old_rows(self, limiter: RateLimiter, clock: FakeClock) -> None:
        limiter.record(LOGIN, "alice", "10.0.0.1", success=False)
        clock.advance(2 * 86400)
        limiter.record(LOGIN, "alice", "10.0.0.1", success=False)
        assert limiter.purge(86400) == 1


class _BrokenStore(InMemoryAttemptStore):
    def count_for_identifier(self, kind, identifier, since):
        raise OperationalError("SELECT", {}, Exception("database is locked"))


def test_storage_failure_fails_closed(clock: FakeClock) -> None:
    limiter = RateLimiter(_BrokenStore(), clock=clock)
    with pytest.raises(ServiceUnavailable):
        limiter.check(POLICY, "alice", "10.0.0.1")


class TestLoginThrottling:
    def test_correct_password_rejected_once_window_is_full(self, make_gateway, clock: FakeClock) -> None:
        """Lockout threshold is set high so only the limiter can reject."""
        settings = Settings(login_max_per_identifier=3, lockout_threshold=50)
        gateway = make_gateway(settings)
        gateway.register("alice", STRONG_PASSWORD)
        for _ in range(3):
            gateway.login("alice", STRONG_PASSWORD, ip_address="10.0.0.1")
        with pytest.raises(RateLimited):
            gateway.login("alice", STRONG_PASSWORD, ip_address="10.0.0.1")
        clock.advance(settings.login_window_seconds + 1)
        gateway.login("alice", STRONG_PASSWORD, ip_address="10.0.0.1")

    def test_forgot_password_throttled_per_email(self, gateway, mailer) -> None:
        gateway.register("alice", STRONG_PASSWORD, email="alice@example.com")
        for _ in range(3):
            gateway.forgot_password("alice@example.com", ip_address="10.0.0.1")
        with pytest.raises(RateLimited):
            gateway.forgot_password("alice@example.com", ip_address="10.0.0.2")
        assert len(mailer.sent) == 3
