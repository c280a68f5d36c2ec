"""
auth/ratelimit.py -- Sliding-window throttling of login and password-reset attempts.

Every login attempt (success, failure, locked-out, or internal error) and
every password-reset request is recorded as a row in login_attempts. Before a
handler runs, RateLimiter.check() counts the rows inside the window for:

  - the identifier (username for login, email for reset), and
  - the source IP,

and raises RateLimited when either count has reached its policy maximum. The
two keys are independent so that neither rotating usernames from one IP nor
rotating IPs against one username escapes throttling. Account lockout
(auth/lockout.py) is the second, per-account layer.

Login and reset policies use separate kinds, so they never share a window.

Failure policy: the limiter fails closed. If the attempt store cannot be read,
check() raises ServiceUnavailable instead of letting the request through.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from datetime import timedelta
from typing import Protocol

from sqlalchemy import and_, delete, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.db import login_attempts, parse_iso, to_iso, utcnow
from auth.errors import RateLimited, ServiceUnavailable
from auth.models import LoginAttempt

logger = logging.getLogger("caskbook.auth.ratelimit")

LOGIN = "login"
PASSWORD_RESET = "password_reset"


@dataclass(frozen=True)
class RateLimitPolicy:
    kind: str
    window_seconds: int
    max_per_identifier: int
    max_per_ip: int


@dataclass(frozen=True)
class WindowCount:
    count: int
    oldest: str | None


# ---------------------------------------------------------------------------
# Store interface
# ---------------------------------------------------------------------------


class AttemptStore(Protocol):
    def record(self, attempt: LoginAttempt) -> None: ...

    def count_for_identifier(self, kind: str, identifier: str, since: str) -> WindowCount: ...

    def count_for_ip(self, kind: str, ip_address: str, since: str) -> WindowCount: ...

    def purge_before(self, cutoff: str) -> int: ...


class SqlAttemptStore:
    """Durable AttemptStore backed by the login_attempts table."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def record(self, attempt: LoginAttempt) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                login_attempts.insert().values(
                    kind=attempt.kind,
                    identifier=attempt.identifier,
                    ip_address=attempt.ip_address,
                    success=attempt.success,
                    created_at=attempt.created_at,
                )
            )

    def _count(self, condition) -> WindowCount:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(func.count(), func.min(login_attempts.c.created_at)).where(condition)
            ).fetchone()
        return WindowCount(count=row[0] or 0, oldest=row[1])

    def count_for_identifier(self, kind: str, identifier: str, since: str) -> WindowCount:
        return self._count(
            and_(
                login_attempts.c.kind == kind,
                login_attempts.c.identifier == identifier,
                login_attempts.c.created_at >= since,
            )
        )

    def count_for_ip(self, kind: str, ip_address: str, since: str) -> WindowCount:
        return self._count(
            and_(
                login_attempts.c.kind == kind,
                login_attempts.c.ip_address == ip_address,
                login_attempts.c.created_at >= since,
            )
        )

    def purge_before(self, cutoff: str) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(delete(login_attempts).where(login_attempts.c.created_at < cutoff))
        return result.rowcount


class InMemoryAttemptStore:
    """Process-local AttemptStore for tests."""

    def __init__(self) -> None:
        self.attempts: list[LoginAttempt] = []
        self._lock = threading.Lock()

    def record(self, attempt: LoginAttempt) -> None:
        with self._lock:
            self.attempts.append(attempt)

    def _count(self, predicate) -> WindowCount:
        with self._lock:
            matching = [a.created_at for a in self.attempts if predicate(a)]
        return WindowCount(count=len(matching), oldest=min(matching) if matching else None)

    def count_for_identifier(self, kind: str, identifier: str, since: str) -> WindowCount:
        return self._count(lambda a: a.kind == kind and a.identifier == identifier and a.created_at >= since)

    def count_for_ip(self, kind: str, ip_address: str, since: str) -> WindowCount:
        return self._count(lambda a: a.kind == kind and a.ip_address == ip_address and a.created_at >= since)

    def purge_before(self, cutoff: str) -> int:
        with self._lock:
            before = len(self.attempts)
            self.attempts = [a for a in self.attempts if a.created_at >= cutoff]
            return before - len(self.attempts)


# ---------------------------------------------------------------------------
# Limiter
# ---------------------------------------------------------------------------


class RateLimiter:
    def __init__(self, store: AttemptStore, clock=utcnow) -> None:
        self.store = store
        self._clock = clock

    def check(self, policy: RateLimitPolicy, identifier: str | None, ip_address: str | None) -> None:
        """Raise RateLimited if either key has used up its window."""
        now = self._clock()
        since = to_iso(now - timedelta(seconds=policy.window_seconds))
        try:
            windows: list[WindowCount] = []
            if identifier:
                counted = self.store.count_for_identifier(policy.kind, identifier, since)
                if counted.count >= policy.max_per_identifier:
                    windows.append(counted)
            if ip_address:
                counted = self.store.count_for_ip(policy.kind, ip_address, since)
                if counted.count >= policy.max_per_ip:
                    windows.append(counted)
        except SQLAlchemyError as exc:
            logger.exception("Rate limiter store unavailable (kind=%s)", policy.kind)
            raise ServiceUnavailable() from exc

        if windows:
            retry_after = max(self._retry_after(w, policy, now) for w in windows)
            logger.warning(
                "Rate limit hit kind=%s identifier=%s ip=%s retry_after=%ss",
                policy.kind,
                identifier,
                ip_address,
                retry_after,
            )
            raise RateLimited(retry_after)

    def _retry_after(self, window: WindowCount, policy: RateLimitPolicy, now) -> int:
        """Seconds until the oldest counted attempt slides out of the window."""
        oldest = parse_iso(window.oldest)
        if oldest is None:
            return policy.window_seconds
        remaining = (oldest + timedelta(seconds=policy.window_seconds) - now).total_seconds()
        return max(1, math.ceil(remaining))

    def record(self, kind: str, identifier: str, ip_address: str | None, success: bool) -> None:
        """Persist one attempt. Storage errors propagate so callers fail closed."""
        self.store.record(
            LoginAttempt(
                kind=kind,
                identifier=identifier,
                ip_address=ip_address,
                success=success,
                created_at=to_iso(self._clock()),
            )
        )

    def purge(self, retention_seconds: int) -> int:
        cutoff = to_iso(self._clock() - timedelta(seconds=retention_seconds))
        return self.store.purge_before(cutoff)
