"""
auth/lockout.py -- Per-account failed-login counter with timed lockout.

State machine per account:
  Unlocked (counter 0..K-1) --failure--> Unlocked (counter + 1)
  Unlocked (counter K-1)    --failure--> Locked   (until = now + duration)
  Locked                    --any attempt--> Locked (rejected before the
                                              password is checked)
  Locked, until passed      --next check--> Unlocked (counter 0)
  any                       --success--> Unlocked (counter 0)

State lives on the user row (failed_login_attempts, account_locked_until),
so every server instance sees the same lockout. The increment is a single
atomic UPDATE (UserStore.increment_failed_attempts).

Independent of the source IP: rotating proxies does not reset the counter.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import timedelta

from auth.db import parse_iso, utcnow
from auth.models import User
from auth.store import UserStore

logger = logging.getLogger("caskbook.auth.lockout")


@dataclass(frozen=True)
class FailureOutcome:
    locked: bool
    remaining_attempts: int


@dataclass(frozen=True)
class LockoutStatus:
    username: str
    failed_attempts: int
    is_locked: bool
    lockout_remaining_seconds: int
    max_attempts: int


class LockoutTracker:
    def __init__(self, users: UserStore, threshold: int, duration_seconds: int, clock=utcnow) -> None:
        self._users = users
        self.threshold = threshold
        self.duration_seconds = duration_seconds
        self._clock = clock

    def remaining_seconds(self, user: User) -> int:
        """Seconds left on the lockout, 0 when unlocked."""
        until = parse_iso(user.account_locked_until)
        if until is None:
            return 0
        return max(0, math.ceil((until - self._clock()).total_seconds()))

    def check(self, user: User) -> int:
        """Return remaining lockout seconds; clears a lockout that has run out."""
        remaining = self.remaining_seconds(user)
        if remaining == 0 and user.account_locked_until:
            self._users.reset_failed_attempts(user.id)
            user.failed_login_attempts = 0
            user.account_locked_until = None
            logger.info("Lockout expired for user=%s", user.username)
        return remaining

    def register_failure(self, user: User) -> FailureOutcome:
        locked_until = self._clock() + timedelta(seconds=self.duration_seconds)
        count = self._users.increment_failed_attempts(user.id, self.threshold, locked_until)
        if count >= self.threshold:
            logger.warning(
                "ACCOUNT LOCKED user=%s failed_attempts=%d lockout_duration=%ss",
                user.username,
                count,
                self.duration_seconds,
            )
            return FailureOutcome(locked=True, remaining_attempts=0)
        return FailureOutcome(locked=False, remaining_attempts=self.threshold - count)

    def register_success(self, user: User) -> None:
        self._users.reset_failed_attempts(user.id, mark_login=True)

    def unlock(self, user: User) -> None:
        """Manual unlock (maintenance CLI)."""
        self._users.reset_failed_attempts(user.id)
        logger.info("Lockout cleared manually for user=%s", user.username)

    def status(self, user: User) -> LockoutStatus:
        remaining = self.remaining_seconds(user)
        return LockoutStatus(
            username=user.username,
            failed_attempts=user.failed_login_attempts,
            is_locked=remaining > 0,
            lockout_remaining_seconds=remaining,
            max_attempts=self.threshold,
        )
