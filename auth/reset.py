"""
auth/reset.py -- Single-use password-reset tokens.

Flow:
  1. request(email)  -- if the email belongs to a user, store the digest of a
                        fresh 1-hour token and hand the link to the Mailer.
                        Unknown emails return silently (anti-enumeration).
  2. validate(token) -- (valid, username) for the frontend's pre-check.
  3. complete(token, password_hash)
                     -- in one transaction: mark the token used, store the
                        new hash, clear the lockout counters and delete every
                        bearer token of the user.

The used_at write is a conditional UPDATE (used_at IS NULL AND expires_at > now).
Two concurrent resets with the same token cannot both see rowcount == 1, so a
token can set a password at most once. If any later write in the transaction
fails, the token is left unused.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from urllib.parse import urlencode

from sqlalchemy import and_, delete, select, update
from sqlalchemy.engine import Engine

from auth.db import auth_tokens, password_reset_tokens, to_iso, users, utcnow
from auth.mailer import Mailer
from auth.models import PasswordResetToken
from auth.store import UserStore
from auth.tokens import generate_token, keyed_digest

logger = logging.getLogger("caskbook.auth.reset")


class ResetTokenStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create(self, token: PasswordResetToken) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                password_reset_tokens.insert().values(
                    user_id=token.user_id,
                    token_hash=token.token_hash,
                    expires_at=token.expires_at,
                    created_at=token.created_at,
                )
            )
            return result.inserted_primary_key[0]

    def find_valid(self, token_hash: str, now: str) -> tuple[int, str] | None:
        """Return (user_id, username) for an unused, unexpired token."""
        with self.engine.connect() as conn:
            row = conn.execute(
                select(password_reset_tokens.c.user_id, users.c.username)
                .join(users, users.c.id == password_reset_tokens.c.user_id)
                .where(
                    and_(
                        password_reset_tokens.c.token_hash == token_hash,
                        password_reset_tokens.c.used_at.is_(None),
                        password_reset_tokens.c.expires_at > now,
                    )
                )
            ).fetchone()
        return (row.user_id, row.username) if row is not None else None

    def complete(self, token_hash: str, now: str, password_hash: str) -> int | None:
        """Spend a valid token on a new password hash; return the user id, else None."""
        condition = and_(
            password_reset_tokens.c.token_hash == token_hash,
            password_reset_tokens.c.used_at.is_(None),
            password_reset_tokens.c.expires_at > now,
        )
        with self.engine.begin() as conn:
            user_id = conn.execute(select(password_reset_tokens.c.user_id).where(condition)).scalar()
            if user_id is None:
                return None
            result = conn.execute(update(password_reset_tokens).where(condition).values(used_at=now))
            if result.rowcount != 1:
                return None
            conn.execute(
                update(users)
                .where(users.c.id == user_id)
                .values(
                    password_hash=password_hash,
                    failed_login_attempts=0,
                    account_locked_until=None,
                    updated_at=now,
                )
            )
            conn.execute(delete(auth_tokens).where(auth_tokens.c.user_id == user_id))
        return user_id

    def purge_expired(self, now: str) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(delete(password_reset_tokens).where(password_reset_tokens.c.expires_at <= now))
        return result.rowcount


class PasswordResetService:
    def __init__(
        self,
        tokens: ResetTokenStore,
        users_store: UserStore,
        mailer: Mailer,
        secret_key: str,
        app_url: str,
        expire_seconds: int,
        clock=utcnow,
    ) -> None:
        self._tokens = tokens
        self._users = users_store
        self._mailer = mailer
        self._secret_key = secret_key
        self._app_url = app_url.rstrip("/")
        self._expire_seconds = expire_seconds
        self._clock = clock

    def request(self, email: str) -> None:
        """Create and deliver a reset token if email matches a user. Silent otherwise."""
        user = self._users.get_by_email(email)
        if user is None:
            logger.info("Password reset requested for unknown email")
            return

        raw = generate_token(48)
        now = self._clock()
        self._tokens.create(
            PasswordResetToken(
                user_id=user.id,
                token_hash=keyed_digest(self._secret_key, raw),
                expires_at=to_iso(now + timedelta(seconds=self._expire_seconds)),
                created_at=to_iso(now),
            )
        )
        reset_url = f"{self._app_url}/reset-password?{urlencode({'token': raw})}"
        try:
            self._mailer.send_password_reset(email, user.username, reset_url)
        except Exception:
            # Delivery failure must not change the caller-visible response.
            logger.exception("Password reset delivery failed for user=%s", user.username)
            return
        logger.info("Password reset token created for user=%s", user.username)

    def validate(self, token: str) -> tuple[int, str] | None:
        if not token:
            return None
        return self._tokens.find_valid(keyed_digest(self._secret_key, token), to_iso(self._clock()))

    def complete(self, token: str, password_hash: str) -> int | None:
        if not token:
            return None
        return self._tokens.complete(keyed_digest(self._secret_key, token), to_iso(self._clock()), password_hash)

    def purge_expired(self) -> int:
        return self._tokens.purge_expired(to_iso(self._clock()))
