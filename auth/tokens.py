"""
auth/tokens.py -- Opaque bearer tokens and keyed digests.

Security design decisions:
  Bearer tokens: secrets.token_urlsafe(32) gives 256 bits of entropy --
       brute-force is computationally infeasible. The token is opaque; all
       state (owner, expiry) lives server-side in auth_tokens, so revoking
       it is a single DELETE and there is nothing for a client to tamper with.

  Storage: we store HMAC-SHA256(SECRET_KEY, raw_token), never the raw value.
       The digest is deterministic, so lookup is O(1) via the UNIQUE index.
       A slow KDF is unnecessary for 256-bit random secrets. The same
       keyed_digest() protects session ids and password-reset tokens.

  Expiry: resolve() distinguishes "no such token" (None) from "token known
       but expired" (TokenExpired), so clients can prompt for re-login rather
       than retrying silently.

  Several live tokens per user: every login issues a new one and earlier
       tokens keep working until they expire. revoke() drops one token
       (logout). Password change and reset delete every token row of the
       user in the same transaction that writes the new hash (see
       UserStore.set_password_hash and ResetTokenStore.complete).

  One session per token: a token used without a cookie may open one
       session. Its digest is kept on the token row, so a client that never
       stores cookies does not add a session row per request.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta

from auth.db import parse_iso, to_iso, utcnow
from auth.errors import TokenExpired
from auth.models import AuthToken, User
from auth.store import UserStore

logger = logging.getLogger("caskbook.auth.tokens")


def generate_token(nbytes: int = 32) -> str:
    """Return a URL-safe random token with nbytes of entropy."""
    return secrets.token_urlsafe(nbytes)


def keyed_digest(secret_key: str, raw: str) -> str:
    """Return HMAC-SHA256(secret_key, raw) as hex.

    Using SECRET_KEY as the HMAC key means an attacker who obtains the DB
    cannot look up credentials without also knowing SECRET_KEY.
    """
    return hmac.new(secret_key.encode(), raw.encode(), hashlib.sha256).hexdigest()


@dataclass(frozen=True)
class IssuedToken:
    token: str
    expires_at: datetime


class TokenAuthenticator:
    """Issues, resolves and revokes bearer tokens."""

    def __init__(self, users: UserStore, secret_key: str, expire_seconds: int, clock=utcnow) -> None:
        self._users = users
        self._secret_key = secret_key
        self._expire_seconds = expire_seconds
        self._clock = clock

    def issue(self, user_id: int) -> IssuedToken:
        """Create and store a fresh token for user_id."""
        raw = generate_token()
        expires_at = self._clock() + timedelta(seconds=self._expire_seconds)
        self._users.add_auth_token(user_id, keyed_digest(self._secret_key, raw), expires_at)
        return IssuedToken(token=raw, expires_at=expires_at)

    def resolve(self, token: str) -> tuple[User, AuthToken] | None:
        """Return (owner, token record), None if unknown, or raise TokenExpired."""
        if not token:
            return None
        found = self._users.get_token_owner(keyed_digest(self._secret_key, token))
        if found is None:
            return None
        user, record = found
        if parse_iso(record.expires_at) <= self._clock():
            logger.info("Bearer token expired for user_id=%s", user.id)
            raise TokenExpired()
        return user, record

    def attach_session(self, record: AuthToken, session_hash: str) -> None:
        """Remember the session this token opened."""
        self._users.set_token_session(record.id, session_hash)

    def revoke(self, token: str) -> bool:
        if not token:
            return False
        return self._users.delete_auth_token(keyed_digest(self._secret_key, token))

    def purge_expired(self) -> int:
        return self._users.purge_expired_tokens(to_iso(self._clock()))
