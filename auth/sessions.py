"""
auth/sessions.py -- Server-side sessions keyed by an opaque cookie id.

The cookie carries only a random session id. The server keeps
{user_id, created_at, expires_at} in a SessionStore, keyed by the HMAC digest
of that id. SqlSessionStore persists to the auth database, so a restart or a
second server instance sees the same sessions. InMemorySessionStore exists for
unit tests and must not be used in a multi-process deployment.

Expiry is rolling: every authenticated request pushes expires_at out to
now + max_age, but never beyond created_at + absolute_max. A stolen cookie
therefore stops working within absolute_max even if it is used continuously.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import threading
from datetime import timedelta
from typing import Protocol

from sqlalchemy import delete, select, update
from sqlalchemy.engine import Engine

from auth.db import parse_iso, sessions, to_iso, utcnow
from auth.models import Session
from auth.tokens import generate_token, keyed_digest

logger = logging.getLogger("caskbook.auth.sessions")


# ---------------------------------------------------------------------------
# Store interface
# ---------------------------------------------------------------------------


class SessionStore(Protocol):
    def get(self, sid_hash: str) -> Session | None: ...

    def save(self, session: Session) -> None: ...

    def set_expiry(self, sid_hash: str, expires_at: str) -> None: ...

    def delete(self, sid_hash: str) -> None: ...

    def delete_for_user(self, user_id: int) -> int: ...

    def purge_expired(self, now: str) -> int: ...


class SqlSessionStore:
    """Durable SessionStore backed by the sessions table."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def get(self, sid_hash: str) -> Session | None:
        with self.engine.connect() as conn:
            row = conn.execute(select(sessions).where(sessions.c.sid_hash == sid_hash)).fetchone()
        if row is None:
            return None
        return Session(sid_hash=row.sid_hash, user_id=row.user_id, created_at=row.created_at, expires_at=row.expires_at)

    def save(self, session: Session) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                sessions.insert().values(
                    sid_hash=session.sid_hash,
                    user_id=session.user_id,
                    created_at=session.created_at,
                    expires_at=session.expires_at,
                )
            )

    def set_expiry(self, sid_hash: str, expires_at: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(update(sessions).where(sessions.c.sid_hash == sid_hash).values(expires_at=expires_at))

    def delete(self, sid_hash: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(delete(sessions).where(sessions.c.sid_hash == sid_hash))

    def delete_for_user(self, user_id: int) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(delete(sessions).where(sessions.c.user_id == user_id))
        return result.rowcount

    def purge_expired(self, now: str) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(delete(sessions).where(sessions.c.expires_at <= now))
        return result.rowcount


class InMemorySessionStore:
    """Process-local SessionStore for tests."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()

    def get(self, sid_hash: str) -> Session | None:
        with self._lock:
            session = self._sessions.get(sid_hash)
            return Session(**vars(session)) if session else None

    def save(self, session: Session) -> None:
        with self._lock:
            self._sessions[session.sid_hash] = Session(**vars(session))

    def set_expiry(self, sid_hash: str, expires_at: str) -> None:
        with self._lock:
            if sid_hash in self._sessions:
                self._sessions[sid_hash].expires_at = expires_at

    def delete(self, sid_hash: str) -> None:
        with self._lock:
            self._sessions.pop(sid_hash, None)

    def delete_for_user(self, user_id: int) -> int:
        with self._lock:
            doomed = [k for k, s in self._sessions.items() if s.user_id == user_id]
            for key in doomed:
                del self._sessions[key]
            return len(doomed)

    def purge_expired(self, now: str) -> int:
        with self._lock:
            doomed = [k for k, s in self._sessions.items() if s.expires_at <= now]
            for key in doomed:
                del self._sessions[key]
            return len(doomed)


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class SessionManager:
    """create / load / touch / destroy over an injected SessionStore."""

    def __init__(
        self,
        store: SessionStore,
        secret_key: str,
        max_age_seconds: int,
        absolute_max_seconds: int,
        clock=utcnow,
    ) -> None:
        self.store = store
        self._secret_key = secret_key
        self.max_age_seconds = max_age_seconds
        self._absolute_max = timedelta(seconds=absolute_max_seconds)
        self._max_age = timedelta(seconds=max_age_seconds)
        self._clock = clock

    def _digest(self, sid: str) -> str:
        return keyed_digest(self._secret_key, sid)

    def create(self, user_id: int) -> tuple[str, Session]:
        """Start a session for user_id. Returns the raw id (for the cookie) and the record."""
        sid = generate_token()
        now = self._clock()
        session = Session(
            sid_hash=self._digest(sid),
            user_id=user_id,
            created_at=to_iso(now),
            expires_at=to_iso(min(now + self._max_age, now + self._absolute_max)),
        )
        self.store.save(session)
        logger.info("Session created for user_id=%s", user_id)
        return sid, session

    def load(self, sid: str | None) -> Session | None:
        """Return the live session for sid, deleting it if it has expired."""
        if not sid:
            return None
        sid_hash = self._digest(sid)
        session = self.store.get(sid_hash)
        if session is None:
            return None
        if parse_iso(session.expires_at) <= self._clock():
            self.store.delete(sid_hash)
            return None
        return session

    def touch(self, sid: str) -> Session | None:
        """Slide the expiry forward, bounded by the absolute ceiling."""
        session = self.load(sid)
        if session is None:
            return None
        ceiling = parse_iso(session.created_at) + self._absolute_max
        session.expires_at = to_iso(min(self._clock() + self._max_age, ceiling))
        self.store.set_expiry(session.sid_hash, session.expires_at)
        return session

    def is_live(self, sid_hash: str | None) -> bool:
        """True when the session with this digest exists and has not expired."""
        if not sid_hash:
            return False
        session = self.store.get(sid_hash)
        return session is not None and parse_iso(session.expires_at) > self._clock()

    def destroy(self, sid: str | None) -> None:
        if sid:
            self.store.delete(self._digest(sid))

    def destroy_for_user(self, user_id: int) -> int:
        return self.store.delete_for_user(user_id)

    def purge_expired(self) -> int:
        return self.store.purge_expired(to_iso(self._clock()))
