"""
auth/db.py -- SQLAlchemy Core schema and engine factory for auth persistence.

Pattern: one MetaData shared by every auth store. UserStore, SqlSessionStore,
SqlAttemptStore and ResetTokenStore each receive the same Engine and own the
queries for their table; route and gateway code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Session ids, bearer tokens and reset tokens are stored only as HMAC-SHA256
  digests (see auth/tokens.py). A copy of this database is not a copy of
  anybody's credentials.

Timestamps are ISO-8601 UTC strings with fixed microsecond precision, so
lexical comparison in SQL agrees with chronological order.

Timeouts:
  Every engine gets a bounded wait. SQLite: the driver's busy timeout.
  Server databases: the pool checkout timeout. A storage call that exceeds it
  raises OperationalError / TimeoutError, which callers treat as fail-closed.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
)
from sqlalchemy.engine import Engine

Clock = Callable[[], datetime]

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(50), nullable=False, unique=True),
    Column("password_hash", Text),  # NULL for OAuth-only users
    Column("email", String(255), unique=True),
    Column("display_name", String(100)),
    Column("email_verified", Boolean, nullable=False, server_default="0"),
    Column("failed_login_attempts", Integer, nullable=False, server_default="0"),
    Column("account_locked_until", String(40)),
    Column("last_login_at", String(40)),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40), nullable=False),
    # sqlite_autoincrement: ids of deleted users are never handed out again.
    sqlite_autoincrement=True,
)

# Bearer tokens: a user may hold several live tokens (one per login), each
# revocable on its own. session_hash names the one session a token may open
# for a client that presented no cookie.
auth_tokens = Table(
    "auth_tokens",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("token_hash", String(64), nullable=False, unique=True),
    Column("expires_at", String(40), nullable=False),
    Column("created_at", String(40), nullable=False),
    Column("session_hash", String(64)),
    Index("ix_auth_tokens_user_id", "user_id"),
)

sessions = Table(
    "sessions",
    metadata,
    Column("sid_hash", String(64), primary_key=True),
    Column("user_id", Integer, nullable=False),
    Column("created_at", String(40), nullable=False),
    Column("expires_at", String(40), nullable=False),
    Index("ix_sessions_user_id", "user_id"),
    Index("ix_sessions_expires_at", "expires_at"),
)

login_attempts = Table(
    "login_attempts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("kind", String(20), nullable=False),
    Column("identifier", String(255), nullable=False),
    Column("ip_address", String(45)),
    Column("success", Boolean, nullable=False),
    Column("created_at", String(40), nullable=False),
    Index("ix_login_attempts_identifier", "kind", "identifier", "created_at"),
    Index("ix_login_attempts_ip", "kind", "ip_address", "created_at"),
)

password_reset_tokens = Table(
    "password_reset_tokens",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("token_hash", String(64), nullable=False, unique=True),
    Column("expires_at", String(40), nullable=False),
    Column("used_at", String(40)),
    Column("created_at", String(40), nullable=False),
)

oauth_links = Table(
    "oauth_links",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("provider", String(30), nullable=False),
    Column("provider_user_id", String(255), nullable=False),
    Column("provider_email", String(255)),
    Column("created_at", String(40), nullable=False),
    UniqueConstraint("provider", "provider_user_id", name="uq_oauth_provider_subject"),
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL and foreign keys per connection.

    SQLite PRAGMAs are not inherited by new connections from the pool, so they
    are set on every connect.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def build_engine(db_url: str, timeout_seconds: float = 5.0) -> Engine:
    """Create an engine with bounded storage waits and ensure the schema exists."""
    if db_url.startswith("sqlite"):
        engine = create_engine(
            db_url,
            connect_args={"check_same_thread": False, "timeout": timeout_seconds},
        )
        event.listen(engine, "connect", _set_sqlite_pragmas)
    else:
        engine = create_engine(db_url, pool_timeout=timeout_seconds, pool_pre_ping=True)
    metadata.create_all(engine)
    return engine


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
