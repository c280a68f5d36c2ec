"""
auth/store.py -- Credential Store: SQLAlchemy Core persistence for users.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_user
and _row_to_link are the mappers. Gateway and route code never touch SQL.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Username uniqueness is enforced by the UNIQUE constraint, not by a
  read-then-write check, so two concurrent registrations for the same name
  cannot both succeed: the loser gets IntegrityError, which create_user()
  translates into UsernameTaken / EmailTaken.

  Bearer tokens are stored as their HMAC digest only, one row per issued
  token. Changing the password deletes every token row for the user in the
  same transaction as the new hash.

  Emails are compared case-insensitively: every email is lower-cased by
  normalize_email() before it is written or looked up.

  increment_failed_attempts() is read-modify-write consistent: the UPDATE
  increments in SQL and the follow-up SELECT runs inside the same transaction,
  so two concurrent failures never both observe "3" and both write "4".

Layer rule: no imports from api/.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import and_, case, delete, func, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.db import auth_tokens, oauth_links, to_iso, users, utcnow
from auth.errors import EmailTaken, UsernameTaken
from auth.models import AuthToken, OAuthLink, User

# Fields callers may change through update_user(). Lockout and token columns
# have dedicated methods so their invariants stay in one place.
_UPDATABLE_FIELDS = {"display_name", "email", "email_verified", "password_hash", "last_login_at"}


def normalize_email(email: str | None) -> str | None:
    return email.strip().lower() if email else email


class UserStore:
    """Repository for User and OAuthLink records.

    Usage:
        store = UserStore(build_engine("sqlite:///caskbook_auth.db"))
        uid = store.create_user(User(username="alice", password_hash=hasher.hash("Correct1!")))
        user = store.get_by_username("alice")
    """

    def __init__(self, engine: Engine, clock=utcnow) -> None:
        self.engine = engine
        self._clock = clock

    def _now(self) -> str:
        return to_iso(self._clock())

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned id.

        Raises UsernameTaken or EmailTaken when the UNIQUE constraint rejects
        the insert -- including when a concurrent request won the race.
        """
        now = self._now()
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    users.insert().values(
                        username=user.username,
                        password_hash=user.password_hash,
                        email=normalize_email(user.email),
                        display_name=user.display_name,
                        email_verified=user.email_verified,
                        created_at=now,
                        updated_at=now,
                    )
                )
                return result.inserted_primary_key[0]
        except IntegrityError as exc:
            if user.email and self.get_by_email(user.email) is not None:
                raise EmailTaken() from exc
            raise UsernameTaken() from exc

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_username(self, username: str) -> User | None:
        """Look up a user by exact username (case-sensitive)."""
        with self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.email == normalize_email(email))).fetchone()
        return _row_to_user(row) if row is not None else None

    def username_exists(self, username: str) -> bool:
        with self.engine.connect() as conn:
            count = conn.execute(select(func.count()).select_from(users).where(users.c.username == username)).scalar()
        return (count or 0) > 0

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable profile fields. Returns False if user_id was not found.

        Raises EmailTaken if the new email collides with another account.
        """
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        if "email" in fields:
            fields["email"] = normalize_email(fields["email"])
        fields["updated_at"] = self._now()
        try:
            with self.engine.begin() as conn:
                result = conn.execute(users.update().where(users.c.id == user_id).values(**fields))
        except IntegrityError as exc:
            raise EmailTaken() from exc
        return result.rowcount > 0

    def set_password_hash(self, user_id: int, password_hash: str, revoke_tokens: bool = True) -> None:
        """Replace the password hash. By default every bearer token of the user
        is revoked in the same transaction."""
        with self.engine.begin() as conn:
            conn.execute(
                users.update().where(users.c.id == user_id).values(password_hash=password_hash, updated_at=self._now())
            )
            if revoke_tokens:
                conn.execute(delete(auth_tokens).where(auth_tokens.c.user_id == user_id))

    def delete_user(self, user_id: int) -> bool:
        """Permanently delete a user. Reset tokens and OAuth links cascade.

        Sessions are not touched here: the session manager
        destroys a session lazily the next time it resolves to a missing user.
        """
        with self.engine.begin() as conn:
            result = conn.execute(users.delete().where(users.c.id == user_id))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Bearer tokens
    # ------------------------------------------------------------------

    def add_auth_token(self, user_id: int, token_hash: str, expires_at: datetime) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                auth_tokens.insert().values(
                    user_id=user_id,
                    token_hash=token_hash,
                    expires_at=to_iso(expires_at),
                    created_at=self._now(),
                )
            )
            return result.inserted_primary_key[0]

    def get_token_owner(self, token_hash: str) -> tuple[User, AuthToken] | None:
        """Return (owner, token record) for a digest, or None."""
        with self.engine.connect() as conn:
            row = conn.execute(
                select(
                    *users.c,
                    auth_tokens.c.id.label("token_id"),
                    auth_tokens.c.expires_at,
                    auth_tokens.c.created_at.label("issued_at"),
                    auth_tokens.c.session_hash,
                )
                .select_from(auth_tokens.join(users, users.c.id == auth_tokens.c.user_id))
                .where(auth_tokens.c.token_hash == token_hash)
            ).fetchone()
        if row is None:
            return None
        token = AuthToken(
            id=row.token_id,
            user_id=row.id,
            token_hash=token_hash,
            expires_at=row.expires_at,
            created_at=row.issued_at,
            session_hash=row.session_hash,
        )
        return _row_to_user(row), token

    def delete_auth_token(self, token_hash: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(delete(auth_tokens).where(auth_tokens.c.token_hash == token_hash))
        return result.rowcount > 0

    def set_token_session(self, token_id: int, session_hash: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(update(auth_tokens).where(auth_tokens.c.id == token_id).values(session_hash=session_hash))

    def purge_expired_tokens(self, now: str) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(delete(auth_tokens).where(auth_tokens.c.expires_at <= now))
        return result.rowcount

    # ------------------------------------------------------------------
    # Lockout counters
    # ------------------------------------------------------------------

    def increment_failed_attempts(self, user_id: int, threshold: int, locked_until: datetime) -> int:
        """Atomically add one failed attempt; lock when the threshold is reached.

        Returns the new counter value (0 if the user no longer exists).
        """
        new_count = users.c.failed_login_attempts + 1
        with self.engine.begin() as conn:
            conn.execute(
                users.update()
                .where(users.c.id == user_id)
                .values(
                    failed_login_attempts=new_count,
                    account_locked_until=case(
                        (new_count >= threshold, to_iso(locked_until)),
                        else_=users.c.account_locked_until,
                    ),
                )
            )
            count = conn.execute(select(users.c.failed_login_attempts).where(users.c.id == user_id)).scalar()
        return count or 0

    def reset_failed_attempts(self, user_id: int, mark_login: bool = False) -> None:
        values: dict = {"failed_login_attempts": 0, "account_locked_until": None}
        if mark_login:
            values["last_login_at"] = self._now()
        with self.engine.begin() as conn:
            conn.execute(users.update().where(users.c.id == user_id).values(**values))

    # ------------------------------------------------------------------
    # OAuth links
    # ------------------------------------------------------------------

    def get_by_oauth(self, provider: str, provider_user_id: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(users)
                .join(oauth_links, oauth_links.c.user_id == users.c.id)
                .where(and_(oauth_links.c.provider == provider, oauth_links.c.provider_user_id == provider_user_id))
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def link_oauth(self, link: OAuthLink) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                oauth_links.insert().values(
                    user_id=link.user_id,
                    provider=link.provider,
                    provider_user_id=link.provider_user_id,
                    provider_email=link.provider_email,
                    created_at=self._now(),
                )
            )
            return result.inserted_primary_key[0]

    def get_oauth_links(self, user_id: int) -> list[OAuthLink]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                oauth_links.select().where(oauth_links.c.user_id == user_id).order_by(oauth_links.c.id)
            ).fetchall()
        return [_row_to_link(r) for r in rows]

    def unlink_oauth(self, user_id: int, provider: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                oauth_links.delete().where(and_(oauth_links.c.user_id == user_id, oauth_links.c.provider == provider))
            )
        return result.rowcount > 0

    def ping(self) -> bool:
        """Cheap liveness check for the health endpoint."""
        with self.engine.connect() as conn:
            conn.execute(select(1))
        return True


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        password_hash=row.password_hash,
        email=row.email,
        display_name=row.display_name,
        email_verified=bool(row.email_verified),
        failed_login_attempts=row.failed_login_attempts or 0,
        account_locked_until=row.account_locked_until,
        last_login_at=row.last_login_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_link(row) -> OAuthLink:
    return OAuthLink(
        id=row.id,
        user_id=row.user_id,
        provider=row.provider,
        provider_user_id=row.provider_user_id,
        provider_email=row.provider_email,
        created_at=row.created_at,
    )
