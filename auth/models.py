"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and the gateway
do the work; these only own the domain shape.

UserProfile is the one serializable view of a User. It has no password-hash
or token fields, so any response built from it cannot leak them. The gateway
returns UserProfile to its callers, never User.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class User:
    """An identity record.

    password_hash is None for OAuth-only users (they have no local password).
    Bearer tokens live in their own table (see AuthToken).
    """

    username: str
    id: int | None = None
    password_hash: str | None = None  # None = OAuth-only user
    email: str | None = None
    display_name: str | None = None
    email_verified: bool = False
    failed_login_attempts: int = 0
    account_locked_until: str | None = None
    last_login_at: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)


@dataclass(frozen=True)
class UserProfile:
    """Public projection of a User -- safe to serialize to clients."""

    id: int
    username: str
    email: str | None
    display_name: str | None
    email_verified: bool
    has_password: bool
    created_at: str | None
    updated_at: str | None
    last_login_at: str | None

    @classmethod
    def from_user(cls, user: User) -> "UserProfile":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            display_name=user.display_name,
            email_verified=user.email_verified,
            has_password=user.has_password,
            created_at=user.created_at,
            updated_at=user.updated_at,
            last_login_at=user.last_login_at,
        )


@dataclass
class AuthToken:
    """A bearer token record. Only the HMAC digest is persisted; the raw
    token is returned once at issue time. session_hash is the digest of
    the session this token opened, if any."""

    user_id: int
    token_hash: str
    expires_at: str
    id: int | None = None
    created_at: str | None = None
    session_hash: str | None = None


@dataclass
class Session:
    """Server-side session. sid_hash is the HMAC digest of the cookie value."""

    sid_hash: str
    user_id: int
    created_at: str
    expires_at: str


@dataclass
class LoginAttempt:
    """One recorded login or password-reset attempt."""

    kind: str  # "login" | "password_reset"
    identifier: str
    success: bool
    created_at: str
    ip_address: str | None = None
    id: int | None = None


@dataclass
class PasswordResetToken:
    user_id: int
    token_hash: str
    expires_at: str
    id: int | None = None
    used_at: str | None = None
    created_at: str | None = None


@dataclass
class OAuthLink:
    """An external identity linked to a local user."""

    user_id: int
    provider: str  # "google"
    provider_user_id: str
    provider_email: str | None = None
    id: int | None = None
    created_at: str | None = None


@dataclass(frozen=True)
class OAuthProfile:
    """Identity claims returned by a provider after a successful callback."""

    provider: str
    subject: str
    email: str | None
    email_verified: bool
    name: str | None = None
