"""
auth/gateway.py -- The Auth Gateway: identity resolution and account operations.

Identity resolution runs an ordered list of authenticators and stops at the
first one that recognises the request:

  1. SessionAuthenticator      -- opaque session cookie, rolling expiry.
  2. BearerTokenAuthenticator  -- Authorization: Bearer <token> fallback.
                                  On success it opens at most one session per
                                  token, so a browser context can use the
                                  cheaper cookie path next time while a
                                  cookie-less API client adds no rows.

Session-then-token is a fixed precedence, not a parallel check: when both a
valid cookie and a stale token are presented, the cookie wins and the token
is never consulted.

Every operation returns UserProfile, never User, so password hashes and token
digests cannot reach a response by accident.

Failure policy:
  - Validation and conflict errors are raised before any state changes.
  - Identity resolution fails closed: a storage error means "not
    authenticated", never "authenticated".
  - Login bookkeeping (attempt record + lockout counter) is written even when
    the credential check itself raises, so a flaky dependency cannot be used
    to dodge throttling.

Layer rule: no imports from api/. The gateway is framework-free; FastAPI glue
lives in auth/dependencies.py and api/routes/v1/auth.py.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Protocol

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.db import utcnow
from auth.errors import (
    AccountLocked,
    EmailTaken,
    IncorrectPassword,
    InvalidCredentials,
    InvalidOrExpiredToken,
    LastLoginMethod,
    NoPasswordSet,
    NotAuthenticated,
    ServiceUnavailable,
    UsernameTaken,
    ValidationFailed,
)
from auth.lockout import FailureOutcome, LockoutStatus, LockoutTracker
from auth.mailer import LoggingMailer, Mailer
from auth.models import OAuthLink, OAuthProfile, User, UserProfile
from auth.oauth import SUPPORTED_PROVIDERS, username_base
from auth.passwords import PasswordHasher, check_strength
from auth.ratelimit import LOGIN, PASSWORD_RESET, AttemptStore, RateLimiter, RateLimitPolicy, SqlAttemptStore
from auth.reset import PasswordResetService, ResetTokenStore
from auth.sessions import SessionManager, SessionStore, SqlSessionStore
from auth.store import UserStore, normalize_email
from auth.tokens import IssuedToken, TokenAuthenticator
from core.config import Settings

logger = logging.getLogger("caskbook.auth")


# ---------------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RequestCredentials:
    """What an inbound request presented, extracted by the transport layer."""

    session_id: str | None = None
    bearer_token: str | None = None


@dataclass(frozen=True)
class Identity:
    """The canonical authenticated identity for one request."""

    user_id: int
    profile: UserProfile
    via: str  # "session" | "token"
    session_id: str | None = None
    session_created: bool = False


@dataclass(frozen=True)
class LoginResult:
    profile: UserProfile
    token: IssuedToken
    session_id: str


@dataclass(frozen=True)
class ResetValidation:
    valid: bool
    username: str | None = None


# ---------------------------------------------------------------------------
# Authenticators
# ---------------------------------------------------------------------------


class Authenticator(Protocol):
    name: str

    def try_authenticate(self, credentials: RequestCredentials) -> Identity | None: ...


class SessionAuthenticator:
    name = "session"

    def __init__(self, sessions: SessionManager, users: UserStore) -> None:
        self._sessions = sessions
        self._users = users

    def try_authenticate(self, credentials: RequestCredentials) -> Identity | None:
        session = self._sessions.touch(credentials.session_id)
        if session is None:
            return None
        user = self._users.get_by_id(session.user_id)
        if user is None:
            # The account was deleted; the session must not outlive it.
            self._sessions.destroy(credentials.session_id)
            logger.warning("Destroyed session for missing user_id=%s", session.user_id)
            return None
        return Identity(
            user_id=user.id,
            profile=UserProfile.from_user(user),
            via=self.name,
            session_id=credentials.session_id,
        )


class BearerTokenAuthenticator:
    name = "token"

    def __init__(self, tokens: TokenAuthenticator, sessions: SessionManager) -> None:
        self._tokens = tokens
        self._sessions = sessions

    def try_authenticate(self, credentials: RequestCredentials) -> Identity | None:
        if not credentials.bearer_token:
            return None
        found = self._tokens.resolve(credentials.bearer_token)
        if found is None:
            return None
        user, record = found
        session_id = None
        if not self._sessions.is_live(record.session_hash):
            try:
                session_id, session = self._sessions.create(user.id)
                self._tokens.attach_session(record, session.sid_hash)
            except SQLAlchemyError:
                # Opening the session is an optimization; the token alone suffices.
                logger.exception("Could not open session after token auth for user_id=%s", user.id)
        return Identity(
            user_id=user.id,
            profile=UserProfile.from_user(user),
            via=self.name,
            session_id=session_id,
            session_created=session_id is not None,
        )


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


class AuthGateway:
    def __init__(
        self,
        *,
        users: UserStore,
        hasher: PasswordHasher,
        sessions: SessionManager,
        tokens: TokenAuthenticator,
        lockout: LockoutTracker,
        limiter: RateLimiter,
        resets: PasswordResetService,
        login_policy: RateLimitPolicy,
        reset_policy: RateLimitPolicy,
        lockout_hint_threshold: int = 2,
        attempt_retention_seconds: int = 24 * 3600,
    ) -> None:
        self.users = users
        self.hasher = hasher
        self.sessions = sessions
        self.tokens = tokens
        self.lockout = lockout
        self.limiter = limiter
        self.resets = resets
        self.login_policy = login_policy
        self.reset_policy = reset_policy
        self._hint_threshold = lockout_hint_threshold
        self._attempt_retention = attempt_retention_seconds
        self.authenticators: list[Authenticator] = [
            SessionAuthenticator(sessions, users),
            BearerTokenAuthenticator(tokens, sessions),
        ]

    # ------------------------------------------------------------------
    # Identity resolution
    # ------------------------------------------------------------------

    def resolve(self, credentials: RequestCredentials) -> Identity | None:
        """Run the authenticators in order; first success wins.

        Raises TokenExpired when the only credential is a known but expired
        bearer token. Storage failures resolve to None (fail closed).
        """
        for authenticator in self.authenticators:
            try:
                identity = authenticator.try_authenticate(credentials)
            except SQLAlchemyError:
                logger.exception("Storage failure in %s authenticator; treating as unauthenticated", authenticator.name)
                return None
            if identity is not None:
                return identity
        return None

    def require(self, credentials: RequestCredentials) -> Identity:
        identity = self.resolve(credentials)
        if identity is None:
            raise NotAuthenticated()
        return identity

    # ------------------------------------------------------------------
    # Register / login / logout
    # ------------------------------------------------------------------

    def register(
        self,
        username: str,
        password: str,
        email: str | None = None,
        display_name: str | None = None,
    ) -> LoginResult:
        check_strength(password)
        email = normalize_email(email)
        if self.users.get_by_username(username) is not None:
            raise UsernameTaken()
        if email and self.users.get_by_email(email) is not None:
            raise EmailTaken()

        user_id = self.users.create_user(
            User(
                username=username,
                password_hash=self.hasher.hash(password),
                email=email,
                display_name=display_name or username,
            )
        )
        logger.info("User registered: %s (id=%s)", username, user_id)
        return self._establish(self.users.get_by_id(user_id))

    def login(self, username: str, password: str, ip_address: str | None = None) -> LoginResult:
        try:
            self.limiter.check(self.login_policy, username, ip_address)
            return self._login(username, password, ip_address)
        except SQLAlchemyError as exc:
            logger.exception("Login storage failure for user=%s", username)
            raise ServiceUnavailable() from exc

    def _login(self, username: str, password: str, ip_address: str | None) -> LoginResult:
        user = self.users.get_by_username(username)

        if user is not None:
            remaining = self.lockout.check(user)
            if remaining:
                # Rejected without looking at the password; still counts toward the window.
                self.limiter.record(LOGIN, username, ip_address, success=False)
                logger.info("Login rejected, account locked: user=%s remaining=%ss", username, remaining)
                raise AccountLocked(remaining)

        try:
            verified = self._check_password(user, password)
        except Exception:
            self._record_failure(user, username, ip_address)
            raise

        if not verified:
            outcome = self._record_failure(user, username, ip_address)
            logger.info("Login failed: user=%s ip=%s", username, ip_address)
            if outcome is not None and outcome.locked:
                raise AccountLocked(self.lockout.duration_seconds)
            if outcome is not None and outcome.remaining_attempts <= self._hint_threshold:
                raise InvalidCredentials(outcome.remaining_attempts)
            raise InvalidCredentials()

        self.lockout.register_success(user)
        self.limiter.record(LOGIN, username, ip_address, success=True)
        if self.hasher.needs_rehash(user.password_hash):
            self.users.set_password_hash(user.id, self.hasher.hash(password), revoke_tokens=False)
            logger.info("Upgraded password hash parameters for user=%s", username)
        logger.info("Login successful: user=%s (id=%s)", username, user.id)
        return self._establish(user)

    def _check_password(self, user: User | None, password: str) -> bool:
        if user is None or not user.has_password:
            # Equalize timing -- do NOT return early before running the KDF.
            self.hasher.burn(password)
            return False
        return self.hasher.verify(password, user.password_hash)

    def _record_failure(self, user: User | None, username: str, ip_address: str | None) -> FailureOutcome | None:
        self.limiter.record(LOGIN, username, ip_address, success=False)
        if user is None:
            return None
        return self.lockout.register_failure(user)

    def _establish(self, user: User) -> LoginResult:
        session_id, _ = self.sessions.create(user.id)
        issued = self.tokens.issue(user.id)
        fresh = self.users.get_by_id(user.id) or user
        return LoginResult(profile=UserProfile.from_user(fresh), token=issued, session_id=session_id)

    def logout(self, credentials: RequestCredentials) -> None:
        """End the presented session and revoke the presented bearer token.

        Idempotent: unknown or already-destroyed credentials are a no-op.
        Tokens issued to other clients keep working.
        """
        session = self.sessions.load(credentials.session_id)
        self.sessions.destroy(credentials.session_id)
        revoked = self.tokens.revoke(credentials.bearer_token)
        if session is not None or revoked:
            logger.info("Logout: user_id=%s", session.user_id if session else "token")

    # ------------------------------------------------------------------
    # Profile and password
    # ------------------------------------------------------------------

    def update_profile(
        self,
        user_id: int,
        display_name: str | None = None,
        email: str | None = None,
        current_password: str | None = None,
    ) -> UserProfile:
        user = self._get_user(user_id)
        updates: dict = {}
        email = normalize_email(email)
        if display_name is not None and display_name != user.display_name:
            updates["display_name"] = display_name
        if email is not None and email != user.email:
            if not user.has_password:
                raise NoPasswordSet()
            if not current_password or not self.hasher.verify(current_password, user.password_hash):
                raise IncorrectPassword()
            existing = self.users.get_by_email(email)
            if existing is not None and existing.id != user.id:
                raise EmailTaken()
            updates["email"] = email
            updates["email_verified"] = False
        if not updates:
            raise ValidationFailed("No fields to update.")
        self.users.update_user(user.id, **updates)
        return UserProfile.from_user(self._get_user(user.id))

    def change_password(self, user_id: int, current_password: str, new_password: str) -> IssuedToken:
        """Replace the password, revoke the old bearer token, and issue a fresh one."""
        user = self._get_user(user_id)
        if not user.has_password:
            raise NoPasswordSet()
        check_strength(new_password)
        if not self.hasher.verify(current_password, user.password_hash):
            raise IncorrectPassword()
        self.users.set_password_hash(user.id, self.hasher.hash(new_password), revoke_tokens=True)
        logger.info("Password changed for user=%s", user.username)
        return self.tokens.issue(user.id)

    def _get_user(self, user_id: int) -> User:
        user = self.users.get_by_id(user_id)
        if user is None:
            raise NotAuthenticated()
        return user

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def forgot_password(self, email: str, ip_address: str | None = None) -> None:
        """Start a reset if email is known. Identical outcome either way."""
        email = normalize_email(email)
        self.limiter.check(self.reset_policy, email, ip_address)
        self.limiter.record(PASSWORD_RESET, email, ip_address, success=True)
        try:
            self.resets.request(email)
        except SQLAlchemyError:
            # Surfacing this would answer differently for known emails.
            logger.exception("Password reset request could not be stored")

    def validate_reset_token(self, token: str) -> ResetValidation:
        found = self.resets.validate(token)
        if found is None:
            return ResetValidation(valid=False)
        return ResetValidation(valid=True, username=found[1])

    def reset_password(self, token: str, new_password: str) -> None:
        """Set a new password with a single-use reset token.

        Sessions are ended first, then the token is consumed together with
        the password, token and lockout writes in one transaction. A storage
        failure at any point leaves the reset token usable for a retry.
        """
        check_strength(new_password)
        new_hash = self.hasher.hash(new_password)
        try:
            found = self.resets.validate(token)
            if found is None:
                raise InvalidOrExpiredToken()
            self.sessions.destroy_for_user(found[0])
            user_id = self.resets.complete(token, new_hash)
        except SQLAlchemyError as exc:
            logger.exception("Password reset storage failure")
            raise ServiceUnavailable() from exc
        if user_id is None:
            raise InvalidOrExpiredToken()
        try:
            # A login with the old password may have raced the commit.
            self.sessions.destroy_for_user(user_id)
        except SQLAlchemyError:
            logger.exception("Could not re-check sessions after reset for user_id=%s", user_id)
        logger.info("Password reset completed for user_id=%s", user_id)

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    def oauth_sign_in(self, profile: OAuthProfile) -> LoginResult:
        """Find the linked user, link by verified email, or create a passwordless account."""
        user = self.users.get_by_oauth(profile.provider, profile.subject)
        if user is None:
            existing = self.users.get_by_email(profile.email) if profile.email else None
            if existing is not None and profile.email_verified:
                self.users.link_oauth(
                    OAuthLink(existing.id, profile.provider, profile.subject, profile.email)
                )
                if not existing.email_verified:
                    self.users.update_user(existing.id, email_verified=True)
                user = existing
                logger.info("Linked %s identity to existing user=%s", profile.provider, user.username)
            else:
                email = profile.email if existing is None else None
                user_id = self._create_oauth_user(profile, email)
                self.users.link_oauth(OAuthLink(user_id, profile.provider, profile.subject, profile.email))
                user = self.users.get_by_id(user_id)
                logger.info("Created user=%s from %s sign-in", user.username, profile.provider)
        return self._establish(user)

    def _create_oauth_user(self, profile: OAuthProfile, email: str | None) -> int:
        base = username_base(profile.name)
        candidates = [base] + [f"{base}{n}" for n in range(1, 1000)]
        for candidate in candidates:
            if self.users.username_exists(candidate):
                continue
            try:
                return self.users.create_user(
                    User(
                        username=candidate,
                        email=email,
                        display_name=profile.name,
                        email_verified=bool(email) and profile.email_verified,
                    )
                )
            except UsernameTaken:
                continue
        return self.users.create_user(User(username=f"{base}{int(time.time())}", email=email, display_name=profile.name))

    def oauth_status(self, user_id: int) -> dict:
        user = self._get_user(user_id)
        linked = {link.provider for link in self.users.get_oauth_links(user_id)}
        status = {provider: provider in linked for provider in SUPPORTED_PROVIDERS}
        status["hasPassword"] = user.has_password
        return status

    def unlink_oauth(self, user_id: int, provider: str, current_password: str | None = None) -> None:
        if provider not in SUPPORTED_PROVIDERS:
            raise ValidationFailed("Invalid provider.")
        user = self._get_user(user_id)
        links = self.users.get_oauth_links(user_id)
        if not any(link.provider == provider for link in links):
            raise ValidationFailed("Provider is not linked to this account.")
        if user.has_password:
            if not current_password or not self.hasher.verify(current_password, user.password_hash):
                raise IncorrectPassword()
        elif len(links) <= 1:
            raise LastLoginMethod()
        self.users.unlink_oauth(user_id, provider)
        logger.info("Unlinked %s from user=%s", provider, user.username)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def purge(self) -> dict[str, int]:
        """Drop expired sessions and tokens, stale attempt rows, expired reset tokens."""
        return {
            "sessions": self.sessions.purge_expired(),
            "tokens": self.tokens.purge_expired(),
            "attempts": self.limiter.purge(self._attempt_retention),
            "reset_tokens": self.resets.purge_expired(),
        }

    def lockout_status(self, username: str) -> LockoutStatus | None:
        user = self.users.get_by_username(username)
        return self.lockout.status(user) if user is not None else None

    def unlock(self, username: str) -> bool:
        user = self.users.get_by_username(username)
        if user is None:
            return False
        self.lockout.unlock(user)
        return True


# ---------------------------------------------------------------------------
# Assembly
# ---------------------------------------------------------------------------


def build_gateway(
    settings: Settings,
    engine: Engine,
    *,
    mailer: Mailer | None = None,
    hasher: PasswordHasher | None = None,
    session_store: SessionStore | None = None,
    attempt_store: AttemptStore | None = None,
    clock=utcnow,
) -> AuthGateway:
    """Wire every component from settings. Stores default to the durable SQL ones."""
    users = UserStore(engine, clock=clock)
    sessions = SessionManager(
        session_store or SqlSessionStore(engine),
        secret_key=settings.secret_key,
        max_age_seconds=settings.session_max_age_seconds,
        absolute_max_seconds=settings.session_absolute_max_seconds,
        clock=clock,
    )
    return AuthGateway(
        users=users,
        hasher=hasher or PasswordHasher(),
        sessions=sessions,
        tokens=TokenAuthenticator(users, settings.secret_key, settings.token_expire_seconds, clock=clock),
        lockout=LockoutTracker(users, settings.lockout_threshold, settings.lockout_duration_seconds, clock=clock),
        limiter=RateLimiter(attempt_store or SqlAttemptStore(engine), clock=clock),
        resets=PasswordResetService(
            ResetTokenStore(engine),
            users,
            mailer or LoggingMailer(reveal_links=not settings.is_production),
            secret_key=settings.secret_key,
            app_url=settings.app_url,
            expire_seconds=settings.reset_token_expire_seconds,
            clock=clock,
        ),
        login_policy=RateLimitPolicy(
            LOGIN,
            settings.login_window_seconds,
            settings.login_max_per_identifier,
            settings.login_max_per_ip,
        ),
        reset_policy=RateLimitPolicy(
            PASSWORD_RESET,
            settings.reset_window_seconds,
            settings.reset_max_per_identifier,
            settings.reset_max_per_ip,
        ),
        lockout_hint_threshold=settings.lockout_hint_threshold,
        attempt_retention_seconds=settings.attempt_retention_seconds,
    )
