"""
auth/errors.py -- Error taxonomy for the authentication subsystem.

Every failure the gateway can report is an AuthError carrying a stable
machine code, a caller-safe message and the HTTP status the API layer maps it
to. api/main.py registers one exception handler for the whole hierarchy, so
route handlers never hand-build error responses.

Kinds:
  validation    -- ValidationFailed, WeakPassword
  authorization -- NotAuthenticated, TokenExpired, InvalidCredentials,
                   IncorrectPassword, AccountLocked, InvalidOrExpiredToken,
                   NoPasswordSet, LastLoginMethod
  conflict      -- UsernameTaken, EmailTaken
  rate_limited  -- RateLimited
  internal      -- ServiceUnavailable

Messages never include internal detail. Anything a client could use to
enumerate accounts (forgot-password) is not an error at all.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for all authentication failures surfaced to callers."""

    code: str = "auth_error"
    message: str = "Authentication failed."
    status_code: int = 400
    kind: str = "authorization"

    def __init__(self, message: str | None = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)

    def hints(self) -> dict:
        """Extra machine-readable fields merged into the error envelope."""
        return {}


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationFailed(AuthError):
    code = "validation_error"
    message = "Request validation failed."
    status_code = 400
    kind = "validation"


class WeakPassword(ValidationFailed):
    code = "weak_password"
    message = "Password does not meet the strength requirements."


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------


class NotAuthenticated(AuthError):
    code = "not_authenticated"
    message = "Authentication required."
    status_code = 401


class TokenExpired(NotAuthenticated):
    code = "token_expired"
    message = "Session token expired. Please log in again."


class InvalidCredentials(AuthError):
    code = "invalid_credentials"
    message = "Invalid username or password."
    status_code = 401

    def __init__(self, remaining_attempts: int | None = None) -> None:
        self.remaining_attempts = remaining_attempts
        message = None
        if remaining_attempts is not None:
            plural = "s" if remaining_attempts != 1 else ""
            message = (
                f"Invalid username or password. {remaining_attempts} attempt{plural} remaining before lockout."
            )
        super().__init__(message)

    def hints(self) -> dict:
        if self.remaining_attempts is None:
            return {}
        return {"remainingAttempts": self.remaining_attempts}


class IncorrectPassword(AuthError):
    code = "incorrect_password"
    message = "Current password is incorrect."
    status_code = 401


class AccountLocked(AuthError):
    code = "account_locked"
    status_code = 423

    def __init__(self, remaining_seconds: int) -> None:
        self.remaining_seconds = max(0, int(remaining_seconds))
        minutes = max(1, -(-self.remaining_seconds // 60))
        plural = "s" if minutes != 1 else ""
        super().__init__(f"Account temporarily locked. Try again in {minutes} minute{plural}.")

    def hints(self) -> dict:
        return {"lockedUntil": self.remaining_seconds}


class InvalidOrExpiredToken(AuthError):
    code = "invalid_or_expired_token"
    message = "Invalid or expired reset token."
    status_code = 400


class NoPasswordSet(AuthError):
    code = "no_password_set"
    message = "This account signs in with an external provider and has no password."
    status_code = 400


class LastLoginMethod(AuthError):
    code = "last_login_method"
    message = "Cannot unlink the only login method. Add a password first."
    status_code = 400


# ---------------------------------------------------------------------------
# Conflict
# ---------------------------------------------------------------------------


class UsernameTaken(AuthError):
    code = "username_taken"
    message = "Username already exists."
    status_code = 400
    kind = "conflict"


class EmailTaken(AuthError):
    code = "email_taken"
    message = "Email already in use."
    status_code = 400
    kind = "conflict"


# ---------------------------------------------------------------------------
# Throttling and internal
# ---------------------------------------------------------------------------


class RateLimited(AuthError):
    code = "rate_limited"
    message = "Too many attempts. Please try again later."
    status_code = 429
    kind = "rate_limited"

    def __init__(self, retry_after: int) -> None:
        self.retry_after = max(1, int(retry_after))
        super().__init__()

    def hints(self) -> dict:
        return {"retryAfter": self.retry_after}


class ServiceUnavailable(AuthError):
    code = "service_unavailable"
    message = "Authentication is temporarily unavailable. Please retry."
    status_code = 503
    kind = "internal"
