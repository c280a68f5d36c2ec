"""
API request and response models for Caskbook auth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

JSON field names are camelCase on the wire (alias_generator=to_camel) and
snake_case in Python. populate_by_name lets tests and internal callers build
models with either spelling.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from auth.models import UserProfile
from auth.store import normalize_email

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

USERNAME_PATTERN = r"^[A-Za-z0-9_.-]+$"
# Loose on purpose: only the reset email proves deliverability.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

# Upper bound on any password field. Strength rules (auth/passwords.py) are
# checked by the gateway so they surface as weak_password, not validation_error.
_PASSWORD_MAX = 1024


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(CamelModel):
    """Request body for POST /api/v1/register.

    No whitespace stripping: it would silently alter passwords.
    """

    username: str = Field(min_length=3, max_length=50, pattern=USERNAME_PATTERN)
    password: str = Field(min_length=1, max_length=_PASSWORD_MAX)
    email: Optional[str] = Field(default=None, max_length=255, pattern=EMAIL_PATTERN)
    display_name: Optional[str] = Field(default=None, max_length=100)

    @field_validator("email")
    @classmethod
    def lower_email(cls, value: Optional[str]) -> Optional[str]:
        return normalize_email(value)


class LoginRequest(CamelModel):
    username: str = Field(min_length=1, max_length=50)
    password: str = Field(min_length=1, max_length=_PASSWORD_MAX)


class UserPatch(CamelModel):
    """Request body for PATCH /api/v1/user. Changing email needs currentPassword."""

    display_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    email: Optional[str] = Field(default=None, max_length=255, pattern=EMAIL_PATTERN)
    current_password: Optional[str] = Field(default=None, max_length=_PASSWORD_MAX)

    @field_validator("email")
    @classmethod
    def lower_email(cls, value: Optional[str]) -> Optional[str]:
        return normalize_email(value)


class ChangePasswordRequest(CamelModel):
    current_password: str = Field(min_length=1, max_length=_PASSWORD_MAX)
    new_password: str = Field(min_length=1, max_length=_PASSWORD_MAX)


class ForgotPasswordRequest(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255)

    @field_validator("email")
    @classmethod
    def lower_email(cls, value: Optional[str]) -> Optional[str]:
        return normalize_email(value)


class ResetPasswordRequest(CamelModel):
    token: str = Field(min_length=1, max_length=256)
    new_password: str = Field(min_length=1, max_length=_PASSWORD_MAX)


class UnlinkOAuthRequest(CamelModel):
    current_password: Optional[str] = Field(default=None, max_length=_PASSWORD_MAX)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(CamelModel):
    """Public user profile. There is no field here that could carry a hash or token."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: int
    username: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    email_verified: bool = False
    has_password: bool = True
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    last_login_at: Optional[str] = None

    @classmethod
    def from_profile(cls, profile: UserProfile) -> "UserResponse":
        return cls(
            id=profile.id,
            username=profile.username,
            email=profile.email,
            display_name=profile.display_name,
            email_verified=profile.email_verified,
            has_password=profile.has_password,
            created_at=profile.created_at,
            updated_at=profile.updated_at,
            last_login_at=profile.last_login_at,
        )


class AuthResponse(CamelModel):
    """Response for register and login: the profile plus a bearer token."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    user: UserResponse
    token: str
    token_expiry: datetime


class TokenResponse(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    message: str
    token: str
    token_expiry: datetime


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class ResetValidationResponse(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    valid: bool
    username: Optional[str] = None


class ProviderStatusResponse(BaseModel):
    """Response for GET /api/v1/auth/google/status."""

    model_config = ConfigDict(frozen=True)

    configured: bool


class OAuthStatusResponse(CamelModel):
    """Which providers are linked to the current account."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    google: bool
    has_password: bool


class ErrorDetail(BaseModel):
    """Machine-readable error payload.

    extra="allow" lets handlers merge per-error hints (remainingAttempts,
    lockedUntil, retryAfter) into the same object.
    """

    model_config = ConfigDict(frozen=True, extra="allow")

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
