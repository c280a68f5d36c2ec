"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two credentials are read from every request:
  1. Session cookie (settings.session_cookie_name) -- set on register/login.
  2. Authorization: Bearer <token> header -- API clients and mobile.

Both are handed to AuthGateway.resolve(), which tries them in that order and
returns one canonical Identity. This module only extracts credentials and
maps the outcome onto the request; the precedence rule lives in the gateway.

try_get_identity() is the soft variant (returns None on failure).
get_identity() wraps it and raises NotAuthenticated / TokenExpired.
get_current_user() and get_current_user_id() are the narrow views routes use.

Rolling sessions: when an identity is resolved, request.state.session_cookie
is set to the session id that should be (re)written on the response. The
session_cookie middleware in api/main.py applies it, so the browser cookie's
Max-Age slides with the server-side expiry.

Layer rule: may import from fastapi (this module is DI glue); no imports
from api/.
"""

from __future__ import annotations

from fastapi import Request, Response

from auth.errors import NotAuthenticated, TokenExpired
from auth.gateway import AuthGateway, Identity, RequestCredentials
from auth.models import UserProfile
from core.config import Settings


def get_gateway(request: Request) -> AuthGateway:
    return request.app.state.gateway


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


def get_credentials(request: Request) -> RequestCredentials:
    """Pull the session cookie and bearer token off the request, if present."""
    settings = get_app_settings(request)
    session_id = request.cookies.get(settings.session_cookie_name) or None

    bearer: str | None = None
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        bearer = auth_header[7:].strip() or None

    return RequestCredentials(session_id=session_id, bearer_token=bearer)


def _resolve(request: Request) -> Identity | None:
    identity = get_gateway(request).resolve(get_credentials(request))
    if identity is not None:
        request.state.identity = identity
        if identity.session_id:
            request.state.session_cookie = identity.session_id
    return identity


def try_get_identity(request: Request) -> Identity | None:
    """Resolve the request's identity. Never raises for auth failures."""
    try:
        return _resolve(request)
    except TokenExpired:
        return None


def get_identity(request: Request) -> Identity:
    """Require authentication.

    Raises TokenExpired (401 token_expired) when the only credential was an
    expired bearer token, NotAuthenticated (401) otherwise.
    """
    identity = _resolve(request)
    if identity is None:
        raise NotAuthenticated()
    return identity


def get_current_user(request: Request) -> UserProfile:
    """Use as a FastAPI dependency:

    @router.get("/protected")
    def route(user: UserProfile = Depends(get_current_user)): ...
    """
    return get_identity(request).profile


def get_current_user_id(request: Request) -> int:
    return get_identity(request).user_id


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_session_cookie(response: Response, settings: Settings, session_id: str) -> None:
    """Write the session cookie with the profile's security attributes.

    HttpOnly always: no script can read the session id. Secure in production
    only, so local plaintext-HTTP development still works.
    """
    policy = settings.cookie_policy()
    response.set_cookie(
        key=settings.session_cookie_name,
        value=session_id,
        max_age=settings.session_max_age_seconds,
        path="/",
        httponly=True,
        secure=policy.secure,
        samesite=policy.samesite,
    )


def clear_session_cookie(response: Response, settings: Settings) -> None:
    policy = settings.cookie_policy()
    response.delete_cookie(
        key=settings.session_cookie_name,
        path="/",
        httponly=True,
        secure=policy.secure,
        samesite=policy.samesite,
    )
