"""
api/routes/v1/auth.py -- Authentication and account REST endpoints.

Routes (all under /api/v1):
  POST   /register                       -- create account; session cookie + token
  POST   /login                          -- password login; session cookie + token
  POST   /logout                         -- end session, revoke presented token
  GET    /user                           -- current profile (requires auth)
  PATCH  /user                           -- update display name / email (requires auth)
  POST   /user/change-password           -- new password, fresh token (requires auth)
  POST   /auth/forgot-password           -- start reset; same response for any email
  GET    /auth/reset-password/validate   -- {valid, username?}
  POST   /auth/reset-password            -- consume token, set new password
  GET    /auth/google/status             -- is Google sign-in configured (public)
  GET    /auth/google                    -- redirect to Google
  GET    /auth/google/callback           -- OAuth callback; session cookie, redirect /
  GET    /auth/oauth-status              -- linked providers (requires auth)
  DELETE /auth/oauth/{provider}          -- unlink provider (requires auth)

Security:
  [H2] POST /register is rate-limited per IP by slowapi. Login and password
       reset are throttled inside the gateway (auth/ratelimit.py), keyed by
       both identifier and IP.
  [C1] The gateway provides timing equalization for unknown usernames --
       never look a user up and verify a password inline here.
  [M5] Cache-Control: no-store on every response that carries a token.

Handlers are plain `def` so FastAPI runs them in its threadpool: argon2 is
slow and must not block the event loop. Only the OAuth routes
are async, because authlib's Starlette client is.

Every failure is raised as an AuthError and rendered by the handler in
api/main.py; no route builds an error body itself.
"""

from __future__ import annotations

import logging
from typing import Optional

from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.concurrency import run_in_threadpool

from api.limiter import limiter, register_limit
from api.models import (
    AuthResponse,
    ChangePasswordRequest,
    ForgotPasswordRequest,
    LoginRequest,
    MessageResponse,
    OAuthStatusResponse,
    ProviderStatusResponse,
    RegisterRequest,
    ResetPasswordRequest,
    ResetValidationResponse,
    TokenResponse,
    UnlinkOAuthRequest,
    UserPatch,
    UserResponse,
)
from auth.dependencies import (
    clear_session_cookie,
    client_ip,
    get_app_settings,
    get_credentials,
    get_current_user,
    get_current_user_id,
    get_gateway,
    set_session_cookie,
)
from auth.gateway import AuthGateway, LoginResult
from auth.models import UserProfile
from auth.oauth import GOOGLE, is_google_configured, profile_from_userinfo
from core.config import Settings

logger = logging.getLogger("caskbook.api.auth")

# Auth policy:
# - POST   /register, /login, /logout:             public
# - POST   /auth/forgot-password, /auth/reset-password, GET .../validate: public
# - GET    /auth/google, /auth/google/status, /auth/google/callback:   public
# - GET    /user, PATCH /user, POST /user/change-password:            requires auth
# - GET    /auth/oauth-status, DELETE /auth/oauth/{provider}:          requires auth
router = APIRouter()

_FORGOT_MESSAGE = "If an account with that email exists, a password reset link has been sent."


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _auth_response(result: LoginResult, settings: Settings, status_code: int = 200) -> JSONResponse:
    body = AuthResponse(
        user=UserResponse.from_profile(result.profile),
        token=result.token.token,
        token_expiry=result.token.expires_at,
    )
    resp = JSONResponse(status_code=status_code, content=body.model_dump(mode="json", by_alias=True))
    set_session_cookie(resp, settings, result.session_id)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _oauth_error(reason: str) -> RedirectResponse:
    return RedirectResponse(f"/auth?error={reason}", status_code=302)


# ---------------------------------------------------------------------------
# Register / login / logout
# ---------------------------------------------------------------------------


@limiter.limit(register_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/register", response_model=AuthResponse, status_code=201)
def register(
    request: Request,
    body: RegisterRequest,
    gateway: AuthGateway = Depends(get_gateway),
    settings: Settings = Depends(get_app_settings),
) -> JSONResponse:
    """Create an account and sign it in.

    Password strength is checked before anything is written, so a weak
    password never leaves a half-created account behind.
    """
    result = gateway.register(body.username, body.password, email=body.email, display_name=body.display_name)
    return _auth_response(result, settings, status_code=201)


@router.post("/login", response_model=AuthResponse)
def login(
    request: Request,
    body: LoginRequest,
    gateway: AuthGateway = Depends(get_gateway),
    settings: Settings = Depends(get_app_settings),
) -> JSONResponse:
    """Authenticate with username and password.

    Wrong username and wrong password produce the same invalid_credentials
    error; remainingAttempts is added only when the lockout is close.
    """
    result = gateway.login(body.username, body.password, ip_address=client_ip(request))
    return _auth_response(result, settings)


@router.post("/logout", response_model=MessageResponse)
def logout(
    request: Request,
    gateway: AuthGateway = Depends(get_gateway),
    settings: Settings = Depends(get_app_settings),
) -> JSONResponse:
    """End the session and revoke the presented token. Safe to call twice."""
    gateway.logout(get_credentials(request))
    resp = JSONResponse(content=MessageResponse(message="Logged out successfully.").model_dump())
    clear_session_cookie(resp, settings)
    return resp


# ---------------------------------------------------------------------------
# Current user
# ---------------------------------------------------------------------------


@router.get("/user", response_model=UserResponse)
def get_user(current_user: UserProfile = Depends(get_current_user)) -> UserResponse:
    return UserResponse.from_profile(current_user)


@router.patch("/user", response_model=UserResponse)
def update_user(
    body: UserPatch,
    user_id: int = Depends(get_current_user_id),
    gateway: AuthGateway = Depends(get_gateway),
) -> UserResponse:
    profile = gateway.update_profile(
        user_id,
        display_name=body.display_name,
        email=body.email,
        current_password=body.current_password,
    )
    return UserResponse.from_profile(profile)


@router.post("/user/change-password", response_model=TokenResponse)
def change_password(
    body: ChangePasswordRequest,
    user_id: int = Depends(get_current_user_id),
    gateway: AuthGateway = Depends(get_gateway),
) -> JSONResponse:
    """Change the password. Every existing bearer token is revoked and a new one returned."""
    issued = gateway.change_password(user_id, body.current_password, body.new_password)
    body_out = TokenResponse(message="Password changed successfully.", token=issued.token, token_expiry=issued.expires_at)
    resp = JSONResponse(content=body_out.model_dump(mode="json", by_alias=True))
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@router.post("/auth/forgot-password", response_model=MessageResponse)
def forgot_password(
    request: Request,
    body: ForgotPasswordRequest,
    gateway: AuthGateway = Depends(get_gateway),
) -> MessageResponse:
    """Always answers with the same message, whether or not the email is known."""
    gateway.forgot_password(body.email, ip_address=client_ip(request))
    return MessageResponse(message=_FORGOT_MESSAGE)


@router.get("/auth/reset-password/validate", response_model=ResetValidationResponse)
def validate_reset_token(
    token: str = Query(default="", max_length=256),
    gateway: AuthGateway = Depends(get_gateway),
) -> ResetValidationResponse:
    result = gateway.validate_reset_token(token)
    return ResetValidationResponse(valid=result.valid, username=result.username)


@router.post("/auth/reset-password", response_model=MessageResponse)
def reset_password(
    body: ResetPasswordRequest,
    gateway: AuthGateway = Depends(get_gateway),
) -> MessageResponse:
    gateway.reset_password(body.token, body.new_password)
    return MessageResponse(message="Password has been reset. Please log in with your new password.")


# ---------------------------------------------------------------------------
# Google OAuth
# ---------------------------------------------------------------------------


@router.get("/auth/google/status", response_model=ProviderStatusResponse)
def google_status(settings: Settings = Depends(get_app_settings)) -> ProviderStatusResponse:
    """Public -- the login page calls this to decide whether to show the button."""
    return ProviderStatusResponse(configured=is_google_configured(settings))


@router.get("/auth/google")
async def google_login(request: Request):
    """Redirect the browser to Google's consent screen.

    authlib stores the state parameter in the Starlette session before the
    redirect; the callback rejects any response whose state does not match.
    """
    settings: Settings = request.app.state.settings
    if not is_google_configured(settings):
        return _oauth_error("oauth_not_configured")
    client = request.app.state.oauth.create_client(GOOGLE)
    return await client.authorize_redirect(request, settings.google_callback_url)


@router.get("/auth/google/callback", name="google_callback")
async def google_callback(request: Request) -> RedirectResponse:
    """Handle Google's redirect back: exchange the code, then find, link or create the user."""
    settings: Settings = request.app.state.settings
    if not is_google_configured(settings):
        return _oauth_error("oauth_not_configured")
    if request.query_params.get("error"):
        return _oauth_error("oauth_denied")

    client = request.app.state.oauth.create_client(GOOGLE)
    try:
        token = await client.authorize_access_token(request)
    except OAuthError:
        logger.exception("Google token exchange failed")
        return _oauth_error("token_exchange_failed")

    userinfo = token.get("userinfo")
    if not userinfo:
        try:
            userinfo = await client.userinfo(token=token)
        except OAuthError:
            logger.exception("Google userinfo request failed")
            return _oauth_error("userinfo_failed")

    try:
        profile = profile_from_userinfo(GOOGLE, dict(userinfo))
    except ValueError:
        logger.warning("Google sign-in rejected: userinfo without subject")
        return _oauth_error("userinfo_failed")

    gateway: AuthGateway = request.app.state.gateway
    result = await run_in_threadpool(gateway.oauth_sign_in, profile)

    resp = RedirectResponse("/", status_code=302)
    set_session_cookie(resp, settings, result.session_id)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.get("/auth/oauth-status", response_model=OAuthStatusResponse)
def oauth_status(
    user_id: int = Depends(get_current_user_id),
    gateway: AuthGateway = Depends(get_gateway),
) -> OAuthStatusResponse:
    return OAuthStatusResponse(**gateway.oauth_status(user_id))


@router.delete("/auth/oauth/{provider}", response_model=MessageResponse)
def unlink_oauth(
    provider: str,
    body: Optional[UnlinkOAuthRequest] = None,
    user_id: int = Depends(get_current_user_id),
    gateway: AuthGateway = Depends(get_gateway),
) -> MessageResponse:
    """Unlink a provider. Accounts with a password must confirm it."""
    current_password = body.current_password if body is not None else None
    gateway.unlink_oauth(user_id, provider, current_password=current_password)
    return MessageResponse(message=f"{provider.capitalize()} account unlinked successfully.")
