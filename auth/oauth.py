"""
auth/oauth.py -- Authlib Google OAuth/OIDC configuration and profile mapping.

build_oauth() registers Google only when client id, secret and callback URL
are all configured. The login page asks GET /auth/google/status to decide
whether to show the button.

Security notes:
  [H1] An existing local account is linked to a Google identity only when
       Google reports the email as verified. An unverified address could
       belong to someone who typed a victim's email into their Google account.

  The OAuth state parameter (CSRF protection) is handled by authlib through
  Starlette SessionMiddleware: the state is stored in the signed session
  cookie before the redirect and checked in the callback.

  Provider access/refresh tokens are not stored -- we only need the identity
  claims at sign-in time.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import re

from authlib.integrations.starlette_client import OAuth

from auth.models import OAuthProfile
from auth.store import normalize_email
from core.config import Settings

logger = logging.getLogger("caskbook.auth.oauth")

GOOGLE = "google"
SUPPORTED_PROVIDERS = (GOOGLE,)

_NON_ALNUM = re.compile(r"[^a-z0-9]")


def is_google_configured(settings: Settings) -> bool:
    return bool(settings.google_client_id and settings.google_client_secret and settings.google_callback_url)


def build_oauth(settings: Settings) -> OAuth:
    """Return an authlib registry with every configured provider registered."""
    oauth = OAuth()
    if is_google_configured(settings):
        oauth.register(
            name=GOOGLE,
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
            client_kwargs={"scope": "openid email profile", "prompt": "select_account"},
        )
        logger.info("Google OAuth provider registered")
    return oauth


def profile_from_userinfo(provider: str, userinfo: dict) -> OAuthProfile:
    """Map OIDC userinfo claims to an OAuthProfile.

    Raises ValueError when the provider did not return a subject.
    """
    subject = userinfo.get("sub") or userinfo.get("id")
    if not subject:
        raise ValueError("OAuth userinfo has no subject claim")
    return OAuthProfile(
        provider=provider,
        subject=str(subject),
        email=normalize_email(userinfo.get("email")),
        email_verified=bool(userinfo.get("email_verified") or userinfo.get("verified_email")),
        name=userinfo.get("name"),
    )


def username_base(name: str | None) -> str:
    """Lowercase alphanumeric stem (max 20 chars) for generated usernames."""
    base = _NON_ALNUM.sub("", (name or "").lower())[:20]
    return base or "user"
