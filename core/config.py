"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Caskbook happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  DeploymentProfile: the one switch between local plaintext-HTTP development
      and production. Cookie flags and SECRET_KEY policy derive from it here,
      so no other module branches on an environment string.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. Session ids,
       bearer tokens and reset tokens are all stored as HMAC-SHA256 digests
       keyed by SECRET_KEY -- a short key weakens every one of them.

  [M7] In production, a missing SECRET_KEY is a hard startup failure. A random
       key would make every stored session and token digest unreadable after a
       restart, silently logging out every user.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("caskbook.config")


class DeploymentProfile(str, Enum):
    local = "local"
    production = "production"


@dataclass(frozen=True)
class CookiePolicy:
    """Attributes applied to the session cookie."""

    secure: bool
    samesite: str


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    profile: DeploymentProfile = DeploymentProfile.local
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    app_url: str = "http://localhost:5000"
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost:5000", "http://localhost:5173", "http://127.0.0.1:5000"]

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    database_url: str = "sqlite:///caskbook_auth.db"
    # Upper bound on any single storage wait (SQLite busy timeout, pool checkout).
    storage_timeout_seconds: float = 5.0

    # ------------------------------------------------------------------
    # Sessions and bearer tokens
    # ------------------------------------------------------------------

    session_cookie_name: str = "caskbook.sid"
    session_max_age_seconds: int = 30 * 24 * 3600
    session_absolute_max_seconds: int = 90 * 24 * 3600
    token_expire_seconds: int = 30 * 24 * 3600

    # ------------------------------------------------------------------
    # Lockout and rate limiting
    # ------------------------------------------------------------------

    lockout_threshold: int = 5
    lockout_duration_seconds: int = 30 * 60
    # Failed-login responses reveal remaining attempts only at or below this.
    lockout_hint_threshold: int = 2

    login_window_seconds: int = 15 * 60
    login_max_per_identifier: int = 10
    login_max_per_ip: int = 30

    reset_window_seconds: int = 60 * 60
    reset_max_per_identifier: int = 3
    reset_max_per_ip: int = 10

    attempt_retention_seconds: int = 24 * 3600

    # slowapi per-IP limit for account creation.
    register_rate_limit: str = "10/minute"
    rate_limit_storage_uri: str = "memory://"

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    reset_token_expire_seconds: int = 3600

    # ------------------------------------------------------------------
    # OAuth (optional -- empty string means provider is disabled)
    # ------------------------------------------------------------------

    google_client_id: str = ""
    google_client_secret: str = ""
    google_callback_url: str = ""

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def is_production(self) -> bool:
        return self.profile is DeploymentProfile.production

    def cookie_policy(self) -> CookiePolicy:
        """Secure is mandatory over HTTPS (production); relaxed only for local HTTP."""
        return CookiePolicy(secure=self.is_production, samesite="lax")

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy per deployment profile [M7].

        Local profile: auto-generate a random key with a warning.
            Stored session/token digests will not match after a restart --
            acceptable for local dev.

        Production profile: refuse to start if SECRET_KEY is missing.

        Both profiles: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if not self.is_production:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Sessions will not persist across restarts."
                )
            else:
                raise ValueError(
                    "SECRET_KEY is required in production. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set PROFILE=local."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
