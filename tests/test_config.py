"""
tests/test_config.py -- Settings validation and deployment-profile behaviour.

_env_file=None keeps a developer's local .env out of these tests.
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from core.config import DeploymentProfile, Settings

GOOD_KEY = "k" * 32


def test_production_requires_secret_key():
    with pytest.raises(ValidationError, match="SECRET_KEY is required"):
        Settings(profile="production", secret_key="", _env_file=None)


@pytest.mark.parametrize("profile", ["local", "production"])
def test_short_secret_key_rejected(profile):
    with pytest.raises(ValidationError, match="at least 32 characters"):
        Settings(profile=profile, secret_key="too-short", _env_file=None)


def test_local_generates_key():
    settings = Settings(profile="local", secret_key="", _env_file=None)
    assert len(settings.secret_key) >= 32


def test_cookie_policy_follows_profile():
    local = Settings(profile="local", secret_key=GOOD_KEY, _env_file=None)
    production = Settings(profile="production", secret_key=GOOD_KEY, _env_file=None)
    assert local.cookie_policy().secure is False
    assert production.cookie_policy().secure is True
    assert production.cookie_policy().samesite == "lax"
    assert production.profile is DeploymentProfile.production
    assert production.is_production is True


def test_login_limit_sits_above_lockout_threshold():
    settings = Settings(secret_key=GOOD_KEY, _env_file=None)
    assert settings.login_max_per_identifier > settings.lockout_threshold


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("LOCKOUT_THRESHOLD", "3")
    monkeypatch.setenv("SESSION_COOKIE_NAME", "other.sid")
    settings = Settings(secret_key=GOOD_KEY, _env_file=None)
    assert settings.lockout_threshold == 3
    assert settings.session_cookie_name == "other.sid"
