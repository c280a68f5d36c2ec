"""
tests/conftest.py -- Shared test fixtures for Caskbook auth tests.

This module provides:
  - FakeClock: a controllable clock injected into every store and service,
    so lockout expiry, rate-limit windows and session expiry can be simulated
    by advancing time instead of sleeping.
  - CapturingMailer: records password-reset links instead of sending them.
  - engine / gateway: an isolated SQLite file per test, wired exactly the way
    api/main.py wires it (build_gateway), but with the fake clock and a cheap
    argon2 parameter set.
  - client: TestClient over the real app with a patched lifespan, so tests hit
    real middleware, dependencies and exception handlers.

Design: a temporary SQLite *file* (not :memory:) is used because TestClient
runs sync route handlers in a thread pool, and because the restart tests
need a second engine to open the same database.

PROFILE and SECRET_KEY must be set before any api/auth/core import so
get_settings() builds a stable local-profile Settings instance.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock
from urllib.parse import parse_qs, urlparse

# CRITICAL: Set env before any auth/core import.
os.environ.setdefault("PROFILE", "local")
os.environ.setdefault("SECRET_KEY", "test-secret-key-0123456789abcdef0123456789abcdef")
os.environ.setdefault("REGISTER_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.db import build_engine
from auth.gateway import AuthGateway, build_gateway
from auth.passwords import PasswordHasher
from core.config import Settings, get_settings

STRONG_PASSWORD = "Correct1!"


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable returning a fixed, manually advanced UTC time."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class CapturingMailer:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []

    def send_password_reset(self, email: str, username: str, reset_url: str) -> None:
        self.sent.append((email, username, reset_url))

    @property
    def last_token(self) -> str:
        _email, _username, url = self.sent[-1]
        return parse_qs(urlparse(url).query)["token"][0]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def hasher() -> PasswordHasher:
    """argon2id with minimal cost. Same algorithm, fast enough for a test suite."""
    return PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1)


@pytest.fixture
def settings() -> Settings:
    return get_settings()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def mailer() -> CapturingMailer:
    return CapturingMailer()


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'auth.db'}"


@pytest.fixture
def engine(db_url):
    engine = build_engine(db_url)
    yield engine
    engine.dispose()


@pytest.fixture
def make_gateway(engine, hasher, clock, mailer):
    """Factory: build a gateway on the test engine, optionally with other settings."""

    def _make(settings: Settings | None = None, **overrides) -> AuthGateway:
        target = overrides.pop("engine", engine)
        options = {"mailer": mailer, "hasher": hasher, "clock": clock}
        options.update(overrides)
        return build_gateway(settings or get_settings(), target, **options)

    return _make


@pytest.fixture
def gateway(make_gateway) -> AuthGateway:
    return make_gateway()


def _patch_lifespan(settings: Settings, engine, gateway: AuthGateway):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine so shutdown can cancel it
    like the real one (a MagicMock would not be awaitable).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.settings = settings
        app.state.engine = engine
        app.state.gateway = gateway
        app.state.oauth = MagicMock()
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture
def client(settings, engine, gateway) -> Generator[TestClient, None, None]:
    """TestClient over the real app; follow_redirects=False so tests can assert Location."""
    app.router.lifespan_context = _patch_lifespan(settings, engine, gateway)
    with TestClient(app, follow_redirects=False, raise_server_exceptions=False) as test_client:
        yield test_client


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def register(client: TestClient, username: str = "alice", password: str = STRONG_PASSWORD, **extra):
    return client.post("/api/v1/register", json={"username": username, "password": password, **extra})


def login(client: TestClient, username: str = "alice", password: str = STRONG_PASSWORD):
    return client.post("/api/v1/login", json={"username": username, "password": password})


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}
