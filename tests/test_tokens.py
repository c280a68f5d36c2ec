"""
tests/test_tokens.py -- Bearer token issue, resolve and revoke.
"""

from __future__ import annotations

import pytest
from conftest import STRONG_PASSWORD, FakeClock
from sqlalchemy import select

from auth.db import auth_tokens
from auth.errors import TokenExpired
from auth.tokens import TokenAuthenticator, generate_token, keyed_digest


@pytest.fixture
def alice_id(gateway) -> int:
    return gateway.register("alice", STRONG_PASSWORD).profile.id


@pytest.fixture
def tokens(gateway) -> TokenAuthenticator:
    return gateway.tokens


def test_generate_token_is_random_and_url_safe() -> None:
    first, second = generate_token(), generate_token()
    assert first != second
    assert len(first) >= 43
    assert set(first) <= set("ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_")


def test_keyed_digest_depends_on_key() -> None:
    assert keyed_digest("key-a", "token") == keyed_digest("key-a", "token")
    assert keyed_digest("key-a", "token") != keyed_digest("key-b", "token")


def test_issue_and_resolve(tokens: TokenAuthenticator, alice_id: int) -> None:
    issued = tokens.issue(alice_id)
    found = tokens.resolve(issued.token)
    assert found is not None
    user, record = found
    assert user.id == alice_id
    assert record.user_id == alice_id
    assert record.session_hash is None


@pytest.mark.parametrize("token", ["", None, "not-a-real-token"])
def test_unknown_token_resolves_to_none(tokens: TokenAuthenticator, alice_id: int, token) -> None:
    assert tokens.resolve(token) is None


def test_expired_token_raises(tokens: TokenAuthenticator, alice_id: int, clock: FakeClock, settings) -> None:
    issued = tokens.issue(alice_id)
    clock.advance(settings.token_expire_seconds)
    with pytest.raises(TokenExpired):
        tokens.resolve(issued.token)


def test_earlier_tokens_stay_valid(tokens: TokenAuthenticator, alice_id: int) -> None:
    first = tokens.issue(alice_id)
    second = tokens.issue(alice_id)
    assert tokens.resolve(first.token)[0].id == alice_id
    assert tokens.resolve(second.token)[0].id == alice_id


def test_revoke_drops_only_that_token(tokens: TokenAuthenticator, alice_id: int) -> None:
    first = tokens.issue(alice_id)
    second = tokens.issue(alice_id)
    assert tokens.revoke(first.token) is True
    assert tokens.revoke(first.token) is False
    assert tokens.resolve(first.token) is None
    assert tokens.resolve(second.token) is not None


def test_new_password_hash_drops_every_token(gateway, tokens: TokenAuthenticator, alice_id: int, engine) -> None:
    tokens.issue(alice_id)
    gateway.users.set_password_hash(alice_id, "new-hash")
    with engine.connect() as conn:
        assert conn.execute(select(auth_tokens).where(auth_tokens.c.user_id == alice_id)).fetchall() == []


def test_rehash_keeps_tokens(gateway, tokens: TokenAuthenticator, alice_id: int) -> None:
    issued = tokens.issue(alice_id)
    gateway.users.set_password_hash(alice_id, "new-hash", revoke_tokens=False)
    assert tokens.resolve(issued.token) is not None


def test_attach_session_is_remembered(tokens: TokenAuthenticator, alice_id: int) -> None:
    issued = tokens.issue(alice_id)
    _, record = tokens.resolve(issued.token)
    tokens.attach_session(record, "a" * 64)
    _, record = tokens.resolve(issued.token)
    assert record.session_hash == "a" * 64


def test_purge_expired(tokens: TokenAuthenticator, alice_id: int, clock: FakeClock, settings) -> None:
    clock.advance(settings.token_expire_seconds + 1)
    live = tokens.issue(alice_id)
    assert tokens.purge_expired() == 1
    assert tokens.resolve(live.token) is not None


def test_only_digest_is_stored(tokens: TokenAuthenticator, alice_id: int, engine, settings) -> None:
    issued = tokens.issue(alice_id)
    with engine.connect() as conn:
        stored = set(conn.execute(select(auth_tokens.c.token_hash)).scalars())
    assert issued.token not in stored
    assert keyed_digest(settings.secret_key, issued.token) in stored


def test_deleting_user_drops_tokens(gateway, tokens: TokenAuthenticator, alice_id: int) -> None:
    issued = tokens.issue(alice_id)
    gateway.users.delete_user(alice_id)
    assert tokens.resolve(issued.token) is None
