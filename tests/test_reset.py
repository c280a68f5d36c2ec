"""
tests/test_reset.py -- Password-reset flow through the gateway.

Coverage:
  - forgot -> validate -> reset; the new password works, the old one does not
  - a reset token is single-use and expires after an hour
  - unknown emails produce no mail and no error
  - a weak new password is rejected without consuming the token
  - reset revokes bearer tokens, ends sessions and clears a lockout
  - mail delivery failure is invisible to the caller
  - a reset whose writes fail changes nothing and leaves the token usable
  - reset emails match case-insensitively
"""

from __future__ import annotations

import pytest
from conftest import STRONG_PASSWORD, CapturingMailer, FakeClock
from sqlalchemy import event
from sqlalchemy.exc import OperationalError

from auth.errors import AccountLocked, InvalidCredentials, InvalidOrExpiredToken, ServiceUnavailable, WeakPassword
from auth.gateway import AuthGateway, RequestCredentials

NEW_PASSWORD = "Newpass99!"


@pytest.fixture
def alice(gateway: AuthGateway):
    return gateway.register("alice", STRONG_PASSWORD, email="alice@example.com")


def test_full_reset_flow(gateway: AuthGateway, mailer: CapturingMailer, alice) -> None:
    gateway.forgot_password("alice@example.com", ip_address="10.0.0.1")
    assert len(mailer.sent) == 1
    email, username, url = mailer.sent[0]
    assert (email, username) == ("alice@example.com", "alice")
    assert url.startswith("http://localhost:5000/reset-password?token=")

    token = mailer.last_token
    check = gateway.validate_reset_token(token)
    assert check.valid is True
    assert check.username == "alice"

    gateway.reset_password(token, NEW_PASSWORD)

    gateway.login("alice", NEW_PASSWORD)
    with pytest.raises(InvalidCredentials):
        gateway.login("alice", STRONG_PASSWORD)


def test_token_is_single_use(gateway: AuthGateway, mailer: CapturingMailer, alice) -> None:
    gateway.forgot_password("alice@example.com")
    token = mailer.last_token
    gateway.reset_password(token, NEW_PASSWORD)

    assert gateway.validate_reset_token(token).valid is False
    with pytest.raises(InvalidOrExpiredToken):
        gateway.reset_password(token, "Another1!")


def test_token_expires_after_an_hour(gateway: AuthGateway, mailer: CapturingMailer, clock: FakeClock, alice) -> None:
    gateway.forgot_password("alice@example.com")
    token = mailer.last_token
    clock.advance(3599)
    assert gateway.validate_reset_token(token).valid is True
    clock.advance(1)
    assert gateway.validate_reset_token(token).valid is False
    with pytest.raises(InvalidOrExpiredToken):
        gateway.reset_password(token, NEW_PASSWORD)


@pytest.mark.parametrize("token", ["", "made-up-token"])
def test_unknown_token_is_invalid(gateway: AuthGateway, alice, token: str) -> None:
    assert gateway.validate_reset_token(token).valid is False
    with pytest.raises(InvalidOrExpiredToken):
        gateway.reset_password(token, NEW_PASSWORD)


def test_unknown_email_sends_nothing(gateway: AuthGateway, mailer: CapturingMailer, alice) -> None:
    gateway.forgot_password("nobody@example.com")
    assert mailer.sent == []


def test_weak_password_keeps_token_usable(gateway: AuthGateway, mailer: CapturingMailer, alice) -> None:
    gateway.forgot_password("alice@example.com")
    token = mailer.last_token
    with pytest.raises(WeakPassword):
        gateway.reset_password(token, "weak")
    assert gateway.validate_reset_token(token).valid is True
    gateway.reset_password(token, NEW_PASSWORD)


def test_reset_ends_sessions_and_tokens(gateway: AuthGateway, mailer: CapturingMailer, alice) -> None:
    gateway.forgot_password("alice@example.com")
    gateway.reset_password(mailer.last_token, NEW_PASSWORD)

    assert gateway.resolve(RequestCredentials(session_id=alice.session_id)) is None
    assert gateway.resolve(RequestCredentials(bearer_token=alice.token.token)) is None


def test_reset_clears_lockout(gateway: AuthGateway, mailer: CapturingMailer, alice) -> None:
    for _ in range(5):
        with pytest.raises((InvalidCredentials, AccountLocked)):
            gateway.login("alice", "Wrong-pass1")
    assert gateway.lockout_status("alice").is_locked is True

    gateway.forgot_password("alice@example.com")
    gateway.reset_password(mailer.last_token, NEW_PASSWORD)

    assert gateway.lockout_status("alice").is_locked is False
    gateway.login("alice", NEW_PASSWORD)


def test_delivery_failure_is_silent(make_gateway, alice) -> None:
    class BrokenMailer:
        def send_password_reset(self, email, username, reset_url):
            raise ConnectionError("SMTP down")

    gateway = make_gateway(mailer=BrokenMailer())
    gateway.forgot_password("alice@example.com")


def test_purge_removes_expired_reset_tokens(gateway: AuthGateway, clock: FakeClock, alice) -> None:
    gateway.forgot_password("alice@example.com")
    clock.advance(3601)
    assert gateway.purge()["reset_tokens"] == 1


def test_failed_reset_write_rolls_back(gateway: AuthGateway, mailer: CapturingMailer, engine, alice) -> None:
    gateway.forgot_password("alice@example.com")
    token = mailer.last_token

    def fail_token_delete(conn, cursor, statement, parameters, context, executemany):
        if statement.startswith("DELETE FROM auth_tokens"):
            raise OperationalError(statement, parameters, Exception("disk I/O error"))

    event.listen(engine, "before_cursor_execute", fail_token_delete)
    try:
        with pytest.raises(ServiceUnavailable):
            gateway.reset_password(token, NEW_PASSWORD)
    finally:
        event.remove(engine, "before_cursor_execute", fail_token_delete)

    # Neither the token nor the password changed.
    assert gateway.validate_reset_token(token).valid is True
    assert gateway.resolve(RequestCredentials(bearer_token=alice.token.token)) is not None
    gateway.login("alice", STRONG_PASSWORD)

    gateway.reset_password(token, NEW_PASSWORD)
    gateway.login("alice", NEW_PASSWORD)


def test_forgot_password_ignores_email_case(gateway: AuthGateway, mailer: CapturingMailer, alice) -> None:
    gateway.forgot_password("ALICE@Example.com")
    assert len(mailer.sent) == 1
