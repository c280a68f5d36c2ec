"""
tests/test_cli.py -- The maintenance CLI in main.py.

main() accepts an already-built gateway, so these tests run every command
against the per-test SQLite database and fake clock.
"""

from __future__ import annotations

import pytest
from conftest import STRONG_PASSWORD

from auth.errors import AccountLocked, InvalidCredentials
from main import main


@pytest.fixture
def locked_alice(gateway):
    gateway.register("alice", STRONG_PASSWORD)
    for _ in range(5):
        with pytest.raises((InvalidCredentials, AccountLocked)):
            gateway.login("alice", "Wrong-pass1")
    return gateway


def test_status_locked(locked_alice, capsys):
    assert main(["status", "alice"], gateway=locked_alice) == 0
    out = capsys.readouterr().out
    assert "alice: LOCKED" in out
    assert "Failed attempts: 5/5" in out
    assert "Lockout ends in: 30m 00s" in out


def test_status_unknown_user(gateway, capsys):
    assert main(["status", "ghost"], gateway=gateway) == 1
    assert "No such user: ghost" in capsys.readouterr().out


def test_unlock(locked_alice, capsys):
    assert main(["unlock", "alice"], gateway=locked_alice) == 0
    assert "alice unlocked" in capsys.readouterr().out
    locked_alice.login("alice", STRONG_PASSWORD)


def test_unlock_unknown_user(gateway):
    assert main(["unlock", "ghost"], gateway=gateway) == 1


def test_purge(gateway, clock, capsys):
    gateway.register("alice", STRONG_PASSWORD)
    clock.advance(91 * 24 * 3600)
    assert main(["purge"], gateway=gateway) == 0
    out = capsys.readouterr().out
    assert "sessions       1 removed" in out
    assert "reset_tokens   0 removed" in out


def test_command_required():
    with pytest.raises(SystemExit):
        main([])
