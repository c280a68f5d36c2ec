"""
tests/test_passwords.py -- Unit tests for argon2id hashing and the strength policy.

Coverage:
  - hash() output is a self-describing argon2id string with a fresh salt per call
  - verify() round-trips, rejects wrong passwords, and never raises on bad input
  - needs_rehash() detects weaker parameters
  - check_strength() accepts and rejects the documented cases
"""

from __future__ import annotations

import pytest

from auth.errors import WeakPassword
from auth.passwords import MAX_PASSWORD_LENGTH, PasswordHasher, check_strength


class TestPasswordHasher:
    def test_hash_is_argon2id_phc_string(self, hasher: PasswordHasher) -> None:
        hashed = hasher.hash("Correct1!")
        assert hashed.startswith("$argon2id$")
        assert "Correct1!" not in hashed

    def test_same_password_hashes_differently(self, hasher: PasswordHasher) -> None:
        """A fresh salt per call: equal inputs never give equal outputs."""
        assert hasher.hash("Correct1!") != hasher.hash("Correct1!")

    def test_verify_round_trip(self, hasher: PasswordHasher) -> None:
        hashed = hasher.hash("Correct1!")
        assert hasher.verify("Correct1!", hashed) is True

    def test_verify_wrong_password(self, hasher: PasswordHasher) -> None:
        hashed = hasher.hash("Correct1!")
        assert hasher.verify("correct1!", hashed) is False

    @pytest.mark.parametrize("stored", [None, "", "not-a-hash", "$argon2id$v=19$garbage"])
    def test_verify_bad_stored_value_is_false(self, hasher: PasswordHasher, stored) -> None:
        assert hasher.verify("Correct1!", stored) is False

    def test_burn_does_not_raise(self, hasher: PasswordHasher) -> None:
        hasher.burn("anything")

    def test_needs_rehash_when_parameters_raised(self, hasher: PasswordHasher) -> None:
        weak = hasher.hash("Correct1!")
        stronger = PasswordHasher(time_cost=2, memory_cost=2048, parallelism=1)
        assert stronger.needs_rehash(weak) is True
        assert hasher.needs_rehash(weak) is False

    def test_needs_rehash_on_garbage_is_false(self, hasher: PasswordHasher) -> None:
        assert hasher.needs_rehash("not-a-hash") is False


class TestCheckStrength:
    @pytest.mark.parametrize("password", ["Correct1!", "abcDEF12", "Aa1" + "x" * (MAX_PASSWORD_LENGTH - 3)])
    def test_accepts(self, password: str) -> None:
        check_strength(password)

    @pytest.mark.parametrize(
        "password",
        [
            "Short1",  # too short
            "alllowercase1",  # no uppercase
            "ALLUPPERCASE1",  # no lowercase
            "NoDigitsHere",  # no digit
            "Aa1" + "x" * MAX_PASSWORD_LENGTH,  # too long
        ],
    )
    def test_rejects(self, password: str) -> None:
        with pytest.raises(WeakPassword):
            check_strength(password)

    def test_message_lists_missing_rules(self) -> None:
        with pytest.raises(WeakPassword) as exc_info:
            check_strength("short")
        message = exc_info.value.message
        assert "8 characters" in message
        assert "uppercase" in message
        assert "digit" in message
