"""
auth/passwords.py -- Password hashing and strength policy.

Security design decisions:
  Hashing: argon2id via argon2-cffi. Argon2id is memory-hard, so GPU/ASIC
       guessing costs memory as well as time. Every hash() call draws a fresh
       random salt; the PHC-format output ("$argon2id$v=19$m=...,t=...,p=...$
       salt$hash") is self-describing, so parameters can be raised later and
       old hashes still verify.

  Verification: argon2-cffi re-derives with the stored salt and parameters
       and compares in constant time. Any malformed stored value verifies as
       False rather than raising -- the caller only ever sees a boolean.

  Timing equalization: DUMMY_HASH lets the login path run a full verify even
       when the username does not exist, so response time does not reveal
       which usernames are registered.

  Plaintext and hash bytes never leave this module except as the stored
  string, and nothing here logs either.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import re

from argon2 import PasswordHasher as _Argon2Hasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from auth.errors import WeakPassword

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128

_LOWER = re.compile(r"[a-z]")
_UPPER = re.compile(r"[A-Z]")
_DIGIT = re.compile(r"\d")


class PasswordHasher:
    """Salted, memory-hard password hashing with constant-time verification.

    The default argon2-cffi parameters follow RFC 9106's low-memory profile.
    Tests pass cheaper parameters through the constructor to keep the suite
    fast; production code uses the defaults.
    """

    def __init__(self, time_cost: int | None = None, memory_cost: int | None = None, parallelism: int | None = None):
        kwargs = {}
        if time_cost is not None:
            kwargs["time_cost"] = time_cost
        if memory_cost is not None:
            kwargs["memory_cost"] = memory_cost
        if parallelism is not None:
            kwargs["parallelism"] = parallelism
        self._hasher = _Argon2Hasher(**kwargs)
        self.dummy_hash = self._hasher.hash("caskbook_timing_dummy")

    def hash(self, plain: str) -> str:
        """Return the argon2id PHC string for plain."""
        return self._hasher.hash(plain)

    def verify(self, plain: str, stored: str | None) -> bool:
        """Return True if plain matches stored. Never raises for bad input."""
        if not stored:
            return False
        try:
            return self._hasher.verify(stored, plain)
        except (VerifyMismatchError, VerificationError, InvalidHashError):
            return False

    def needs_rehash(self, stored: str) -> bool:
        """True when stored was produced with weaker parameters than the current ones."""
        try:
            return self._hasher.check_needs_rehash(stored)
        except InvalidHashError:
            return False

    def burn(self, plain: str) -> None:
        """Run a verify against the dummy hash; used when there is no real hash to check."""
        self.verify(plain, self.dummy_hash)


def check_strength(password: str) -> None:
    """Raise WeakPassword unless password satisfies the policy.

    Policy: 8-128 characters with at least one lowercase letter, one uppercase
    letter and one digit.
    """
    problems: list[str] = []
    if len(password) < MIN_PASSWORD_LENGTH:
        problems.append(f"at least {MIN_PASSWORD_LENGTH} characters")
    if len(password) > MAX_PASSWORD_LENGTH:
        problems.append(f"at most {MAX_PASSWORD_LENGTH} characters")
    if not _LOWER.search(password):
        problems.append("a lowercase letter")
    if not _UPPER.search(password):
        problems.append("an uppercase letter")
    if not _DIGIT.search(password):
        problems.append("a digit")
    if problems:
        raise WeakPassword("Password must contain " + ", ".join(problems) + ".")
