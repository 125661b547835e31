"""
auth/passwords.py -- bcrypt password hashing and credential shape checks.

Security design decisions:
  bcrypt directly (no passlib wrapper). passlib's wrap-bug detection feeds
  bcrypt 4.x a >72 byte password, which it now rejects.

  Work factor: PasswordHasher(rounds) applies the configured cost to every
  NEW hash. Each bcrypt hash embeds its own cost, so raising BCRYPT_ROUNDS
  never invalidates stored hashes; checkpw reads the cost from the hash.

  Salt: bcrypt.gensalt() draws a fresh random salt per call, so hashing the
  same plaintext twice yields two different strings.

  Timing equalization: verify_dummy() runs a full bcrypt check against a
  throwaway hash so "unknown email" costs the same as "wrong password".
"""

from __future__ import annotations

import re

import bcrypt

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

# Same character class for the required symbol and the allowed alphabet.
PASSWORD_SYMBOLS = "@$!%*?&"
PASSWORD_RE = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[@$!%*?&])[A-Za-z\d@$!%*?&]{8,}$")


def is_valid_email(email: str) -> bool:
    return bool(EMAIL_RE.match(email or ""))


def is_strong_password(password: str) -> bool:
    """Return True if password has 8+ chars with lower, upper, digit, and one of @$!%*?&."""
    return bool(PASSWORD_RE.match(password or ""))


class PasswordHasher:
    """bcrypt hash/verify bound to a configured work factor."""

    def __init__(self, rounds: int = 12) -> None:
        if not 4 <= rounds <= 31:
            raise ValueError("bcrypt rounds must be between 4 and 31")
        self.rounds = rounds
        self._dummy_hash: bytes | None = None

    def hash(self, plain: str) -> str:
        """Return a salted bcrypt hash of plain.

        bcrypt only looks at the first 72 bytes; the password policy and the
        API max_length keep real inputs below that.
        """
        return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")

    def verify(self, plain: str, hashed: str) -> bool:
        """Return True if plain matches hashed. Malformed hashes verify False."""
        try:
            return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
        except (ValueError, TypeError):
            return False

    def verify_dummy(self, plain: str) -> None:
        # Computed lazily so importing this module stays cheap.
        if self._dummy_hash is None:
            self._dummy_hash = bcrypt.hashpw(b"icms_timing_dummy", bcrypt.gensalt(rounds=self.rounds))
        try:
            bcrypt.checkpw(plain.encode("utf-8"), self._dummy_hash)
        except ValueError:
            # bcrypt >= 5 rejects inputs over 72 bytes; the caller fails the login anyway.
            pass
