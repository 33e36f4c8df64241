"""
auth/passwords.py -- Password hashing, verification and strength policy.

Security design decisions:
  bcrypt, called directly, with the cost factor taken from BCRYPT_ROUNDS.
  checkpw() compares in constant time.

  Timing equalization: dummy_verify() runs one full bcrypt check against a
  hash computed at construction time. The orchestrator calls it when the
  username does not exist so response time does not reveal whether an
  account exists.

  bcrypt only reads the first 72 bytes of a password, and recent bcrypt
  releases reject longer input outright. _secret_bytes() truncates to 72
  bytes explicitly so hash and verify agree on every bcrypt version. The
  strength policy caps passwords at 128 characters; the API models enforce
  the same bound.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import re

import bcrypt

_SPECIAL_RE = re.compile(r"[!@#$%^&*()_+\-=\[\]{}|;:,.<>?]")

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128
_BCRYPT_MAX_BYTES = 72


def _secret_bytes(plain: str) -> bytes:
    return plain.encode("utf-8")[:_BCRYPT_MAX_BYTES]


class PasswordHasher:
    """Salted one-way hashing with a configurable bcrypt cost factor."""

    def __init__(self, rounds: int = 12) -> None:
        self.rounds = rounds
        self._dummy_hash = self.hash("authgate_timing_dummy")

    def hash(self, plain: str) -> str:
        """Return a bcrypt hash of the given plaintext password."""
        return bcrypt.hashpw(_secret_bytes(plain), bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")

    def verify(self, plain: str, hashed: str) -> bool:
        """Return True if the plaintext password matches the bcrypt hash.

        A malformed stored hash makes bcrypt raise ValueError; that is a
        mismatch, not an error the login flow should surface.
        """
        try:
            return bcrypt.checkpw(_secret_bytes(plain), hashed.encode("utf-8"))
        except ValueError:
            return False

    def dummy_verify(self, plain: str) -> None:
        """Spend one bcrypt verification without a real account."""
        self.verify(plain, self._dummy_hash)


def password_problems(password: str) -> list[str]:
    """Return human-readable reasons the password fails the policy (empty = OK)."""
    problems: list[str] = []
    if len(password) < MIN_PASSWORD_LENGTH:
        problems.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
    if len(password) > MAX_PASSWORD_LENGTH:
        problems.append(f"Password must not exceed {MAX_PASSWORD_LENGTH} characters")
    if not any(c.isupper() for c in password):
        problems.append("Password must contain at least one uppercase letter")
    if not any(c.islower() for c in password):
        problems.append("Password must contain at least one lowercase letter")
    if not any(c.isdigit() for c in password):
        problems.append("Password must contain at least one digit")
    if not _SPECIAL_RE.search(password):
        problems.append("Password must contain at least one special character")
    return problems
