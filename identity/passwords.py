"""
identity/passwords.py -- Password hashing and strength policy.

Passwords: bcrypt, used directly (no passlib wrapper). The salt and cost factor
are embedded in the hash string, so no separate salt column is needed. The
cost factor defaults to 12 and is configurable (tests run with 4).

bcrypt only reads the first 72 bytes of its input and bcrypt>=5 raises
ValueError on longer input. hash() rejects such passwords with
ValidationFailure; verify() treats them as a mismatch.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import re
import secrets

import bcrypt

from identity.errors import ValidationFailure

logger = logging.getLogger("identitycore.passwords")

DEFAULT_ROUNDS = 12
MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_BYTES = 72

_SPECIALS = "@$!%*?&"
_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"[a-z]"), "a lower-case letter"),
    (re.compile(r"[A-Z]"), "an upper-case letter"),
    (re.compile(r"\d"), "a digit"),
    (re.compile(f"[{re.escape(_SPECIALS)}]"), f"one of {_SPECIALS}"),
)


class PasswordHasher:
    """Salted, cost-parameterized one-way hashing.

    Usage:
        hasher = PasswordHasher(rounds=12)
        stored = hasher.hash("Str0ng!Pass")
        hasher.verify("Str0ng!Pass", stored)  # True
    """

    def __init__(self, rounds: int = DEFAULT_ROUNDS) -> None:
        self.rounds = rounds
        # Timing equalization: verify against this when the account does not
        # exist, so an unknown email costs the same bcrypt work as a wrong password.
        self._dummy_hash = self.hash(secrets.token_urlsafe(16))

    def hash(self, plain: str) -> str:
        """Return a bcrypt hash of the plaintext password.

        Raises ValidationFailure for input over MAX_PASSWORD_BYTES.
        """
        if len(plain.encode("utf-8")) > MAX_PASSWORD_BYTES:
            raise ValidationFailure(f"Password must be at most {MAX_PASSWORD_BYTES} bytes.")
        return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")

    def verify(self, plain: str, hashed: str | None) -> bool:
        """Return True if the plaintext password matches the stored hash."""
        if not hashed:
            return False
        try:
            return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
        except ValueError:
            # Malformed hash or over-long input
            return False

    def verify_dummy(self, plain: str) -> None:
        """Burn one verification's worth of time. Always fails."""
        self.verify(plain, self._dummy_hash)

    def unusable_hash(self) -> str:
        """Hash of a random secret nobody knows, for externally-created accounts."""
        return self.hash(secrets.token_urlsafe(32))


def check_password_strength(password: str) -> str:
    """Return the password unchanged or raise ValidationFailure.

    Policy: 8+ characters, at most 72 UTF-8 bytes, at least one lower-case
    letter, upper-case letter, digit and special character from @$!%*?&.
    """
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationFailure(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValidationFailure(f"Password must be at most {MAX_PASSWORD_BYTES} bytes.")
    missing = [label for pattern, label in _RULES if not pattern.search(password)]
    if missing:
        raise ValidationFailure("Password must contain " + ", ".join(missing) + ".")
    return password
