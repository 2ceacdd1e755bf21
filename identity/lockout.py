"""
identity/lockout.py -- Brute-force lockout decisions.

Pure functions of account state; no I/O. The engine owns the read-modify-write
of failed_attempts / locked_until and asks this policy what to do.

Rules:
  - threshold consecutive failures set locked_until = now + duration.
  - while locked_until > now, every login is rejected regardless of password.
  - once now >= locked_until the lock is simply ignored (never purged here);
    the next success clears both fields.
  - failed_attempts is not reset by expiry, so a failure right after an
    expired lock re-locks immediately.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta

DEFAULT_MAX_FAILED_ATTEMPTS = 5
DEFAULT_LOCKOUT_DURATION = timedelta(minutes=15)


@dataclass(frozen=True)
class LockoutDecision:
    allowed: bool
    locked_until: datetime | None = None
    remaining_minutes: int = 0


@dataclass(frozen=True)
class LockoutPolicy:
    max_failed_attempts: int = DEFAULT_MAX_FAILED_ATTEMPTS
    lockout_duration: timedelta = DEFAULT_LOCKOUT_DURATION

    def evaluate(self, locked_until: datetime | None, now: datetime) -> LockoutDecision:
        """Decide whether a login attempt may proceed to password verification."""
        if locked_until is not None and locked_until > now:
            return LockoutDecision(
                allowed=False,
                locked_until=locked_until,
                remaining_minutes=remaining_minutes(locked_until, now),
            )
        return LockoutDecision(allowed=True)

    def lock_after_failure(self, failed_attempts: int, now: datetime) -> datetime | None:
        """Return the new locked_until if this failure count reaches the threshold."""
        if failed_attempts >= self.max_failed_attempts:
            return now + self.lockout_duration
        return None


def remaining_minutes(locked_until: datetime, now: datetime) -> int:
    """Whole minutes left on a lock, rounded up so a live lock never reports 0."""
    seconds = (locked_until - now).total_seconds()
    return max(1, math.ceil(seconds / 60))
