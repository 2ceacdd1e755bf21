"""
identity/ledger.py -- Append-only audit trail of authentication attempts.

record() never raises. An audit-trail outage must not block authentication,
so store errors are logged at ERROR (operators alert on it) and swallowed.
It always opens its own transaction, after the engine's unit of work has
committed, so a ledger failure cannot roll back a login outcome.

The lockout counter is NOT derived from the ledger: accounts.failed_attempts
is the source of truth and count_recent_failures() simply reads it. The
engine's lockout path reads the counter through it after each increment.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError

from identity.models import AttemptRecord
from identity.store import CredentialStore, StoreTransaction, utcnow

logger = logging.getLogger("identitycore.ledger")


class AttemptLedger:
    def __init__(self, store: CredentialStore, clock: Callable[[], datetime] = utcnow) -> None:
        self._store = store
        self._clock = clock

    def record(
        self,
        email: str,
        account_id: int | None,
        success: bool,
        origin: str,
        client: str | None = None,
        reason: str | None = None,
    ) -> None:
        """Append one attempt record. Best-effort: failures are logged, not raised."""
        record = AttemptRecord(
            email=email,
            account_id=account_id,
            success=success,
            origin=origin,
            client=client,
            failure_reason=reason,
            created_at=self._clock(),
        )
        try:
            with self._store.begin() as tx:
                tx.add_attempt(record)
        except SQLAlchemyError:
            logger.exception("Failed to record login attempt for %s (success=%s)", email, success)

    def count_recent_failures(self, account_id: int, tx: StoreTransaction | None = None) -> int:
        """Return the account's live consecutive-failure counter (0 if unknown).

        Pass the caller's transaction to read a value it has just written.
        """
        account = tx.get_by_id(account_id) if tx is not None else self._store.get_by_id(account_id)
        return account.failed_attempts if account is not None else 0

    def history(self, account_id: int, limit: int = 50) -> list[AttemptRecord]:
        """Newest-first attempts for an account."""
        with self._store.begin() as tx:
            return tx.login_history(account_id, limit)
