"""
identity/tokens.py -- Single-use, expiring credential tokens.

Security design decisions:
  Entropy: secrets.token_urlsafe(32) gives 256 bits, URL-safe, so it can be
       dropped into a confirmation / reset link unescaped. Collisions are
       negligible; the UNIQUE index on token_hash is the only check.

  Storage: only SHA-256(token) is persisted. A leaked database does not yield
       usable links. The digest is deterministic, so lookup is O(1) by index,
       and the high-entropy input makes a slow KDF unnecessary here.

  Expiry: fixed at issuance (now + ttl) and never extended.

  Consumption: delegated to StoreTransaction.consume_token(), a conditional
       UPDATE that succeeds for exactly one caller. consume() takes the
       caller's transaction so the follow-up account mutation (confirm email,
       set new password) commits or rolls back together with the consumption.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta

from identity.models import CredentialToken, TokenKind
from identity.store import StoreTransaction, utcnow

logger = logging.getLogger("identitycore.tokens")

TOKEN_BYTES = 32


def hash_token(raw_token: str) -> str:
    """Return the SHA-256 hex digest stored in place of the raw token."""
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


class TokenIssuer:
    """Issues and consumes confirmation / reset tokens.

    Stateless apart from the clock; every call works on the transaction it is
    given.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock

    def issue(
        self,
        tx: StoreTransaction,
        account_id: int,
        kind: TokenKind,
        ttl: timedelta,
        origin: str | None = None,
    ) -> str:
        """Persist a new unused token and return the raw string (shown once)."""
        now = self._clock()
        raw_token = secrets.token_urlsafe(TOKEN_BYTES)
        tx.add_token(
            CredentialToken(
                account_id=account_id,
                kind=kind,
                token_hash=hash_token(raw_token),
                created_at=now,
                expires_at=now + ttl,
                issued_origin=origin,
            )
        )
        logger.info("Issued %s token for account_id=%s (expires in %s)", kind.value, account_id, ttl)
        return raw_token

    def consume(
        self,
        tx: StoreTransaction,
        raw_token: str,
        kind: TokenKind,
        origin: str | None = None,
    ) -> int:
        """Mark the token used and return the bound account id.

        Raises TokenNotFound, TokenAlreadyUsed or TokenExpired.
        """
        account_id = tx.consume_token(hash_token(raw_token), kind, self._clock(), origin=origin)
        logger.info("Consumed %s token for account_id=%s", kind.value, account_id)
        return account_id
