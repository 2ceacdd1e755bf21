"""
identity/models.py -- Domain dataclasses for credential entities.

Pattern: Data class (pure data container, zero logic). The store maps rows to
these objects; the engine does the work.

The password hash is deliberately absent from Account. It lives only in the
accounts table and is read through CredentialStore.get_password_hash(), so no
object returned by the engine can carry it into a response or a log line.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class TokenKind(str, Enum):
    confirmation = "confirmation"
    reset = "reset"


@dataclass
class Account:
    """A registered or externally-linked principal.

    email is unique and compared exactly as stored (case-sensitive).
    roles is the set of role names attached at load time; the session layer
    receives it explicitly instead of reading any ambient identity context.
    """

    email: str
    id: int | None = None
    first_name: str | None = None
    last_name: str | None = None
    email_confirmed: bool = False
    email_confirmed_at: datetime | None = None
    is_active: bool = True
    is_blocked: bool = False
    blocked_reason: str | None = None
    blocked_at: datetime | None = None
    failed_attempts: int = 0
    locked_until: datetime | None = None
    last_login_at: datetime | None = None
    last_login_ip: str | None = None
    created_at: datetime | None = None
    roles: frozenset[str] = field(default_factory=frozenset)

    @property
    def display_name(self) -> str:
        return self.first_name or self.email


@dataclass
class CredentialToken:
    """A single-use, time-bounded secret bound to one account.

    Only the SHA-256 digest of the token string is stored. The raw string is
    returned once by TokenIssuer.issue() and travels in the outgoing message.
    """

    account_id: int
    kind: TokenKind
    token_hash: str
    expires_at: datetime
    id: int | None = None
    created_at: datetime | None = None
    used: bool = False
    used_at: datetime | None = None
    issued_origin: str | None = None  # network origin of the issuing request
    origin: str | None = None  # network origin of the consuming request (reset only)


@dataclass
class AttemptRecord:
    """Immutable audit entry for one login attempt.

    email is stored as typed. account_id is None when the email did not
    resolve to an account.
    """

    email: str
    success: bool
    origin: str
    account_id: int | None = None
    client: str | None = None
    failure_reason: str | None = None
    id: int | None = None
    created_at: datetime | None = None


@dataclass
class ExternalIdentityLink:
    """Binding of one (provider, provider_key) pair to exactly one account."""

    account_id: int
    provider: str  # "google", "github"
    provider_key: str  # provider's stable subject id
    provider_display_name: str | None = None
    id: int | None = None
    created_at: datetime | None = None


@dataclass
class ExternalIdentity:
    """Callback data yielded by an external provider after its own login flow."""

    provider: str
    provider_key: str
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    provider_display_name: str | None = None


@dataclass
class AuthSession:
    """One issued access token, tracked so it can be listed and revoked.

    session_id is the JWT jti claim.
    """

    account_id: int
    session_id: str
    expires_at: datetime
    origin: str | None = None
    client: str | None = None
    id: int | None = None
    created_at: datetime | None = None
    last_activity_at: datetime | None = None
    is_active: bool = True
