"""
identity/store.py -- SQLAlchemy Core persistence layer for credential entities.

Pattern: Repository + Data Mapper + Unit of Work.
CredentialStore owns the engine and schema; StoreTransaction is the unit of
work handed out by CredentialStore.begin(). All reads and writes of one engine
operation run on the transaction's single connection, so a token consumption
and the account mutation that follows it commit or roll back together.
_row_to_* functions are the mappers. Engine code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Raw token strings are never stored. credential_tokens.token_hash holds the
  SHA-256 hex digest; the UNIQUE index on it is the collision check.

  The password hash is only reachable through get_password_hash(). Account
  objects never carry it.

Concurrency:
  Failed-attempt counting is an atomic UPDATE ... SET failed_attempts =
  failed_attempts + 1 followed by a read inside the same transaction, so two
  concurrent failures cannot lose an increment. Token consumption is a single
  conditional UPDATE (used = false AND expires_at > now); exactly one of two
  concurrent consumers sees rowcount == 1.

Timestamps:
  Columns are DateTime(timezone=True) and always written in UTC. SQLite drops
  the offset on the way in, so _as_utc() re-attaches it on the way out.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from identity.errors import Conflict, NotFound, TokenAlreadyUsed, TokenExpired, TokenNotFound
from identity.models import Account, AttemptRecord, AuthSession, CredentialToken, ExternalIdentityLink, TokenKind

logger = logging.getLogger("identitycore.store")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'identitycore.db'}"

DEFAULT_ROLES = ("member", "admin")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", Text, nullable=False),
    Column("first_name", String(100)),
    Column("last_name", String(100)),
    Column("email_confirmed", Boolean, nullable=False, default=False),
    Column("email_confirmed_at", DateTime(timezone=True)),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("is_blocked", Boolean, nullable=False, default=False),
    Column("blocked_reason", Text),
    Column("blocked_at", DateTime(timezone=True)),
    Column("failed_attempts", Integer, nullable=False, default=0),
    Column("locked_until", DateTime(timezone=True)),
    Column("last_login_at", DateTime(timezone=True)),
    Column("last_login_ip", String(45)),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

_roles = Table(
    "roles",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(50), nullable=False, unique=True),
)

_account_roles = Table(
    "account_roles",
    _metadata,
    Column("account_id", Integer, ForeignKey("accounts.id"), nullable=False),
    Column("role_id", Integer, ForeignKey("roles.id"), nullable=False),
    Column("assigned_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("account_id", "role_id"),
)

_tokens = Table(
    "credential_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer, ForeignKey("accounts.id"), nullable=False),
    Column("kind", String(20), nullable=False),  # "confirmation", "reset"
    Column("token_hash", String(64), nullable=False, unique=True),  # SHA-256 hex
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("expires_at", DateTime(timezone=True), nullable=False),
    Column("used", Boolean, nullable=False, default=False),
    Column("used_at", DateTime(timezone=True)),
    Column("issued_origin", String(45)),
    Column("origin", String(45)),
)

_attempts = Table(
    "login_attempts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False),  # as typed, not normalized
    Column("account_id", Integer),  # NULL when the email matched nothing
    Column("success", Boolean, nullable=False),
    Column("origin", String(45), nullable=False),
    Column("client", Text),
    Column("failure_reason", Text),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

_external_logins = Table(
    "external_logins",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer, ForeignKey("accounts.id"), nullable=False),
    Column("provider", String(30), nullable=False),
    Column("provider_key", String(255), nullable=False),
    Column("provider_display_name", String(255)),
    Column("created_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("provider", "provider_key"),
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer, ForeignKey("accounts.id"), nullable=False),
    Column("session_id", String(64), nullable=False, unique=True),  # JWT jti
    Column("origin", String(45)),
    Column("client", Text),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("last_activity_at", DateTime(timezone=True), nullable=False),
    Column("expires_at", DateTime(timezone=True), nullable=False),
    Column("is_active", Boolean, nullable=False, default=True),
)

# Columns update_account() accepts. Anything else is a programming error.
_MUTABLE_ACCOUNT_FIELDS = frozenset(
    {
        "email",
        "first_name",
        "last_name",
        "email_confirmed",
        "email_confirmed_at",
        "is_active",
        "is_blocked",
        "blocked_reason",
        "blocked_at",
        "failed_attempts",
        "locked_until",
        "last_login_at",
        "last_login_ip",
    }
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block on a writer.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Unit of work
# ---------------------------------------------------------------------------


class StoreTransaction:
    """All store operations, bound to one connection inside one transaction.

    Obtain via CredentialStore.begin(); never construct directly.
    """

    def __init__(self, conn: Connection) -> None:
        self.conn = conn

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def get_by_id(self, account_id: int, for_update: bool = False) -> Account | None:
        """Look up an account by primary key, roles loaded. None if absent."""
        stmt = _accounts.select().where(_accounts.c.id == account_id)
        if for_update:
            stmt = stmt.with_for_update()
        row = self.conn.execute(stmt).fetchone()
        return _row_to_account(row, self.get_roles(row.id)) if row is not None else None

    def get_by_email(self, email: str, for_update: bool = False) -> Account | None:
        """Look up an account by exact email (case-sensitive). None if absent.

        for_update=True takes a row lock on backends that support it, so a
        read-check-write on the lockout counter serializes per account.
        """
        stmt = _accounts.select().where(_accounts.c.email == email)
        if for_update:
            stmt = stmt.with_for_update()
        row = self.conn.execute(stmt).fetchone()
        return _row_to_account(row, self.get_roles(row.id)) if row is not None else None

    def email_exists(self, email: str) -> bool:
        row = self.conn.execute(select(_accounts.c.id).where(_accounts.c.email == email)).fetchone()
        return row is not None

    def add_account(self, account: Account, password_hash: str) -> int:
        """Insert a new account and return its database-assigned id.

        Raises Conflict if the email is already registered (including the race
        where another request inserted it after our email_exists() check).
        """
        try:
            result = self.conn.execute(
                _accounts.insert().values(
                    email=account.email,
                    password_hash=password_hash,
                    first_name=account.first_name,
                    last_name=account.last_name,
                    email_confirmed=account.email_confirmed,
                    email_confirmed_at=account.email_confirmed_at,
                    is_active=account.is_active,
                    is_blocked=account.is_blocked,
                    failed_attempts=0,
                    created_at=account.created_at or utcnow(),
                )
            )
        except IntegrityError as exc:
            raise Conflict(f"Email already registered: {account.email}") from exc
        return result.inserted_primary_key[0]

    def update_account(self, account_id: int, **fields) -> bool:
        """Update mutable account columns. Returns False if the id was not found.

        Unknown field names raise ValueError rather than being silently dropped.
        """
        unknown = set(fields) - _MUTABLE_ACCOUNT_FIELDS
        if unknown:
            raise ValueError(f"Unknown account fields: {sorted(unknown)!r}")
        if not fields:
            return False
        try:
            result = self.conn.execute(_accounts.update().where(_accounts.c.id == account_id).values(**fields))
        except IntegrityError as exc:
            raise Conflict("Account update violates a uniqueness rule") from exc
        return result.rowcount > 0

    def get_password_hash(self, account_id: int) -> str | None:
        return self.conn.execute(
            select(_accounts.c.password_hash).where(_accounts.c.id == account_id)
        ).scalar_one_or_none()

    def set_password_hash(self, account_id: int, password_hash: str) -> None:
        self.conn.execute(_accounts.update().where(_accounts.c.id == account_id).values(password_hash=password_hash))

    def increment_failed_attempts(self, account_id: int) -> int:
        """Atomically add one to failed_attempts and return the new value."""
        self.conn.execute(
            _accounts.update()
            .where(_accounts.c.id == account_id)
            .values(failed_attempts=_accounts.c.failed_attempts + 1)
        )
        return self.conn.execute(
            select(_accounts.c.failed_attempts).where(_accounts.c.id == account_id)
        ).scalar_one()

    def count_accounts(self) -> int:
        return self.conn.execute(select(func.count()).select_from(_accounts)).scalar() or 0

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def ensure_role(self, name: str) -> int:
        """Return the id of role `name`, creating it if missing."""
        role_id = self.get_role_id(name)
        if role_id is None:
            role_id = self.conn.execute(_roles.insert().values(name=name)).inserted_primary_key[0]
        return role_id

    def get_role_id(self, name: str) -> int | None:
        return self.conn.execute(select(_roles.c.id).where(_roles.c.name == name)).scalar_one_or_none()

    def list_roles(self) -> list[str]:
        return list(self.conn.execute(select(_roles.c.name).order_by(_roles.c.name)).scalars())

    def get_roles(self, account_id: int) -> frozenset[str]:
        rows = self.conn.execute(
            select(_roles.c.name)
            .select_from(_account_roles.join(_roles, _account_roles.c.role_id == _roles.c.id))
            .where(_account_roles.c.account_id == account_id)
        ).scalars()
        return frozenset(rows)

    def add_role(self, account_id: int, role_name: str) -> None:
        """Attach a role. NotFound for an unknown role, Conflict if already attached."""
        role_id = self.get_role_id(role_name)
        if role_id is None:
            raise NotFound(f"Unknown role: {role_name}")
        if role_name in self.get_roles(account_id):
            raise Conflict(f"Role already assigned: {role_name}")
        try:
            self.conn.execute(
                _account_roles.insert().values(account_id=account_id, role_id=role_id, assigned_at=utcnow())
            )
        except IntegrityError as exc:
            raise Conflict(f"Role already assigned: {role_name}") from exc

    def remove_role(self, account_id: int, role_name: str) -> None:
        """Detach a role. NotFound if the role is unknown or not attached."""
        role_id = self.get_role_id(role_name)
        if role_id is None:
            raise NotFound(f"Unknown role: {role_name}")
        result = self.conn.execute(
            _account_roles.delete().where(
                (_account_roles.c.account_id == account_id) & (_account_roles.c.role_id == role_id)
            )
        )
        if result.rowcount == 0:
            raise NotFound(f"Role not assigned: {role_name}")

    # ------------------------------------------------------------------
    # Credential tokens
    # ------------------------------------------------------------------

    def add_token(self, token: CredentialToken) -> int:
        """Insert a token row. Conflict on a digest collision (UNIQUE index)."""
        try:
            result = self.conn.execute(
                _tokens.insert().values(
                    account_id=token.account_id,
                    kind=token.kind.value,
                    token_hash=token.token_hash,
                    created_at=token.created_at or utcnow(),
                    expires_at=token.expires_at,
                    used=False,
                    issued_origin=token.issued_origin,
                )
            )
        except IntegrityError as exc:
            raise Conflict("Token collision") from exc
        return result.inserted_primary_key[0]

    def get_token(self, token_hash: str) -> CredentialToken | None:
        row = self.conn.execute(_tokens.select().where(_tokens.c.token_hash == token_hash)).fetchone()
        return _row_to_token(row) if row is not None else None

    def consume_token(self, token_hash: str, kind: TokenKind, now: datetime, origin: str | None = None) -> int:
        """Mark a valid token used and return its account id.

        The conditional UPDATE is the whole check: a token is consumed only if
        it exists with this kind, is unused and now < expires_at. When no row
        changes, the row is re-read to classify the failure.

        Raises TokenNotFound, TokenAlreadyUsed or TokenExpired.
        """
        values: dict = {"used": True, "used_at": now}
        if origin is not None:
            values["origin"] = origin
        result = self.conn.execute(
            _tokens.update()
            .where(
                (_tokens.c.token_hash == token_hash)
                & (_tokens.c.kind == kind.value)
                & (_tokens.c.used == False)  # noqa: E712
                & (_tokens.c.expires_at > now)
            )
            .values(**values)
        )
        if result.rowcount == 1:
            return self.conn.execute(
                select(_tokens.c.account_id).where(_tokens.c.token_hash == token_hash)
            ).scalar_one()

        token = self.get_token(token_hash)
        if token is None or token.kind != kind:
            raise TokenNotFound("Unknown token")
        if token.used:
            raise TokenAlreadyUsed("Token already used")
        raise TokenExpired("Token expired")

    def count_expired_tokens(self, now: datetime) -> int:
        """Count unused tokens whose expiry has passed."""
        return (
            self.conn.execute(
                select(func.count())
                .select_from(_tokens)
                .where((_tokens.c.used == False) & (_tokens.c.expires_at <= now))  # noqa: E712
            ).scalar()
            or 0
        )

    # ------------------------------------------------------------------
    # Login attempts (append-only)
    # ------------------------------------------------------------------

    def add_attempt(self, record: AttemptRecord) -> int:
        result = self.conn.execute(
            _attempts.insert().values(
                email=record.email,
                account_id=record.account_id,
                success=record.success,
                origin=record.origin,
                client=record.client,
                failure_reason=record.failure_reason,
                created_at=record.created_at or utcnow(),
            )
        )
        return result.inserted_primary_key[0]

    def login_history(self, account_id: int, limit: int = 50) -> list[AttemptRecord]:
        """Return the newest `limit` attempts for an account."""
        rows = self.conn.execute(
            _attempts.select()
            .where(_attempts.c.account_id == account_id)
            .order_by(_attempts.c.created_at.desc(), _attempts.c.id.desc())
            .limit(limit)
        ).fetchall()
        return [_row_to_attempt(r) for r in rows]

    def attempts_for_email(self, email: str) -> list[AttemptRecord]:
        rows = self.conn.execute(
            _attempts.select().where(_attempts.c.email == email).order_by(_attempts.c.id)
        ).fetchall()
        return [_row_to_attempt(r) for r in rows]

    # ------------------------------------------------------------------
    # External identity links
    # ------------------------------------------------------------------

    def get_external_link(self, provider: str, provider_key: str) -> ExternalIdentityLink | None:
        row = self.conn.execute(
            _external_logins.select().where(
                (_external_logins.c.provider == provider) & (_external_logins.c.provider_key == provider_key)
            )
        ).fetchone()
        return _row_to_link(row) if row is not None else None

    def add_external_link(self, link: ExternalIdentityLink) -> int:
        """Insert a link. Conflict if (provider, provider_key) is already bound."""
        try:
            result = self.conn.execute(
                _external_logins.insert().values(
                    account_id=link.account_id,
                    provider=link.provider,
                    provider_key=link.provider_key,
                    provider_display_name=link.provider_display_name,
                    created_at=link.created_at or utcnow(),
                )
            )
        except IntegrityError as exc:
            raise Conflict(f"External identity already linked: {link.provider}") from exc
        return result.inserted_primary_key[0]

    def list_external_links(self, account_id: int) -> list[ExternalIdentityLink]:
        rows = self.conn.execute(
            _external_logins.select().where(_external_logins.c.account_id == account_id).order_by(_external_logins.c.id)
        ).fetchall()
        return [_row_to_link(r) for r in rows]

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def add_session(self, session: AuthSession) -> int:
        now = session.created_at or utcnow()
        result = self.conn.execute(
            _sessions.insert().values(
                account_id=session.account_id,
                session_id=session.session_id,
                origin=session.origin,
                client=session.client,
                created_at=now,
                last_activity_at=session.last_activity_at or now,
                expires_at=session.expires_at,
                is_active=True,
            )
        )
        return result.inserted_primary_key[0]

    def get_session(self, session_id: str) -> AuthSession | None:
        row = self.conn.execute(_sessions.select().where(_sessions.c.session_id == session_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    def touch_session(self, session_id: str, now: datetime) -> None:
        self.conn.execute(
            _sessions.update().where(_sessions.c.session_id == session_id).values(last_activity_at=now)
        )

    def list_active_sessions(self, account_id: int, now: datetime) -> list[AuthSession]:
        rows = self.conn.execute(
            _sessions.select()
            .where(
                (_sessions.c.account_id == account_id)
                & (_sessions.c.is_active == True)  # noqa: E712
                & (_sessions.c.expires_at > now)
            )
            .order_by(_sessions.c.last_activity_at.desc())
        ).fetchall()
        return [_row_to_session(r) for r in rows]

    def deactivate_session(self, session_id: str) -> bool:
        result = self.conn.execute(
            _sessions.update().where(_sessions.c.session_id == session_id).values(is_active=False)
        )
        return result.rowcount > 0

    def deactivate_sessions(self, account_id: int, except_session_id: str | None = None) -> int:
        """Deactivate every active session of an account, optionally sparing one."""
        condition = (_sessions.c.account_id == account_id) & (_sessions.c.is_active == True)  # noqa: E712
        if except_session_id:
            condition = condition & (_sessions.c.session_id != except_session_id)
        return self.conn.execute(_sessions.update().where(condition).values(is_active=False)).rowcount

    def deactivate_expired_sessions(self, now: datetime) -> int:
        return self.conn.execute(
            _sessions.update()
            .where((_sessions.c.is_active == True) & (_sessions.c.expires_at <= now))  # noqa: E712
            .values(is_active=False)
        ).rowcount


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for accounts, tokens, attempts, external links and sessions.

    Usage:
        store = CredentialStore("sqlite:///:memory:")
        with store.begin() as tx:
            account = tx.get_by_email("alice@example.com")
        store.close()

    The single-shot helpers (get_by_id, get_by_email, ...) each open their own
    transaction. Multi-step operations must use begin().
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)
        self._ensure_default_roles()

    def _ensure_default_roles(self) -> None:
        """Seed the built-in roles. Idempotent, safe to call on every startup."""
        with self.begin() as tx:
            for name in DEFAULT_ROLES:
                tx.ensure_role(name)

    @contextmanager
    def begin(self) -> Iterator[StoreTransaction]:
        """Yield a StoreTransaction; commit on clean exit, roll back on exception."""
        with self.engine.begin() as conn:
            yield StoreTransaction(conn)

    # ------------------------------------------------------------------
    # Single-shot helpers
    # ------------------------------------------------------------------

    def get_by_id(self, account_id: int) -> Account | None:
        with self.begin() as tx:
            return tx.get_by_id(account_id)

    def get_by_email(self, email: str) -> Account | None:
        with self.begin() as tx:
            return tx.get_by_email(email)

    def has_accounts(self) -> bool:
        with self.begin() as tx:
            return tx.count_accounts() > 0

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
        except SQLAlchemyError:
            logger.warning("Credential store ping failed", exc_info=True)
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row, roles: frozenset[str]) -> Account:
    return Account(
        id=row.id,
        email=row.email,
        first_name=row.first_name,
        last_name=row.last_name,
        email_confirmed=bool(row.email_confirmed),
        email_confirmed_at=_as_utc(row.email_confirmed_at),
        is_active=bool(row.is_active),
        is_blocked=bool(row.is_blocked),
        blocked_reason=row.blocked_reason,
        blocked_at=_as_utc(row.blocked_at),
        failed_attempts=row.failed_attempts or 0,
        locked_until=_as_utc(row.locked_until),
        last_login_at=_as_utc(row.last_login_at),
        last_login_ip=row.last_login_ip,
        created_at=_as_utc(row.created_at),
        roles=roles,
    )


def _row_to_token(row) -> CredentialToken:
    return CredentialToken(
        id=row.id,
        account_id=row.account_id,
        kind=TokenKind(row.kind),
        token_hash=row.token_hash,
        created_at=_as_utc(row.created_at),
        expires_at=_as_utc(row.expires_at),
        used=bool(row.used),
        used_at=_as_utc(row.used_at),
        issued_origin=row.issued_origin,
        origin=row.origin,
    )


def _row_to_attempt(row) -> AttemptRecord:
    return AttemptRecord(
        id=row.id,
        email=row.email,
        account_id=row.account_id,
        success=bool(row.success),
        origin=row.origin,
        client=row.client,
        failure_reason=row.failure_reason,
        created_at=_as_utc(row.created_at),
    )


def _row_to_link(row) -> ExternalIdentityLink:
    return ExternalIdentityLink(
        id=row.id,
        account_id=row.account_id,
        provider=row.provider,
        provider_key=row.provider_key,
        provider_display_name=row.provider_display_name,
        created_at=_as_utc(row.created_at),
    )


def _row_to_session(row) -> AuthSession:
    return AuthSession(
        id=row.id,
        account_id=row.account_id,
        session_id=row.session_id,
        origin=row.origin,
        client=row.client,
        created_at=_as_utc(row.created_at),
        last_activity_at=_as_utc(row.last_activity_at),
        expires_at=_as_utc(row.expires_at),
        is_active=bool(row.is_active),
    )
