"""
identity/engine.py -- Authentication Engine.

Orchestrates registration, login, email confirmation, password reset and
external-identity login by composing the store, password hasher, token
issuer, attempt ledger and lockout policy. One public method per operation;
each is a short unit of work with no in-process state carried between calls.

Result contract:
  Every credential operation returns plain data: an AuthResult (success
  flag, outcome tag, human-readable message, optional Account) or a bool
  where the outcome must be uniform. Component exceptions (identity.errors)
  never escape them. Lookups and session bookkeeping are the exception: a
  store outage there raises TransientStoreFailure.
  Security-relevant branches collapse causes on purpose:
    - unknown email and wrong password  -> INVALID_CREDENTIALS
    - unknown / used / expired token    -> False or INVALID_OR_EXPIRED_TOKEN
    - reset request for unknown email   -> True, same as a known email
  Store outages (SQLAlchemyError) are logged with traceback and reported as
  STORE_UNAVAILABLE, distinct from business-rule failures, with a generic
  message. The engine never retries.

Login order (each branch appends exactly one attempt record):
  1. unknown email            -> INVALID_CREDENTIALS (dummy bcrypt for timing)
  2. blocked                  -> ACCOUNT_BLOCKED, reason included
  3. locked_until > now       -> TOO_MANY_ATTEMPTS, remaining minutes
  4. wrong password           -> counter +1, maybe lock, INVALID_CREDENTIALS
  5. deactivated              -> INVALID_CREDENTIALS
  6. email not confirmed      -> EMAIL_NOT_CONFIRMED (only after a correct password)
  7. success                  -> counters cleared, last-login stamped

bcrypt work always happens outside a store transaction so no row or file
lock is held across the deliberately slow hash.

Notifications are requested only after the unit of work has committed. A
failing gateway is logged and never changes the operation's result.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from urllib.parse import urlencode

from sqlalchemy.exc import SQLAlchemyError

from identity.errors import Conflict, NotFound, TokenError, TransientStoreFailure, ValidationFailure
from identity.ledger import AttemptLedger
from identity.lockout import LockoutPolicy
from identity.models import Account, AttemptRecord, AuthSession, ExternalIdentity, ExternalIdentityLink, TokenKind
from identity.notifications import LoggingNotifier, NotificationGateway
from identity.passwords import MIN_PASSWORD_LENGTH, PasswordHasher
from identity.store import CredentialStore, utcnow
from identity.tokens import TokenIssuer

logger = logging.getLogger("identitycore.engine")


class AuthOutcome(str, Enum):
    SUCCESS = "success"
    EMAIL_TAKEN = "email_taken"
    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_BLOCKED = "account_blocked"
    TOO_MANY_ATTEMPTS = "too_many_attempts"
    EMAIL_NOT_CONFIRMED = "email_not_confirmed"
    INVALID_OR_EXPIRED_TOKEN = "invalid_or_expired_token"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    VALIDATION_FAILED = "validation_failed"
    STORE_UNAVAILABLE = "store_unavailable"


_MESSAGES = {
    AuthOutcome.EMAIL_TAKEN: "An account with this email already exists.",
    AuthOutcome.INVALID_CREDENTIALS: "Invalid email or password.",
    AuthOutcome.EMAIL_NOT_CONFIRMED: "Please confirm your email address before signing in.",
    AuthOutcome.INVALID_OR_EXPIRED_TOKEN: "Invalid or expired token.",
    AuthOutcome.STORE_UNAVAILABLE: "The service is temporarily unavailable. Please try again later.",
}


@dataclass(frozen=True)
class AuthResult:
    success: bool
    outcome: AuthOutcome
    message: str
    account: Account | None = None
    retry_after_minutes: int | None = None


@dataclass(frozen=True)
class SweepReport:
    sessions_closed: int
    expired_tokens: int


@dataclass(frozen=True)
class AuthPolicy:
    """Every tunable constant of the engine, passed in at construction."""

    max_failed_attempts: int = 5
    lockout_duration: timedelta = timedelta(minutes=15)
    confirmation_token_ttl: timedelta = timedelta(hours=24)
    reset_token_ttl: timedelta = timedelta(hours=1)
    default_role: str = "member"
    public_base_url: str = "http://localhost:8000"
    confirm_email_path: str = "/api/v1/auth/confirm-email"
    reset_password_path: str = "/reset-password"

    @classmethod
    def from_settings(cls, settings) -> AuthPolicy:
        """Build a policy from core.config.Settings (or anything shaped like it)."""
        return cls(
            max_failed_attempts=settings.max_failed_attempts,
            lockout_duration=timedelta(minutes=settings.lockout_minutes),
            confirmation_token_ttl=timedelta(hours=settings.confirmation_token_ttl_hours),
            reset_token_ttl=timedelta(hours=settings.reset_token_ttl_hours),
            default_role=settings.default_role,
            public_base_url=settings.public_base_url,
        )

    @property
    def lockout(self) -> LockoutPolicy:
        return LockoutPolicy(self.max_failed_attempts, self.lockout_duration)

    def confirmation_link(self, token: str) -> str:
        return f"{self.public_base_url.rstrip('/')}{self.confirm_email_path}?{urlencode({'token': token})}"

    def reset_link(self, token: str) -> str:
        return f"{self.public_base_url.rstrip('/')}{self.reset_password_path}?{urlencode({'token': token})}"


def _fail(outcome: AuthOutcome, message: str | None = None, **extra) -> AuthResult:
    return AuthResult(False, outcome, message or _MESSAGES[outcome], **extra)


def _unavailable(operation: str) -> AuthResult:
    logger.exception("Credential store failure during %s", operation)
    return _fail(AuthOutcome.STORE_UNAVAILABLE)


@contextmanager
def _store_errors() -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as exc:
        raise TransientStoreFailure("Credential store unavailable") from exc


class AuthEngine:
    """Credential lifecycle operations over one CredentialStore.

    Usage:
        engine = AuthEngine(CredentialStore(url), notifier=BackgroundNotifier(gateway),
                            policy=AuthPolicy.from_settings(get_settings()))
        result = engine.login("alice@example.com", "Str0ng!Pass", origin="203.0.113.7")
        if result.success:
            roles = result.account.roles  # hand to the session layer
    """

    def __init__(
        self,
        store: CredentialStore,
        notifier: NotificationGateway | None = None,
        hasher: PasswordHasher | None = None,
        policy: AuthPolicy | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._notifier = notifier or LoggingNotifier()
        self._hasher = hasher or PasswordHasher()
        self._policy = policy or AuthPolicy()
        self._lockout = self._policy.lockout
        self._clock = clock
        self._tokens = TokenIssuer(clock)
        self._ledger = AttemptLedger(store, clock)

    @property
    def policy(self) -> AuthPolicy:
        return self._policy

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(
        self,
        email: str,
        password: str,
        first_name: str | None = None,
        last_name: str | None = None,
        origin: str | None = None,
    ) -> AuthResult:
        """Create an unconfirmed account and request a confirmation message."""
        try:
            password_hash = self._hasher.hash(password)
        except ValidationFailure as exc:
            return _fail(AuthOutcome.VALIDATION_FAILED, str(exc))
        now = self._clock()
        try:
            with self._store.begin() as tx:
                if tx.email_exists(email):
                    return _fail(AuthOutcome.EMAIL_TAKEN)
                account_id = tx.add_account(
                    Account(
                        email=email,
                        first_name=first_name,
                        last_name=last_name,
                        email_confirmed=False,
                        is_active=True,
                        created_at=now,
                    ),
                    password_hash,
                )
                self._attach_default_role(tx, account_id)
                token = self._tokens.issue(
                    tx, account_id, TokenKind.confirmation, self._policy.confirmation_token_ttl, origin
                )
                account = tx.get_by_id(account_id)
        except Conflict:
            # Lost a race with a concurrent registration of the same email
            return _fail(AuthOutcome.EMAIL_TAKEN)
        except SQLAlchemyError:
            return _unavailable("register")

        logger.info("Registered account_id=%s email=%s", account.id, account.email)
        self._notify("send_confirmation", account.email, token, self._policy.confirmation_link(token))
        return AuthResult(
            True,
            AuthOutcome.SUCCESS,
            "Registration successful. Check your email to confirm your address.",
            account=account,
        )

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login(self, email: str, password: str, origin: str, client: str | None = None) -> AuthResult:
        """Password login. Appends exactly one attempt record whatever the outcome."""
        account_id: int | None = None
        try:
            result, account_id, reason = self._login(email, password, origin)
        except SQLAlchemyError:
            result, reason = _unavailable("login"), "store unavailable"
        self._ledger.record(email, account_id, result.success, origin, client, reason)
        return result

    def _login(self, email: str, password: str, origin: str) -> tuple[AuthResult, int | None, str | None]:
        now = self._clock()
        with self._store.begin() as tx:
            account = tx.get_by_email(email)
            password_hash = tx.get_password_hash(account.id) if account is not None else None

        if account is None:
            self._hasher.verify_dummy(password)
            logger.info("Login failed: unknown email %s", email)
            return _fail(AuthOutcome.INVALID_CREDENTIALS), None, "account not found"

        if account.is_blocked:
            logger.info("Login refused: account_id=%s is blocked", account.id)
            return (
                _fail(AuthOutcome.ACCOUNT_BLOCKED, f"Your account is blocked. Reason: {account.blocked_reason}"),
                account.id,
                "account blocked",
            )

        decision = self._lockout.evaluate(account.locked_until, now)
        if not decision.allowed:
            logger.info("Login refused: account_id=%s locked until %s", account.id, decision.locked_until)
            return self._too_many_attempts(decision.remaining_minutes), account.id, "account locked"

        if not self._hasher.verify(password, password_hash):
            with self._store.begin() as tx:
                tx.increment_failed_attempts(account.id)
                failures = self._ledger.count_recent_failures(account.id, tx)
                locked_until = self._lockout.lock_after_failure(failures, now)
                if locked_until is not None:
                    tx.update_account(account.id, locked_until=locked_until)
            if locked_until is not None:
                logger.warning(
                    "Account_id=%s locked until %s after %d failed attempts", account.id, locked_until, failures
                )
                return _fail(AuthOutcome.INVALID_CREDENTIALS), account.id, "lockout threshold reached"
            logger.info("Login failed: wrong password for account_id=%s (%d failures)", account.id, failures)
            return _fail(AuthOutcome.INVALID_CREDENTIALS), account.id, "invalid password"

        if not account.is_active:
            return _fail(AuthOutcome.INVALID_CREDENTIALS), account.id, "account inactive"

        if not account.email_confirmed:
            return _fail(AuthOutcome.EMAIL_NOT_CONFIRMED), account.id, "email not confirmed"

        with self._store.begin() as tx:
            # Re-check under the row lock: a concurrent failure or an admin block
            # may have landed while bcrypt was running.
            current = tx.get_by_id(account.id, for_update=True)
            if current.is_blocked:
                return (
                    _fail(AuthOutcome.ACCOUNT_BLOCKED, f"Your account is blocked. Reason: {current.blocked_reason}"),
                    account.id,
                    "account blocked",
                )
            decision = self._lockout.evaluate(current.locked_until, now)
            if not decision.allowed:
                return self._too_many_attempts(decision.remaining_minutes), account.id, "account locked"
            tx.update_account(
                account.id,
                failed_attempts=0,
                locked_until=None,
                last_login_at=now,
                last_login_ip=origin,
            )
            account = tx.get_by_id(account.id)
        logger.info("Login succeeded for account_id=%s", account.id)
        return AuthResult(True, AuthOutcome.SUCCESS, "Signed in.", account=account), account.id, None

    @staticmethod
    def _too_many_attempts(minutes: int) -> AuthResult:
        return _fail(
            AuthOutcome.TOO_MANY_ATTEMPTS,
            f"Too many failed login attempts. Try again in {minutes} minutes.",
            retry_after_minutes=minutes,
        )

    # ------------------------------------------------------------------
    # Email confirmation
    # ------------------------------------------------------------------

    def confirm_email(self, token: str) -> bool:
        """Consume a confirmation token. Any failure is a plain False."""
        now = self._clock()
        try:
            with self._store.begin() as tx:
                account_id = self._tokens.consume(tx, token, TokenKind.confirmation)
                tx.update_account(account_id, email_confirmed=True, email_confirmed_at=now)
                account = tx.get_by_id(account_id)
        except TokenError as exc:
            logger.info("Email confirmation rejected: %s", type(exc).__name__)
            return False
        except SQLAlchemyError:
            logger.exception("Credential store failure during confirm_email")
            return False

        logger.info("Email confirmed for account_id=%s", account_id)
        self._notify("send_welcome", account.email, account.display_name)
        return True

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def request_password_reset(self, email: str, origin: str | None = None) -> bool:
        """Issue a reset token if the email is known. Always returns True."""
        try:
            with self._store.begin() as tx:
                account = tx.get_by_email(email)
                token = None
                if account is not None:
                    token = self._tokens.issue(tx, account.id, TokenKind.reset, self._policy.reset_token_ttl, origin)
        except SQLAlchemyError:
            logger.exception("Credential store failure during request_password_reset")
            return True

        if token is not None:
            self._notify("send_reset", account.email, token, self._policy.reset_link(token))
        else:
            logger.info("Password reset requested for unknown email %s", email)
        return True

    def reset_password(self, token: str, new_password: str, origin: str | None = None) -> AuthResult:
        """Consume a reset token and set a new password.

        Clears any lockout and ends every open session of the account.
        """
        try:
            password_hash = self._hasher.hash(new_password)
        except ValidationFailure as exc:
            return _fail(AuthOutcome.VALIDATION_FAILED, str(exc))
        try:
            with self._store.begin() as tx:
                account_id = self._tokens.consume(tx, token, TokenKind.reset, origin=origin)
                tx.set_password_hash(account_id, password_hash)
                tx.update_account(account_id, failed_attempts=0, locked_until=None)
                tx.deactivate_sessions(account_id)
                account = tx.get_by_id(account_id)
        except TokenError as exc:
            logger.info("Password reset rejected: %s", type(exc).__name__)
            return _fail(AuthOutcome.INVALID_OR_EXPIRED_TOKEN)
        except SQLAlchemyError:
            return _unavailable("reset_password")

        logger.info("Password reset completed for account_id=%s", account_id)
        return AuthResult(True, AuthOutcome.SUCCESS, "Your password has been changed.", account=account)

    def change_password(self, account_id: int, current_password: str, new_password: str) -> AuthResult:
        """Replace the password of a signed-in account after re-verifying the current one."""
        try:
            with self._store.begin() as tx:
                password_hash = tx.get_password_hash(account_id)
            if password_hash is None:
                return _fail(AuthOutcome.NOT_FOUND, "Account not found.")
            if not self._hasher.verify(current_password, password_hash):
                logger.warning("Password change refused for account_id=%s: wrong current password", account_id)
                return _fail(AuthOutcome.INVALID_CREDENTIALS, "Current password is incorrect.")
            new_hash = self._hasher.hash(new_password)
            with self._store.begin() as tx:
                tx.set_password_hash(account_id, new_hash)
                account = tx.get_by_id(account_id)
        except ValidationFailure as exc:
            return _fail(AuthOutcome.VALIDATION_FAILED, str(exc))
        except SQLAlchemyError:
            return _unavailable("change_password")
        logger.info("Password changed for account_id=%s", account_id)
        return AuthResult(True, AuthOutcome.SUCCESS, "Your password has been changed.", account=account)

    # ------------------------------------------------------------------
    # External identity
    # ------------------------------------------------------------------

    def external_login(self, identity: ExternalIdentity, origin: str, client: str | None = None) -> AuthResult:
        """Sign in through an external provider's callback data.

        Trust boundary: a newly created account is marked confirmed without our
        own confirmation token because the provider already vouched for the
        email. Callers must only pass identities whose email the provider
        reports as verified.
        """
        email_for_ledger = identity.email or f"{identity.provider}:{identity.provider_key}"
        created = False
        try:
            try:
                result, created = self._external_login(identity, origin)
            except Conflict:
                # A concurrent callback for the same identity won the insert;
                # the retry finds its link.
                result, created = self._external_login(identity, origin)
        except Conflict:
            result = _fail(AuthOutcome.CONFLICT, "This external identity could not be linked. Please try again.")
        except ValidationFailure as exc:
            result = _fail(AuthOutcome.VALIDATION_FAILED, str(exc))
        except SQLAlchemyError:
            result = _unavailable("external_login")

        account_id = result.account.id if result.account is not None else None
        reason = None if result.success else f"external login: {result.outcome.value}"
        self._ledger.record(email_for_ledger, account_id, result.success, origin, client, reason)

        if created:
            self._notify("send_welcome", result.account.email, result.account.display_name)
        return result

    def _external_login(self, identity: ExternalIdentity, origin: str) -> tuple[AuthResult, bool]:
        now = self._clock()
        created = False
        with self._store.begin() as tx:
            link = tx.get_external_link(identity.provider, identity.provider_key)
            account = tx.get_by_id(link.account_id) if link is not None else None

            if account is None:
                account = tx.get_by_email(identity.email) if identity.email else None
                if account is None:
                    if not identity.email:
                        raise ValidationFailure(f"{identity.provider} did not supply an email address.")
                    account_id = tx.add_account(
                        Account(
                            email=identity.email,
                            first_name=identity.first_name,
                            last_name=identity.last_name,
                            email_confirmed=True,
                            email_confirmed_at=now,
                            is_active=True,
                            created_at=now,
                        ),
                        self._hasher.unusable_hash(),
                    )
                    self._attach_default_role(tx, account_id)
                    account = tx.get_by_id(account_id)
                    created = True
                    logger.info("Created account_id=%s from %s identity", account_id, identity.provider)

            if account.is_blocked:
                return (
                    _fail(
                        AuthOutcome.ACCOUNT_BLOCKED,
                        f"Your account is blocked. Reason: {account.blocked_reason}",
                        account=account,
                    ),
                    False,
                )

            if link is None:
                tx.add_external_link(
                    ExternalIdentityLink(
                        account_id=account.id,
                        provider=identity.provider,
                        provider_key=identity.provider_key,
                        provider_display_name=identity.provider_display_name,
                        created_at=now,
                    )
                )
                logger.info("Linked %s identity to account_id=%s", identity.provider, account.id)

            tx.update_account(account.id, last_login_at=now, last_login_ip=origin)
            account = tx.get_by_id(account.id)

        return AuthResult(True, AuthOutcome.SUCCESS, f"Signed in with {identity.provider}.", account=account), created

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    # Lookups and session bookkeeping raise TransientStoreFailure on a store
    # outage instead of returning an AuthResult.

    def get_account(self, account_id: int) -> Account | None:
        with _store_errors():
            return self._store.get_by_id(account_id)

    def get_account_by_email(self, email: str) -> Account | None:
        with _store_errors():
            return self._store.get_by_email(email)

    def is_email_confirmed(self, email: str) -> bool:
        account = self.get_account_by_email(email)
        return account.email_confirmed if account is not None else False

    def login_history(self, account_id: int, limit: int = 50) -> list[AttemptRecord]:
        with _store_errors():
            return self._ledger.history(account_id, limit)

    def list_roles(self) -> list[str]:
        with _store_errors(), self._store.begin() as tx:
            return tx.list_roles()

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def block_account(self, account_id: int, reason: str) -> AuthResult:
        def apply(tx, account: Account) -> AuthResult | None:
            if account.is_blocked:
                return _fail(AuthOutcome.CONFLICT, "Account is already blocked.")
            tx.update_account(account_id, is_blocked=True, blocked_at=self._clock(), blocked_reason=reason)
            tx.deactivate_sessions(account_id)
            return None

        return self._admin_update(account_id, apply, "Account blocked.", f"blocked (reason: {reason})")

    def unblock_account(self, account_id: int) -> AuthResult:
        def apply(tx, account: Account) -> AuthResult | None:
            if not account.is_blocked:
                return _fail(AuthOutcome.CONFLICT, "Account is not blocked.")
            tx.update_account(account_id, is_blocked=False, blocked_at=None, blocked_reason=None)
            return None

        return self._admin_update(account_id, apply, "Account unblocked.", "unblocked")

    def confirm_email_manually(self, account_id: int) -> AuthResult:
        def apply(tx, account: Account) -> AuthResult | None:
            if account.email_confirmed:
                return _fail(AuthOutcome.CONFLICT, "Email is already confirmed.")
            tx.update_account(account_id, email_confirmed=True, email_confirmed_at=self._clock())
            return None

        return self._admin_update(account_id, apply, "Email confirmed.", "email confirmed manually")

    def admin_reset_password(self, account_id: int, new_password: str) -> AuthResult:
        if not new_password or len(new_password.strip()) < MIN_PASSWORD_LENGTH:
            return _fail(
                AuthOutcome.VALIDATION_FAILED, f"Password must be at least {MIN_PASSWORD_LENGTH} characters."
            )
        try:
            password_hash = self._hasher.hash(new_password)
        except ValidationFailure as exc:
            return _fail(AuthOutcome.VALIDATION_FAILED, str(exc))

        def apply(tx, account: Account) -> AuthResult | None:
            tx.set_password_hash(account_id, password_hash)
            tx.update_account(account_id, failed_attempts=0, locked_until=None)
            tx.deactivate_sessions(account_id)
            return None

        return self._admin_update(account_id, apply, "Password changed.", "password reset by admin")

    def assign_role(self, account_id: int, role: str) -> AuthResult:
        def apply(tx, account: Account) -> AuthResult | None:
            tx.add_role(account_id, role)
            return None

        return self._admin_update(account_id, apply, "Role assigned.", f"role {role} assigned")

    def remove_role(self, account_id: int, role: str) -> AuthResult:
        def apply(tx, account: Account) -> AuthResult | None:
            tx.remove_role(account_id, role)
            return None

        return self._admin_update(account_id, apply, "Role removed.", f"role {role} removed")

    def _admin_update(self, account_id: int, apply, message: str, log_action: str) -> AuthResult:
        try:
            with self._store.begin() as tx:
                account = tx.get_by_id(account_id, for_update=True)
                if account is None:
                    return _fail(AuthOutcome.NOT_FOUND, "Account not found.")
                refused = apply(tx, account)
                if refused is not None:
                    return refused
                account = tx.get_by_id(account_id)
        except NotFound as exc:
            return _fail(AuthOutcome.NOT_FOUND, str(exc))
        except Conflict as exc:
            return _fail(AuthOutcome.CONFLICT, str(exc))
        except SQLAlchemyError:
            return _unavailable(log_action)
        logger.info("Account_id=%s %s", account_id, log_action)
        return AuthResult(True, AuthOutcome.SUCCESS, message, account=account)

    # ------------------------------------------------------------------
    # Sessions and maintenance
    # ------------------------------------------------------------------

    def open_session(
        self,
        account_id: int,
        session_id: str,
        expires_at: datetime,
        origin: str | None = None,
        client: str | None = None,
    ) -> None:
        """Record an issued access token so it can be listed and revoked."""
        with _store_errors(), self._store.begin() as tx:
            tx.add_session(
                AuthSession(
                    account_id=account_id,
                    session_id=session_id,
                    expires_at=expires_at,
                    origin=origin,
                    client=client,
                    created_at=self._clock(),
                )
            )

    def is_session_active(self, session_id: str) -> bool:
        now = self._clock()
        with _store_errors(), self._store.begin() as tx:
            session = tx.get_session(session_id)
            if session is None or not session.is_active or session.expires_at <= now:
                return False
            tx.touch_session(session_id, now)
        return True

    def end_session(self, session_id: str) -> bool:
        with _store_errors(), self._store.begin() as tx:
            return tx.deactivate_session(session_id)

    def terminate_sessions(self, account_id: int, except_session_id: str | None = None) -> int:
        with _store_errors(), self._store.begin() as tx:
            count = tx.deactivate_sessions(account_id, except_session_id)
        logger.info("Terminated %d sessions for account_id=%s", count, account_id)
        return count

    def list_active_sessions(self, account_id: int) -> list[AuthSession]:
        with _store_errors(), self._store.begin() as tx:
            return tx.list_active_sessions(account_id, self._clock())

    def sweep_expired(self) -> SweepReport:
        """Maintenance: close sessions past expiry and count dead tokens.

        Externally triggered (CLI / scheduler). Expired tokens are kept for
        audit; they are already rejected by consume().
        """
        now = self._clock()
        with _store_errors(), self._store.begin() as tx:
            closed = tx.deactivate_expired_sessions(now)
            expired = tx.count_expired_tokens(now)
        logger.info("Sweep closed %d expired sessions; %d unused tokens past expiry", closed, expired)
        return SweepReport(sessions_closed=closed, expired_tokens=expired)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _attach_default_role(self, tx, account_id: int) -> None:
        tx.ensure_role(self._policy.default_role)
        tx.add_role(account_id, self._policy.default_role)

    def _notify(self, method: str, *args) -> None:
        """Best-effort notification request. Never raises."""
        try:
            getattr(self._notifier, method)(*args)
        except Exception:
            logger.exception("Notification %s could not be dispatched", method)
