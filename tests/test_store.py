"""Tests for identity/store.py -- CredentialStore and StoreTransaction.

Uses in-memory SQLite so no files are created.
"""

from datetime import datetime, timedelta, timezone

import pytest

from identity.errors import Conflict, NotFound, TokenAlreadyUsed, TokenExpired, TokenNotFound
from identity.models import Account, AuthSession, CredentialToken, ExternalIdentityLink, TokenKind
from identity.store import CredentialStore

NOW = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)


def _add(store: CredentialStore, email: str = "a@example.com") -> int:
    with store.begin() as tx:
        return tx.add_account(Account(email=email, created_at=NOW), "hash")


def _token(account_id: int, digest: str = "d" * 64, kind: TokenKind = TokenKind.reset) -> CredentialToken:
    return CredentialToken(
        account_id=account_id, kind=kind, token_hash=digest, expires_at=NOW + timedelta(hours=1), created_at=NOW
    )


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


class TestAccounts:
    def test_add_and_fetch(self, store) -> None:
        account_id = _add(store)
        account = store.get_by_id(account_id)
        assert account.email == "a@example.com"
        assert account.created_at == NOW
        assert account.failed_attempts == 0
        assert store.get_by_email("a@example.com").id == account_id

    def test_duplicate_email_is_conflict(self, store) -> None:
        _add(store)
        with pytest.raises(Conflict):
            _add(store)

    def test_email_lookup_is_exact(self, store) -> None:
        _add(store)
        assert store.get_by_email("A@example.com") is None
        with store.begin() as tx:
            assert tx.email_exists("a@example.com")
            assert not tx.email_exists("A@example.com")

    def test_password_hash_only_via_accessor(self, store) -> None:
        account_id = _add(store)
        with store.begin() as tx:
            assert tx.get_password_hash(account_id) == "hash"
            tx.set_password_hash(account_id, "other")
            assert tx.get_password_hash(account_id) == "other"
        assert not hasattr(store.get_by_id(account_id), "password_hash")

    def test_update_rejects_unknown_fields(self, store) -> None:
        account_id = _add(store)
        with store.begin() as tx, pytest.raises(ValueError, match="password_hash"):
            tx.update_account(account_id, password_hash="x")

    def test_update_missing_account_returns_false(self, store) -> None:
        with store.begin() as tx:
            assert tx.update_account(999, is_blocked=True) is False

    def test_increment_is_cumulative(self, store) -> None:
        account_id = _add(store)
        with store.begin() as tx:
            assert tx.increment_failed_attempts(account_id) == 1
            assert tx.increment_failed_attempts(account_id) == 2

    def test_rollback_on_exception(self, store) -> None:
        with pytest.raises(RuntimeError), store.begin() as tx:
            tx.add_account(Account(email="ghost@example.com", created_at=NOW), "hash")
            raise RuntimeError("abort")
        assert store.get_by_email("ghost@example.com") is None

    def test_has_accounts(self, store) -> None:
        assert not store.has_accounts()
        _add(store)
        assert store.has_accounts()

    def test_ping(self, store) -> None:
        assert store.ping() is True


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------


class TestRoles:
    def test_default_roles_seeded_once(self, store) -> None:
        with store.begin() as tx:
            assert tx.list_roles() == ["admin", "member"]
            tx.ensure_role("member")
            assert tx.list_roles() == ["admin", "member"]

    def test_add_and_remove_role(self, store) -> None:
        account_id = _add(store)
        with store.begin() as tx:
            tx.add_role(account_id, "admin")
            assert tx.get_roles(account_id) == frozenset({"admin"})
            with pytest.raises(Conflict):
                tx.add_role(account_id, "admin")
            tx.remove_role(account_id, "admin")
            with pytest.raises(NotFound):
                tx.remove_role(account_id, "admin")
            with pytest.raises(NotFound):
                tx.add_role(account_id, "wizard")


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------


class TestTokens:
    def test_consume_once(self, store) -> None:
        account_id = _add(store)
        with store.begin() as tx:
            tx.add_token(_token(account_id))
            assert tx.consume_token("d" * 64, TokenKind.reset, NOW, origin="10.0.0.1") == account_id
            with pytest.raises(TokenAlreadyUsed):
                tx.consume_token("d" * 64, TokenKind.reset, NOW)
            token = tx.get_token("d" * 64)
        assert token.used and token.used_at == NOW and token.origin == "10.0.0.1"

    def test_expiry_boundary_is_exclusive(self, store) -> None:
        account_id = _add(store)
        with store.begin() as tx:
            tx.add_token(_token(account_id))
            with pytest.raises(TokenExpired):
                tx.consume_token("d" * 64, TokenKind.reset, NOW + timedelta(hours=1))

    def test_wrong_kind_is_not_found(self, store) -> None:
        account_id = _add(store)
        with store.begin() as tx:
            tx.add_token(_token(account_id))
            with pytest.raises(TokenNotFound):
                tx.consume_token("d" * 64, TokenKind.confirmation, NOW)
            with pytest.raises(TokenNotFound):
                tx.consume_token("e" * 64, TokenKind.reset, NOW)

    def test_digest_collision_is_conflict(self, store) -> None:
        account_id = _add(store)
        with store.begin() as tx:
            tx.add_token(_token(account_id))
        with pytest.raises(Conflict), store.begin() as tx:
            tx.add_token(_token(account_id))

    def test_count_expired_ignores_used(self, store) -> None:
        account_id = _add(store)
        with store.begin() as tx:
            tx.add_token(_token(account_id, "a" * 64))
            tx.add_token(_token(account_id, "b" * 64))
            tx.consume_token("a" * 64, TokenKind.reset, NOW)
            assert tx.count_expired_tokens(NOW) == 0
            assert tx.count_expired_tokens(NOW + timedelta(hours=2)) == 1


# ---------------------------------------------------------------------------
# External links and sessions
# ---------------------------------------------------------------------------


def test_external_link_is_unique_per_provider_key(store) -> None:
    first = _add(store, "a@example.com")
    second = _add(store, "b@example.com")
    with store.begin() as tx:
        tx.add_external_link(ExternalIdentityLink(account_id=first, provider="github", provider_key="1", created_at=NOW))
    with pytest.raises(Conflict), store.begin() as tx:
        tx.add_external_link(
            ExternalIdentityLink(account_id=second, provider="github", provider_key="1", created_at=NOW)
        )
    with store.begin() as tx:
        assert tx.get_external_link("github", "1").account_id == first
        assert tx.get_external_link("google", "1") is None


def test_session_lifecycle(store) -> None:
    account_id = _add(store)
    with store.begin() as tx:
        tx.add_session(
            AuthSession(account_id=account_id, session_id="s1", expires_at=NOW + timedelta(hours=1), created_at=NOW)
        )
        tx.add_session(
            AuthSession(account_id=account_id, session_id="s2", expires_at=NOW + timedelta(minutes=5), created_at=NOW)
        )
        assert len(tx.list_active_sessions(account_id, NOW)) == 2
        assert tx.deactivate_expired_sessions(NOW + timedelta(minutes=5)) == 1
        assert tx.deactivate_sessions(account_id, except_session_id="s1") == 0
        assert tx.deactivate_sessions(account_id) == 1
        assert tx.get_session("s1").is_active is False
