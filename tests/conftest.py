"""
tests/conftest.py -- Shared test fixtures for the identity engine and API.

This module provides:
  - FakeClock / RecordingNotifier: deterministic time and captured messages
  - store / engine: in-memory CredentialStore and an AuthEngine over it
  - confirmed_account: a registered, email-confirmed account
  - api_client: TestClient over a named shared-memory DB with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required for
the API fixture because TestClient runs route handlers in a thread pool.
Plain :memory: DBs are per-connection and would present a blank schema to
each worker thread. The named URI format
(file:name?mode=memory&cache=shared&uri=true) shares one in-memory instance
across all connections in the same process.

DEBUG, BCRYPT_ROUNDS and LOGIN_RATE_LIMIT must be set before any core/api
import so get_settings() auto-generates SECRET_KEY, hashes cheaply, and the
per-IP limiter does not trip during a module's worth of logins.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

# CRITICAL: set before any core/identity/api import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from identity.engine import AuthEngine, AuthPolicy
from identity.models import Account
from identity.passwords import PasswordHasher
from identity.store import CredentialStore

PASSWORD = "Str0ng!Pass"


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock the tests move by hand."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@dataclass
class RecordingNotifier:
    """NotificationGateway that keeps every request in memory."""

    confirmations: list[tuple[str, str, str]] = field(default_factory=list)
    resets: list[tuple[str, str, str]] = field(default_factory=list)
    welcomes: list[tuple[str, str]] = field(default_factory=list)

    def send_confirmation(self, email: str, token: str, link: str) -> None:
        self.confirmations.append((email, token, link))

    def send_reset(self, email: str, token: str, link: str) -> None:
        self.resets.append((email, token, link))

    def send_welcome(self, email: str, name: str) -> None:
        self.welcomes.append((email, name))

    def last_confirmation_token(self, email: str) -> str:
        return [t for e, t, _ in self.confirmations if e == email][-1]

    def last_reset_token(self, email: str) -> str:
        return [t for e, t, _ in self.resets if e == email][-1]


# ---------------------------------------------------------------------------
# Engine fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def hasher() -> PasswordHasher:
    return PasswordHasher(rounds=4)


@pytest.fixture
def store() -> Generator[CredentialStore, None, None]:
    s = CredentialStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def engine(store, notifier, hasher, clock) -> AuthEngine:
    return AuthEngine(store, notifier=notifier, hasher=hasher, policy=AuthPolicy(), clock=clock)


@pytest.fixture
def confirmed_account(engine, notifier) -> Account:
    """alice@example.com, registered and confirmed, password PASSWORD."""
    result = engine.register("alice@example.com", PASSWORD, first_name="Alice", origin="198.51.100.4")
    assert result.success
    assert engine.confirm_email(notifier.last_confirmation_token("alice@example.com"))
    return engine.get_account(result.account.id)


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(store: CredentialStore, engine: AuthEngine):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store and engine into app.state and mocks the OAuth
    registry so no provider metadata is fetched. The sweep task is a
    long-sleeping coroutine so shutdown has a real Task to cancel.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.store = store
        app.state.engine = engine
        app.state.oauth = MagicMock()
        app.state.sweep_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.sweep_task.cancel()

    return test_lifespan


@dataclass
class ApiContext:
    client: TestClient
    engine: AuthEngine
    notifier: RecordingNotifier
    admin_token: str
    admin_id: int


@pytest.fixture(scope="module")
def api_context(request) -> Generator[ApiContext, None, None]:
    """Yield an ApiContext for API integration tests.

    One TestClient (and one database) per test module. An admin account is
    created through the engine and logged in over HTTP so admin_token is a
    real session token.
    """
    db_name = request.module.__name__.rsplit(".", 1)[-1]
    store = CredentialStore(f"sqlite:///file:{db_name}?mode=memory&cache=shared&uri=true")
    notifier = RecordingNotifier()
    engine = AuthEngine(store, notifier=notifier, hasher=PasswordHasher(rounds=4), policy=AuthPolicy())

    result = engine.register("root@example.com", PASSWORD, first_name="Root")
    engine.confirm_email_manually(result.account.id)
    engine.assign_role(result.account.id, "admin")

    app.router.lifespan_context = _patch_lifespan(store, engine)

    with TestClient(app, raise_server_exceptions=True) as client:
        resp = client.post("/api/v1/auth/login", json={"email": "root@example.com", "password": PASSWORD})
        assert resp.status_code == 200, resp.text
        token = resp.json()["access_token"]
        # Tests pick their identity explicitly through headers.
        client.cookies.clear()
        yield ApiContext(client, engine, notifier, token, result.account.id)

    store.close()


@pytest.fixture
def api_client(api_context) -> tuple[TestClient, str, int]:
    """(client, admin_token, admin_id), the shape the health tests use."""
    api_context.client.cookies.clear()
    return api_context.client, api_context.admin_token, api_context.admin_id
