"""Concurrent token consumption and failed logins against a file-backed SQLite store.

Threads start together behind a barrier so their transactions actually
overlap. In-memory SQLite would hand every thread the same connection, so
these tests need a real file.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from identity.engine import AuthEngine, AuthOutcome, AuthPolicy
from identity.errors import TokenAlreadyUsed
from identity.models import Account, TokenKind
from identity.store import CredentialStore
from identity.tokens import TokenIssuer

THREADS = 8
PASSWORD = "Str0ng!Pass"


@pytest.fixture
def file_store(tmp_path):
    s = CredentialStore(f"sqlite:///{tmp_path / 'concurrency.db'}")
    yield s
    s.close()


def _run_together(work) -> list:
    barrier = threading.Barrier(THREADS)

    def task():
        barrier.wait()
        return work()

    with ThreadPoolExecutor(max_workers=THREADS) as pool:
        futures = [pool.submit(task) for _ in range(THREADS)]
        return [f.result(timeout=30) for f in futures]


def test_one_token_consumed_concurrently_succeeds_once(file_store, clock) -> None:
    issuer = TokenIssuer(clock)
    with file_store.begin() as tx:
        account_id = tx.add_account(Account(email="race@example.com", created_at=clock()), "x")
        raw = issuer.issue(tx, account_id, TokenKind.reset, timedelta(hours=1))

    def consume() -> str:
        try:
            with file_store.begin() as tx:
                assert issuer.consume(tx, raw, TokenKind.reset) == account_id
        except TokenAlreadyUsed:
            return "used"
        return "ok"

    outcomes = _run_together(consume)
    assert outcomes.count("ok") == 1
    assert outcomes.count("used") == THREADS - 1


def test_concurrent_failed_logins_lose_no_increment(file_store, hasher, clock) -> None:
    engine = AuthEngine(file_store, hasher=hasher, policy=AuthPolicy(max_failed_attempts=THREADS), clock=clock)
    account = engine.register("race@example.com", PASSWORD).account
    engine.confirm_email_manually(account.id)

    results = _run_together(lambda: engine.login("race@example.com", "Wrong!Pass1", "203.0.113.7"))

    assert {r.outcome for r in results} == {AuthOutcome.INVALID_CREDENTIALS}
    current = engine.get_account(account.id)
    assert current.failed_attempts == THREADS
    # Only the increment that reached the threshold sets the lock.
    assert current.locked_until == clock() + timedelta(minutes=15)

    with file_store.begin() as tx:
        reasons = [r.failure_reason for r in tx.attempts_for_email("race@example.com")]
    assert len(reasons) == THREADS
    assert reasons.count("lockout threshold reached") == 1
    assert reasons.count("invalid password") == THREADS - 1
