"""Unit tests for identity/ledger.py -- the append-only attempt ledger."""

import logging
from unittest.mock import MagicMock

from sqlalchemy.exc import OperationalError

from identity.ledger import AttemptLedger
from identity.models import Account


def test_record_appends_one_row(store, clock) -> None:
    ledger = AttemptLedger(store, clock)
    ledger.record("Nobody@Example.com", None, False, "203.0.113.9", "curl/8.0", "account not found")

    with store.begin() as tx:
        rows = tx.attempts_for_email("Nobody@Example.com")
    assert len(rows) == 1
    row = rows[0]
    assert row.email == "Nobody@Example.com"  # stored as typed
    assert row.account_id is None
    assert row.success is False
    assert row.client == "curl/8.0"
    assert row.failure_reason == "account not found"
    assert row.created_at == clock()


def test_record_swallows_store_failure(clock, caplog) -> None:
    """An audit outage is logged at ERROR and never raised."""
    broken = MagicMock()
    broken.begin.side_effect = OperationalError("INSERT", {}, Exception("disk I/O error"))
    ledger = AttemptLedger(broken, clock)

    with caplog.at_level(logging.ERROR, logger="identitycore.ledger"):
        ledger.record("a@example.com", 1, True, "203.0.113.9")

    assert any("Failed to record login attempt" in r.getMessage() for r in caplog.records)


def test_history_is_newest_first_and_limited(store, clock) -> None:
    with store.begin() as tx:
        account_id = tx.add_account(Account(email="h@example.com", created_at=clock()), "x")
    ledger = AttemptLedger(store, clock)
    for i in range(5):
        ledger.record("h@example.com", account_id, i % 2 == 0, f"10.0.0.{i}")
        clock.advance(minutes=1)

    history = ledger.history(account_id, limit=3)
    assert [r.origin for r in history] == ["10.0.0.4", "10.0.0.3", "10.0.0.2"]


def test_count_recent_failures_reads_live_counter(store, clock) -> None:
    with store.begin() as tx:
        account_id = tx.add_account(Account(email="c@example.com", created_at=clock()), "x")
        tx.increment_failed_attempts(account_id)
        tx.increment_failed_attempts(account_id)
    ledger = AttemptLedger(store, clock)
    assert ledger.count_recent_failures(account_id) == 2
    assert ledger.count_recent_failures(9999) == 0

    with store.begin() as tx:
        tx.increment_failed_attempts(account_id)
        assert ledger.count_recent_failures(account_id, tx) == 3
