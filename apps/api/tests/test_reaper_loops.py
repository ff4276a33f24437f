"""Reaper loops: expiry sweep and delivery record retention."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.orm import sessionmaker

from subgate_api.billing.subscriptions import activate_subscription, get_subscription_by_transaction
from subgate_api.billing.webhook_dedup import mark_dedup_done, try_acquire_dedup
from subgate_api.db.models import WebhookDedupEvent
from subgate_reaper.loops.expiry_loop import expiry_loop, get_expiry_interval_seconds
from subgate_reaper.loops.lifecycle import shutdown_event
from subgate_reaper.loops.retention_loop import (
    get_retention_loop_interval_seconds,
    retention_loop,
    run_retention_cleanup,
)


@pytest.fixture(autouse=True)
def _reset_shutdown():
    shutdown_event.clear()
    yield
    shutdown_event.clear()


def _done_record(db, key, age_days):
    try_acquire_dedup(db, "fastpay", key)
    mark_dedup_done(db, "fastpay", key)
    when = datetime.now(timezone.utc) - timedelta(days=age_days)
    db.execute(
        update(WebhookDedupEvent)
        .where(WebhookDedupEvent.dedup_key == key)
        .values(first_seen_at=when, last_seen_at=when)
    )
    db.commit()


def _record_count(db):
    return db.execute(select(func.count()).select_from(WebhookDedupEvent)).scalar_one()


def test_interval_env_defaults(monkeypatch):
    monkeypatch.delenv("EXPIRY_INTERVAL_SEC", raising=False)
    monkeypatch.delenv("DEDUP_RETENTION_INTERVAL_SEC", raising=False)
    assert get_expiry_interval_seconds() == 300
    assert get_retention_loop_interval_seconds() == 86400

    monkeypatch.setenv("EXPIRY_INTERVAL_SEC", "15")
    assert get_expiry_interval_seconds() == 15


def test_expiry_loop_single_iteration(db_session, pending_order):
    lapsed = pending_order(user_id="u1", now=datetime.now(timezone.utc) - timedelta(days=45))
    current = pending_order(user_id="u2")
    activate_subscription(db_session, lapsed)
    activate_subscription(db_session, current)

    expiry_loop(db_session, interval_seconds=1, stop_after_one_iteration=True)

    assert get_subscription_by_transaction(db_session, lapsed).status == "expired"
    assert get_subscription_by_transaction(db_session, current).status == "active"


def test_expiry_loop_honours_shutdown(db_session, pending_order):
    lapsed = pending_order(now=datetime.now(timezone.utc) - timedelta(days=45))
    activate_subscription(db_session, lapsed)
    shutdown_event.set()

    expiry_loop(db_session, interval_seconds=1)

    assert get_subscription_by_transaction(db_session, lapsed).status == "active"


def test_retention_cleanup_batches_until_short(db_session):
    for i in range(5):
        _done_record(db_session, f"ev_old_{i}", age_days=40)
    _done_record(db_session, "ev_recent", age_days=2)

    deleted = run_retention_cleanup(db_session, cutoff_days=30, batch_size=2)

    assert deleted == 5
    assert _record_count(db_session) == 1


def test_retention_loop_single_iteration(db_session):
    _done_record(db_session, "ev_old", age_days=31)
    factory = sessionmaker(bind=db_session.get_bind())

    retention_loop(factory, interval_seconds=1, cutoff_days=30, stop_after_one_iteration=True)

    assert _record_count(db_session) == 0


def test_retention_loop_survives_errors(caplog):
    def broken_factory():
        raise RuntimeError("database unavailable")

    with caplog.at_level("ERROR", logger="subgate_reaper"):
        retention_loop(broken_factory, interval_seconds=1, cutoff_days=30, stop_after_one_iteration=True)

    assert any("Retention cleanup loop error" in r.getMessage() for r in caplog.records)
