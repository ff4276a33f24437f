"""Subscription state machine: activation, expiry sweep, cancellation, manual proof."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from subgate_api.billing import ledger
from subgate_api.billing.subscriptions import (
    ManualConfirmationError,
    activate_subscription,
    cancel_subscription,
    expire_subscriptions,
    get_active_subscription,
    get_subscription_by_transaction,
    submit_manual_confirmation,
)
from subgate_api.db.models import BillingAuditLog


def _naive(dt: datetime) -> datetime:
    # SQLite hands back naive UTC timestamps
    return dt.replace(tzinfo=None)


def _events(db, event_type):
    return list(
        db.execute(select(BillingAuditLog).where(BillingAuditLog.event_type == event_type)).scalars()
    )


def test_create_sets_fixed_expiry(db_session, pending_order):
    created = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)
    tid = pending_order(duration_days=30, now=created)

    sub = get_subscription_by_transaction(db_session, tid)

    assert sub.status == "pending"
    assert _naive(sub.expires_at) == _naive(created + timedelta(days=30))


def test_activate_pending(db_session, pending_order):
    tid = pending_order()

    sub = activate_subscription(db_session, tid, "REF-1", actor="WEBHOOK:fib")

    assert sub.status == "active"
    assert sub.activated_at is not None
    assert sub.provider_transaction_id == "REF-1"
    events = _events(db_session, "SUBSCRIPTION_ACTIVATED")
    assert len(events) == 1
    assert events[0].actor == "WEBHOOK:fib"
    assert events[0].details["transaction_id"] == tid


def test_activation_is_idempotent_and_never_extends(db_session, pending_order):
    tid = pending_order(duration_days=30)
    first = activate_subscription(db_session, tid, "REF-1")
    expires_at = first.expires_at
    activated_at = first.activated_at

    again = activate_subscription(db_session, tid, "REF-2")

    assert again.status == "active"
    assert again.expires_at == expires_at
    assert again.activated_at == activated_at
    assert again.provider_transaction_id == "REF-1"
    assert len(_events(db_session, "SUBSCRIPTION_ACTIVATED")) == 1


def test_activate_missing_subscription(db_session, pending_order):
    tid = pending_order(with_subscription=False)
    assert activate_subscription(db_session, tid) is None


def test_cancelled_subscription_not_reactivated(db_session, pending_order):
    tid = pending_order()
    cancelled = cancel_subscription(db_session, tid, reason="user request")
    assert cancelled.status == "cancelled"

    sub = activate_subscription(db_session, tid, "REF-1")

    assert sub.status == "cancelled"
    assert sub.activated_at is None
    assert len(_events(db_session, "SUBSCRIPTION_CANCELLED")) == 1


def test_expire_sweep(db_session, pending_order):
    created = datetime.now(timezone.utc) - timedelta(days=40)
    expired_tid = pending_order(user_id="u_old", duration_days=30, now=created)
    live_tid = pending_order(user_id="u_new", duration_days=30)
    pending_tid = pending_order(user_id="u_pending", duration_days=1, now=created)
    activate_subscription(db_session, expired_tid)
    activate_subscription(db_session, live_tid)

    assert expire_subscriptions(db_session) == 1
    # Second sweep at the same instant finds nothing
    assert expire_subscriptions(db_session) == 0

    assert get_subscription_by_transaction(db_session, expired_tid).status == "expired"
    assert get_subscription_by_transaction(db_session, live_tid).status == "active"
    # Only active subscriptions are swept
    assert get_subscription_by_transaction(db_session, pending_tid).status == "pending"


def test_expiry_boundary_is_inclusive(db_session, pending_order):
    created = datetime(2026, 1, 1, tzinfo=timezone.utc)
    tid = pending_order(duration_days=30, now=created)
    activate_subscription(db_session, tid)
    boundary = created + timedelta(days=30)

    assert expire_subscriptions(db_session, now=boundary - timedelta(seconds=1)) == 0
    assert expire_subscriptions(db_session, now=boundary) == 1


def test_late_activation_of_lapsed_subscription_is_swept(db_session, pending_order):
    """Activation never moves expires_at, so a late payment does not buy time."""
    created = datetime.now(timezone.utc) - timedelta(days=31)
    tid = pending_order(duration_days=30, now=created)

    sub = activate_subscription(db_session, tid)
    assert sub.status == "active"
    assert get_active_subscription(db_session, "user_test_1") is None

    assert expire_subscriptions(db_session) == 1


def test_get_active_subscription_picks_newest(db_session, pending_order):
    older = pending_order(now=datetime.now(timezone.utc) - timedelta(days=2))
    newer = pending_order()
    activate_subscription(db_session, older)
    activate_subscription(db_session, newer)

    assert get_active_subscription(db_session, "user_test_1").transaction_id == newer
    assert get_active_subscription(db_session, "someone_else") is None


# ============================================================================
# Manual confirmation
# ============================================================================


def test_manual_confirmation_recorded(db_session, pending_order):
    tid = pending_order(payment_method="crypto_manual")

    confirmation = submit_manual_confirmation(
        db_session, tid, reference="0xabc", proof_url="https://proof.example/1", notes="sent"
    )

    assert confirmation["reference"] == "0xabc"
    assert confirmation["paymentMethod"] == "crypto_manual"
    assert confirmation["submittedAt"]

    txn = ledger.get_transaction(db_session, tid)
    assert txn.status == "pending"
    assert txn.provider_response["manualConfirmation"]["reference"] == "0xabc"

    sub = get_subscription_by_transaction(db_session, tid)
    assert sub.status == "pending"
    assert sub.subscription_metadata["manualConfirmation"]["proofUrl"] == "https://proof.example/1"
    assert len(_events(db_session, "MANUAL_CONFIRMATION_SUBMITTED")) == 1


def test_manual_confirmation_rejects_gateway_methods(db_session, pending_order):
    tid = pending_order(payment_method="fastpay")
    with pytest.raises(ManualConfirmationError):
        submit_manual_confirmation(db_session, tid, reference="r")


def test_manual_confirmation_rejects_settled_transaction(db_session, pending_order):
    tid = pending_order(payment_method="fib_manual")
    ledger.mark_completed(db_session, tid, "OPS-1")
    with pytest.raises(ManualConfirmationError, match="already completed"):
        submit_manual_confirmation(db_session, tid, reference="r")


def test_manual_confirmation_unknown_transaction(db_session):
    assert submit_manual_confirmation(db_session, "pay_missing", reference="r") is None
