"""Subscription state machine.

| from           | event     | to        | guard                                       |
|----------------|-----------|-----------|---------------------------------------------|
| pending        | activate  | active    | WHERE transaction_id=:t AND status='pending'|
| active         | activate  | active    | no-op                                       |
| active         | sweep     | expired   | WHERE status='active' AND expires_at <= now |
| pending/active | cancel    | cancelled | external only                               |

expires_at is fixed when the subscription is created and no transition ever
touches it, so late or repeated activation cannot extend a subscription.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from subgate_api.billing import ledger
from subgate_api.billing.audit import record_audit
from subgate_api.db.models import Subscription
from subgate_api.observability.metrics import log_subscription_activated, log_subscriptions_expired

logger = logging.getLogger(__name__)

MANUAL_PAYMENT_METHODS: frozenset[str] = frozenset({"crypto_manual", "fib_manual"})


class ManualConfirmationError(ValueError):
    """Manual proof submitted for a transaction that does not accept one."""


def _load(db: Session, transaction_id: str) -> Optional[Subscription]:
    return db.execute(
        select(Subscription)
        .where(Subscription.transaction_id == transaction_id)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def get_subscription_by_transaction(db: Session, transaction_id: str) -> Optional[Subscription]:
    return _load(db, transaction_id)


def create_subscription(
    db: Session,
    *,
    user_id: str,
    plan_id: str,
    payment_method: str,
    transaction_id: str,
    amount: str,
    duration_days: int,
    currency: str = "USD",
    provider_transaction_id: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> Subscription:
    """Create a pending subscription expiring duration_days from now."""
    now = now or datetime.now(timezone.utc)
    sub = Subscription(
        user_id=user_id,
        plan_id=plan_id,
        status="pending",
        payment_method=payment_method,
        transaction_id=transaction_id,
        provider_transaction_id=provider_transaction_id,
        amount=str(amount),
        currency=currency,
        expires_at=now + timedelta(days=duration_days),
        subscription_metadata=metadata,
        created_at=now,
        updated_at=now,
    )
    db.add(sub)
    db.commit()
    db.refresh(sub)

    logger.info(
        "SUBSCRIPTION_CREATED",
        extra={"transaction_id": transaction_id, "plan_id": plan_id, "payment_method": payment_method},
    )
    return sub


def activate_subscription(
    db: Session,
    transaction_id: str,
    provider_ref: Optional[str] = None,
    actor: str = "SYSTEM",
) -> Optional[Subscription]:
    """Idempotently move the subscription of transaction_id to active.

    Returns:
        The subscription (active, or unchanged if it was not pending),
        or None when no subscription exists for the transaction yet.
    """
    now = datetime.now(timezone.utc)
    result = db.execute(
        update(Subscription)
        .where(
            Subscription.transaction_id == transaction_id,
            Subscription.status == "pending",
        )
        .values(
            status="active",
            activated_at=now,
            updated_at=now,
            provider_transaction_id=func.coalesce(
                Subscription.provider_transaction_id, provider_ref
            ),
        )
        .execution_options(synchronize_session=False)
    )

    if result.rowcount == 1:
        sub = _load(db, transaction_id)
        record_audit(
            db,
            "SUBSCRIPTION_ACTIVATED",
            entity_type="SUBSCRIPTION",
            entity_id=str(sub.id),
            user_id=sub.user_id,
            actor=actor,
            details={"transaction_id": transaction_id, "plan_id": sub.plan_id},
        )
        db.commit()
        log_subscription_activated(transaction_id, sub.payment_method, sub.provider_transaction_id)
        return sub

    sub = _load(db, transaction_id)
    if sub is None:
        db.rollback()
        logger.warning("SUBSCRIPTION_NOT_FOUND", extra={"transaction_id": transaction_id})
        return None

    if sub.status == "active":
        logger.info("SUBSCRIPTION_ALREADY_ACTIVE", extra={"transaction_id": transaction_id})
    else:
        logger.info(
            "SUBSCRIPTION_ACTIVATION_SKIPPED",
            extra={"transaction_id": transaction_id, "status": sub.status},
        )
    db.rollback()
    return sub


def cancel_subscription(
    db: Session,
    transaction_id: str,
    actor: str = "SYSTEM",
    reason: Optional[str] = None,
) -> Optional[Subscription]:
    """Cancel a pending or active subscription. Other states are left as-is."""
    now = datetime.now(timezone.utc)
    result = db.execute(
        update(Subscription)
        .where(
            Subscription.transaction_id == transaction_id,
            Subscription.status.in_(("pending", "active")),
        )
        .values(status="cancelled", updated_at=now)
        .execution_options(synchronize_session=False)
    )
    sub = _load(db, transaction_id)

    if result.rowcount == 1 and sub is not None:
        record_audit(
            db,
            "SUBSCRIPTION_CANCELLED",
            entity_type="SUBSCRIPTION",
            entity_id=str(sub.id),
            user_id=sub.user_id,
            actor=actor,
            details={"transaction_id": transaction_id, "reason": reason},
        )
        db.commit()
        logger.info("SUBSCRIPTION_CANCELLED", extra={"transaction_id": transaction_id, "actor": actor})
    else:
        db.rollback()
    return sub


def expire_subscriptions(db: Session, now: Optional[datetime] = None) -> int:
    """Expire every active subscription whose expires_at has passed.

    One conditional bulk UPDATE; running it twice for the same instant
    expires nothing the second time.

    Returns:
        Number of subscriptions expired
    """
    now = now or datetime.now(timezone.utc)
    result = db.execute(
        update(Subscription)
        .where(Subscription.status == "active", Subscription.expires_at <= now)
        .values(status="expired", updated_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()

    count = result.rowcount or 0
    if count:
        log_subscriptions_expired(count)
    return count


def get_active_subscription(
    db: Session,
    user_id: str,
    now: Optional[datetime] = None,
) -> Optional[Subscription]:
    """Newest active, unexpired subscription of a user."""
    now = now or datetime.now(timezone.utc)
    return db.execute(
        select(Subscription)
        .where(
            Subscription.user_id == user_id,
            Subscription.status == "active",
            Subscription.expires_at > now,
        )
        .order_by(Subscription.created_at.desc(), Subscription.id.desc())
        .limit(1)
    ).scalar_one_or_none()


def submit_manual_confirmation(
    db: Session,
    transaction_id: str,
    *,
    reference: str,
    proof_url: Optional[str] = None,
    notes: Optional[str] = None,
    actor: str = "USER",
) -> Optional[dict[str, Any]]:
    """Record customer-supplied proof for a manual crypto/bank transfer.

    The proof is merged into the transaction's provider_response and the
    subscription metadata under ``manualConfirmation``. Nothing is
    activated; an operator (or a later webhook) completes the payment.

    Returns:
        The stored confirmation, or None if the transaction does not exist

    Raises:
        ManualConfirmationError: Not a manual method, or no longer pending
    """
    txn = ledger.get_transaction(db, transaction_id)
    if txn is None:
        return None
    if txn.payment_method not in MANUAL_PAYMENT_METHODS:
        raise ManualConfirmationError(
            f"Payment method '{txn.payment_method}' does not accept manual confirmation"
        )
    if txn.status != "pending":
        raise ManualConfirmationError(f"Transaction is already {txn.status}")

    confirmation = {
        "submittedAt": datetime.now(timezone.utc).isoformat(),
        "reference": reference,
        "proofUrl": proof_url,
        "notes": notes,
        "paymentMethod": txn.payment_method,
    }
    ledger.attach_provider_response(db, transaction_id, {"manualConfirmation": confirmation})

    sub = _load(db, transaction_id)
    if sub is not None:
        sub.subscription_metadata = {
            **(sub.subscription_metadata or {}),
            "manualConfirmation": confirmation,
        }

    record_audit(
        db,
        "MANUAL_CONFIRMATION_SUBMITTED",
        entity_type="TRANSACTION",
        entity_id=transaction_id,
        user_id=txn.user_id,
        actor=actor,
        details={"payment_method": txn.payment_method, "reference": reference},
    )
    db.commit()

    logger.info(
        "MANUAL_CONFIRMATION_SUBMITTED",
        extra={"transaction_id": transaction_id, "payment_method": txn.payment_method},
    )
    return confirmation
