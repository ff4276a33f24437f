"""Payment transaction ledger.

Status machine: pending -> completed | failed | cancelled. Every transition
is a single conditional UPDATE ... WHERE status='pending' (row-level
compare-and-set), so concurrent completions of the same transaction produce
exactly one transition no matter how many deliveries race.

provider_transaction_id is first-writer-wins: a completed transaction that
later receives a different correlation id keeps the original, and the
mismatch is logged and audited.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from subgate_api.billing.audit import record_audit
from subgate_api.billing.tokens import generate_payment_token
from subgate_api.db.models import PaymentTransaction
from subgate_api.observability.metrics import log_provider_ref_mismatch

logger = logging.getLogger(__name__)

PAYMENT_METHODS: frozenset[str] = frozenset({
    "crypto", "zaincash", "fastpay", "nasspay", "fib", "crypto_manual", "fib_manual",
})
TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed", "cancelled"})


def _load(db: Session, transaction_id: str, for_update: bool = False) -> Optional[PaymentTransaction]:
    stmt = (
        select(PaymentTransaction)
        .where(PaymentTransaction.transaction_id == transaction_id)
        .execution_options(populate_existing=True)
    )
    if for_update:
        stmt = stmt.with_for_update()
    return db.execute(stmt).scalar_one_or_none()


def get_transaction(db: Session, transaction_id: str) -> Optional[PaymentTransaction]:
    """Fetch a transaction by its internal id (fresh from the database)."""
    return _load(db, transaction_id)


def create_transaction(
    db: Session,
    *,
    user_id: str,
    payment_method: str,
    amount: str,
    currency: str = "USD",
    subscription_id: Optional[int] = None,
    transaction_id: Optional[str] = None,
    provider_response: Optional[dict[str, Any]] = None,
) -> PaymentTransaction:
    """Insert a pending transaction.

    Raises:
        ValueError: Unknown payment method
    """
    if payment_method not in PAYMENT_METHODS:
        raise ValueError(f"Unknown payment method: {payment_method}")

    txn = PaymentTransaction(
        transaction_id=transaction_id or generate_payment_token(),
        user_id=user_id,
        subscription_id=subscription_id,
        payment_method=payment_method,
        amount=str(amount),
        currency=currency,
        status="pending",
        provider_response=provider_response,
    )
    db.add(txn)
    db.commit()
    db.refresh(txn)

    logger.info(
        "TRANSACTION_CREATED",
        extra={"transaction_id": txn.transaction_id, "payment_method": payment_method},
    )
    return txn


def link_subscription(db: Session, transaction_id: str, subscription_id: int) -> None:
    """Attach the subscription created for this transaction."""
    db.execute(
        update(PaymentTransaction)
        .where(PaymentTransaction.transaction_id == transaction_id)
        .values(subscription_id=subscription_id, updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    db.commit()


def attach_provider_response(
    db: Session,
    transaction_id: str,
    response: dict[str, Any],
) -> Optional[PaymentTransaction]:
    """Merge response into provider_response (row locked where supported).

    Returns:
        Updated transaction, or None if it does not exist
    """
    txn = _load(db, transaction_id, for_update=True)
    if txn is None:
        db.rollback()
        return None

    # Reassign so the JSON column is flagged dirty
    txn.provider_response = {**(txn.provider_response or {}), **response}
    db.commit()
    db.refresh(txn)
    return txn


def mark_completed(
    db: Session,
    transaction_id: str,
    provider_ref: Optional[str],
    webhook_data: Optional[dict[str, Any]] = None,
    actor: str = "SYSTEM",
) -> Optional[PaymentTransaction]:
    """Transition pending -> completed exactly once.

    Outcomes:
        pending             -> completed, audit TRANSACTION_COMPLETED
        completed, same ref -> unchanged (idempotent re-application)
        completed, new ref  -> unchanged, PROVIDER_REF_MISMATCH logged + audited
        failed / cancelled  -> unchanged (caller decides to ignore)
        missing             -> None
    """
    now = datetime.now(timezone.utc)
    result = db.execute(
        update(PaymentTransaction)
        .where(
            PaymentTransaction.transaction_id == transaction_id,
            PaymentTransaction.status == "pending",
        )
        .values(
            status="completed",
            completed_at=now,
            updated_at=now,
            webhook_data=webhook_data,
            provider_transaction_id=func.coalesce(
                PaymentTransaction.provider_transaction_id, provider_ref
            ),
        )
        .execution_options(synchronize_session=False)
    )

    if result.rowcount == 1:
        txn = _load(db, transaction_id)
        record_audit(
            db,
            "TRANSACTION_COMPLETED",
            entity_type="TRANSACTION",
            entity_id=transaction_id,
            user_id=txn.user_id if txn else None,
            actor=actor,
            details={
                "payment_method": txn.payment_method if txn else None,
                "provider_ref": txn.provider_transaction_id if txn else provider_ref,
            },
        )
        db.commit()
        logger.info(
            "TRANSACTION_COMPLETED",
            extra={"transaction_id": transaction_id, "actor": actor},
        )
        return txn

    txn = _load(db, transaction_id)
    if txn is None:
        db.rollback()
        logger.warning("TRANSACTION_NOT_FOUND", extra={"transaction_id": transaction_id})
        return None

    if txn.status != "completed":
        logger.info(
            "TRANSACTION_TERMINAL_IGNORED",
            extra={"transaction_id": transaction_id, "status": txn.status},
        )
        db.rollback()
        return txn

    if provider_ref and txn.provider_transaction_id and txn.provider_transaction_id != provider_ref:
        log_provider_ref_mismatch(transaction_id, txn.provider_transaction_id, provider_ref)
        record_audit(
            db,
            "PROVIDER_REF_MISMATCH",
            entity_type="TRANSACTION",
            entity_id=transaction_id,
            user_id=txn.user_id,
            actor=actor,
            details={
                "stored_ref": txn.provider_transaction_id,
                "incoming_ref": provider_ref,
            },
        )
        db.commit()
        return txn

    if provider_ref and not txn.provider_transaction_id:
        db.execute(
            update(PaymentTransaction)
            .where(
                PaymentTransaction.transaction_id == transaction_id,
                PaymentTransaction.provider_transaction_id.is_(None),
            )
            .values(provider_transaction_id=provider_ref, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return _load(db, transaction_id)

    db.rollback()
    logger.debug("TRANSACTION_ALREADY_COMPLETED", extra={"transaction_id": transaction_id})
    return txn


def mark_failed(db: Session, transaction_id: str, reason: str) -> bool:
    """Transition pending -> failed. Returns False if nothing changed."""
    now = datetime.now(timezone.utc)
    result = db.execute(
        update(PaymentTransaction)
        .where(
            PaymentTransaction.transaction_id == transaction_id,
            PaymentTransaction.status == "pending",
        )
        .values(status="failed", failure_reason=reason, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    changed = result.rowcount == 1
    if changed:
        logger.info("TRANSACTION_FAILED", extra={"transaction_id": transaction_id, "reason": reason})
    return changed
