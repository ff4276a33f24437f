"""Subscription endpoints used by the frontend around a payment.

GET  /v1/subscription/transactions/{transaction_id}
    Status poll after a provider redirect. The transaction id is an
    unguessable token, so knowing it is the capability to read it.
POST /v1/subscription/manual/confirm
    Proof submission for manual crypto / bank transfers.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from subgate_api.billing import ledger
from subgate_api.billing.subscriptions import (
    ManualConfirmationError,
    get_active_subscription,
    get_subscription_by_transaction,
    submit_manual_confirmation,
)
from subgate_api.billing.tokens import is_payment_token
from subgate_api.db.session import get_db
from subgate_api.schemas import (
    ManualConfirmationRequest,
    ManualConfirmationResponse,
    TransactionStatusResponse,
)

router = APIRouter(prefix="/v1/subscription", tags=["subscription"])
logger = logging.getLogger(__name__)


@router.get("/transactions/{transaction_id}", response_model=TransactionStatusResponse)
def get_transaction_status(
    transaction_id: str,
    db: Session = Depends(get_db),
) -> TransactionStatusResponse:
    # Malformed ids are indistinguishable from unknown ones
    if not is_payment_token(transaction_id):
        raise HTTPException(status_code=404, detail="Transaction not found")

    txn = ledger.get_transaction(db, transaction_id)
    if txn is None:
        raise HTTPException(status_code=404, detail="Transaction not found")

    sub = get_subscription_by_transaction(db, transaction_id)
    current = get_active_subscription(db, sub.user_id) if sub else None
    return TransactionStatusResponse(
        transaction_id=txn.transaction_id,
        status=txn.status,
        payment_method=txn.payment_method,
        amount=txn.amount,
        currency=txn.currency,
        subscription_status=sub.status if sub else None,
        expires_at=sub.expires_at if sub else None,
        verified=bool(sub and sub.status == "active"),
        active_until=current.expires_at if current else None,
    )


@router.post("/manual/confirm", response_model=ManualConfirmationResponse)
def confirm_manual_payment(
    body: ManualConfirmationRequest,
    db: Session = Depends(get_db),
) -> ManualConfirmationResponse:
    if not is_payment_token(body.transaction_id):
        raise HTTPException(status_code=404, detail="Transaction not found")

    try:
        confirmation = submit_manual_confirmation(
            db,
            body.transaction_id,
            reference=body.reference,
            proof_url=body.proof_url,
            notes=body.notes,
        )
    except ManualConfirmationError as exc:
        raise HTTPException(status_code=409, detail=str(exc))

    if confirmation is None:
        raise HTTPException(status_code=404, detail="Transaction not found")

    return ManualConfirmationResponse(
        transaction_id=body.transaction_id,
        submitted_at=confirmation["submittedAt"],
    )
