"""Pydantic schemas for API requests/responses."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class ProblemDetail(BaseModel):
    """RFC 9457 Problem Details for HTTP API errors.

    detail can be either a string or a structured object (dict).
    """

    type: str = Field(..., description="URI reference identifying the problem type")
    title: str = Field(..., description="Short, human-readable summary")
    status: int = Field(..., description="HTTP status code")
    detail: str | dict[str, Any] = Field(..., description="Human-readable explanation or structured error details")
    instance: Optional[str] = Field(None, description="URI reference identifying the specific occurrence")


# ============================================================================
# Webhooks
# ============================================================================


class WebhookAck(BaseModel):
    """Body of every 2xx webhook response."""

    status: str = Field(..., description="processed | already_processed | ignored")


# ============================================================================
# GET /v1/subscription/transactions/{transaction_id}
# ============================================================================


class TransactionStatusResponse(BaseModel):
    """Status poll used by the frontend after a provider redirect."""

    transaction_id: str
    status: str = Field(..., description="pending | completed | failed | cancelled")
    payment_method: str
    amount: str
    currency: str
    subscription_status: Optional[str] = Field(None, description="pending | active | expired | cancelled")
    expires_at: Optional[datetime] = None
    verified: bool = Field(..., description="True once the subscription for this payment is active")
    active_until: Optional[datetime] = Field(
        None, description="Expiry of the payer's newest active, unexpired subscription, if any"
    )


# ============================================================================
# POST /v1/subscription/manual/confirm
# ============================================================================


class ManualConfirmationRequest(BaseModel):
    """Customer-submitted proof of a manual crypto or bank transfer."""

    transaction_id: str = Field(..., min_length=1)
    reference: str = Field(..., min_length=1, max_length=256, description="Transfer reference / tx hash")
    proof_url: Optional[str] = Field(None, max_length=2048)
    notes: Optional[str] = Field(None, max_length=2000)


class ManualConfirmationResponse(BaseModel):
    status: str = "submitted"
    transaction_id: str
    submitted_at: str
