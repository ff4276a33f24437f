"""SQLAlchemy ORM Models for SubGate."""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import BIGINT, INTEGER, JSON, TEXT, TIMESTAMP, Index, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# BIGINT ids in Postgres; SQLite only autoincrements INTEGER PRIMARY KEY
BigIntPK = BIGINT().with_variant(INTEGER(), "sqlite")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# ============================================================================
# Payment ledger
# ============================================================================


class PaymentTransaction(Base):
    """One payment attempt, keyed by our own unguessable transaction id.

    status: pending -> completed | failed | cancelled (never back to pending).
    provider_transaction_id is first-writer-wins. Rows are never deleted.
    """

    __tablename__ = "payment_transactions"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    transaction_id: Mapped[str] = mapped_column(TEXT, nullable=False)  # pay_<ms>_<hex>

    user_id: Mapped[str] = mapped_column(TEXT, nullable=False)
    subscription_id: Mapped[Optional[int]] = mapped_column(BigIntPK, nullable=True)

    # crypto | zaincash | fastpay | nasspay | fib | crypto_manual | fib_manual
    payment_method: Mapped[str] = mapped_column(TEXT, nullable=False)
    amount: Mapped[str] = mapped_column(TEXT, nullable=False)  # Decimal string for precision
    currency: Mapped[str] = mapped_column(TEXT, nullable=False, default="USD")

    status: Mapped[str] = mapped_column(TEXT, nullable=False, default="pending")

    provider_transaction_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    provider_response: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    webhook_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )

    __table_args__ = (
        UniqueConstraint("transaction_id", name="uq_payment_transactions_transaction_id"),
        Index("idx_payment_transactions_user", "user_id"),
        Index("idx_payment_transactions_status", "status"),
        Index("idx_payment_transactions_provider_ref", "provider_transaction_id"),
    )


# ============================================================================
# Subscriptions
# ============================================================================


class Subscription(Base):
    """A user's entitlement to a plan for a fixed period.

    status: pending -> active -> expired, pending|active -> cancelled.
    expires_at is fixed at creation (creation time + plan duration).
    """

    __tablename__ = "subscriptions"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(TEXT, nullable=False)
    plan_id: Mapped[str] = mapped_column(TEXT, nullable=False)

    status: Mapped[str] = mapped_column(TEXT, nullable=False, default="pending")
    payment_method: Mapped[str] = mapped_column(TEXT, nullable=False)

    # At most one subscription per payment transaction
    transaction_id: Mapped[str] = mapped_column(TEXT, nullable=False)
    provider_transaction_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    amount: Mapped[str] = mapped_column(TEXT, nullable=False)
    currency: Mapped[str] = mapped_column(TEXT, nullable=False, default="USD")

    expires_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    activated_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )

    # Renamed from 'metadata' (reserved on declarative classes)
    subscription_metadata: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("transaction_id", name="uq_subscriptions_transaction_id"),
        Index("idx_subscriptions_user_status", "user_id", "status"),
        Index("idx_subscriptions_status_expires", "status", "expires_at"),
    )


# ============================================================================
# Webhook delivery records
# ============================================================================


class WebhookDedupEvent(Base):
    """Durable delivery record (one per provider + delivery key).

    Atomic gate: INSERT ON CONFLICT (provider, dedup_key) DO NOTHING RETURNING id
      -> row returned : first (or reclaiming) handler, continue
      -> no row       : duplicate, acknowledge without side effects
    """

    __tablename__ = "webhook_dedup_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)

    provider: Mapped[str] = mapped_column(TEXT, nullable=False)   # crypto | zaincash | ...
    dedup_key: Mapped[str] = mapped_column(TEXT, nullable=False)  # ev_<delivery id>:<stage> | body_<sha256>

    first_seen_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow
    )
    last_seen_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    status: Mapped[str] = mapped_column(
        TEXT, nullable=False, default="processing"
    )  # processing | done | failed

    # sha256 of the request body, never the raw payload
    request_hash: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    __table_args__ = (
        UniqueConstraint("provider", "dedup_key", name="uq_webhook_dedup_events"),
        Index("idx_webhook_dedup_status", "status"),
        Index("idx_webhook_dedup_first_seen", "first_seen_at"),
    )


# ============================================================================
# Audit trail
# ============================================================================


class BillingAuditLog(Base):
    """Append-only audit trail of ledger and subscription transitions."""

    __tablename__ = "billing_audit_logs"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)

    # TRANSACTION_COMPLETED, SUBSCRIPTION_ACTIVATED, SUBSCRIPTION_CANCELLED,
    # PROVIDER_REF_MISMATCH, WEBHOOK_REFERENCE_MISS, MANUAL_CONFIRMATION_SUBMITTED
    event_type: Mapped[str] = mapped_column(TEXT, nullable=False)

    user_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    related_entity_type: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    # TRANSACTION, SUBSCRIPTION, DELIVERY
    related_entity_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    actor: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)  # SYSTEM, WEBHOOK:<provider>, USER
    details: Mapped[dict] = mapped_column(JSON, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        Index("idx_billing_audit_user", "user_id"),
        Index("idx_billing_audit_entity", "related_entity_type", "related_entity_id"),
        Index("idx_billing_audit_created", "created_at"),
    )
