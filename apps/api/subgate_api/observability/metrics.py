"""Log-based metrics for webhook intake and the subscription lifecycle.

Usage:
    from subgate_api.observability.metrics import log_webhook_outcome

    log_webhook_outcome(provider="fastpay", outcome="processed", duration_ms=12.5)
    log_subscription_activated(transaction_id="pay_...", payment_method="fib")

Each helper emits exactly one structured log line with a stable ``metric``
field so dashboards can aggregate without parsing messages.

Security:
- Provider correlation ids are truncated (prefix only)
- Secrets and signatures are never passed here
"""

import logging
from typing import Optional

logger = logging.getLogger(__name__)


def truncate_ref(ref: Optional[str], keep: int = 12) -> str:
    """Truncate an external reference for logging."""
    if not ref:
        return "unknown"
    return ref[:keep]


# ============================================================================
# Webhook Metrics
# ============================================================================


def log_webhook_outcome(
    provider: str,
    outcome: str,
    duration_ms: Optional[float] = None,
) -> None:
    """Log the canonical outcome of one webhook delivery.

    Args:
        provider: Provider key (crypto, zaincash, fastpay, nasspay, fib)
        outcome: Dispatcher outcome (processed, duplicate, rejected, ...)
        duration_ms: Handling time in milliseconds
    """
    extra = {
        "metric": "webhook.outcome",
        "provider": provider,
        "outcome": outcome,
    }
    if duration_ms is not None:
        extra["duration_ms"] = round(duration_ms, 2)
    logger.info("webhook.outcome", extra=extra)


def log_signature_rejected(provider: str, payload_hash: str) -> None:
    """Log an authenticity failure (possible forgery or secret drift)."""
    logger.warning(
        "webhook.signature_rejected",
        extra={
            "metric": "webhook.signature_rejected",
            "provider": provider,
            "payload_hash": payload_hash,
        },
    )


# ============================================================================
# Subscription Metrics
# ============================================================================


def log_subscription_activated(
    transaction_id: str,
    payment_method: str,
    provider_ref: Optional[str] = None,
) -> None:
    """Log a pending -> active transition."""
    logger.info(
        "subscription.activated",
        extra={
            "metric": "subscription.activated",
            "transaction_id": transaction_id,
            "payment_method": payment_method,
            "provider_ref_prefix": truncate_ref(provider_ref),
        },
    )


def log_subscriptions_expired(count: int) -> None:
    """Log the result of one expiry sweep."""
    logger.info(
        "subscription.expired",
        extra={"metric": "subscription.expired", "count": count},
    )


def log_provider_ref_mismatch(
    transaction_id: str,
    stored_ref: Optional[str],
    incoming_ref: Optional[str],
) -> None:
    """Log a completed transaction receiving a different correlation id."""
    logger.warning(
        "transaction.provider_ref_mismatch",
        extra={
            "metric": "transaction.provider_ref_mismatch",
            "transaction_id": transaction_id,
            "stored_ref_prefix": truncate_ref(stored_ref),
            "incoming_ref_prefix": truncate_ref(incoming_ref),
        },
    )
