"""Webhook dispatcher: one delivery in, one canonical outcome out.

Pipeline per delivery:
  1. parse      body -> flat field bag (JSON or form-encoded)
  2. verify     provider strategy; nothing is stored for unauthenticated input
  3. map        provider status -> paid | not_yet_paid
  4. dedup      Redis fast path, then the durable atomic gate, keyed per
                (delivery id, stage) so a pending notice never hides the paid one
  5. apply      ledger.mark_completed + subscriptions.activate_subscription

Outcomes map to HTTP responses in routers/webhooks.py; the dispatcher
never builds responses itself.

Referential misses (paid notification for a transaction or subscription we
do not have yet) leave the delivery record 'failed' so the provider's next
retry reclaims it.
"""

import json
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional
from urllib.parse import parse_qsl

from sqlalchemy.orm import Session

from subgate_api.billing import ledger, subscriptions
from subgate_api.billing.audit import record_audit
from subgate_api.billing.verifiers import (
    ProviderNotConfiguredError,
    VerifierRegistry,
    get_field,
    get_verifier_registry,
)
from subgate_api.billing.webhook_dedup import (
    DeliveryCache,
    get_dedup_key,
    mark_dedup_done,
    mark_dedup_failed,
    try_acquire_dedup,
)
from subgate_api.context import provider_var, transaction_id_var
from subgate_api.observability.metrics import log_signature_rejected, log_webhook_outcome
from subgate_api.utils.sanitize import payload_hash_bytes

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    NOT_FOUND = "not_found"
    REJECTED = "rejected"
    MISCONFIGURED = "misconfigured"
    INVALID_PAYLOAD = "invalid_payload"


@dataclass
class DispatchResult:
    outcome: Outcome
    provider: str
    payload_hash: str
    transaction_id: Optional[str] = None
    provider_ref: Optional[str] = None
    detail: Optional[str] = None


class InvalidPayloadError(ValueError):
    """Body could not be parsed into a field bag."""


# ============================================================================
# Provider notification formats
# ============================================================================


@dataclass(frozen=True)
class NotificationFormat:
    """Where a provider puts the fields we need (first non-empty wins)."""

    delivery_fields: tuple[str, ...]
    order_fields: tuple[str, ...]
    ref_fields: tuple[str, ...]
    status_fields: tuple[str, ...]
    paid_statuses: frozenset[str]


_WALLET_PAID = frozenset({"success", "completed"})

NOTIFICATION_FORMATS: dict[str, NotificationFormat] = {
    # CoinGate reports paid/confirmed, NOWPayments confirmed/finished
    "crypto": NotificationFormat(
        delivery_fields=("id", "payment_id"),
        order_fields=("order_id",),
        ref_fields=("id", "payment_id"),
        status_fields=("status", "payment_status"),
        paid_statuses=frozenset({"paid", "confirmed", "finished"}),
    ),
    "zaincash": NotificationFormat(
        delivery_fields=("id", "transactionId"),
        order_fields=("orderId", "order_id"),
        ref_fields=("id", "transactionId"),
        status_fields=("status",),
        paid_statuses=_WALLET_PAID,
    ),
    "fastpay": NotificationFormat(
        delivery_fields=("reference_id", "transaction_id"),
        order_fields=("order_id",),
        ref_fields=("reference_id", "transaction_id"),
        status_fields=("status",),
        paid_statuses=_WALLET_PAID,
    ),
    "nasspay": NotificationFormat(
        delivery_fields=("payment_id", "transaction_id"),
        order_fields=("order_id",),
        ref_fields=("payment_id", "transaction_id"),
        status_fields=("status",),
        paid_statuses=_WALLET_PAID,
    ),
    "fib": NotificationFormat(
        delivery_fields=("payment_id", "transaction_id"),
        order_fields=("order_id",),
        ref_fields=("payment_id", "transaction_id"),
        status_fields=("status",),
        paid_statuses=_WALLET_PAID,
    ),
}


def parse_body(raw_body: bytes, content_type: Optional[str] = None) -> dict[str, Any]:
    """Parse a notification body into a flat dict.

    Raises:
        InvalidPayloadError: Undecodable body or not an object
    """
    try:
        text_body = raw_body.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise InvalidPayloadError("Body is not valid UTF-8") from exc

    if content_type and content_type.lower().startswith("application/x-www-form-urlencoded"):
        return dict(parse_qsl(text_body, keep_blank_values=True))

    try:
        parsed = json.loads(text_body)
    except json.JSONDecodeError as exc:
        raise InvalidPayloadError("Body is not valid JSON") from exc
    if not isinstance(parsed, dict):
        raise InvalidPayloadError("Body must be a JSON object")
    return parsed


def canonical_status(fmt: NotificationFormat, fields: Mapping[str, Any]) -> str:
    """Map the provider status vocabulary onto paid | not_yet_paid."""
    status = get_field(fields, *fmt.status_fields)
    if status and status.lower() in fmt.paid_statuses:
        return "paid"
    return "not_yet_paid"


# ============================================================================
# Dispatcher
# ============================================================================


class WebhookDispatcher:
    """Drives one delivery through verify -> dedup -> ledger -> state machine."""

    def __init__(
        self,
        db: Session,
        registry: Optional[VerifierRegistry] = None,
        cache: Optional[DeliveryCache] = None,
    ):
        self.db = db
        self.registry = registry or get_verifier_registry()
        self.cache = cache

    async def handle(
        self,
        provider: str,
        raw_body: bytes,
        headers: Mapping[str, str],
        content_type: Optional[str] = None,
    ) -> DispatchResult:
        """Process one delivery.

        Raises:
            UnknownProviderError: provider has no registered verifier
            Exception: storage failures after the delivery was claimed
                (the claim is released as 'failed' first)
        """
        started = time.perf_counter()
        verifier = self.registry.get(provider)
        fmt = NOTIFICATION_FORMATS[provider]
        payload_hash = payload_hash_bytes(raw_body)
        provider_var.set(provider)

        def finish(outcome: Outcome, **kwargs: Any) -> DispatchResult:
            log_webhook_outcome(provider, outcome.value, (time.perf_counter() - started) * 1000)
            return DispatchResult(outcome=outcome, provider=provider, payload_hash=payload_hash, **kwargs)

        # 1. parse
        try:
            fields = parse_body(raw_body, content_type)
        except InvalidPayloadError as exc:
            return finish(Outcome.INVALID_PAYLOAD, detail=str(exc))

        logger.info(
            "WEBHOOK_RECEIVED",
            extra={"provider": provider, "payload_hash": payload_hash, "payload_size": len(raw_body)},
        )

        # 2. verify (no storage access before this succeeds)
        try:
            authentic = verifier.verify(raw_body, headers, fields)
        except ProviderNotConfiguredError as exc:
            return finish(Outcome.MISCONFIGURED, detail=f"{exc.env_name} is not set")
        if not authentic:
            log_signature_rejected(provider, payload_hash)
            return finish(Outcome.REJECTED)

        # 3. map
        status = canonical_status(fmt, fields)
        order_id = get_field(fields, *fmt.order_fields)
        provider_ref = get_field(fields, *fmt.ref_fields)
        if status == "paid" and not order_id:
            return finish(Outcome.INVALID_PAYLOAD, detail="Paid notification without order id")
        if order_id:
            transaction_id_var.set(order_id)

        # 4. dedup
        dedup_key = get_dedup_key(get_field(fields, *fmt.delivery_fields), raw_body, stage=status)
        if self.cache is not None and self.cache.seen(provider, dedup_key):
            return finish(Outcome.DUPLICATE, transaction_id=order_id, provider_ref=provider_ref)
        if not try_acquire_dedup(self.db, provider, dedup_key, payload_hash):
            return finish(Outcome.DUPLICATE, transaction_id=order_id, provider_ref=provider_ref)

        # 5. apply
        try:
            outcome = self._apply(provider, status, order_id, provider_ref, fields, dedup_key)
        except Exception:
            self.db.rollback()
            self._release(provider, dedup_key)
            raise

        return finish(outcome, transaction_id=order_id, provider_ref=provider_ref)

    def _apply(
        self,
        provider: str,
        status: str,
        order_id: Optional[str],
        provider_ref: Optional[str],
        fields: dict[str, Any],
        dedup_key: str,
    ) -> Outcome:
        actor = f"WEBHOOK:{provider}"

        if status != "paid":
            status_value = get_field(fields, *NOTIFICATION_FORMATS[provider].status_fields)
            logger.info(
                "WEBHOOK_NOT_YET_PAID",
                extra={"provider": provider, "status_value": status_value},
            )
            self._done(provider, dedup_key)
            return Outcome.IGNORED

        txn = ledger.mark_completed(self.db, order_id, provider_ref, webhook_data=fields, actor=actor)
        if txn is None:
            return self._reference_miss(provider, order_id, dedup_key, "TRANSACTION")
        if txn.status in ("failed", "cancelled"):
            self._done(provider, dedup_key)
            return Outcome.IGNORED

        # The subscription mirrors the ledger's ref, which may predate this delivery
        sub = subscriptions.activate_subscription(
            self.db, order_id, txn.provider_transaction_id or provider_ref, actor=actor
        )
        if sub is None:
            return self._reference_miss(provider, order_id, dedup_key, "SUBSCRIPTION")
        if sub.status != "active":
            # cancelled or expired before the payment landed; the ledger still records it
            logger.info(
                "WEBHOOK_SUBSCRIPTION_NOT_ACTIVATED",
                extra={"provider": provider, "subscription_status": sub.status},
            )
            self._done(provider, dedup_key)
            return Outcome.IGNORED

        self._done(provider, dedup_key)
        return Outcome.PROCESSED

    def _done(self, provider: str, dedup_key: str) -> None:
        mark_dedup_done(self.db, provider, dedup_key)
        if self.cache is not None:
            self.cache.remember(provider, dedup_key)

    def _reference_miss(self, provider: str, order_id: str, dedup_key: str, missing: str) -> Outcome:
        record_audit(
            self.db,
            "WEBHOOK_REFERENCE_MISS",
            entity_type="DELIVERY",
            entity_id=dedup_key,
            actor=f"WEBHOOK:{provider}",
            details={"provider": provider, "transaction_id": order_id, "missing": missing},
        )
        self.db.commit()
        mark_dedup_failed(self.db, provider, dedup_key)
        logger.warning(
            "WEBHOOK_REFERENCE_MISS",
            extra={"provider": provider, "transaction_id": order_id, "missing": missing},
        )
        return Outcome.NOT_FOUND

    def _release(self, provider: str, dedup_key: str) -> None:
        try:
            mark_dedup_failed(self.db, provider, dedup_key)
        except Exception as exc:
            # Row stays 'processing'; the original error is re-raised by the caller
            self.db.rollback()
            logger.error(
                "WEBHOOK_DEDUP_RELEASE_FAILED",
                extra={"provider": provider, "dedup_key_prefix": dedup_key[:16], "error_type": type(exc).__name__},
            )
