"""Webhook delivery dedup gate: atomic INSERT ON CONFLICT for concurrent idempotency.

Providers re-deliver aggressively (timeouts, retries, browser callbacks hit
twice). The gate guarantees at most one business processing per
(provider, dedup_key) pair, even when identical deliveries arrive at once.

  1. INSERT ON CONFLICT (provider, dedup_key) DO NOTHING RETURNING id
       -> row returned : FIRST processor, continue
       -> no row       : conflict, check whether it is a reclaimable failure
  2. UPDATE ... WHERE status='failed' RETURNING id
       -> row returned : previous attempt failed, reclaim for re-processing
       -> no row       : 'done' or concurrent 'processing', true duplicate

The UNIQUE constraint makes exactly one INSERT win under concurrent load;
the reclaim UPDATE is a row-level compare-and-set.

Records are durable and purged after a retention window
(purge_dedup_events). An optional Redis DeliveryCache answers the common
"already done" case without touching the database.
"""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timezone
from typing import Optional

import redis
from sqlalchemy import TIMESTAMP, bindparam, delete, func, select, text
from sqlalchemy.orm import Session

from subgate_api.db.models import WebhookDedupEvent

logger = logging.getLogger(__name__)

_TS = TIMESTAMP(timezone=True)


# ---------------------------------------------------------------------------
# Dedup key derivation
# ---------------------------------------------------------------------------


def get_dedup_key(delivery_id: Optional[str], raw_body: bytes, stage: Optional[str] = None) -> str:
    """Deterministic dedup key for one delivery.

    Primary  : provider delivery id  -> ev_<id>[:<stage>]
    Fallback : sha256 of the raw body -> body_<hex> (byte-identical re-delivery)

    Providers reuse the payment id across the notifications of one payment,
    so the canonical stage ("paid" / "not_yet_paid") is part of the key: an
    earlier pending notice must not swallow the later paid one.
    """
    if delivery_id:
        if stage:
            return f"ev_{delivery_id}:{stage}"
        return f"ev_{delivery_id}"
    return f"body_{hashlib.sha256(raw_body).hexdigest()}"


# ---------------------------------------------------------------------------
# Atomic dedup gate
# ---------------------------------------------------------------------------

_INSERT_SQL = text("""
    INSERT INTO webhook_dedup_events
        (provider, dedup_key, first_seen_at, status, request_hash)
    VALUES
        (:provider, :dedup_key, :now, 'processing', :request_hash)
    ON CONFLICT (provider, dedup_key) DO NOTHING
    RETURNING id
""").bindparams(bindparam("now", type_=_TS))

_RECLAIM_SQL = text("""
    UPDATE webhook_dedup_events
    SET status = 'processing', last_seen_at = :now
    WHERE provider = :provider AND dedup_key = :dedup_key AND status = 'failed'
    RETURNING id
""").bindparams(bindparam("now", type_=_TS))

_SET_STATUS_SQL = text("""
    UPDATE webhook_dedup_events
    SET status = :status, last_seen_at = :now
    WHERE provider = :provider AND dedup_key = :dedup_key
""").bindparams(bindparam("now", type_=_TS))


def try_acquire_dedup(
    db: Session,
    provider: str,
    dedup_key: str,
    request_hash: Optional[str] = None,
) -> bool:
    """Attempt to atomically claim processing rights for (provider, dedup_key).

    Returns:
        True  - INSERT succeeded or a 'failed' record was reclaimed; proceed.
        False - a 'done' or concurrent 'processing' record exists; duplicate.
    """
    now = datetime.now(timezone.utc)
    params = {"provider": provider, "dedup_key": dedup_key, "now": now}

    row = db.execute(_INSERT_SQL, {**params, "request_hash": request_hash}).first()
    if row is not None:
        db.commit()
        logger.debug(
            "WEBHOOK_DEDUP_ACQUIRED",
            extra={"provider": provider, "dedup_key_prefix": dedup_key[:16]},
        )
        return True

    retry_row = db.execute(_RECLAIM_SQL, params).first()
    if retry_row is not None:
        db.commit()
        logger.info(
            "WEBHOOK_DEDUP_RETRY_RECLAIMED",
            extra={"provider": provider, "dedup_key_prefix": dedup_key[:16]},
        )
        return True

    db.commit()
    logger.info(
        "WEBHOOK_DEDUP_DUPLICATE",
        extra={"provider": provider, "dedup_key_prefix": dedup_key[:16]},
    )
    return False


def _set_status(db: Session, provider: str, dedup_key: str, status: str) -> None:
    db.execute(_SET_STATUS_SQL, {
        "provider": provider,
        "dedup_key": dedup_key,
        "status": status,
        "now": datetime.now(timezone.utc),
    })
    db.commit()


def mark_dedup_done(db: Session, provider: str, dedup_key: str) -> None:
    """Mark delivery as 'done' after its effect is durable."""
    _set_status(db, provider, dedup_key, "done")


def mark_dedup_failed(db: Session, provider: str, dedup_key: str) -> None:
    """Mark delivery as 'failed' so the provider's next retry can reclaim it."""
    _set_status(db, provider, dedup_key, "failed")


def is_delivery_seen(db: Session, provider: str, dedup_key: str) -> bool:
    """True if the delivery is done or currently being processed."""
    status = db.execute(
        select(WebhookDedupEvent.status).where(
            WebhookDedupEvent.provider == provider,
            WebhookDedupEvent.dedup_key == dedup_key,
        )
    ).scalar_one_or_none()
    return status in ("done", "processing")


def purge_dedup_events(db: Session, older_than: datetime, limit: int = 1000) -> int:
    """Delete 'done' delivery records last touched before older_than.

    'processing' and 'failed' rows are kept; they still carry retry state.

    Returns:
        Number of rows deleted
    """
    touched_at = func.coalesce(WebhookDedupEvent.last_seen_at, WebhookDedupEvent.first_seen_at)
    victims = (
        select(WebhookDedupEvent.id)
        .where(WebhookDedupEvent.status == "done", touched_at < older_than)
        .limit(limit)
    )
    result = db.execute(
        delete(WebhookDedupEvent)
        .where(WebhookDedupEvent.id.in_(victims))
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount or 0


# ---------------------------------------------------------------------------
# Redis fast path
# ---------------------------------------------------------------------------


class DeliveryCache:
    """Redis markers for deliveries already processed.

    Only ever written after mark_dedup_done, so a hit is always safe to ACK.
    Redis failures degrade to a miss; the database gate still decides.
    """

    KEY_PREFIX = "subgate:delivery"

    def __init__(self, client: redis.Redis, ttl_seconds: int):
        self.client = client
        self.ttl_seconds = ttl_seconds

    def _key(self, provider: str, dedup_key: str) -> str:
        return f"{self.KEY_PREFIX}:{provider}:{dedup_key}"

    def seen(self, provider: str, dedup_key: str) -> bool:
        try:
            return bool(self.client.exists(self._key(provider, dedup_key)))
        except redis.RedisError as exc:
            logger.warning(
                "WEBHOOK_DEDUP_CACHE_UNAVAILABLE",
                extra={"provider": provider, "op": "exists", "error_type": type(exc).__name__},
            )
            return False

    def remember(self, provider: str, dedup_key: str) -> None:
        try:
            self.client.set(self._key(provider, dedup_key), "done", nx=True, ex=self.ttl_seconds)
        except redis.RedisError as exc:
            logger.warning(
                "WEBHOOK_DEDUP_CACHE_UNAVAILABLE",
                extra={"provider": provider, "op": "set", "error_type": type(exc).__name__},
            )
