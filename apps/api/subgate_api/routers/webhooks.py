"""Webhook endpoints for the five payment providers.

Every route funnels into WebhookDispatcher; this module only maps the
dispatcher outcome onto HTTP.

Error taxonomy (retry storm prevention):
  (A) Malformed body / paid without order id    -> 400 WEBHOOK_INVALID_PAYLOAD
  (B) Signature missing or invalid              -> 401 WEBHOOK_SIGNATURE_INVALID (NEVER 500)
  (C) Our misconfig (signing secret unset)      -> 500 WEBHOOK_PROVIDER_MISCONFIG
  (D) Transaction/subscription not found yet    -> 503 WEBHOOK_REFERENCE_PENDING
  (E) Internal DB/processing error              -> 500 WEBHOOK_INTERNAL_ERROR
  5xx responses carry Retry-After so providers re-deliver.

Acknowledged outcomes (processed, duplicate, ignored) are 200 JSON, except
for the browser-redirect providers (ZainCash, FIB), which get a 303 to the
frontend success page; the page then polls the transaction status.
"""

import logging
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response
from sqlalchemy.orm import Session

from subgate_api.billing.dispatcher import DispatchResult, Outcome, WebhookDispatcher
from subgate_api.billing.webhook_dedup import DeliveryCache
from subgate_api.config.env import get_dedup_cache_ttl_seconds, get_frontend_url
from subgate_api.context import request_id_var
from subgate_api.db.redis_client import get_cache_client
from subgate_api.db.session import get_db
from subgate_api.schemas import WebhookAck
from subgate_api.utils.sanitize import payload_hash_bytes, sanitize_str

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)

REDIRECT_PROVIDERS = frozenset({"zaincash", "fib"})

_ACK_STATUS = {
    Outcome.PROCESSED: "processed",
    Outcome.DUPLICATE: "already_processed",
    Outcome.IGNORED: "ignored",
}


# ============================================================================
# Webhook Problem Details helper
# ============================================================================


def _webhook_problem(
    request: Request,
    status: int,
    *,
    code: str,
    title: str,
    detail: str | None,
    provider: str,
    payload_hash: str | None,
    extra: dict | None = None,
) -> JSONResponse:
    """Log once + return RFC 9457 Problem Details with webhook extensions.

    4xx -> warning log.
    5xx -> error log + Retry-After: 60.

    Extensions: provider, payload_hash, error_code (never raw payload or secrets).
    """
    request_id = request_id_var.get(None)
    instance = request_id or str(request.url.path)

    log_extra: dict = {
        "event": f"webhook.{code.lower()}",
        "provider": provider,
        "payload_hash": payload_hash,
        "error_code": code,
    }
    if extra:
        log_extra.update(extra)

    if status >= 500:
        logger.error(code, extra=log_extra)
    else:
        logger.warning(code, extra=log_extra)

    content: dict = {
        "type": f"urn:subgate:webhook:{code.lower()}",
        "title": title,
        "status": status,
        "provider": provider,
        "error_code": code,
    }
    if detail is not None:
        content["detail"] = detail
    if payload_hash is not None:
        content["payload_hash"] = payload_hash
    if instance:
        content["instance"] = instance

    headers = {"Content-Type": "application/problem+json"}
    if status >= 500:
        headers["Retry-After"] = "60"

    return JSONResponse(status_code=status, content=content, headers=headers)


def _get_delivery_cache() -> Optional[DeliveryCache]:
    client = get_cache_client()
    if client is None:
        return None
    return DeliveryCache(client, get_dedup_cache_ttl_seconds())


def _outcome_response(request: Request, result: DispatchResult) -> Response:
    provider = result.provider
    payload_hash = result.payload_hash

    if result.outcome == Outcome.INVALID_PAYLOAD:
        return _webhook_problem(
            request, 400,
            code="WEBHOOK_INVALID_PAYLOAD",
            title="Invalid webhook payload",
            detail=result.detail,
            provider=provider,
            payload_hash=payload_hash,
        )
    if result.outcome == Outcome.REJECTED:
        return _webhook_problem(
            request, 401,
            code="WEBHOOK_SIGNATURE_INVALID",
            title="Webhook signature verification failed",
            detail="Signature is missing or does not match",
            provider=provider,
            payload_hash=payload_hash,
        )
    if result.outcome == Outcome.MISCONFIGURED:
        return _webhook_problem(
            request, 500,
            code="WEBHOOK_PROVIDER_MISCONFIG",
            title="Webhook provider misconfiguration",
            detail="Webhook verification is not properly configured",
            provider=provider,
            payload_hash=payload_hash,
            extra={"missing": result.detail},
        )
    if result.outcome == Outcome.NOT_FOUND:
        return _webhook_problem(
            request, 503,
            code="WEBHOOK_REFERENCE_PENDING",
            title="Referenced payment not found",
            detail="No pending payment matches this notification yet; retry later",
            provider=provider,
            payload_hash=payload_hash,
        )

    ack = WebhookAck(status=_ACK_STATUS[result.outcome])
    if provider in REDIRECT_PROVIDERS and result.transaction_id:
        location = (
            f"{get_frontend_url()}/subscribe/success"
            f"?transactionId={quote(result.transaction_id, safe='')}"
        )
        return RedirectResponse(location, status_code=303)
    return JSONResponse(status_code=200, content=ack.model_dump())


async def _receive(request: Request, provider: str) -> Response:
    raw_body: bytes = await request.body()
    payload_hash = payload_hash_bytes(raw_body)
    request.state.payload_hash = payload_hash
    request.state.payload_size = len(raw_body)

    db: Session = next(get_db())
    try:
        dispatcher = WebhookDispatcher(db, cache=_get_delivery_cache())
        result = await dispatcher.handle(
            provider,
            raw_body,
            request.headers,
            content_type=request.headers.get("content-type"),
        )
    except Exception as exc:
        return _webhook_problem(
            request, 500,
            code="WEBHOOK_INTERNAL_ERROR",
            title="Internal processing error",
            detail="An internal error occurred while processing the webhook",
            provider=provider,
            payload_hash=payload_hash,
            extra={
                "error_type": type(exc).__name__,
                "error_msg": sanitize_str(str(exc)),
            },
        )
    finally:
        db.close()

    return _outcome_response(request, result)


# ============================================================================
# Provider routes
# ============================================================================


@router.post("/crypto")
async def crypto_webhook(request: Request) -> Response:
    """CoinGate / NOWPayments invoice notifications."""
    return await _receive(request, "crypto")


@router.post("/zaincash")
async def zaincash_webhook(request: Request) -> Response:
    """ZainCash callback (browser redirect after wallet payment)."""
    return await _receive(request, "zaincash")


@router.post("/fastpay")
async def fastpay_webhook(request: Request) -> Response:
    return await _receive(request, "fastpay")


@router.post("/nasspay")
async def nasspay_webhook(request: Request) -> Response:
    return await _receive(request, "nasspay")


@router.post("/fib")
async def fib_webhook(request: Request) -> Response:
    """FIB bank gateway callback (browser redirect)."""
    return await _receive(request, "fib")
