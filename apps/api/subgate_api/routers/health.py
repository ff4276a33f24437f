"""Health check endpoints."""

import logging

from fastapi import APIRouter, Response, status
from pydantic import BaseModel
from sqlalchemy import text

from subgate_api.db import session as db_session
from subgate_api.db.redis_client import get_cache_client

router = APIRouter()
logger = logging.getLogger(__name__)

VERSION = "0.3.0"


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    version: str
    services: dict[str, str]


def check_database() -> str:
    """Return "up" or a short "down: ..." reason."""
    try:
        with db_session.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return "up"
    except Exception as e:
        logger.error("Database health check failed", extra={"error_type": type(e).__name__})
        return f"down: {str(e)[:50]}"


def check_redis() -> str:
    """Return "up", "disabled" (cache off) or a short "down: ..." reason."""
    client = get_cache_client()
    if client is None:
        return "disabled"
    try:
        client.ping()
        return "up"
    except Exception as e:
        logger.error("Redis health check failed", extra={"error_type": type(e).__name__})
        return f"down: {str(e)[:50]}"


@router.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Liveness: the process answers. Dependencies are not consulted."""
    return HealthResponse(status="ok", version=VERSION, services={})


@router.get("/readyz", response_model=HealthResponse)
async def readyz(response: Response) -> HealthResponse:
    """Readiness: database reachable (Redis reported, but only degrades)."""
    services = {"database": check_database(), "redis": check_redis()}

    if services["database"] != "up":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="down", version=VERSION, services=services)

    overall = "ok" if services["redis"] in ("up", "disabled") else "degraded"
    return HealthResponse(status=overall, version=VERSION, services=services)
