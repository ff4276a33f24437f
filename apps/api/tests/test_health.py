"""Liveness and readiness probes."""

from unittest.mock import MagicMock, patch

import redis
from fastapi.testclient import TestClient

from subgate_api.main import app
from subgate_api.routers.health import VERSION

client = TestClient(app)


def test_health_is_dependency_free():
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "version": VERSION, "services": {}}


def test_readyz_database_up_cache_disabled(monkeypatch):
    monkeypatch.delenv("SUBGATE_DEDUP_CACHE", raising=False)

    body = client.get("/readyz").json()

    assert body["status"] == "ok"
    assert body["services"] == {"database": "up", "redis": "disabled"}


def test_readyz_database_down_is_503():
    with patch("subgate_api.routers.health.check_database", return_value="down: refused"):
        resp = client.get("/readyz")

    assert resp.status_code == 503
    assert resp.json()["status"] == "down"


def test_readyz_redis_down_only_degrades():
    broken = MagicMock()
    broken.ping.side_effect = redis.ConnectionError("Connection refused")

    with patch("subgate_api.routers.health.get_cache_client", return_value=broken):
        resp = client.get("/readyz")

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "degraded"
    assert body["services"]["redis"].startswith("down:")
