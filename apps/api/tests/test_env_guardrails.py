"""Environment resolution and engine policy."""

import pytest
from sqlalchemy.pool import NullPool, QueuePool

from subgate_api.config import env
from subgate_api.db.engine import _mask_password, build_engine
from subgate_api.db.redis_client import RedisClient, get_cache_client


def test_database_url_required_in_production(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("SUBGATE_ENV", "production")

    with pytest.raises(RuntimeError, match="DATABASE_URL"):
        env.get_database_url()


def test_database_url_dev_default(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("SUBGATE_ENV", "dev")

    assert env.get_database_url().startswith("postgresql://")


def test_webhook_secret_blank_rejected(monkeypatch):
    monkeypatch.setenv("FIB_SECRET", "  ")
    with pytest.raises(ValueError, match="FIB_SECRET"):
        env.get_webhook_secret("FIB_SECRET")

    monkeypatch.setenv("FIB_SECRET", "s")
    assert env.get_webhook_secret("FIB_SECRET") == "s"


def test_secret_read_at_call_time(monkeypatch):
    monkeypatch.setenv("NASSPAY_SECRET", "first")
    assert env.get_webhook_secret("NASSPAY_SECRET") == "first"
    monkeypatch.setenv("NASSPAY_SECRET", "rotated")
    assert env.get_webhook_secret("NASSPAY_SECRET") == "rotated"


def test_defaults(monkeypatch):
    for name in ("FRONTEND_URL", "SUBGATE_DEDUP_CACHE", "SUBGATE_DEDUP_CACHE_TTL_SEC", "DEDUP_RETENTION_DAYS"):
        monkeypatch.delenv(name, raising=False)

    assert env.get_frontend_url() == "http://localhost:3000"
    assert env.is_dedup_cache_enabled() is False
    assert env.get_dedup_cache_ttl_seconds() == 7 * 24 * 3600
    assert env.get_dedup_retention_days() == 30


def test_cache_client_none_when_disabled(monkeypatch):
    monkeypatch.delenv("SUBGATE_DEDUP_CACHE", raising=False)
    assert get_cache_client() is None


def test_cache_client_singleton_when_enabled(monkeypatch):
    monkeypatch.setenv("SUBGATE_DEDUP_CACHE", "redis")
    monkeypatch.setenv("REDIS_URL", "redis://localhost:6399/3")
    RedisClient.reset()
    try:
        client = get_cache_client()
        assert client is not None
        assert client is get_cache_client()
        assert client.connection_pool.connection_kwargs["db"] == 3
    finally:
        RedisClient.reset()


def test_engine_pool_modes(monkeypatch, tmp_path):
    monkeypatch.delenv("SUBGATE_DB_POOL", raising=False)
    assert isinstance(build_engine("sqlite://").pool, NullPool)

    monkeypatch.setenv("SUBGATE_DB_POOL", "queuepool")
    assert isinstance(build_engine(f"sqlite:///{tmp_path / 'pool.db'}").pool, QueuePool)

    monkeypatch.setenv("SUBGATE_DB_POOL", "bogus")
    with pytest.raises(ValueError, match="SUBGATE_DB_POOL"):
        build_engine("sqlite://")


def test_engine_requires_url(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    with pytest.raises(ValueError, match="DATABASE_URL is required"):
        build_engine()


def test_password_masked():
    assert _mask_password("postgresql://user:s3cret@db:5432/x") == "postgresql://user:***@db:5432/x"
