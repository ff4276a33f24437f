"""Redis connection for the delivery dedup fast path.

Redis is optional: the durable dedup table is authoritative, so a missing or
unreachable Redis only costs one extra database round-trip per delivery.
"""

import os
from typing import Optional
from urllib.parse import urlparse

import redis

from subgate_api.config.env import is_dedup_cache_enabled


def _build_client() -> redis.Redis:
    """Create a client from REDIS_URL (+ REDIS_PASSWORD when the URL has none)."""
    redis_url = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    password = os.getenv("REDIS_PASSWORD")

    options: dict = {
        "decode_responses": True,
        "socket_connect_timeout": 2,
        "socket_timeout": 2,
        "health_check_interval": 30,
    }
    if password and not urlparse(redis_url).password:
        options["password"] = password

    return redis.from_url(redis_url, **options)


class RedisClient:
    """Process-wide Redis client (redis-py clients are thread-safe)."""

    _instance: Optional[redis.Redis] = None

    @classmethod
    def get_client(cls) -> redis.Redis:
        if cls._instance is None:
            cls._instance = _build_client()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Drop the cached client (tests, config reload)."""
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None


def get_cache_client() -> Optional[redis.Redis]:
    """Client for the dedup cache, or None when SUBGATE_DEDUP_CACHE is off."""
    if not is_dedup_cache_enabled():
        return None
    return RedisClient.get_client()
