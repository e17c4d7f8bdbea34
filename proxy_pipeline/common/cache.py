"""
Redis key-value cache.

The cache only accelerates reads; the durable store stays the source of
truth. Every call degrades gracefully: a Redis failure is logged and reported
as a miss, never raised to the caller.
"""

import logging
from typing import Optional

import redis

from .config import Settings

logger = logging.getLogger(__name__)


def get_redis(settings: Settings) -> redis.Redis:
    return redis.Redis.from_url(
        settings.redis_url,
        decode_responses=True,
        socket_timeout=5,
        socket_connect_timeout=5,
    )


class KeyValueCache:
    def __init__(self, client: redis.Redis):
        self.client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> "KeyValueCache":
        return cls(get_redis(settings))

    def get(self, key: str) -> Optional[str]:
        try:
            return self.client.get(key)
        except redis.RedisError as e:
            logger.warning("Redis get %s failed: %s", key, e)
            return None

    def put(self, key: str, value: str, ttl_seconds: int) -> bool:
        try:
            self.client.set(key, value, ex=ttl_seconds)
            return True
        except redis.RedisError as e:
            logger.warning("Redis set %s failed: %s", key, e)
            return False

    def put_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        """SET NX EX. A Redis outage counts as acquired so callers keep working."""
        try:
            return bool(self.client.set(key, value, nx=True, ex=ttl_seconds))
        except redis.RedisError as e:
            logger.warning("Redis setnx %s failed, treating as acquired: %s", key, e)
            return True

    def delete(self, key: str) -> None:
        try:
            self.client.delete(key)
        except redis.RedisError as e:
            logger.warning("Redis delete %s failed: %s", key, e)

    def ping(self) -> None:
        """Raises on failure; used by health checks only."""
        self.client.ping()
