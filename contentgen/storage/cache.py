"""
Key-value cache backed by Redis.

Values are JSON-serialized and stored with a time-to-live in seconds.
"""

import json
from typing import Any, Optional, Protocol

import redis

from ..core.errors import PersistenceError


DEFAULT_REDIS_URL = "redis://localhost:6379/0"


class JsonCache(Protocol):
    """Cache contract consumed by the stats layer."""

    def get_json(self, key: str) -> Optional[Any]:
        ...

    def set_json(self, key: str, value: Any, ttl_seconds: int) -> None:
        ...

    def delete(self, key: str) -> None:
        ...

    def incr(self, key: str, ttl_seconds: int) -> int:
        ...


class RedisCache:
    """JSON cache on top of a redis-py client.

    Connection failures surface as PersistenceError.
    """

    def __init__(self, client: redis.Redis):
        self.client = client

    @classmethod
    def from_url(cls, url: str = DEFAULT_REDIS_URL) -> "RedisCache":
        return cls(redis.Redis.from_url(url, decode_responses=True))

    def get_json(self, key: str) -> Optional[Any]:
        try:
            raw = self.client.get(key)
        except redis.RedisError as e:
            raise PersistenceError(f"Cache read failed for {key}: {e}") from e
        if raw is None:
            return None
        return json.loads(raw)

    def set_json(self, key: str, value: Any, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        try:
            self.client.set(key, json.dumps(value), ex=ttl_seconds)
        except redis.RedisError as e:
            raise PersistenceError(f"Cache write failed for {key}: {e}") from e

    def delete(self, key: str) -> None:
        try:
            self.client.delete(key)
        except redis.RedisError as e:
            raise PersistenceError(f"Cache delete failed for {key}: {e}") from e

    def incr(self, key: str, ttl_seconds: int) -> int:
        """Atomically increment a counter and refresh its time-to-live."""
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        try:
            pipe = self.client.pipeline()
            pipe.incr(key)
            pipe.expire(key, ttl_seconds)
            value, _ = pipe.execute()
        except redis.RedisError as e:
            raise PersistenceError(f"Cache increment failed for {key}: {e}") from e
        return int(value)
