"""
Per-user generation statistics with a cache-aside layer.

Snapshots are derived entirely from Generation records and are never a
source of truth. Concurrent misses on the same key are collapsed so only
one caller aggregates while the others wait for its result.
"""

import threading
import zlib
from dataclasses import asdict, dataclass
from typing import Dict, Optional

import structlog

from .errors import PersistenceError
from .options import DEFAULT_MODEL
from ..storage.cache import JsonCache
from ..storage.repository import GenerationRepository

logger = structlog.get_logger(__name__)


DEFAULT_STATS_TTL = 3600
LOCK_STRIPES = 64


def stats_cache_key(user_id: str) -> str:
    return f"user:{user_id}:generation-stats"


def stats_epoch_key(user_id: str) -> str:
    return f"{stats_cache_key(user_id)}:epoch"


@dataclass(frozen=True)
class StatsSnapshot:
    """Aggregate view of one user's generation history."""
    total_generations: int = 0
    successful_generations: int = 0
    failed_generations: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0
    average_duration: float = 0.0
    most_used_model: str = DEFAULT_MODEL

    _JSON_KEYS = {
        "total_generations": "totalGenerations",
        "successful_generations": "successfulGenerations",
        "failed_generations": "failedGenerations",
        "total_tokens": "totalTokens",
        "total_cost": "totalCost",
        "average_duration": "averageDuration",
        "most_used_model": "mostUsedModel",
    }

    def to_dict(self) -> Dict[str, object]:
        """Serialize with the camelCase keys shared with other services."""
        return {self._JSON_KEYS[name]: value for name, value in asdict(self).items()}

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> "StatsSnapshot":
        return cls(**{
            name: data[json_key]
            for name, json_key in cls._JSON_KEYS.items()
            if json_key in data
        })

    @classmethod
    def from_aggregate(cls, aggregate: Dict[str, object]) -> "StatsSnapshot":
        return cls(
            total_generations=aggregate["total_generations"],
            successful_generations=aggregate["successful_generations"],
            failed_generations=aggregate["failed_generations"],
            total_tokens=aggregate["total_tokens"],
            total_cost=aggregate["total_cost"],
            average_duration=aggregate["average_duration"],
            most_used_model=aggregate["latest_model"] or DEFAULT_MODEL,
        )


EMPTY_STATS = StatsSnapshot()


class StatsCache:
    """Cache-aside access to StatsSnapshot values.

    A hit is returned verbatim. A miss aggregates from the repository and
    stores the result for ``ttl_seconds``. The cache is not authoritative:
    when it cannot be reached the snapshot is computed from the datastore.

    Every invalidation bumps a per-user epoch. A snapshot computed under
    an older epoch is never left behind in the cache.
    """

    def __init__(
        self,
        cache: JsonCache,
        generations: GenerationRepository,
        ttl_seconds: int = DEFAULT_STATS_TTL,
    ):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        self.cache = cache
        self.generations = generations
        self.ttl_seconds = ttl_seconds
        # Striped so the lock set stays fixed however many users are seen
        self._locks = tuple(threading.Lock() for _ in range(LOCK_STRIPES))

    def get(self, user_id: str) -> StatsSnapshot:
        key = stats_cache_key(user_id)
        cached = self._read(key)
        if cached is not None:
            logger.debug("stats.cache_hit", user_id=user_id)
            return cached

        with self._lock_for(key):
            # Another caller may have filled the key while we waited
            cached = self._read(key)
            if cached is not None:
                logger.debug("stats.cache_hit", user_id=user_id)
                return cached

            logger.info("stats.cache_miss", user_id=user_id)
            epoch = self._epoch(user_id)
            snapshot = self.compute(user_id)
            if epoch is not None and self._epoch(user_id) == epoch:
                self._write(key, snapshot)
                # An invalidation that landed during the write removes it
                if self._epoch(user_id) != epoch:
                    self._discard(key)
            return snapshot

    def compute(self, user_id: str) -> StatsSnapshot:
        """Aggregate a snapshot straight from the datastore."""
        aggregate = self.generations.aggregate_for_user(user_id)
        if not aggregate["total_generations"]:
            return EMPTY_STATS
        return StatsSnapshot.from_aggregate(aggregate)

    def invalidate(self, user_id: str) -> None:
        """Drop the cached snapshot for a user.

        Raises:
            PersistenceError: If the cache cannot be reached
        """
        # The epoch outlives any snapshot written under the previous one
        self.cache.incr(stats_epoch_key(user_id), self.ttl_seconds * 2)
        self.cache.delete(stats_cache_key(user_id))
        logger.debug("stats.invalidated", user_id=user_id)

    def _epoch(self, user_id: str) -> Optional[int]:
        try:
            return int(self.cache.get_json(stats_epoch_key(user_id)) or 0)
        except PersistenceError as e:
            logger.warning("stats.cache_unavailable", user_id=user_id, error=str(e))
            return None

    def _read(self, key: str) -> Optional[StatsSnapshot]:
        try:
            data = self.cache.get_json(key)
        except PersistenceError as e:
            logger.warning("stats.cache_unavailable", key=key, error=str(e))
            return None
        return StatsSnapshot.from_dict(data) if data is not None else None

    def _write(self, key: str, snapshot: StatsSnapshot) -> None:
        try:
            self.cache.set_json(key, snapshot.to_dict(), self.ttl_seconds)
        except PersistenceError as e:
            logger.warning("stats.cache_unavailable", key=key, error=str(e))

    def _discard(self, key: str) -> None:
        try:
            self.cache.delete(key)
        except PersistenceError as e:
            logger.warning("stats.cache_unavailable", key=key, error=str(e))

    def _lock_for(self, key: str) -> threading.Lock:
        return self._locks[zlib.crc32(key.encode("utf-8")) % len(self._locks)]
