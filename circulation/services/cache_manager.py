"""
TTL cache for statistics results.
Memory tier is always present; a Redis tier is used in front of it when
REDIS_URL is set and the server answers a ping.
"""

import asyncio
import json
import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple

import redis

from circulation.config import settings

logger = logging.getLogger(__name__)

MonotonicClock = Callable[[], float]


class StatisticsCache:
    """Thread-safe TTL cache with an optional Redis tier."""

    def __init__(self, ttl_seconds: float = settings.stats_cache_ttl,
                 clock: MonotonicClock = time.monotonic,
                 redis_url: Optional[str] = None) -> None:
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self.redis_client: Optional[redis.Redis] = None
        self.memory_cache: Dict[str, Tuple[Any, float]] = {}
        self.memory_cache_lock = threading.RLock()
        self.cache_stats = {
            "hits": 0,
            "misses": 0,
            "redis_hits": 0,
            "memory_hits": 0,
            "evictions": 0,
        }
        self._eviction_task: Optional[asyncio.Task] = None

        if redis_url:
            self._init_redis(redis_url)

    def _init_redis(self, redis_url: str) -> None:
        try:
            self.redis_client = redis.from_url(
                redis_url,
                decode_responses=True,
                socket_connect_timeout=1,
                socket_timeout=1,
                health_check_interval=30,
            )
            self.redis_client.ping()
            logger.info("Redis statistics cache connected")
        except redis.RedisError as e:
            logger.warning("Redis unavailable (%s); using the memory cache only", e)
            self.redis_client = None

    @staticmethod
    def _make_key(key: str) -> str:
        return f"circulation_cache:{key}"

    # ------------------------- Core operations ------------------------- #
    def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None when missing or expired."""
        if self.redis_client:
            try:
                data = self.redis_client.get(self._make_key(key))
                if data is not None:
                    with self.memory_cache_lock:
                        self.cache_stats["hits"] += 1
                        self.cache_stats["redis_hits"] += 1
                    return json.loads(data)
            except redis.RedisError as e:
                logger.warning("Redis get failed for %s: %s", key, e)

        with self.memory_cache_lock:
            entry = self.memory_cache.get(key)
            if entry:
                value, expires_at = entry
                if self.clock() < expires_at:
                    self.cache_stats["hits"] += 1
                    self.cache_stats["memory_hits"] += 1
                    return value
                del self.memory_cache[key]
            self.cache_stats["misses"] += 1
        return None

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        if self.redis_client:
            try:
                self.redis_client.setex(self._make_key(key), max(int(ttl), 1), json.dumps(value, default=str))
            except redis.RedisError as e:
                logger.warning("Redis set failed for %s: %s", key, e)

        with self.memory_cache_lock:
            self.memory_cache[key] = (value, self.clock() + ttl)

    def delete(self, key: str) -> bool:
        redis_deleted = False
        if self.redis_client:
            try:
                redis_deleted = bool(self.redis_client.delete(self._make_key(key)))
            except redis.RedisError as e:
                logger.warning("Redis delete failed for %s: %s", key, e)

        with self.memory_cache_lock:
            memory_deleted = self.memory_cache.pop(key, None) is not None
        return redis_deleted or memory_deleted

    def clear(self) -> None:
        if self.redis_client:
            try:
                keys = self.redis_client.keys(self._make_key("*"))
                if keys:
                    self.redis_client.delete(*keys)
            except redis.RedisError as e:
                logger.warning("Redis clear failed: %s", e)

        with self.memory_cache_lock:
            self.memory_cache.clear()

    def evict_expired(self) -> int:
        """Drop expired memory entries; returns how many were removed."""
        now = self.clock()
        with self.memory_cache_lock:
            expired = [key for key, (_, expires_at) in self.memory_cache.items() if expires_at <= now]
            for key in expired:
                del self.memory_cache[key]
            self.cache_stats["evictions"] += len(expired)
        if expired:
            logger.debug("Evicted %d expired statistics entries", len(expired))
        return len(expired)

    def get_stats(self) -> Dict[str, Any]:
        with self.memory_cache_lock:
            stats = dict(self.cache_stats)
            stats["memory_cache_size"] = len(self.memory_cache)
        stats["redis_available"] = self.redis_client is not None
        total = stats["hits"] + stats["misses"]
        stats["hit_ratio"] = stats["hits"] / total if total else 0.0
        return stats

    # ------------------------- Background eviction ------------------------- #
    def start(self, interval: float = settings.stats_eviction_interval) -> None:
        """Start the periodic eviction task on the running event loop."""
        if self._eviction_task is None or self._eviction_task.done():
            self._eviction_task = asyncio.get_running_loop().create_task(self._evict_periodically(interval))

    async def stop(self) -> None:
        task, self._eviction_task = self._eviction_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _evict_periodically(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.evict_expired()
