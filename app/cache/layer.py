import asyncio
import fnmatch
import json
import logging
import math
import time
from typing import Any, Awaitable, Callable, Iterable, Optional

from cachetools import TLRUCache, TTLCache
from redis.asyncio import Redis, RedisError

from app.core.config import Settings

logger = logging.getLogger(__name__)

# Seconds between reconnect attempts once Redis has been marked down.
RECONNECT_INTERVAL = 30


def _l1_expiry(_key: str, entry: tuple[float, Any], _now: float) -> float:
    return entry[0]


class CacheLayer:
    """
    Two-tier cache with graceful degradation.

    L1: Process-local TLRUCache (fast, limited size, entries live at most l1_ttl_seconds)
    L2: Redis (shared, larger capacity)

    The database is always the source of truth. Every Redis failure is logged
    and turned into a miss or a failed write; nothing here raises RedisError
    to callers.

    Features:
    - Read-through loading with per-key locks (stampede protection)
    - Exact and glob invalidation across both tiers
    - Automatic key namespacing in Redis
    - Reconnect with a purge of derived entries written before an outage
    """

    def __init__(
        self,
        settings: Settings,
        redis: Redis | None = None,
        reconnect_purge: Iterable[str] = (),
    ):
        self._settings = settings
        self._redis = redis
        self._reconnect_purge = tuple(reconnect_purge)
        self._last_attempt = 0.0
        self._was_connected = False
        self.connected = False

        self.l1: TLRUCache | None = None
        if settings.l1_maxsize > 0:
            self.l1 = TLRUCache(maxsize=settings.l1_maxsize, ttu=_l1_expiry)

        # Lock management for cache stampede protection: concurrent loaders of
        # one key share one lock; locks are dropped 300s after last use.
        self._locks: TTLCache = TTLCache(maxsize=10_000, ttl=300)

        # Stats tracking
        self.stats = {
            "l1_hits": 0,
            "l2_hits": 0,
            "misses": 0,
            "errors": 0,
        }

    async def connect(self):
        """Open the Redis connection. Failure leaves the layer running on L1 only."""
        if self._redis is None:
            if not self._settings.redis_dsn:
                logger.info("Redis disabled, cache layer running on L1 only")
                return
            self._redis = Redis.from_url(
                self._settings.redis_dsn,
                encoding="utf-8",
                decode_responses=True,
                max_connections=self._settings.redis_pool_size,
                socket_connect_timeout=5,
                socket_timeout=5,
                socket_keepalive=True,
                health_check_interval=30,
            )

        self._last_attempt = time.monotonic()
        try:
            await self._redis.ping()
        except (RedisError, OSError) as e:
            self.connected = False
            if self._settings.redis_required:
                logger.error("Redis is required but unavailable: %s", e)
                raise
            logger.warning(
                "Redis connection failed, continuing with L1 cache only: %s",
                e,
                exc_info=not self._settings.is_production,
            )
            return

        self.connected = True
        self._was_connected = True
        logger.info("Redis connection established")

    def _l2_key(self, key: str) -> str:
        """Build namespaced L2 cache key."""
        return f"{self._settings.cache_namespace}{key}"

    def _strip_namespace(self, l2_key: str) -> str:
        return l2_key.removeprefix(self._settings.cache_namespace)

    def _serialize(self, value: Any) -> str:
        """Serialize value for storage."""
        try:
            return json.dumps(value, default=str)
        except (TypeError, ValueError) as e:
            logger.error("Serialization failed: %s", e)
            raise

    def _deserialize(self, raw: str) -> Any:
        """Deserialize value from storage."""
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            # Return raw string if not valid JSON
            return raw

    def _mark_down(self, operation: str, target: str, error: Exception):
        logger.error("Redis %s error on %s: %s", operation, target, error)
        self.stats["errors"] += 1
        self.connected = False
        self._last_attempt = time.monotonic()

    async def _l2(self) -> Redis | None:
        """The Redis client if usable right now, retrying a lost connection at most every RECONNECT_INTERVAL."""
        if self._redis is None:
            return None
        if not self.connected and time.monotonic() - self._last_attempt >= RECONNECT_INTERVAL:
            await self.ping()
        return self._redis if self.connected else None

    def _set_l1(self, key: str, value: Any, ttl: int):
        if self.l1 is None:
            return
        lifetime = min(ttl, self._settings.l1_ttl_seconds)
        self.l1[key] = (time.monotonic() + lifetime, value)

    def _get_l1(self, key: str) -> tuple[float, Any] | None:
        if self.l1 is None:
            return None
        return self.l1.get(key)

    async def get(self, key: str) -> Any:
        """Retrieve a value: L1 -> L2. Returns None on a miss or when Redis is unreachable."""
        entry = self._get_l1(key)
        if entry is not None:
            self.stats["l1_hits"] += 1
            logger.debug("L1 hit: %s", key)
            return entry[1]

        redis = await self._l2()
        if redis is not None:
            try:
                raw = await redis.get(self._l2_key(key))
            except RedisError as e:
                self._mark_down("GET", key, e)
            else:
                if raw is not None:
                    self.stats["l2_hits"] += 1
                    logger.debug("L2 hit: %s", key)
                    value = self._deserialize(raw)
                    # Populate L1
                    self._set_l1(key, value, self._settings.l1_ttl_seconds)
                    return value

        self.stats["misses"] += 1
        logger.debug("Cache miss: %s", key)
        return None

    async def get_or_load(
        self,
        key: str,
        loader: Callable[[], Awaitable[Any]],
        ttl: Optional[int] = None,
    ) -> Any:
        """
        Read-through: return the cached value or load, store and return it.

        Args:
            key: Cache key (will be namespaced automatically in Redis)
            loader: Async function to load value on cache miss
            ttl: TTL in seconds (uses l2_ttl_seconds if None)

        Returns:
            Cached or loaded value; None (never cached) if the loader found nothing
        """
        value = await self.get(key)
        if value is not None:
            return value

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            # Double-check after acquiring lock: another request may have loaded it
            value = await self.get(key)
            if value is not None:
                return value

            logger.debug("Loading from source: %s", key)
            value = await loader()
            if value is None:
                return None

            await self.set(key, value, ttl)
            return value

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """
        Store a value in both tiers. True if at least one tier accepted it.
        """
        ttl = ttl or self._settings.l2_ttl_seconds
        data = self._serialize(value)
        self._set_l1(key, value, ttl)
        stored = self.l1 is not None

        redis = await self._l2()
        if redis is not None:
            try:
                await redis.set(self._l2_key(key), data, ex=ttl)
                logger.debug("Stored in L2: %s (ttl=%s)", key, ttl)
                stored = True
            except RedisError as e:
                self._mark_down("SET", key, e)
        return stored

    async def delete(self, key: str) -> bool:
        """
        Delete a key from both cache layers.

        Returns True if the key existed in either tier.
        """
        removed = False
        if self.l1 is not None:
            removed = self.l1.pop(key, None) is not None

        redis = await self._l2()
        if redis is not None:
            try:
                removed = bool(await redis.delete(self._l2_key(key))) or removed
                logger.debug("Deleted from both layers: %s", key)
            except RedisError as e:
                self._mark_down("DELETE", key, e)
        return removed

    async def delete_pattern(self, pattern: str) -> int:
        """
        Delete every key matching a glob pattern in both tiers.

        Returns the number of distinct keys removed.
        """
        removed: set[str] = set()

        if self.l1 is not None:
            for key in list(self.l1.keys()):
                if fnmatch.fnmatchcase(key, pattern):
                    self.l1.pop(key, None)
                    removed.add(key)

        redis = await self._l2()
        if redis is not None:
            try:
                l2_pattern = self._l2_key(pattern)
                cursor = 0
                while True:
                    cursor, found = await redis.scan(cursor, match=l2_pattern, count=100)
                    if found:
                        await redis.delete(*found)
                        removed.update(self._strip_namespace(k) for k in found)
                    if cursor == 0:
                        break
            except RedisError as e:
                self._mark_down("pattern delete", pattern, e)

        logger.debug("Pattern delete %s removed %d keys", pattern, len(removed))
        return len(removed)

    async def exists(self, key: str) -> bool:
        if self._get_l1(key) is not None:
            return True

        redis = await self._l2()
        if redis is not None:
            try:
                return await redis.exists(self._l2_key(key)) == 1
            except RedisError as e:
                self._mark_down("EXISTS", key, e)
        return False

    async def ttl(self, key: str) -> int:
        """Remaining lifetime in seconds; -2 if the key does not exist, -1 if it never expires."""
        redis = await self._l2()
        if redis is not None:
            try:
                remaining = await redis.ttl(self._l2_key(key))
                if remaining != -2:
                    return remaining
            except RedisError as e:
                self._mark_down("TTL", key, e)

        entry = self._get_l1(key)
        if entry is None:
            return -2
        return max(math.ceil(entry[0] - time.monotonic()), 0)

    async def ping(self) -> bool:
        """Check Redis, reconnecting if it had been marked down."""
        if self._redis is None:
            return False
        self._last_attempt = time.monotonic()
        try:
            await self._redis.ping()
        except (RedisError, OSError) as e:
            if self.connected:
                logger.warning("Redis ping failed: %s", e)
            self.connected = False
            return False

        if not self.connected:
            self.connected = True
            if self._was_connected:
                logger.info("Redis connection restored")
                await self._purge_after_outage()
            else:
                logger.info("Redis connection established")
            self._was_connected = True
        return True

    async def _purge_after_outage(self):
        # Invalidations issued while Redis was down never reached it.
        for pattern in self._reconnect_purge:
            await self.delete_pattern(pattern)

    async def close(self):
        """Graceful shutdown of cache connections."""
        if self._redis is not None:
            try:
                await self._redis.aclose()
                logger.info("Redis connection closed")
            except (RedisError, OSError) as e:
                logger.error("Error closing Redis: %s", e)
        self.connected = False

    def get_stats(self) -> dict:
        """Get cache statistics."""
        total = sum(
            [self.stats["l1_hits"], self.stats["l2_hits"], self.stats["misses"]]
        )

        return {
            **self.stats,
            "connected": self.connected,
            "l1_size": len(self.l1) if self.l1 is not None else 0,
            "l1_maxsize": self.l1.maxsize if self.l1 is not None else 0,
            "hit_rate": (
                (self.stats["l1_hits"] + self.stats["l2_hits"]) / total
                if total > 0
                else 0
            ),
        }
