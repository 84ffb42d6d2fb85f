import asyncio
import logging
import math
import time
from abc import ABC, abstractmethod
from typing import Callable, NamedTuple

from cachetools import TLRUCache
from redis.asyncio import Redis
from redis.exceptions import RedisError

from taskboard.core.config import Settings
from taskboard.core.errors import StoreUnavailable

logger = logging.getLogger(__name__)

SEARCH_CACHE_PREFIX = "tasks:search:"


class EphemeralStore(ABC):
    """
    TTL-bearing key/value store for sessions, tokens, counters and query results.

    Two backends implement the same contract:
    - RedisStore: shared, durable across workers
    - MemoryStore: process-local fallback with a periodic expiry sweep

    Values are strings; callers serialize structured data themselves.
    """

    backend = "abstract"

    @abstractmethod
    async def get(self, key: str) -> str | None: ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    @abstractmethod
    async def delete(self, key: str) -> None: ...

    @abstractmethod
    async def increment(self, key: str, window_seconds: int) -> int:
        """
        Atomically increment a counter and return the new count.

        The expiry is set only when this call creates the key; increments
        inside the window never extend it.
        """

    @abstractmethod
    async def delete_prefix(self, prefix: str) -> int:
        """Delete every key starting with prefix. Returns the number deleted."""

    async def ping(self) -> bool:
        return True

    async def start(self) -> None:
        """Begin any background work the backend needs."""

    async def close(self) -> None:
        """Release connections and stop background work."""

    def describe(self) -> dict:
        return {"type": self.backend}


class RedisStore(EphemeralStore):
    backend = "redis"

    def __init__(self, redis: Redis, namespace: str = ""):
        self._redis = redis
        self._namespace = namespace

    @classmethod
    def from_settings(cls, settings: Settings) -> "RedisStore":
        redis = Redis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=settings.redis_pool_size,
            socket_connect_timeout=settings.redis_connect_timeout_seconds,
            socket_timeout=settings.redis_connect_timeout_seconds,
            socket_keepalive=True,
            health_check_interval=30,
        )
        return cls(redis, namespace=settings.cache_namespace)

    def _key(self, key: str) -> str:
        """Build namespaced Redis key."""
        return f"{self._namespace}{key}"

    async def get(self, key: str) -> str | None:
        try:
            return await self._redis.get(self._key(key))
        except RedisError as e:
            logger.error(f"Redis GET error for {key}: {e}")
            raise StoreUnavailable(str(e)) from e

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            await self._redis.set(self._key(key), value, ex=max(int(ttl_seconds), 1))
        except RedisError as e:
            logger.error(f"Redis SET error for {key}: {e}")
            raise StoreUnavailable(str(e)) from e

    async def delete(self, key: str) -> None:
        try:
            await self._redis.delete(self._key(key))
        except RedisError as e:
            logger.error(f"Redis DELETE error for {key}: {e}")
            raise StoreUnavailable(str(e)) from e

    async def increment(self, key: str, window_seconds: int) -> int:
        # SET NX creates the key with its window only once; INCR keeps the TTL.
        redis_key = self._key(key)
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.set(redis_key, 0, ex=max(int(window_seconds), 1), nx=True)
                pipe.incr(redis_key)
                _, count = await pipe.execute()
            return int(count)
        except RedisError as e:
            logger.error(f"Redis INCR error for {key}: {e}")
            raise StoreUnavailable(str(e)) from e

    async def delete_prefix(self, prefix: str) -> int:
        pattern = self._key(prefix) + "*"
        cursor = 0
        deleted_count = 0
        try:
            while True:
                cursor, keys = await self._redis.scan(cursor, match=pattern, count=100)
                if keys:
                    await self._redis.delete(*keys)
                    deleted_count += len(keys)
                if cursor == 0:
                    break
        except RedisError as e:
            logger.error(f"Pattern delete error for {prefix}: {e}")
            raise StoreUnavailable(str(e)) from e

        logger.debug(f"Pattern delete completed: {prefix} ({deleted_count} keys)")
        return deleted_count

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except RedisError as e:
            raise StoreUnavailable(str(e)) from e

    async def close(self) -> None:
        """Graceful shutdown of Redis connections."""
        try:
            await self._redis.aclose()
            logger.info("Redis connection closed")
        except RedisError as e:
            logger.error(f"Error closing Redis: {e}")


class _Entry(NamedTuple):
    value: str
    deadline: float


def _entry_deadline(_key, entry: _Entry, _now) -> float:
    return entry.deadline


class MemoryStore(EphemeralStore):
    """
    Process-local fallback backed by cachetools TLRUCaches.

    Each entry carries its own deadline, so reads never return expired
    values. Expired entries still occupy memory until touched, which is
    why a sweep task evicts them every ``sweep_interval`` seconds.

    Only keys under ``evictable_prefixes`` (query results) are bounded by
    ``maxsize``; sessions, tokens and counters live in an unbounded map and
    leave only by expiry or deletion, as they do in Redis.

    Every operation completes without awaiting, so increments are atomic
    with respect to other coroutines on the same loop.
    """

    backend = "memory"

    def __init__(
        self,
        maxsize: int = 100_000,
        sweep_interval: float = 60.0,
        timer: Callable[[], float] = time.monotonic,
        evictable_prefixes: tuple[str, ...] = (SEARCH_CACHE_PREFIX,),
    ):
        self._timer = timer
        self._data: TLRUCache = TLRUCache(maxsize=math.inf, ttu=_entry_deadline, timer=timer)
        self._cache: TLRUCache = TLRUCache(maxsize=maxsize, ttu=_entry_deadline, timer=timer)
        self.evictable_prefixes = evictable_prefixes
        self.sweep_interval = sweep_interval
        self._sweeper: asyncio.Task | None = None

    def _map_for(self, key: str) -> TLRUCache:
        if self.evictable_prefixes and key.startswith(self.evictable_prefixes):
            return self._cache
        return self._data

    async def get(self, key: str) -> str | None:
        entry = self._map_for(key).get(key)
        return entry.value if entry is not None else None

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._map_for(key)[key] = _Entry(value, self._timer() + ttl_seconds)

    async def delete(self, key: str) -> None:
        self._map_for(key).pop(key, None)

    async def increment(self, key: str, window_seconds: int) -> int:
        data = self._map_for(key)
        entry = data.get(key)
        if entry is None:
            data[key] = _Entry("1", self._timer() + window_seconds)
            return 1
        count = int(entry.value) + 1
        data[key] = _Entry(str(count), entry.deadline)
        return count

    async def delete_prefix(self, prefix: str) -> int:
        deleted = 0
        for data in (self._data, self._cache):
            keys = [key for key in list(data) if key.startswith(prefix)]
            for key in keys:
                data.pop(key, None)
            deleted += len(keys)
        return deleted

    def sweep(self) -> int:
        """Evict expired entries. Returns the number evicted."""
        cleaned = sum(len(data.expire() or ()) for data in (self._data, self._cache))
        if cleaned:
            logger.debug(f"Cleaned up {cleaned} expired in-memory entries")
        return cleaned

    async def _sweep_loop(self):
        while True:
            await asyncio.sleep(self.sweep_interval)
            self.sweep()

    async def start(self) -> None:
        if self._sweeper is None:
            self._sweeper = asyncio.create_task(self._sweep_loop())

    async def close(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        self._data.clear()
        self._cache.clear()

    def __len__(self) -> int:
        return len(self._data) + len(self._cache)

    def describe(self) -> dict:
        return {
            "type": self.backend,
            "size": len(self),
            "cachedQueries": len(self._cache),
            "maxsize": self._cache.maxsize,
            "sweepInterval": self.sweep_interval,
        }


async def create_store(settings: Settings) -> EphemeralStore:
    """
    Select the ephemeral store backend once at startup.

    Redis is used when configured and reachable. An unreachable Redis is
    fatal only when ``redis_required`` is set; otherwise the process logs
    and continues on the in-memory fallback.
    """
    if settings.redis_disabled or not settings.redis_url:
        logger.info("Redis not configured, using in-memory ephemeral store")
        return MemoryStore(
            maxsize=settings.memory_store_maxsize,
            sweep_interval=settings.memory_sweep_interval_seconds,
        )

    store = RedisStore.from_settings(settings)
    try:
        await store.ping()
        logger.info("Redis connection established")
        return store
    except StoreUnavailable as e:
        await store.close()
        if settings.redis_required:
            logger.error(f"Redis initialization failed: {e}")
            raise
        logger.warning(f"Redis unavailable ({e}), continuing with in-memory fallback")
        return MemoryStore(
            maxsize=settings.memory_store_maxsize,
            sweep_interval=settings.memory_sweep_interval_seconds,
        )
