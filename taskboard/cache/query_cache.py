import asyncio
import json
import logging
from typing import Any, Awaitable, Callable

from cachetools import TTLCache

from taskboard.cache.layer import SEARCH_CACHE_PREFIX, EphemeralStore
from taskboard.core.errors import StoreUnavailable

logger = logging.getLogger(__name__)


def search_cache_key(
    context: str,
    search: str | None,
    page: int,
    limit: int,
    sort_by: str,
    sort_order: str,
    viewer_id: str,
) -> str:
    """Key for one list query. Viewer-scoped: results embed per-viewer isStarred."""
    term = search.strip() if search and search.strip() else "all"
    return (
        f"{SEARCH_CACHE_PREFIX}{context}:{term}:{page}:{limit}:"
        f"{sort_by}:{sort_order}:{viewer_id}"
    )


class QueryCache:
    """
    Read-through cache for task list queries on top of the ephemeral store.

    Entries are disposable projections. Any store failure degrades to
    loading from the database; it is never surfaced to the caller. Every
    mutation drops the whole ``tasks:search:`` keyspace.
    """

    def __init__(self, store: EphemeralStore, ttl_seconds: int = 300):
        self.store = store
        self.ttl_seconds = ttl_seconds
        # Per-key locks so concurrent misses for one key load once.
        self._locks: TTLCache = TTLCache(maxsize=10_000, ttl=300)
        self.stats = {
            "hits": 0,
            "misses": 0,
            "errors": 0,
            "invalidations": 0,
        }

    def _lock_for(self, key: str) -> asyncio.Lock:
        return self._locks.setdefault(key, asyncio.Lock())

    async def _read(self, key: str) -> Any | None:
        try:
            raw = await self.store.get(key)
        except StoreUnavailable as e:
            logger.warning(f"Cache check failed, proceeding without cache: {e}")
            self.stats["errors"] += 1
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Discarding unreadable cache entry {key}")
            return None

    async def _write(self, key: str, value: Any) -> None:
        try:
            await self.store.set(key, json.dumps(value, default=str), self.ttl_seconds)
            logger.debug(f"Cached result for key: {key} with TTL: {self.ttl_seconds}")
        except StoreUnavailable as e:
            logger.warning(f"Failed to cache result: {e}")
            self.stats["errors"] += 1

    async def get_or_load(self, key: str, loader: Callable[[], Awaitable[Any]]) -> Any:
        """
        Retrieve a JSON-compatible value: cache -> loader.

        Args:
            key: Cache key (see ``search_cache_key``)
            loader: Async function producing the value on a miss

        Returns:
            The cached or freshly loaded value
        """
        value = await self._read(key)
        if value is not None:
            self.stats["hits"] += 1
            logger.debug(f"Cache hit for key: {key}")
            return value

        async with self._lock_for(key):
            value = await self._read(key)
            if value is not None:
                self.stats["hits"] += 1
                return value

            self.stats["misses"] += 1
            logger.debug(f"Cache miss for key: {key}")
            value = await loader()
            if value is not None:
                await self._write(key, value)
            return value

    async def invalidate(self) -> int:
        """Drop every cached list query."""
        try:
            deleted = await self.store.delete_prefix(SEARCH_CACHE_PREFIX)
        except StoreUnavailable as e:
            logger.error(f"Error invalidating task cache: {e}")
            self.stats["errors"] += 1
            return 0
        self.stats["invalidations"] += 1
        if deleted:
            logger.info(f"Invalidated {deleted} task cache entries")
        return deleted

    def get_stats(self) -> dict:
        lookups = self.stats["hits"] + self.stats["misses"]
        return {
            **self.stats,
            "hitRate": self.stats["hits"] / lookups if lookups else 0,
        }
