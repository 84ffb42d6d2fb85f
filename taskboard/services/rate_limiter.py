import logging

from taskboard.cache.layer import EphemeralStore

logger = logging.getLogger(__name__)

RATE_LIMIT_PREFIX = "rate-limit:"


class RateLimiter:
    """
    Fixed-window request counters.

    The first increment of a key opens its window; the count resets when
    the key expires. Store failures allow the request unless strict mode
    is on, in which case they block it.
    """

    def __init__(self, store: EphemeralStore, strict_mode: bool = False):
        self.store = store
        self.strict_mode = strict_mode
        self.stats = {"total": 0, "blocked": 0, "failures": 0}

    async def allow(self, key: str, limit: int, window_seconds: int) -> bool:
        self.stats["total"] += 1
        try:
            count = await self.store.increment(f"{RATE_LIMIT_PREFIX}{key}", window_seconds)
        except Exception as e:
            self.stats["failures"] += 1
            logger.error(f"Rate limit check error for {key}: {e}")
            if self.strict_mode:
                self.stats["blocked"] += 1
                return False
            return True

        allowed = count <= limit
        if not allowed:
            self.stats["blocked"] += 1
            logger.info(f"Rate limit exceeded for {key} ({count}/{limit})")
        return allowed

    async def reset(self, key: str) -> None:
        await self.store.delete(f"{RATE_LIMIT_PREFIX}{key}")
        logger.info(f"Rate limit reset for key: {key}")

    def get_stats(self) -> dict:
        total = self.stats["total"]

        def pct(n: int) -> str:
            return f"{n / total * 100:.2f}" if total else "0.00"

        return {
            **self.stats,
            "blockedPercentage": pct(self.stats["blocked"]),
            "failurePercentage": pct(self.stats["failures"]),
        }
