"""Tests for fixed-window rate limiting."""

from unittest.mock import AsyncMock

import pytest

from taskboard.core.errors import StoreUnavailable
from taskboard.services.rate_limiter import RateLimiter


@pytest.fixture
def limiter(memory_store):
    return RateLimiter(memory_store)


async def test_allows_up_to_limit_then_blocks(limiter):
    results = [await limiter.allow("1.2.3.4:/auth/login", 3, 60) for _ in range(5)]
    assert results == [True, True, True, False, False]


async def test_window_resets_after_expiry(limiter, fake_timer):
    for _ in range(3):
        await limiter.allow("k", 3, 60)
    assert await limiter.allow("k", 3, 60) is False

    fake_timer.advance(61)

    assert await limiter.allow("k", 3, 60) is True


async def test_keys_are_limited_independently(limiter):
    await limiter.allow("a", 1, 60)
    assert await limiter.allow("a", 1, 60) is False
    assert await limiter.allow("b", 1, 60) is True


async def test_reset_clears_counter(limiter):
    await limiter.allow("k", 1, 60)
    await limiter.reset("k")
    assert await limiter.allow("k", 1, 60) is True


async def test_store_failure_allows_by_default():
    store = AsyncMock()
    store.increment.side_effect = StoreUnavailable("down")
    limiter = RateLimiter(store)

    assert await limiter.allow("k", 1, 60) is True
    assert limiter.stats["failures"] == 1
    assert limiter.stats["blocked"] == 0


async def test_store_failure_blocks_in_strict_mode():
    store = AsyncMock()
    store.increment.side_effect = StoreUnavailable("down")
    limiter = RateLimiter(store, strict_mode=True)

    assert await limiter.allow("k", 1, 60) is False
    assert limiter.stats["blocked"] == 1


async def test_stats_percentages(limiter):
    await limiter.allow("k", 1, 60)
    await limiter.allow("k", 1, 60)

    stats = limiter.get_stats()

    assert stats["total"] == 2
    assert stats["blocked"] == 1
    assert stats["blockedPercentage"] == "50.00"
    assert stats["failurePercentage"] == "0.00"
