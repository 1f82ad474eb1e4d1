"""Unit tests for core.cache module.

Tests the query result TTL cache:
- get/set/clear
- Entries expire after the TTL
- Size is bounded
"""

from datetime import UTC, datetime

import pytest

from core.cache import QUERY_CACHE_MAX_SIZE, QUERY_CACHE_TTL_SECONDS, QueryResultCache
from schemas import BackendQueryResult, SessionStats, StatsForPeriod


class FakeTimer:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _result(tokens: int) -> BackendQueryResult:
    stats = StatsForPeriod(tokens=tokens)
    return BackendQueryResult(
        stats=SessionStats(
            today=stats, month=stats, last_updated=datetime(2026, 2, 25, tzinfo=UTC)
        )
    )


@pytest.fixture
def timer() -> FakeTimer:
    return FakeTimer()


@pytest.fixture
def cache(timer: FakeTimer) -> QueryResultCache:
    return QueryResultCache(timer=timer)


@pytest.mark.unit
class TestQueryResultCache:
    def test_set_and_get(self, cache):
        result = _result(10)
        cache.set("k", result)
        assert cache.get("k") is result
        assert "k" in cache

    def test_get_returns_none_when_not_cached(self, cache):
        assert cache.get("missing") is None

    def test_entry_expires_after_ttl(self, cache, timer):
        cache.set("k", _result(10))

        timer.now += QUERY_CACHE_TTL_SECONDS - 1
        assert cache.get("k") is not None

        timer.now += 2
        assert cache.get("k") is None

    def test_clear(self, cache):
        cache.set("a", _result(1))
        cache.set("b", _result(2))
        cache.clear()
        assert len(cache) == 0

    def test_size_is_bounded(self, cache):
        for i in range(QUERY_CACHE_MAX_SIZE + 3):
            cache.set(f"k{i}", _result(i))
        assert len(cache) == QUERY_CACHE_MAX_SIZE
        assert cache.get_stats() == {
            "current_size": QUERY_CACHE_MAX_SIZE,
            "max_size": QUERY_CACHE_MAX_SIZE,
        }

    def test_set_for_testing_seeds_cache(self, cache):
        cache.set_for_testing("seeded", _result(5))
        assert cache.get("seeded").stats.today.tokens == 5
