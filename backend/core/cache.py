"""In-memory TTL caching for backend query results.

The query cache holds recent BackendQueryResults for 30 seconds so that
the status bar and details panel, which often ask for the same range back
to back, share one round trip to Azure Tables.

Note: Cache is per-process, not shared across editor windows. Suitable for
data that can tolerate short-term staleness (30s).
"""

import time
from collections.abc import Callable
from typing import TYPE_CHECKING

from cachetools import TTLCache

if TYPE_CHECKING:
    from schemas import BackendQueryResult

QUERY_CACHE_TTL_SECONDS = 30
# Room for the status bar (today + month) and details panel (month + range)
QUERY_CACHE_MAX_SIZE = 8


class QueryResultCache:
    """TTL cache of query results keyed by the full query fingerprint."""

    def __init__(
        self,
        ttl: float = QUERY_CACHE_TTL_SECONDS,
        maxsize: int = QUERY_CACHE_MAX_SIZE,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self._cache: TTLCache[str, "BackendQueryResult"] = TTLCache(
            maxsize=maxsize, ttl=ttl, timer=timer
        )

    def get(self, key: str) -> "BackendQueryResult | None":
        return self._cache.get(key)

    def set(self, key: str, result: "BackendQueryResult") -> None:
        self._cache[key] = result

    def clear(self) -> None:
        self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)

    def __contains__(self, key: object) -> bool:
        return key in self._cache

    def set_for_testing(self, key: str, result: "BackendQueryResult") -> None:
        """For testing: seed the cache without running a query."""
        self._cache[key] = result

    def get_stats(self) -> dict[str, int]:
        return {"current_size": len(self._cache), "max_size": int(self._cache.maxsize)}
