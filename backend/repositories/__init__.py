"""Repository layer for Azure Tables operations.

Repositories encapsulate all table calls, keeping services focused on sync
and query rules. This separation provides:
- Single source of truth for entity keys and wire shape
- Easier testing (table clients can be faked)
- One place where blocking SDK calls are moved off the event loop
"""

from repositories.aggregate_repository import (
    DailyAggRepository,
    build_agg_partition_key,
    build_row_key,
    create_daily_agg_entity,
)
from repositories.utils import log_slow_query, run_with_timeout

__all__ = [
    "DailyAggRepository",
    "build_agg_partition_key",
    "build_row_key",
    "create_daily_agg_entity",
    "log_slow_query",
    "run_with_timeout",
]
