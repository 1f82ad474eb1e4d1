"""Daily rollup aggregation.

A rollup map is a plain dict keyed by DailyRollupKey (frozen, hashable), so
an upsert is one O(1) lookup. Merging sums scalar counters and deep-merges
nested count maps key by key.
"""

import copy
import math
from collections.abc import Mapping
from typing import Any

from schemas import (
    FLUENCY_COUNTER_FIELDS,
    FLUENCY_MAP_FIELDS,
    DailyRollupKey,
    DailyRollupValue,
    FluencyMetrics,
)

RollupMap = dict[DailyRollupKey, DailyRollupValue]

# usageAnalysis section -> FluencyMetrics map field
_USAGE_ANALYSIS_MAPS = {
    "toolCalls": "tool_calls",
    "contextReferences": "context_refs",
    "mcpTools": "mcp_tools",
    "modelSwitching": "model_switching",
    "editScope": "edit_scope",
    "agentTypes": "agent_types",
    "applyUsage": "apply_usage",
    "sessionDuration": "session_duration",
}
_MODE_COUNTERS = {
    "ask": "ask_mode_count",
    "edit": "edit_mode_count",
    "agent": "agent_mode_count",
    "plan": "plan_mode_count",
    "customAgent": "custom_agent_mode_count",
}


def _is_count(value: object) -> bool:
    return (
        isinstance(value, int | float)
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def deep_merge_counts(
    base: Mapping[str, Any], incoming: Mapping[str, Any]
) -> dict[str, Any]:
    """Merge two nested count maps without mutating either.

    Numbers under the same key are added, nested maps merge recursively,
    keys seen on one side only are carried over. Non-numeric leaves take
    the incoming value.

        >>> deep_merge_counts({"total": 5, "byTool": {"fix": 2}},
        ...                   {"total": 3, "byTool": {"fix": 1, "tests": 2}})
        {'total': 8, 'byTool': {'fix': 3, 'tests': 2}}
    """
    merged: dict[str, Any] = copy.deepcopy(dict(base))
    for key, value in incoming.items():
        current = merged.get(key)
        if _is_count(value):
            merged[key] = (current if _is_count(current) else 0) + value
        elif isinstance(value, Mapping):
            merged[key] = deep_merge_counts(
                current if isinstance(current, Mapping) else {}, value
            )
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _count_map(value: object) -> dict[str, Any]:
    """Keep only numeric leaves and nested maps of a usage-analysis section."""
    if not isinstance(value, Mapping):
        return {}
    result: dict[str, Any] = {}
    for key, item in value.items():
        if _is_count(item) and item >= 0:
            result[str(key)] = item
        elif isinstance(item, Mapping):
            nested = _count_map(item)
            if nested:
                result[str(key)] = nested
    return result


def merge_fluency(
    existing: FluencyMetrics | None, incoming: FluencyMetrics | None
) -> FluencyMetrics | None:
    if incoming is None:
        return existing.model_copy(deep=True) if existing else None
    if existing is None:
        return incoming.model_copy(deep=True)
    updates: dict[str, Any] = {}
    for name in FLUENCY_COUNTER_FIELDS:
        updates[name] = getattr(existing, name) + getattr(incoming, name)
    for name in FLUENCY_MAP_FIELDS:
        updates[name] = deep_merge_counts(getattr(existing, name), getattr(incoming, name))
    return FluencyMetrics(**updates)


def fluency_metrics_from_usage_analysis(
    usage_analysis: Mapping[str, Any] | None, interactions: int
) -> FluencyMetrics | None:
    """Turn one session's usageAnalysis into per-session fluency counters."""
    if not isinstance(usage_analysis, Mapping):
        return None

    counters: dict[str, Any] = {
        "session_count": 1,
        "multi_turn_sessions": 1 if interactions > 1 else 0,
    }
    mode_usage = usage_analysis.get("modeUsage")
    if isinstance(mode_usage, Mapping):
        for mode, field in _MODE_COUNTERS.items():
            value = mode_usage.get(mode)
            if _is_count(value) and value >= 0:
                counters[field] = int(value)

    for section, field in _USAGE_ANALYSIS_MAPS.items():
        counters[field] = _count_map(usage_analysis.get(section))

    multi_file_edits = counters["edit_scope"].get("multiFileEdits")
    if _is_count(multi_file_edits):
        counters["multi_file_edits"] = int(multi_file_edits)

    return FluencyMetrics(**counters)


def upsert_daily_rollup(
    rollups: RollupMap, key: DailyRollupKey, delta: DailyRollupValue
) -> None:
    """Add delta to the rollup for key, creating it on first sight.

    Zero deltas (no tokens, no interactions) never create an entry.
    """
    if delta.is_zero:
        return

    existing = rollups.get(key)
    if existing is None:
        rollups[key] = delta.model_copy(deep=True)
        return

    existing.input_tokens += delta.input_tokens
    existing.output_tokens += delta.output_tokens
    existing.interactions += delta.interactions
    if delta.fluency is not None:
        existing.fluency = merge_fluency(existing.fluency, delta.fluency)
