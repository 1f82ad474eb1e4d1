"""Daily rollups computed from local Copilot session logs.

Each session file inside the lookback window contributes to the rollup map
through one of two paths:

1. Cached: the session source already holds per-file totals
   (modelUsage, interactions, usageAnalysis). The file is bucketed on the
   UTC day of its modification time. The first model in modelUsage order
   absorbs the file's interactions and fluency counters; other models add
   tokens only, so one user turn is never counted once per model.
2. Direct parse: on a cache miss the JSON/JSONL log is read and every
   request/event is estimated on its own timestamp's day.
"""

import asyncio
import json
import os
import socket
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from core.day_keys import normalize_timestamp_to_ms, to_utc_day_key, utc_now
from core.logger import get_logger
from core.normalization import (
    extract_workspace_id_from_session_path,
    normalize_name_for_storage,
    strip_hostname_domain,
    try_resolve_workspace_name_from_session_path,
)
from schemas import DailyRollupKey, DailyRollupValue, SessionFileData
from services.rollups_service import (
    RollupMap,
    fluency_metrics_from_usage_analysis,
    upsert_daily_rollup,
)
from services.session_sources import DEFAULT_MODEL, SessionDataSource

logger = get_logger(__name__)


@dataclass
class LocalRollups:
    """Rollup map for one sync pass plus display names seen along the way."""

    rollups: RollupMap = field(default_factory=dict)
    workspace_names_by_id: dict[str, str] = field(default_factory=dict)
    machine_names_by_id: dict[str, str] = field(default_factory=dict)
    files_processed: int = 0
    files_skipped: int = 0
    cache_hits: int = 0
    cache_misses: int = 0

    @property
    def day_keys(self) -> list[str]:
        return sorted({key.day for key in self.rollups})


def lookback_start(now: datetime, lookback_days: int) -> datetime:
    """Midnight UTC of the first day of the lookback window."""
    today = now.astimezone(UTC).replace(hour=0, minute=0, second=0, microsecond=0)
    return today - timedelta(days=lookback_days - 1)


def local_machine_name() -> str | None:
    return normalize_name_for_storage(strip_hostname_domain(socket.gethostname()))


def _day_from_ms(ms: float) -> str:
    return to_utc_day_key(datetime.fromtimestamp(ms / 1000, tz=UTC))


def _apply_cached_file(
    rollups: RollupMap,
    data: SessionFileData,
    day: str,
    workspace_id: str,
    machine_id: str,
    user_id: str | None,
) -> None:
    fluency = fluency_metrics_from_usage_analysis(
        data.usage_analysis, data.interactions
    )
    for index, (model, usage) in enumerate(data.model_usage.items()):
        first = index == 0
        key = DailyRollupKey(
            day=day,
            model=model,
            workspace_id=workspace_id,
            machine_id=machine_id,
            user_id=user_id,
        )
        upsert_daily_rollup(
            rollups,
            key,
            DailyRollupValue(
                input_tokens=usage.input_tokens,
                output_tokens=usage.output_tokens,
                interactions=data.interactions if first else 0,
                fluency=fluency if first else None,
            ),
        )


def _parse_jsonl(
    content: str,
    source: SessionDataSource,
    file_mtime_ms: float,
    start_ms: float,
) -> list[tuple[str, str, DailyRollupValue]]:
    """Copilot CLI event log: one JSON event per line."""
    deltas: list[tuple[str, str, DailyRollupValue]] = []
    for line in content.splitlines():
        if not line.strip():
            continue
        try:
            event = json.loads(line)
        except ValueError:
            continue
        if not isinstance(event, dict):
            continue

        event_ms = normalize_timestamp_to_ms(event.get("timestamp")) or file_mtime_ms
        if event_ms < start_ms:
            continue
        model = str(event.get("model") or DEFAULT_MODEL)
        data = event.get("data") if isinstance(event.get("data"), dict) else {}

        input_tokens = output_tokens = interactions = 0
        event_type = event.get("type")
        if event_type == "user.message" and isinstance(data.get("content"), str):
            input_tokens = source.estimate_tokens_from_text(data["content"], model)
            interactions = 1
        elif event_type == "assistant.message" and isinstance(data.get("content"), str):
            output_tokens = source.estimate_tokens_from_text(data["content"], model)
        elif event_type == "tool.result" and isinstance(data.get("output"), str):
            input_tokens = source.estimate_tokens_from_text(data["output"], model)

        deltas.append(
            (
                _day_from_ms(event_ms),
                model,
                DailyRollupValue(
                    input_tokens=input_tokens,
                    output_tokens=output_tokens,
                    interactions=interactions,
                ),
            )
        )
    return deltas


def _parse_json(
    session_file: str,
    content: str,
    source: SessionDataSource,
    file_mtime_ms: float,
    start_ms: float,
) -> list[tuple[str, str, DailyRollupValue]]:
    """VS Code chat session: {"requests": [...]}; each request is one interaction."""
    try:
        session = json.loads(content)
    except ValueError as e:
        logger.warning("session.parse.failed", session_file=session_file, error=str(e))
        return []
    if not isinstance(session, dict):
        logger.warning("session.parse.invalid", session_file=session_file)
        return []

    requests = session.get("requests")
    deltas: list[tuple[str, str, DailyRollupValue]] = []
    for request in requests if isinstance(requests, list) else []:
        if not isinstance(request, dict):
            continue
        raw_ts = request.get("timestamp", session.get("lastMessageDate"))
        event_ms = normalize_timestamp_to_ms(raw_ts) or file_mtime_ms
        if event_ms < start_ms:
            continue
        model = source.get_model_from_request(request)

        input_tokens = 0
        message = request.get("message")
        parts = message.get("parts") if isinstance(message, dict) else None
        for part in parts if isinstance(parts, list) else []:
            if isinstance(part, dict) and isinstance(part.get("text"), str):
                input_tokens += source.estimate_tokens_from_text(part["text"], model)

        output_tokens = 0
        response = request.get("response")
        for item in response if isinstance(response, list) else []:
            if isinstance(item, dict) and isinstance(item.get("value"), str):
                output_tokens += source.estimate_tokens_from_text(item["value"], model)

        if input_tokens == 0 and output_tokens == 0:
            continue
        deltas.append(
            (
                _day_from_ms(event_ms),
                model,
                DailyRollupValue(
                    input_tokens=input_tokens,
                    output_tokens=output_tokens,
                    interactions=1,
                ),
            )
        )
    return deltas


async def _load_cached(
    source: SessionDataSource, session_file: str, mtime_ms: float
) -> tuple[bool, SessionFileData | None]:
    """Return (hit, data). A hit with data None means malformed cache data."""
    try:
        raw: Mapping[str, Any] | None = await source.get_session_file_data_cached(
            session_file, mtime_ms
        )
    except (OSError, ValueError) as e:
        logger.warning("session.cache.error", session_file=session_file, error=str(e))
        return False, None
    if raw is None:
        return False, None
    try:
        return True, SessionFileData.model_validate(raw)
    except ValidationError as e:
        logger.warning(
            "session.cache.invalid",
            session_file=session_file,
            errors=e.error_count(),
        )
        return True, None


async def compute_daily_rollups_from_local_sessions(
    source: SessionDataSource,
    lookback_days: int,
    machine_id: str,
    user_id: str | None = None,
    session_files: list[str] | None = None,
    now: datetime | None = None,
    machine_name: str | None = None,
) -> LocalRollups:
    """Build the rollup map for every session file modified inside the window."""
    now = now or utc_now()
    start_ms = lookback_start(now, lookback_days).timestamp() * 1000
    user_id = (user_id or "").strip() or None
    result = LocalRollups()

    name = machine_name if machine_name is not None else local_machine_name()
    if name:
        result.machine_names_by_id[machine_id] = name

    if session_files is None:
        session_files = await source.get_copilot_session_files()

    logger.info(
        "rollups.compute.started",
        files=len(session_files),
        start_day=_day_from_ms(start_ms),
        end_day=to_utc_day_key(now),
        lookback_days=lookback_days,
    )

    for session_file in session_files:
        try:
            stat = await asyncio.to_thread(os.stat, session_file)
        except OSError as e:
            logger.warning("session.stat.failed", session_file=session_file, error=str(e))
            continue
        mtime_ms = stat.st_mtime * 1000
        if mtime_ms < start_ms:
            result.files_skipped += 1
            continue
        result.files_processed += 1

        workspace_id = extract_workspace_id_from_session_path(session_file)
        if workspace_id not in result.workspace_names_by_id:
            ws_name = await asyncio.to_thread(
                try_resolve_workspace_name_from_session_path, session_file
            )
            if ws_name:
                result.workspace_names_by_id[workspace_id] = ws_name

        hit, cached = await _load_cached(source, session_file, mtime_ms)
        if hit:
            result.cache_hits += 1
            if cached is not None:
                _apply_cached_file(
                    result.rollups,
                    cached,
                    _day_from_ms(mtime_ms),
                    workspace_id,
                    machine_id,
                    user_id,
                )
            continue
        result.cache_misses += 1

        try:
            content = await asyncio.to_thread(
                Path(session_file).read_text, encoding="utf-8"
            )
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("session.read.failed", session_file=session_file, error=str(e))
            continue

        if session_file.endswith(".jsonl"):
            deltas = _parse_jsonl(content, source, mtime_ms, start_ms)
        else:
            deltas = _parse_json(session_file, content, source, mtime_ms, start_ms)

        for day, model, delta in deltas:
            key = DailyRollupKey(
                day=day,
                model=model,
                workspace_id=workspace_id,
                machine_id=machine_id,
                user_id=user_id,
            )
            upsert_daily_rollup(result.rollups, key, delta)

    _log_cache_performance(result)
    logger.info(
        "rollups.compute.completed",
        rollups=len(result.rollups),
        files_processed=result.files_processed,
        files_skipped=result.files_skipped,
    )
    return result


def _log_cache_performance(result: LocalRollups) -> None:
    total = result.cache_hits + result.cache_misses
    if total == 0:
        return
    logger.info(
        "rollups.cache.performance",
        hits=result.cache_hits,
        misses=result.cache_misses,
        hit_rate=round(result.cache_hits / total * 100, 1),
    )
