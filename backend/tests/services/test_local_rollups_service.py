"""Tests for local_rollups_service.

Tests compute_daily_rollups_from_local_sessions against real files on disk:
- Cached path: mtime day, first model absorbs interactions and fluency
- Direct-parse path for VS Code .json and Copilot CLI .jsonl logs
- Lookback window, malformed cache data, unreadable files
- Workspace and machine names collected along the way
"""

import json
from datetime import UTC, datetime

import pytest
import time_machine

from schemas import DailyRollupKey
from services.local_rollups_service import (
    compute_daily_rollups_from_local_sessions,
    lookback_start,
)
from tests.factories import session_file_data
from tests.fakes import InMemorySessionSource, write_session_file

pytestmark = pytest.mark.unit

NOW = datetime(2026, 2, 25, 18, 0, tzinfo=UTC)
DAY_MTIME = datetime(2026, 2, 25, 12, 0, tzinfo=UTC).timestamp()


def _key(model: str, workspace_id: str = "abc", user_id: str | None = None):
    return DailyRollupKey(
        day="2026-02-25",
        model=model,
        workspace_id=workspace_id,
        machine_id="m1",
        user_id=user_id,
    )


class TestLookbackStart:
    def test_midnight_of_first_day(self):
        assert lookback_start(NOW, 1) == datetime(2026, 2, 25, tzinfo=UTC)
        assert lookback_start(NOW, 30) == datetime(2026, 1, 27, tzinfo=UTC)


# =============================================================================
# Cached path
# =============================================================================


class TestCachedSessionData:
    @pytest.mark.asyncio
    async def test_two_models_count_interactions_once(self, tmp_path):
        path = write_session_file(tmp_path, "abc", "s1.json", "{}", DAY_MTIME)
        source = InMemorySessionSource(
            files=[path],
            cached={path: session_file_data({"gpt-4o": (3, 2), "o3-mini": (5, 5)}, 1)},
        )

        result = await compute_daily_rollups_from_local_sessions(
            source, 30, "m1", now=NOW, machine_name="devbox"
        )

        assert sum(v.interactions for v in result.rollups.values()) == 1
        assert result.rollups[_key("gpt-4o")].interactions == 1
        assert result.rollups[_key("o3-mini")].interactions == 0
        assert result.rollups[_key("o3-mini")].input_tokens == 5
        assert result.cache_hits == 1

    @pytest.mark.asyncio
    async def test_files_bucketed_on_mtime_day(self, tmp_path):
        first = write_session_file(tmp_path, "abc", "a.json", "{}", DAY_MTIME)
        second = write_session_file(tmp_path, "abc", "b.json", "{}", DAY_MTIME)
        source = InMemorySessionSource(
            files=[first, second],
            cached={
                first: session_file_data({"gpt-4o": (3, 2)}, 1),
                second: session_file_data({"claude-sonnet-3.5": (4, 1)}, 1),
            },
        )

        result = await compute_daily_rollups_from_local_sessions(
            source, 30, "m1", now=NOW, machine_name="devbox"
        )

        assert result.day_keys == ["2026-02-25"]
        gpt = result.rollups[_key("gpt-4o")]
        claude = result.rollups[_key("claude-sonnet-3.5")]
        assert (gpt.input_tokens, gpt.output_tokens, gpt.interactions) == (3, 2, 1)
        assert (claude.input_tokens, claude.output_tokens, claude.interactions) == (4, 1, 1)
        assert source.cache_lookups == [(first, DAY_MTIME * 1000), (second, DAY_MTIME * 1000)]

    @pytest.mark.asyncio
    async def test_fluency_goes_to_first_model(self, tmp_path):
        path = write_session_file(tmp_path, "abc", "s.json", "{}", DAY_MTIME)
        usage = {"modeUsage": {"agent": 2}, "toolCalls": {"total": 3}}
        source = InMemorySessionSource(
            files=[path],
            cached={path: session_file_data({"gpt-4o": (1, 1), "o1": (1, 1)}, 2, usage)},
        )

        result = await compute_daily_rollups_from_local_sessions(
            source, 30, "m1", now=NOW, machine_name=""
        )

        assert result.rollups[_key("gpt-4o")].fluency.agent_mode_count == 2
        assert result.rollups[_key("gpt-4o")].fluency.tool_calls == {"total": 3}
        assert result.rollups[_key("o1")].fluency is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "cached",
        [
            {"modelUsage": {"gpt-4o": {"inputTokens": -1}}, "interactions": 1},
            {"modelUsage": {"gpt-4o": {"inputTokens": float("inf")}}, "interactions": 1},
            {"modelUsage": [], "interactions": 1},
            {"interactions": 1},
        ],
    )
    async def test_malformed_cache_data_skips_file(self, tmp_path, cached):
        path = write_session_file(tmp_path, "abc", "s.json", "{}", DAY_MTIME)
        source = InMemorySessionSource(files=[path], cached={path: cached})

        result = await compute_daily_rollups_from_local_sessions(
            source, 30, "m1", now=NOW, machine_name=""
        )

        assert result.rollups == {}
        assert result.cache_hits == 1

    @pytest.mark.asyncio
    async def test_user_id_goes_into_key(self, tmp_path):
        path = write_session_file(tmp_path, "abc", "s.json", "{}", DAY_MTIME)
        source = InMemorySessionSource(
            files=[path], cached={path: session_file_data({"gpt-4o": (1, 1)}, 1)}
        )

        result = await compute_daily_rollups_from_local_sessions(
            source, 30, "m1", user_id=" team-ui ", now=NOW, machine_name=""
        )

        assert list(result.rollups) == [_key("gpt-4o", user_id="team-ui")]


# =============================================================================
# Direct-parse path
# =============================================================================


class TestDirectParse:
    @pytest.mark.asyncio
    async def test_vscode_json_session(self, tmp_path):
        ts = int(datetime(2026, 2, 25, 9, 0, tzinfo=UTC).timestamp() * 1000)
        session = {
            "requests": [
                {
                    "timestamp": ts,
                    "modelId": "copilot/gpt-4o",
                    "message": {"parts": [{"text": "abcdefgh"}]},
                    "response": [{"value": "abcd"}],
                },
                {
                    "timestamp": ts,
                    "model": "o3-mini",
                    "message": {"parts": [{"text": "abcd"}]},
                    "response": [],
                },
                {"timestamp": ts, "message": {"parts": []}},
                "not-a-request",
            ]
        }
        path = write_session_file(
            tmp_path, "abc", "s.json", json.dumps(session), DAY_MTIME
        )
        source = InMemorySessionSource(files=[path])

        result = await compute_daily_rollups_from_local_sessions(
            source, 30, "m1", now=NOW, machine_name=""
        )

        gpt = result.rollups[_key("gpt-4o")]
        assert (gpt.input_tokens, gpt.output_tokens, gpt.interactions) == (2, 1, 1)
        o3 = result.rollups[_key("o3-mini")]
        assert (o3.input_tokens, o3.output_tokens, o3.interactions) == (1, 0, 1)
        assert result.cache_misses == 1

    @pytest.mark.asyncio
    async def test_requests_before_window_are_ignored(self, tmp_path):
        old = int(datetime(2025, 1, 1, tzinfo=UTC).timestamp() * 1000)
        session = {
            "requests": [
                {"timestamp": old, "message": {"parts": [{"text": "abcd"}]}},
            ]
        }
        path = write_session_file(tmp_path, "abc", "s.json", json.dumps(session), DAY_MTIME)

        result = await compute_daily_rollups_from_local_sessions(
            InMemorySessionSource(files=[path]), 30, "m1", now=NOW, machine_name=""
        )

        assert result.rollups == {}

    @pytest.mark.asyncio
    async def test_copilot_cli_jsonl_session(self, tmp_path):
        events = [
            {
                "type": "user.message",
                "timestamp": "2026-02-25T10:00:00Z",
                "model": "claude-sonnet-4",
                "data": {"content": "abcdefgh"},
            },
            {
                "type": "assistant.message",
                "timestamp": "2026-02-25T10:00:05Z",
                "model": "claude-sonnet-4",
                "data": {"content": "abcd"},
            },
            {
                "type": "tool.result",
                "timestamp": "2026-02-25T10:00:06Z",
                "model": "claude-sonnet-4",
                "data": {"output": "abcdabcdabcd"},
            },
        ]
        content = "\n".join(json.dumps(e) for e in events) + "\nnot json\n"
        path = write_session_file(tmp_path, "abc", "events.jsonl", content, DAY_MTIME)

        result = await compute_daily_rollups_from_local_sessions(
            InMemorySessionSource(files=[path]), 30, "m1", now=NOW, machine_name=""
        )

        value = result.rollups[_key("claude-sonnet-4")]
        assert (value.input_tokens, value.output_tokens, value.interactions) == (5, 1, 1)

    @pytest.mark.asyncio
    async def test_corrupt_json_is_skipped(self, tmp_path):
        path = write_session_file(tmp_path, "abc", "s.json", "{broken", DAY_MTIME)

        result = await compute_daily_rollups_from_local_sessions(
            InMemorySessionSource(files=[path]), 30, "m1", now=NOW, machine_name=""
        )

        assert result.rollups == {}
        assert result.files_processed == 1


# =============================================================================
# Window, names and file errors
# =============================================================================


class TestWindowAndNames:
    @pytest.mark.asyncio
    async def test_old_files_are_skipped(self, tmp_path):
        old_mtime = datetime(2025, 6, 1, tzinfo=UTC).timestamp()
        path = write_session_file(tmp_path, "abc", "s.json", "{}", old_mtime)
        source = InMemorySessionSource(
            files=[path], cached={path: session_file_data({"gpt-4o": (1, 1)}, 1)}
        )

        result = await compute_daily_rollups_from_local_sessions(
            source, 30, "m1", now=NOW, machine_name=""
        )

        assert result.rollups == {}
        assert result.files_skipped == 1
        assert source.cache_lookups == []

    @pytest.mark.asyncio
    async def test_missing_file_is_skipped(self, tmp_path):
        source = InMemorySessionSource(files=[str(tmp_path / "gone.json")])

        result = await compute_daily_rollups_from_local_sessions(
            source, 30, "m1", now=NOW, machine_name=""
        )

        assert result.rollups == {}
        assert result.files_processed == 0

    @pytest.mark.asyncio
    async def test_collects_workspace_and_machine_names(self, tmp_path):
        path = write_session_file(tmp_path, "abc", "s.json", "{}", DAY_MTIME)
        (tmp_path / "workspaceStorage" / "abc" / "workspace.json").write_text(
            json.dumps({"folder": "file:///home/u/src/token-tracker"}), encoding="utf-8"
        )
        source = InMemorySessionSource(
            files=[path], cached={path: session_file_data({"gpt-4o": (1, 1)}, 1)}
        )

        result = await compute_daily_rollups_from_local_sessions(
            source, 30, "m1", now=NOW, machine_name="devbox"
        )

        assert result.workspace_names_by_id == {"abc": "token-tracker"}
        assert result.machine_names_by_id == {"m1": "devbox"}

    @pytest.mark.asyncio
    @time_machine.travel(NOW, tick=False)
    async def test_defaults_to_current_time_and_source_files(self, tmp_path):
        path = write_session_file(tmp_path, "abc", "s.json", "{}", DAY_MTIME)
        source = InMemorySessionSource(
            files=[path], cached={path: session_file_data({"gpt-4o": (1, 1)}, 1)}
        )

        result = await compute_daily_rollups_from_local_sessions(
            source, 1, "m1", machine_name=""
        )

        assert result.day_keys == ["2026-02-25"]
