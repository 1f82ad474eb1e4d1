"""Tests for data_plane_service.

Tests Azure Tables operations against FakeTableClient:
- ensure_table_exists tolerates an existing table
- validate_access writes and deletes a probe; 403 maps to remediation text
- list_entities_for_range queries one partition per day
- upsert_entities_batch retries 429/503 with bounded backoff only
- Every operation closes the TableClient it opened
"""

from datetime import UTC, datetime

import pytest
import time_machine
from azure.core.exceptions import (
    HttpResponseError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.data.tables import UpdateMode

from core.day_keys import DayRangeTooLargeError, InvalidDayKeyError
from core.errors import REDACTED, BackendAuthError, BackendError, DataPlaneTimeoutError
from repositories.aggregate_repository import build_agg_partition_key
from services.data_plane_service import (
    RBAC_REMEDIATION_MESSAGE,
    SHARED_KEY_DISABLED_MESSAGE,
    UPSERT_MAX_ATTEMPTS,
    DataPlaneService,
    is_transient_error,
    table_endpoint,
)
from tests.factories import DailyAggEntityFactory
from tests.fakes import http_error

pytestmark = pytest.mark.unit

SECRET = "c2VjcmV0LWtleQ=="
NOW = datetime(2026, 2, 25, 18, 0, tzinfo=UTC)


def _seed(table_client, **overrides):
    entity = DailyAggEntityFactory.build(**overrides)
    table_client.entities[(entity.partition_key, entity.row_key)] = (
        entity.to_table_entity()
    )
    return entity


class TestHelpers:
    def test_table_endpoint(self):
        assert table_endpoint("acct") == "https://acct.table.core.windows.net"

    @pytest.mark.parametrize(
        "error",
        [
            http_error(429),
            http_error(503),
            ServiceRequestError("connection reset"),
            ServiceResponseError("incomplete read"),
            DataPlaneTimeoutError("upsert_entity", 60),
        ],
    )
    def test_transient(self, error):
        assert is_transient_error(error)

    @pytest.mark.parametrize(
        "error", [http_error(400), http_error(401), http_error(403), ValueError("x")]
    )
    def test_not_transient(self, error):
        assert not is_transient_error(error)


# =============================================================================
# Table lifecycle and access
# =============================================================================


class TestEnsureTableExists:
    @pytest.mark.asyncio
    async def test_creates_then_tolerates_existing(
        self, data_plane_service, table_client, settings
    ):
        await data_plane_service.ensure_table_exists(settings, "cred")
        await data_plane_service.ensure_table_exists(settings, "cred")

        assert table_client.create_calls == 2
        assert table_client.table_created is True

    @pytest.mark.asyncio
    async def test_conflict_status_is_tolerated(
        self, data_plane_service, table_client, settings
    ):
        table_client.create_error = http_error(409, "TableBeingDeleted")
        await data_plane_service.ensure_table_exists(settings, "cred")

    @pytest.mark.asyncio
    async def test_other_errors_are_wrapped_and_redacted(
        self, data_plane_service, table_client, settings
    ):
        table_client.create_error = http_error(500, f"server error near {SECRET}")

        with pytest.raises(BackendError) as exc_info:
            await data_plane_service.ensure_table_exists(settings, "cred", [SECRET])

        assert exc_info.value.message.startswith("Failed to create aggregate table")
        assert SECRET not in exc_info.value.message
        assert REDACTED in exc_info.value.message


class TestValidateAccess:
    @pytest.mark.asyncio
    async def test_probe_is_written_and_removed(
        self, data_plane_service, table_client, settings
    ):
        await data_plane_service.validate_access(settings, "cred")

        assert table_client.upsert_calls == 1
        assert table_client.delete_calls == 1
        assert table_client.entities == {}

    @pytest.mark.asyncio
    async def test_forbidden_maps_to_rbac_message(
        self, data_plane_service, table_client, settings
    ):
        table_client.upsert_error = http_error(403, "AuthorizationPermissionMismatch")

        with pytest.raises(BackendAuthError) as exc_info:
            await data_plane_service.validate_access(settings, "cred")

        assert exc_info.value.message == RBAC_REMEDIATION_MESSAGE
        assert "Storage Table Data Contributor" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_shared_key_disabled_by_policy(
        self, data_plane_service, table_client, make_settings
    ):
        table_client.upsert_error = http_error(
            403, "Key based authentication is not permitted on this storage account."
        )

        with pytest.raises(BackendAuthError) as exc_info:
            await data_plane_service.validate_access(
                make_settings(auth_mode="sharedKey"), "cred"
            )

        assert exc_info.value.message == SHARED_KEY_DISABLED_MESSAGE

    @pytest.mark.asyncio
    async def test_other_http_errors_propagate(
        self, data_plane_service, table_client, settings
    ):
        table_client.upsert_error = http_error(500)
        with pytest.raises(HttpResponseError) as exc_info:
            await data_plane_service.validate_access(settings, "cred")
        assert exc_info.value.status_code == 500

    @pytest.mark.asyncio
    async def test_access_check_entity_uses_injected_clock(self, table_client, settings):
        service = DataPlaneService(
            "m1",
            table_client_factory=lambda settings, credential: table_client,
            clock=lambda: NOW,
        )

        await service.validate_access(settings, "cred")

        [written] = table_client.upserted
        assert written["day"] == "2026-02-25"
        assert written["updatedAt"] == NOW.isoformat()

    @pytest.mark.asyncio
    @time_machine.travel(datetime(2026, 3, 1, 0, 30, tzinfo=UTC), tick=False)
    async def test_access_check_entity_defaults_to_current_time(
        self, data_plane_service, table_client, settings
    ):
        await data_plane_service.validate_access(settings, "cred")

        [written] = table_client.upserted
        assert written["day"] == "2026-03-01"
        assert written["updatedAt"] == "2026-03-01T00:30:00+00:00"


# =============================================================================
# Range listing
# =============================================================================


class TestListEntitiesForRange:
    @pytest.mark.asyncio
    async def test_one_partition_per_day(self, data_plane_service, table_client, settings):
        inside = [
            _seed(table_client, day="2026-02-24", model="gpt-4o"),
            _seed(table_client, day="2026-02-26", model="o1"),
        ]
        _seed(table_client, day="2026-02-27")
        _seed(table_client, day="2026-02-25", dataset_id="other")

        entities = await data_plane_service.list_entities_for_range(
            settings, "cred", "2026-02-24", "2026-02-26"
        )

        assert sorted(e.row_key for e in entities) == sorted(e.row_key for e in inside)
        assert table_client.queried_partitions == [
            build_agg_partition_key("default", day)
            for day in ("2026-02-24", "2026-02-25", "2026-02-26")
        ]

    @pytest.mark.asyncio
    async def test_failing_partition_contributes_nothing(
        self, data_plane_service, table_client, settings
    ):
        _seed(table_client, day="2026-02-24")
        kept = _seed(table_client, day="2026-02-25")
        table_client.query_errors[build_agg_partition_key("default", "2026-02-24")] = (
            http_error(500)
        )

        entities = await data_plane_service.list_entities_for_range(
            settings, "cred", "2026-02-24", "2026-02-25"
        )

        assert [e.row_key for e in entities] == [kept.row_key]

    @pytest.mark.asyncio
    async def test_malformed_entities_are_dropped(
        self, data_plane_service, table_client, settings
    ):
        pk = build_agg_partition_key("default", "2026-02-25")
        table_client.entities[(pk, "broken")] = {"PartitionKey": pk, "RowKey": "broken"}
        table_client.entities[(pk, "negative")] = {
            "PartitionKey": pk,
            "RowKey": "negative",
            "model": "gpt-4o",
            "workspaceId": "w",
            "machineId": "m",
            "inputTokens": -5,
            "outputTokens": 2,
        }

        entities = await data_plane_service.list_entities_for_range(
            settings, "cred", "2026-02-25", "2026-02-25"
        )

        assert [e.row_key for e in entities] == ["negative"]
        assert entities[0].input_tokens == 0
        assert entities[0].day == "2026-02-25"

    @pytest.mark.asyncio
    async def test_range_is_validated_before_querying(
        self, data_plane_service, table_client, settings
    ):
        with pytest.raises(DayRangeTooLargeError):
            await data_plane_service.list_entities_for_range(
                settings, "cred", "2025-01-01", "2026-02-05"
            )
        with pytest.raises(InvalidDayKeyError):
            await data_plane_service.list_entities_for_range(
                settings, "cred", "2026-02-26", "2026-02-25"
            )
        assert table_client.queried_partitions == []


# =============================================================================
# Batch upsert
# =============================================================================


class TestUpsertEntitiesBatch:
    @pytest.mark.asyncio
    async def test_replace_upsert(self, data_plane_service, table_client, settings):
        entities = DailyAggEntityFactory.build_batch(3)

        result = await data_plane_service.upsert_entities_batch(
            settings, "cred", entities
        )

        assert result.success_count == 3
        assert result.errors == []
        assert len(table_client.stored()) == 3
        assert table_client.upsert_modes == [UpdateMode.REPLACE] * 3

    @pytest.mark.asyncio
    async def test_throttling_retries_three_times(
        self, data_plane_service, table_client, settings, sleeps
    ):
        table_client.upsert_error = http_error(429, "Too Many Requests")
        entity = DailyAggEntityFactory.build()

        result = await data_plane_service.upsert_entities_batch(
            settings, "cred", [entity]
        )

        assert table_client.upsert_calls == UPSERT_MAX_ATTEMPTS == 4
        assert sleeps == [1, 2, 4]
        assert result.success_count == 0
        assert len(result.errors) == 1
        assert result.errors[0].entity == entity
        assert result.errors[0].error.startswith("HttpResponseError")

    @pytest.mark.asyncio
    async def test_auth_errors_are_not_retried(
        self, data_plane_service, table_client, settings, sleeps
    ):
        table_client.upsert_error = http_error(401, "Unauthorized")

        result = await data_plane_service.upsert_entities_batch(
            settings, "cred", [DailyAggEntityFactory.build()]
        )

        assert table_client.upsert_calls == 1
        assert sleeps == []
        assert len(result.errors) == 1

    @pytest.mark.asyncio
    async def test_partial_failure_is_reported_and_redacted(
        self, data_plane_service, table_client, settings
    ):
        good, bad = DailyAggEntityFactory.build_batch(2)
        table_client.upsert_errors_by_row[bad.row_key] = http_error(
            400, f"bad request signed with {SECRET}"
        )

        result = await data_plane_service.upsert_entities_batch(
            settings, "cred", [good, bad], [SECRET]
        )

        assert result.success_count == 1
        assert [f.entity.row_key for f in result.errors] == [bad.row_key]
        assert SECRET not in result.errors[0].error
        assert REDACTED in result.errors[0].error
        assert [e["RowKey"] for e in table_client.stored()] == [good.row_key]

    @pytest.mark.asyncio
    async def test_transient_failure_then_success(
        self, data_plane_service, table_client, settings, sleeps
    ):
        entity = DailyAggEntityFactory.build()
        original = table_client.upsert_entity
        failures = [http_error(503)]

        def flaky(wire, mode=None):
            if failures:
                table_client.upsert_calls += 1
                raise failures.pop()
            return original(wire, mode=mode)

        table_client.upsert_entity = flaky

        result = await data_plane_service.upsert_entities_batch(
            settings, "cred", [entity]
        )

        assert result.success_count == 1
        assert sleeps == [1]
        assert table_client.upsert_calls == 2


# =============================================================================
# Client lifetime
# =============================================================================


class TestClientLifetime:
    @pytest.mark.asyncio
    async def test_each_operation_closes_its_client(
        self, data_plane_service, table_client, settings
    ):
        await data_plane_service.ensure_table_exists(settings, "cred")
        await data_plane_service.validate_access(settings, "cred")
        await data_plane_service.list_entities_for_range(
            settings, "cred", "2026-02-24", "2026-02-25"
        )
        await data_plane_service.upsert_entities_batch(
            settings, "cred", DailyAggEntityFactory.build_batch(2)
        )

        assert table_client.close_calls == 4

    @pytest.mark.asyncio
    async def test_client_closed_when_access_check_fails(
        self, data_plane_service, table_client, settings
    ):
        table_client.upsert_error = http_error(403)

        with pytest.raises(BackendAuthError):
            await data_plane_service.validate_access(settings, "cred")

        assert table_client.close_calls == 1

    @pytest.mark.asyncio
    async def test_client_closed_when_table_creation_fails(
        self, data_plane_service, table_client, settings
    ):
        table_client.create_error = http_error(500)

        with pytest.raises(BackendError):
            await data_plane_service.ensure_table_exists(settings, "cred")

        assert table_client.close_calls == 1
