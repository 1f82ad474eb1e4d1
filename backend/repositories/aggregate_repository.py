"""Repository for daily aggregate entities in Azure Tables.

Key layout:
    PartitionKey  ds:{datasetId}|d:{YYYY-MM-DD}
    RowKey        m:{model}|w:{workspaceId}|mc:{machineId}|u:{userId}

The u: segment is always written, empty when there is no user dimension.
Both keys are sanitized: Azure Tables rejects / \\ # ? and control chars.
"""

from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from azure.data.tables import TableClient, UpdateMode
from pydantic import ValidationError

from core.logger import get_logger
from core.normalization import sanitize_table_key
from repositories.utils import (
    QUERY_TIMEOUT_SECONDS,
    WRITE_TIMEOUT_SECONDS,
    log_slow_query,
    run_with_timeout,
)
from schemas import SCHEMA_VERSION, DailyAggEntity, DailyRollupKey, UserKeyType

logger = get_logger(__name__)

_PARTITION_FILTER = "PartitionKey eq @pk"


def build_agg_partition_key(dataset_id: str, day: str) -> str:
    return sanitize_table_key(f"ds:{dataset_id}|d:{day}")


def build_row_key(key: DailyRollupKey) -> str:
    user_id = (key.user_id or "").strip()
    return sanitize_table_key(
        f"m:{key.model}|w:{key.workspace_id}|mc:{key.machine_id}|u:{user_id}"
    )


def create_daily_agg_entity(
    *,
    dataset_id: str,
    day: str,
    model: str,
    workspace_id: str,
    machine_id: str,
    input_tokens: int,
    output_tokens: int,
    interactions: int,
    workspace_name: str | None = None,
    machine_name: str | None = None,
    user_id: str | None = None,
    user_key_type: UserKeyType | None = None,
    share_with_team: bool | None = None,
    consent_at: str | None = None,
    updated_at: datetime | None = None,
) -> DailyAggEntity:
    """Build the storage entity for one rollup.

    userKeyType, shareWithTeam and consentAt are only written alongside a
    consenting user dimension; names only when given.
    """
    effective_user_id = (user_id or "").strip() or None
    key = DailyRollupKey(
        day=day,
        model=model,
        workspace_id=workspace_id,
        machine_id=machine_id,
        user_id=effective_user_id,
    )
    consenting = bool(effective_user_id and share_with_team)
    return DailyAggEntity(
        partition_key=build_agg_partition_key(dataset_id, day),
        row_key=build_row_key(key),
        schema_version=SCHEMA_VERSION,
        dataset_id=dataset_id,
        day=day,
        model=model,
        workspace_id=workspace_id,
        workspace_name=workspace_name or None,
        machine_id=machine_id,
        machine_name=machine_name or None,
        user_id=effective_user_id,
        user_key_type=user_key_type if consenting else None,
        share_with_team=True if consenting else None,
        consent_at=consent_at if consenting else None,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        interactions=interactions,
        updated_at=(updated_at or datetime.now(UTC)).isoformat(),
    )


def _plain(value: Any) -> Any:
    # Int64 and typed properties come back as EntityProperty(value, edm_type)
    return getattr(value, "value", value)


def normalize_table_entity(
    raw: Mapping[str, Any], partition_key: str, default_day: str
) -> DailyAggEntity | None:
    """Coerce an SDK entity into DailyAggEntity; None if dimensions are missing."""
    data = {k: _plain(v) for k, v in raw.items()}
    data.setdefault("PartitionKey", partition_key)
    data.setdefault("RowKey", "")
    data.setdefault("datasetId", "")
    data["day"] = data.get("day") or default_day
    data.setdefault("updatedAt", datetime.now(UTC).isoformat())
    for counter in ("inputTokens", "outputTokens", "interactions"):
        value = data.get(counter)
        if not isinstance(value, int | float) or isinstance(value, bool) or value < 0:
            data[counter] = 0
        else:
            data[counter] = int(value)
    for name in ("workspaceName", "machineName", "userId", "consentAt"):
        value = data.get(name)
        if not isinstance(value, str) or not value.strip():
            data.pop(name, None)
    if not (data.get("model") and data.get("workspaceId") and data.get("machineId")):
        return None
    try:
        return DailyAggEntity.model_validate(data)
    except ValidationError as e:
        logger.warning(
            "table.entity.invalid",
            partition_key=partition_key,
            row_key=data.get("RowKey"),
            errors=e.error_count(),
        )
        return None


class DailyAggRepository:
    """Async access to one aggregate table through a sync TableClient."""

    def __init__(self, table_client: TableClient) -> None:
        self.table_client = table_client

    @log_slow_query("create_table")
    async def create_table(self) -> None:
        await run_with_timeout(
            "create_table", WRITE_TIMEOUT_SECONDS, self.table_client.create_table
        )

    @log_slow_query("upsert_entity")
    async def upsert(self, entity: Mapping[str, Any]) -> None:
        await run_with_timeout(
            "upsert_entity",
            WRITE_TIMEOUT_SECONDS,
            self.table_client.upsert_entity,
            dict(entity),
            mode=UpdateMode.REPLACE,
        )

    @log_slow_query("delete_entity")
    async def delete(self, partition_key: str, row_key: str) -> None:
        await run_with_timeout(
            "delete_entity",
            WRITE_TIMEOUT_SECONDS,
            self.table_client.delete_entity,
            partition_key,
            row_key,
        )

    def _query_partition(self, partition_key: str) -> list[dict[str, Any]]:
        pages = self.table_client.query_entities(
            _PARTITION_FILTER, parameters={"pk": partition_key}
        )
        return [dict(entity) for entity in pages]

    @log_slow_query("list_partition")
    async def list_partition(
        self, partition_key: str, default_day: str
    ) -> list[DailyAggEntity]:
        """All well-formed entities of one partition (one dataset-day)."""
        raw_entities = await run_with_timeout(
            "query_entities",
            QUERY_TIMEOUT_SECONDS,
            self._query_partition,
            partition_key,
        )
        entities = []
        for raw in raw_entities:
            entity = normalize_table_entity(raw, partition_key, default_day)
            if entity is not None:
                entities.append(entity)
        return entities
