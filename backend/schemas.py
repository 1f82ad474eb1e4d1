"""Pydantic schemas for rollups, storage entities and query results."""

import json
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

SCHEMA_VERSION = 4

IdStrategy = Literal["raw", "hashed"]
UserKeyType = Literal["pseudonymous", "teamAlias", "entraObjectId"]


class SharingPolicy(BaseModel):
    """What a sync pass may upload, derived from the sharing profile.

    Never persisted; recomputed from settings on every sync and query.
    """

    model_config = ConfigDict(frozen=True)

    profile: str
    allow_cloud_sync: bool
    include_user_dimension: bool
    include_names: bool
    workspace_id_strategy: IdStrategy
    machine_id_strategy: IdStrategy


class ResolvedIdentity(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str | None = None
    user_key_type: UserKeyType | None = None


class TeamAliasValidation(BaseModel):
    model_config = ConfigDict(frozen=True)

    valid: bool
    alias: str | None = None
    error: str | None = None


# =============================================================================
# Rollups
# =============================================================================


class DailyRollupKey(BaseModel):
    """Dimensions of one daily rollup. Hashable, used directly as a dict key."""

    model_config = ConfigDict(frozen=True)

    day: str
    model: str
    workspace_id: str
    machine_id: str
    user_id: str | None = None

    @field_validator("user_id", mode="before")
    @classmethod
    def _blank_user_is_none(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.strip()
            return v or None
        return v


class FluencyMetrics(BaseModel):
    """Per-rollup usage-pattern counters aggregated from session analysis.

    Nested maps (tool calls, context references...) are merged key-wise and
    serialised to JSON strings on the wire because Azure Tables cannot store
    nested objects.
    """

    model_config = ConfigDict(protected_namespaces=())

    ask_mode_count: int = 0
    edit_mode_count: int = 0
    agent_mode_count: int = 0
    plan_mode_count: int = 0
    custom_agent_mode_count: int = 0
    session_count: int = 0
    multi_turn_sessions: int = 0
    multi_file_edits: int = 0

    tool_calls: dict[str, Any] = Field(default_factory=dict)
    context_refs: dict[str, Any] = Field(default_factory=dict)
    mcp_tools: dict[str, Any] = Field(default_factory=dict)
    model_switching: dict[str, Any] = Field(default_factory=dict)
    edit_scope: dict[str, Any] = Field(default_factory=dict)
    agent_types: dict[str, Any] = Field(default_factory=dict)
    apply_usage: dict[str, Any] = Field(default_factory=dict)
    session_duration: dict[str, Any] = Field(default_factory=dict)


# Scalar counters and nested maps of FluencyMetrics, in wire order
FLUENCY_COUNTER_FIELDS = (
    "ask_mode_count",
    "edit_mode_count",
    "agent_mode_count",
    "plan_mode_count",
    "custom_agent_mode_count",
    "session_count",
    "multi_turn_sessions",
    "multi_file_edits",
)
FLUENCY_MAP_FIELDS = (
    "tool_calls",
    "context_refs",
    "mcp_tools",
    "model_switching",
    "edit_scope",
    "agent_types",
    "apply_usage",
    "session_duration",
)


class DailyRollupValue(BaseModel):
    """Mutable accumulator for one rollup key during a sync pass."""

    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    interactions: int = Field(default=0, ge=0)
    fluency: FluencyMetrics | None = None

    @property
    def is_zero(self) -> bool:
        return not (self.input_tokens or self.output_tokens or self.interactions)


# =============================================================================
# Session data supplied by the local session cache
# =============================================================================


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        allow_inf_nan=False,
        protected_namespaces=(),
    )


class ModelTokenUsage(_CamelModel):
    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)


class SessionFileData(_CamelModel):
    """Cached per-file aggregate (modelUsage, interactions, usageAnalysis).

    Validated before use: negative or non-finite numbers and wrong shapes
    raise ValidationError and the file is skipped for the pass.
    """

    model_usage: dict[str, ModelTokenUsage]
    interactions: int = Field(ge=0)
    usage_analysis: dict[str, Any] | None = None


# =============================================================================
# Storage entity (Azure Tables)
# =============================================================================


class DailyAggEntity(BaseModel):
    """One row of the daily aggregate table (BackendAggDailyEntity).

    Dumped with camelCase names; optional fields left as None are omitted
    from the wire entity entirely.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        protected_namespaces=(),
    )

    partition_key: str = Field(alias="PartitionKey")
    row_key: str = Field(alias="RowKey")
    schema_version: int = SCHEMA_VERSION
    dataset_id: str
    day: str
    model: str
    workspace_id: str
    workspace_name: str | None = None
    machine_id: str
    machine_name: str | None = None
    user_id: str | None = None
    user_key_type: UserKeyType | None = None
    share_with_team: bool | None = None
    consent_at: str | None = None
    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    interactions: int = Field(default=0, ge=0)

    ask_mode_count: int | None = None
    edit_mode_count: int | None = None
    agent_mode_count: int | None = None
    plan_mode_count: int | None = None
    custom_agent_mode_count: int | None = None
    session_count: int | None = None
    multi_turn_sessions: int | None = None
    multi_file_edits: int | None = None
    tool_calls_json: str | None = None
    context_refs_json: str | None = None
    mcp_tools_json: str | None = None
    model_switching_json: str | None = None
    edit_scope_json: str | None = None
    agent_types_json: str | None = None
    apply_usage_json: str | None = None
    session_duration_json: str | None = None

    updated_at: str

    @property
    def tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def to_table_entity(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)

    def apply_fluency(self, fluency: FluencyMetrics) -> None:
        for name in FLUENCY_COUNTER_FIELDS:
            value = getattr(fluency, name)
            if value:
                setattr(self, name, value)
        for name in FLUENCY_MAP_FIELDS:
            value = getattr(fluency, name)
            if value:
                setattr(self, f"{name}_json", json.dumps(value, sort_keys=True))


# =============================================================================
# Queries
# =============================================================================


class QueryFilters(BaseModel):
    lookback_days: int = 30
    model: str | None = None
    workspace_id: str | None = None
    machine_id: str | None = None
    user_id: str | None = None


class StatsForPeriod(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    tokens: int = 0
    sessions: int = 0
    avg_interactions_per_session: float = 0
    avg_tokens_per_session: int = 0
    model_usage: dict[str, ModelTokenUsage] = Field(default_factory=dict)
    editor_usage: dict[str, dict[str, int]] = Field(default_factory=dict)
    co2: float = 0
    trees_equivalent: float = 0
    water_usage: float = 0
    estimated_cost: float = 0


class SessionStats(BaseModel):
    today: StatsForPeriod
    month: StatsForPeriod
    last_updated: datetime


class WorkspaceTokenTotal(BaseModel):
    workspace_id: str
    tokens: int


class MachineTokenTotal(BaseModel):
    machine_id: str
    tokens: int


class BackendQueryResult(BaseModel):
    stats: SessionStats
    available_models: list[str] = Field(default_factory=list)
    available_workspaces: list[str] = Field(default_factory=list)
    available_machines: list[str] = Field(default_factory=list)
    available_users: list[str] = Field(default_factory=list)
    workspace_names_by_id: dict[str, str] | None = None
    machine_names_by_id: dict[str, str] | None = None
    workspace_token_totals: list[WorkspaceTokenTotal] = Field(default_factory=list)
    machine_token_totals: list[MachineTokenTotal] = Field(default_factory=list)


# =============================================================================
# Data-plane results
# =============================================================================


class UpsertFailure(BaseModel):
    entity: DailyAggEntity
    error: str


class UpsertBatchResult(BaseModel):
    success_count: int = 0
    errors: list[UpsertFailure] = Field(default_factory=list)


class SyncResult(BaseModel):
    """Outcome of one sync pass, as reported to callers and the CLI."""

    status: Literal["completed", "skipped", "failed"]
    reason: str | None = None
    entities: int = 0
    success_count: int = 0
    failed_count: int = 0
    day_keys: list[str] = Field(default_factory=list)
