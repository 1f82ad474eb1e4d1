"""Backend queries over the aggregate table, with a short-lived result cache.

Results are cached for QUERY_CACHE_TTL_SECONDS under a key built from the
storage account, table, dataset, day range, filters and the sharing policy
in effect. Changing filters or the sharing policy clears the cache, so a
query never returns data shaped by an older, more permissive policy.
"""

import json
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime

from core.cache import QueryResultCache
from core.config import (
    DEFAULT_LOOKBACK_DAYS,
    Settings,
    clamp_lookback_days,
    is_backend_configured,
)
from core.day_keys import add_days_utc, to_utc_day_key, utc_now
from core.errors import redact_secrets_in_text
from core.logger import get_logger
from core.telemetry import track_operation
from schemas import (
    BackendQueryResult,
    DailyAggEntity,
    MachineTokenTotal,
    ModelTokenUsage,
    QueryFilters,
    SessionStats,
    SharingPolicy,
    StatsForPeriod,
    WorkspaceTokenTotal,
)
from services.credential_service import CredentialService
from services.data_plane_service import DataPlaneService
from services.sharing_policy_service import compute_sharing_policy

logger = get_logger(__name__)

MAX_UI_LIST_ITEMS = 50

# Environmental estimates
CO2_GRAMS_PER_1K_TOKENS = 0.2
WATER_LITERS_PER_1K_TOKENS = 0.3
CO2_GRAMS_ABSORBED_PER_TREE_PER_YEAR = 21000

# USD per million tokens: (input, output)
MODEL_PRICING_PER_MILLION: dict[str, tuple[float, float]] = {
    "gpt-4o": (2.50, 10.00),
    "gpt-4o-mini": (0.15, 0.60),
    "gpt-4.1": (2.00, 8.00),
    "gpt-4.1-mini": (0.40, 1.60),
    "o1": (15.00, 60.00),
    "o3-mini": (1.10, 4.40),
    "claude-sonnet-3.5": (3.00, 15.00),
    "claude-sonnet-4": (3.00, 15.00),
    "gemini-2.0-flash": (0.10, 0.40),
}
FALLBACK_PRICING_MODEL = "gpt-4o-mini"

CostEstimator = Callable[[Mapping[str, ModelTokenUsage]], float]


def estimate_cost(model_usage: Mapping[str, ModelTokenUsage]) -> float:
    """USD estimate; unknown models are priced as gpt-4o-mini."""
    total = 0.0
    for model, usage in model_usage.items():
        input_price, output_price = MODEL_PRICING_PER_MILLION.get(
            model, MODEL_PRICING_PER_MILLION[FALLBACK_PRICING_MODEL]
        )
        total += usage.input_tokens / 1_000_000 * input_price
        total += usage.output_tokens / 1_000_000 * output_price
    return total


def build_query_cache_key(
    settings: Settings,
    policy: SharingPolicy,
    filters: QueryFilters,
    start_day: str,
    end_day: str,
) -> str:
    return json.dumps(
        {
            "account": settings.storage_account,
            "table": settings.agg_table,
            "datasetId": settings.dataset_id,
            "startDayKey": start_day,
            "endDayKey": end_day,
            "filters": filters.model_dump(),
            "policy": policy.model_dump(),
        },
        sort_keys=True,
    )


def _matches(entity: DailyAggEntity, filters: QueryFilters) -> bool:
    if filters.model and filters.model != entity.model:
        return False
    if filters.workspace_id and filters.workspace_id != entity.workspace_id:
        return False
    if filters.machine_id and filters.machine_id != entity.machine_id:
        return False
    return not (filters.user_id and filters.user_id != (entity.user_id or ""))


def _top_totals(totals: Mapping[str, int]) -> list[tuple[str, int]]:
    ranked = sorted(totals.items(), key=lambda item: item[1], reverse=True)
    return ranked[:MAX_UI_LIST_ITEMS]


def aggregate_entities(
    entities: Iterable[DailyAggEntity],
    filters: QueryFilters,
    *,
    include_names: bool,
    cost_estimator: CostEstimator = estimate_cost,
    now: datetime | None = None,
) -> BackendQueryResult:
    """Fold table entities into display-ready stats.

    The available-* lists and name maps cover every entity in the range;
    totals only cover the entities that pass the filters.
    """
    models: set[str] = set()
    workspaces: set[str] = set()
    machines: set[str] = set()
    users: set[str] = set()
    workspace_names: dict[str, str] = {}
    machine_names: dict[str, str] = {}

    total_tokens = 0
    total_interactions = 0
    model_usage: dict[str, ModelTokenUsage] = {}
    workspace_tokens: dict[str, int] = {}
    machine_tokens: dict[str, int] = {}

    for entity in entities:
        if not (entity.model and entity.workspace_id and entity.machine_id):
            continue
        models.add(entity.model)
        workspaces.add(entity.workspace_id)
        machines.add(entity.machine_id)
        if entity.user_id:
            users.add(entity.user_id)
        if include_names:
            if entity.workspace_name and entity.workspace_id not in workspace_names:
                workspace_names[entity.workspace_id] = entity.workspace_name.strip()
            if entity.machine_name and entity.machine_id not in machine_names:
                machine_names[entity.machine_id] = entity.machine_name.strip()

        if not _matches(entity, filters):
            continue

        tokens = entity.tokens
        total_tokens += tokens
        total_interactions += entity.interactions
        usage = model_usage.setdefault(entity.model, ModelTokenUsage())
        usage.input_tokens += entity.input_tokens
        usage.output_tokens += entity.output_tokens
        workspace_tokens[entity.workspace_id] = (
            workspace_tokens.get(entity.workspace_id, 0) + tokens
        )
        machine_tokens[entity.machine_id] = machine_tokens.get(entity.machine_id, 0) + tokens

    co2 = total_tokens / 1000 * CO2_GRAMS_PER_1K_TOKENS
    # The table stores interactions, not sessions; one interaction counts as one session
    stats = StatsForPeriod(
        tokens=total_tokens,
        sessions=total_interactions,
        avg_interactions_per_session=1 if total_interactions > 0 else 0,
        avg_tokens_per_session=(
            round(total_tokens / total_interactions) if total_interactions > 0 else 0
        ),
        model_usage=model_usage,
        editor_usage={},
        co2=co2,
        trees_equivalent=co2 / CO2_GRAMS_ABSORBED_PER_TREE_PER_YEAR,
        water_usage=total_tokens / 1000 * WATER_LITERS_PER_1K_TOKENS,
        estimated_cost=cost_estimator(model_usage),
    )

    return BackendQueryResult(
        stats=SessionStats(today=stats, month=stats, last_updated=now or utc_now()),
        available_models=sorted(models),
        available_workspaces=sorted(workspaces),
        available_machines=sorted(machines),
        available_users=sorted(users),
        workspace_names_by_id=workspace_names or None,
        machine_names_by_id=machine_names or None,
        workspace_token_totals=[
            WorkspaceTokenTotal(workspace_id=ws, tokens=tokens)
            for ws, tokens in _top_totals(workspace_tokens)
        ],
        machine_token_totals=[
            MachineTokenTotal(machine_id=mc, tokens=tokens)
            for mc, tokens in _top_totals(machine_tokens)
        ],
    )


def _policy_for(settings: Settings) -> SharingPolicy:
    return compute_sharing_policy(
        settings.enabled,
        settings.effective_sharing_profile,
        settings.share_workspace_machine_names,
    )


class QueryService:
    """Range queries, current UI filters, and the query result cache."""

    def __init__(
        self,
        credential_service: CredentialService,
        data_plane_service: DataPlaneService,
        *,
        cost_estimator: CostEstimator = estimate_cost,
        cache: QueryResultCache | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.credential_service = credential_service
        self.data_plane_service = data_plane_service
        self.cost_estimator = cost_estimator
        self.cache = cache or QueryResultCache()
        self._clock = clock
        self._filters = QueryFilters(lookback_days=DEFAULT_LOOKBACK_DAYS)
        self._last_policy: SharingPolicy | None = None
        self.last_query_result: BackendQueryResult | None = None

    def clear_query_cache(self) -> None:
        self.cache.clear()
        self.last_query_result = None

    def get_filters(self) -> QueryFilters:
        return self._filters.model_copy()

    def set_filters(
        self,
        *,
        lookback_days: int | None = None,
        model: str | None = None,
        workspace_id: str | None = None,
        machine_id: str | None = None,
        user_id: str | None = None,
    ) -> QueryFilters:
        """Replace the filters (blank means no filter) and clear the cache."""
        self._filters = QueryFilters(
            lookback_days=(
                clamp_lookback_days(lookback_days)
                if lookback_days is not None
                else self._filters.lookback_days
            ),
            model=(model or "").strip() or None,
            workspace_id=(workspace_id or "").strip() or None,
            machine_id=(machine_id or "").strip() or None,
            user_id=(user_id or "").strip() or None,
        )
        self.clear_query_cache()
        return self.get_filters()

    def _check_policy_change(self, policy: SharingPolicy) -> None:
        if self._last_policy is not None and self._last_policy != policy:
            logger.info(
                "query.cache.invalidated",
                reason="sharing_policy_changed",
                old_profile=self._last_policy.profile,
                new_profile=policy.profile,
            )
            self.clear_query_cache()
        self._last_policy = policy

    @track_operation("backend_query")
    async def query_backend_rollups(
        self,
        settings: Settings,
        filters: QueryFilters,
        start_day: str,
        end_day: str,
    ) -> BackendQueryResult:
        """Aggregate the dataset's entities between two UTC days, inclusive.

        Raises BackendAuthError when Shared Key auth has no stored key, and
        InvalidDayKeyError/DayRangeTooLargeError for a bad range.
        """
        policy = _policy_for(settings)
        self._check_policy_change(policy)

        cache_key = build_query_cache_key(settings, policy, filters, start_day, end_day)
        cached = self.cache.get(cache_key)
        if cached is not None:
            logger.debug("query.cache.hit", start_day=start_day, end_day=end_day)
            self.last_query_result = cached
            return cached

        creds = await self.credential_service.get_data_plane_credentials_or_raise(
            settings
        )
        try:
            entities = await self.data_plane_service.list_entities_for_range(
                settings, creds.table_credential, start_day, end_day
            )
        finally:
            creds.close()
        result = aggregate_entities(
            entities,
            filters,
            include_names=policy.include_names,
            cost_estimator=self.cost_estimator,
            now=self._clock(),
        )
        logger.info(
            "query.completed",
            start_day=start_day,
            end_day=end_day,
            entities=len(entities),
            tokens=result.stats.today.tokens,
        )
        self.cache.set(cache_key, result)
        self.last_query_result = result
        return result

    async def _log_query_failure(
        self, event: str, settings: Settings, error: Exception
    ) -> None:
        secrets = await self.credential_service.get_secrets_to_redact_for_error(settings)
        logger.warning(
            event,
            error=redact_secrets_in_text(f"{type(error).__name__}: {error}", secrets),
        )

    def _is_queryable(self, settings: Settings) -> bool:
        return _policy_for(settings).allow_cloud_sync and is_backend_configured(settings)

    async def try_get_backend_detailed_stats_for_status_bar(
        self, settings: Settings
    ) -> SessionStats | None:
        """Today's and this month's totals, or None when the backend is unavailable."""
        if not self._is_queryable(settings):
            return None
        now = self._clock()
        today = to_utc_day_key(now)
        month_start = today[:8] + "01"
        try:
            today_result = await self.query_backend_rollups(
                settings, QueryFilters(lookback_days=1), today, today
            )
            month_result = await self.query_backend_rollups(
                settings, QueryFilters(lookback_days=31), month_start, today
            )
        except Exception as e:
            await self._log_query_failure("query.status_bar.failed", settings, e)
            return None
        return SessionStats(
            today=today_result.stats.today,
            month=month_result.stats.today,
            last_updated=now,
        )

    async def get_stats_for_details_panel(self, settings: Settings) -> SessionStats | None:
        """Selected lookback range ("today") and month, using the current filters.

        The range query runs last so last_query_result reflects the range the
        user selected.
        """
        if not self._is_queryable(settings):
            return None
        now = self._clock()
        today = to_utc_day_key(now)
        month_start = today[:8] + "01"
        lookback_days = clamp_lookback_days(self._filters.lookback_days)
        start_day = add_days_utc(today, -(lookback_days - 1))
        try:
            month_result = await self.query_backend_rollups(
                settings, self._filters, month_start, today
            )
            range_result = await self.query_backend_rollups(
                settings, self._filters, start_day, today
            )
        except Exception as e:
            await self._log_query_failure("query.details_panel.failed", settings, e)
            return None
        return SessionStats(
            today=range_result.stats.today,
            month=month_result.stats.today,
            last_updated=now,
        )
