"""Azure Tables data-plane operations for daily aggregate entities.

The service holds no state between calls: every operation takes the current
settings and credential, opens its own TableClient and closes it before
returning. Entity writes use replace semantics so a re-run of the same
rollups is idempotent.

Retries cover throttling and transient network failures only (429, 503,
connection errors, timeouts). Auth and validation failures surface on the
first attempt.
"""

import asyncio
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable, Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any

from azure.core.exceptions import (
    HttpResponseError,
    ResourceExistsError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.data.tables import TableClient
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from core.config import Settings
from core.day_keys import get_day_keys_inclusive, to_utc_day_key, utc_now
from core.errors import (
    BackendAuthError,
    is_storage_local_auth_disallowed_by_policy_error,
    redact_secrets_in_text,
    with_error_handling,
)
from core.logger import get_logger
from core.normalization import sanitize_table_key
from core.telemetry import track_dependency
from repositories.aggregate_repository import (
    DailyAggRepository,
    build_agg_partition_key,
)
from schemas import DailyAggEntity, UpsertBatchResult, UpsertFailure

logger = get_logger(__name__)

# tenacity's before_sleep_log requires a stdlib Logger
_stdlib_logger = logging.getLogger(__name__)

UPSERT_MAX_ATTEMPTS = 4  # first try + 3 retries
RETRY_MIN_WAIT_SECONDS = 1
RETRY_MAX_WAIT_SECONDS = 4

TRANSIENT_STATUS_CODES = frozenset({429, 503})

RBAC_REMEDIATION_MESSAGE = (
    "Missing Azure RBAC data-plane permissions for Tables. Assign "
    "'Storage Table Data Contributor' (read/write) or 'Storage Table Data "
    "Reader' (read-only) on the Storage account or table service."
)
SHARED_KEY_DISABLED_MESSAGE = (
    "Shared Key access is disabled for this Storage account (for example by "
    "Azure Policy). Switch COPILOT_BACKEND_AUTH_MODE to 'entraId' and grant "
    "'Storage Table Data Contributor' to your identity."
)

TableClientFactory = Callable[[Settings, Any], TableClient]


def table_endpoint(storage_account: str) -> str:
    return f"https://{storage_account}.table.core.windows.net"


def create_table_client(settings: Settings, credential: Any) -> TableClient:
    return TableClient(
        endpoint=table_endpoint(settings.storage_account),
        table_name=settings.agg_table,
        credential=credential,
    )


def is_transient_error(error: BaseException) -> bool:
    """Throttling, service-unavailable, network and timeout failures."""
    if isinstance(error, ServiceRequestError | ServiceResponseError | TimeoutError):
        return True
    if isinstance(error, HttpResponseError):
        return getattr(error, "status_code", None) in TRANSIENT_STATUS_CODES
    return False


def _status_code(error: BaseException) -> int | None:
    return getattr(error, "status_code", None)


class DataPlaneService:
    """Stateless Azure Tables client for the aggregate table."""

    def __init__(
        self,
        machine_id: str,
        *,
        table_client_factory: TableClientFactory = create_table_client,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.machine_id = machine_id
        self._table_client_factory = table_client_factory
        self._sleep = sleep
        self._clock = clock

    def create_table_client(self, settings: Settings, credential: Any) -> TableClient:
        return self._table_client_factory(settings, credential)

    @contextmanager
    def _open_repository(
        self, settings: Settings, credential: Any
    ) -> Iterator[DailyAggRepository]:
        """Repository over a TableClient that is closed when the operation ends."""
        client = self.create_table_client(settings, credential)
        try:
            yield DailyAggRepository(client)
        finally:
            client.close()

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(UPSERT_MAX_ATTEMPTS),
            wait=wait_exponential(
                multiplier=1, min=RETRY_MIN_WAIT_SECONDS, max=RETRY_MAX_WAIT_SECONDS
            ),
            retry=retry_if_exception(is_transient_error),
            sleep=self._sleep,
            before_sleep=before_sleep_log(_stdlib_logger, logging.WARNING),
            reraise=True,
        )

    @track_dependency("tables.ensure_table")
    async def ensure_table_exists(
        self,
        settings: Settings,
        credential: Any,
        secrets_to_redact: Iterable[str] | None = None,
    ) -> None:
        """Create the aggregate table; an existing table is not an error."""
        with self._open_repository(settings, credential) as repository:

            async def create() -> None:
                try:
                    await repository.create_table()
                    logger.info("tables.table.created", table=settings.agg_table)
                except ResourceExistsError:
                    pass
                except HttpResponseError as e:
                    if _status_code(e) != 409:
                        raise

            await with_error_handling(
                create, "Failed to create aggregate table", secrets_to_redact
            )

    @track_dependency("tables.validate_access")
    async def validate_access(self, settings: Settings, credential: Any) -> None:
        """Write and delete a probe entity to prove data-plane write access.

        Raises BackendAuthError with a remediation hint on 403.
        """
        now = self._clock()
        partition_key = build_agg_partition_key(settings.dataset_id, "rbac-probe")
        row_key = sanitize_table_key(f"probe:{self.machine_id}")
        probe = {
            "PartitionKey": partition_key,
            "RowKey": row_key,
            "type": "rbacProbe",
            "day": to_utc_day_key(now),
            "updatedAt": now.isoformat(),
        }
        try:
            with self._open_repository(settings, credential) as repository:
                await repository.upsert(probe)
                await repository.delete(partition_key, row_key)
        except HttpResponseError as e:
            if _status_code(e) == 403:
                if settings.auth_mode == "sharedKey" and (
                    is_storage_local_auth_disallowed_by_policy_error(e)
                ):
                    raise BackendAuthError(SHARED_KEY_DISABLED_MESSAGE, e) from e
                raise BackendAuthError(RBAC_REMEDIATION_MESSAGE, e) from e
            raise
        logger.debug("tables.access.validated", table=settings.agg_table)

    @track_dependency("tables.list_range")
    async def list_entities_for_range(
        self,
        settings: Settings,
        credential: Any,
        start_day: str,
        end_day: str,
    ) -> list[DailyAggEntity]:
        """All entities of the dataset between two UTC days, inclusive.

        One partition query per day. A failing partition is logged and
        contributes nothing; the range itself is validated up front.
        """
        day_keys = get_day_keys_inclusive(start_day, end_day)
        entities: list[DailyAggEntity] = []
        with self._open_repository(settings, credential) as repository:
            for day in day_keys:
                partition_key = build_agg_partition_key(settings.dataset_id, day)
                try:
                    entities.extend(await repository.list_partition(partition_key, day))
                except Exception as e:
                    logger.warning(
                        "tables.partition.query_failed",
                        partition_key=partition_key,
                        error_type=type(e).__name__,
                        status_code=_status_code(e),
                    )
        logger.debug(
            "tables.range.listed",
            start_day=start_day,
            end_day=end_day,
            days=len(day_keys),
            entities=len(entities),
        )
        return entities

    async def _upsert_with_retry(
        self, repository: DailyAggRepository, entity: DailyAggEntity
    ) -> None:
        wire = entity.to_table_entity()
        async for attempt in self._retrying():
            with attempt:
                await repository.upsert(wire)

    @track_dependency("tables.upsert_batch")
    async def upsert_entities_batch(
        self,
        settings: Settings,
        credential: Any,
        entities: list[DailyAggEntity],
        secrets_to_redact: Iterable[str] | None = None,
    ) -> UpsertBatchResult:
        """Replace-upsert every entity; failures are collected, not raised."""
        secrets = list(secrets_to_redact or [])
        by_partition: dict[str, list[DailyAggEntity]] = defaultdict(list)
        for entity in entities:
            by_partition[entity.partition_key].append(entity)

        result = UpsertBatchResult()
        with self._open_repository(settings, credential) as repository:
            for partition_key, partition_entities in by_partition.items():
                for entity in partition_entities:
                    try:
                        await self._upsert_with_retry(repository, entity)
                        result.success_count += 1
                    except Exception as e:
                        message = redact_secrets_in_text(
                            f"{type(e).__name__}: {e}", secrets
                        )
                        logger.warning(
                            "tables.upsert.failed",
                            partition_key=partition_key,
                            row_key=entity.row_key,
                            error=message,
                        )
                        result.errors.append(
                            UpsertFailure(entity=entity, error=message)
                        )

        logger.info(
            "tables.upsert.completed",
            partitions=len(by_partition),
            success_count=result.success_count,
            failed_count=len(result.errors),
        )
        return result
