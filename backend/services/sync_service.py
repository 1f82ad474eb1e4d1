"""Background sync of local daily rollups to Azure Tables.

State machine:

    IDLE -> SYNCING -> IDLE | BACKOFF -> ... -> DISABLED

Every pass, whether started by the timer or on demand, runs under one
asyncio.Lock, so at most one pass is in flight and queued passes run in
arrival order. A pass never raises: failures are logged with secrets
redacted and counted. Three consecutive failures surface a warning, five
stop the timer until it is started again.
"""

import asyncio
import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from structlog.contextvars import bound_contextvars

from core.azure_auth import decode_token_claims, get_token
from core.config import Settings, is_backend_configured
from core.day_keys import utc_now
from core.errors import redact_secrets_in_text, safe_stringify_error
from core.logger import get_logger
from core.prompts import UserPrompts
from core.state import LAST_SYNC_AT_KEY, StateStore
from core.telemetry import add_custom_attribute, log_business_event, track_operation
from repositories.aggregate_repository import create_daily_agg_entity
from schemas import (
    DailyAggEntity,
    ResolvedIdentity,
    SharingPolicy,
    SyncResult,
)
from services.blob_upload_service import BlobUploadService
from services.credential_service import CredentialService, DataPlaneCredentials
from services.data_plane_service import DataPlaneService
from services.identity_service import resolve_user_identity, validate_team_alias
from services.local_rollups_service import (
    LocalRollups,
    compute_daily_rollups_from_local_sessions,
)
from services.session_sources import SessionDataSource
from services.sharing_policy_service import apply_id_strategy, compute_sharing_policy

logger = get_logger(__name__)

# Minimum spacing of non-forced passes and the floor of the timer interval
MIN_SYNC_INTERVAL_SECONDS = 5 * 60
SECONDS_PER_LOOKBACK_DAY = 10

FAILURE_WARNING_THRESHOLD = 3
MAX_CONSECUTIVE_FAILURES = 5

FAILURE_WARNING_MESSAGE = (
    "Backend sync is experiencing issues. Check the logs for details."
)
SYNC_STOPPED_MESSAGE = (
    "Backend sync stopped after repeated failures. Check your Azure configuration."
)
CONFIGURE_BACKEND_ACTION = "Configure Backend"

TokenProvider = Callable[[Any], Awaitable[str]]


class SyncState(StrEnum):
    IDLE = "idle"
    SYNCING = "syncing"
    BACKOFF = "backoff"
    DISABLED = "disabled"


def compute_sync_interval_seconds(lookback_days: int) -> int:
    return max(MIN_SYNC_INTERVAL_SECONDS, lookback_days * SECONDS_PER_LOOKBACK_DAY)


def validate_consent_timestamp(value: str | None, now: datetime) -> str | None:
    """ISO-8601 UTC form of a consent timestamp; None if unparseable or future."""
    if not value or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        logger.warning("sync.consent.invalid", consent_at=value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    if parsed > now:
        logger.warning("sync.consent.future", consent_at=value)
        return None
    return parsed.astimezone(UTC).isoformat().replace("+00:00", "Z")


def build_entities_from_rollups(
    local: LocalRollups,
    policy: SharingPolicy,
    identity: ResolvedIdentity,
    dataset_id: str,
    consent_at: str | None,
    updated_at: datetime | None = None,
) -> list[DailyAggEntity]:
    """Storage entities for one pass, with ids and names filtered by policy."""
    entities = []
    for key, value in local.rollups.items():
        user_id = (key.user_id or "").strip() or None
        if not policy.include_user_dimension:
            user_id = None
        workspace_id, machine_id = apply_id_strategy(
            policy, dataset_id, key.workspace_id, key.machine_id
        )
        entity = create_daily_agg_entity(
            dataset_id=dataset_id,
            day=key.day,
            model=key.model,
            workspace_id=workspace_id,
            machine_id=machine_id,
            workspace_name=(
                local.workspace_names_by_id.get(key.workspace_id)
                if policy.include_names
                else None
            ),
            machine_name=(
                local.machine_names_by_id.get(key.machine_id)
                if policy.include_names
                else None
            ),
            user_id=user_id,
            user_key_type=identity.user_key_type,
            share_with_team=True if user_id else None,
            consent_at=consent_at,
            input_tokens=value.input_tokens,
            output_tokens=value.output_tokens,
            interactions=value.interactions,
            updated_at=updated_at,
        )
        if value.fluency is not None:
            entity.apply_fluency(value.fluency)
        entities.append(entity)
    return entities


class SyncService:
    def __init__(
        self,
        *,
        session_source: SessionDataSource,
        credential_service: CredentialService,
        data_plane_service: DataPlaneService,
        state_store: StateStore,
        prompts: UserPrompts,
        blob_upload_service: BlobUploadService | None = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        token_provider: TokenProvider = get_token,
    ) -> None:
        self.session_source = session_source
        self.credential_service = credential_service
        self.data_plane_service = data_plane_service
        self.state_store = state_store
        self.prompts = prompts
        self.blob_upload_service = blob_upload_service
        self._clock = clock
        self._sleep = sleep
        self._token_provider = token_provider

        self._lock = asyncio.Lock()
        self._timer_task: asyncio.Task[None] | None = None
        self.state = SyncState.IDLE
        self.consecutive_failures = 0

    # =========================================================================
    # Timer
    # =========================================================================

    @property
    def is_timer_running(self) -> bool:
        return self._timer_task is not None and not self._timer_task.done()

    @property
    def timer_task(self) -> asyncio.Task[None] | None:
        return self._timer_task

    def start_timer_if_enabled(self, settings: Settings) -> bool:
        """(Re)start the periodic sync; an immediate forced pass runs first."""
        self.stop_timer()
        policy = _policy_for(settings)
        if not policy.allow_cloud_sync:
            logger.info(
                "sync.timer.not_started",
                reason="cloud_sync_disabled",
                profile=policy.profile,
            )
            return False
        if not is_backend_configured(settings):
            logger.info("sync.timer.not_started", reason="not_configured")
            return False

        interval = compute_sync_interval_seconds(settings.lookback_days)
        self.state = SyncState.IDLE
        self._timer_task = asyncio.create_task(
            self._run_timer(settings, interval), name="backend-sync-timer"
        )
        logger.info("sync.timer.started", interval_seconds=interval)
        return True

    def stop_timer(self) -> None:
        task = self._timer_task
        if task is None:
            return
        self._timer_task = None
        self.consecutive_failures = 0
        if task is not asyncio.current_task() and not task.done():
            task.cancel()
        logger.info("sync.timer.stopped")

    async def _run_timer(self, settings: Settings, interval: float) -> None:
        this_task = asyncio.current_task()
        await self.sync_to_backend_store(True, settings)
        while self._timer_task is this_task:
            await self._sleep(interval)
            if self._timer_task is not this_task:
                break
            await self.sync_to_backend_store(False, settings)

    # =========================================================================
    # Sync pass
    # =========================================================================

    async def sync_to_backend_store(self, force: bool, settings: Settings) -> SyncResult:
        """Run one pass after any pass already in flight. Never raises."""
        async with self._lock:
            with bound_contextvars(sync_pass_id=uuid.uuid4().hex[:12]):
                return await self._sync_pass(force, settings)

    @track_operation("backend_sync")
    async def _sync_pass(self, force: bool, settings: Settings) -> SyncResult:
        policy = _policy_for(settings)
        if not policy.allow_cloud_sync:
            logger.info("sync.skipped", reason="cloud_sync_disabled", profile=policy.profile)
            return SyncResult(status="skipped", reason="cloud_sync_disabled")
        if not is_backend_configured(settings):
            logger.info("sync.skipped", reason="not_configured")
            return SyncResult(status="skipped", reason="not_configured")

        now = self._clock()
        secrets: list[str] = []
        creds: DataPlaneCredentials | None = None
        try:
            if not force and await self._throttled(now):
                return SyncResult(status="skipped", reason="throttled")

            self.state = SyncState.SYNCING
            add_custom_attribute("sync.profile", policy.profile)
            logger.info("sync.started", profile=policy.profile, force=force)
            creds = await self.credential_service.get_data_plane_credentials(settings)
            if creds is None:
                logger.warning("sync.skipped", reason="credentials_unavailable")
                await self._record_last_sync_at(now)
                self.state = SyncState.IDLE
                return SyncResult(status="skipped", reason="credentials_unavailable")
            secrets = creds.secrets_to_redact

            await self.data_plane_service.ensure_table_exists(
                settings, creds.table_credential, secrets
            )
            await self.data_plane_service.validate_access(settings, creds.table_credential)

            session_files = await self.session_source.get_copilot_session_files()
            identity = await self._resolve_identity(settings, policy, creds)
            local = await compute_daily_rollups_from_local_sessions(
                self.session_source,
                settings.lookback_days,
                settings.effective_machine_id,
                user_id=identity.user_id,
                session_files=session_files,
                now=now,
            )
            day_keys = local.day_keys
            if day_keys:
                logger.info("sync.days", days=len(day_keys), day_keys=day_keys)

            entities = build_entities_from_rollups(
                local,
                policy,
                identity,
                settings.dataset_id,
                validate_consent_timestamp(settings.share_consent_at, now),
                updated_at=now,
            )
            batch = await self.data_plane_service.upsert_entities_batch(
                settings, creds.table_credential, entities, secrets
            )
            if batch.errors:
                logger.warning(
                    "sync.partial",
                    success_count=batch.success_count,
                    failed_count=len(batch.errors),
                    entities=len(entities),
                )

            self.consecutive_failures = 0
            self.state = SyncState.IDLE
            await self._record_last_sync_at(now)
            logger.info(
                "sync.completed", entities=len(entities), success_count=batch.success_count
            )
            log_business_event(
                "backend_sync.entities_upserted",
                batch.success_count,
                {"profile": policy.profile},
            )

            await self._upload_session_logs(settings, creds, session_files)

            return SyncResult(
                status="completed",
                entities=len(entities),
                success_count=batch.success_count,
                failed_count=len(batch.errors),
                day_keys=day_keys,
            )
        except Exception as e:
            if not secrets:
                secrets = await self.credential_service.get_secrets_to_redact_for_error(
                    settings
                )
            logger.warning("sync.failed", error=safe_stringify_error(e, secrets))
            await self._record_failure()
            return SyncResult(
                status="failed",
                reason=redact_secrets_in_text(f"{type(e).__name__}: {e}", secrets),
            )
        finally:
            if creds is not None:
                creds.close()

    async def _throttled(self, now: datetime) -> bool:
        last_sync_at = await self.state_store.get(LAST_SYNC_AT_KEY)
        if not isinstance(last_sync_at, int | float):
            return False
        seconds_since = (now.timestamp() * 1000 - last_sync_at) / 1000
        if seconds_since >= MIN_SYNC_INTERVAL_SECONDS:
            return False
        logger.info(
            "sync.skipped", reason="throttled", seconds_since_last_sync=round(seconds_since)
        )
        return True

    async def _record_last_sync_at(self, now: datetime) -> None:
        try:
            await self.state_store.update(LAST_SYNC_AT_KEY, now.timestamp() * 1000)
        except OSError as e:
            logger.warning("sync.state.write_failed", error=str(e))

    async def _record_failure(self) -> None:
        self.consecutive_failures += 1
        self.state = SyncState.BACKOFF
        logger.info("sync.failure.counted", consecutive_failures=self.consecutive_failures)

        if self.consecutive_failures == FAILURE_WARNING_THRESHOLD:
            await self.prompts.show_warning(FAILURE_WARNING_MESSAGE)

        if self.consecutive_failures >= MAX_CONSECUTIVE_FAILURES:
            logger.warning(
                "sync.timer.disabled", consecutive_failures=self.consecutive_failures
            )
            self.stop_timer()
            self.state = SyncState.DISABLED
            choice = await self.prompts.show_error(
                SYNC_STOPPED_MESSAGE, CONFIGURE_BACKEND_ACTION
            )
            if choice == CONFIGURE_BACKEND_ACTION:
                logger.info(
                    "sync.reconfigure.requested",
                    hint="update COPILOT_BACKEND_* settings, then run `copilot-backend validate`",
                )

    # =========================================================================
    # Identity and blob upload
    # =========================================================================

    async def _resolve_identity(
        self, settings: Settings, policy: SharingPolicy, creds: DataPlaneCredentials
    ) -> ResolvedIdentity:
        claims: dict[str, Any] | None = None
        if (
            policy.include_user_dimension
            and settings.user_identity_mode == "pseudonymous"
            and settings.auth_mode == "entraId"
        ):
            try:
                token = await self._token_provider(creds.table_credential)
                claims = decode_token_claims(token)
            except Exception as e:
                logger.debug("sync.identity.token_unavailable", error=type(e).__name__)

        identity = resolve_user_identity(
            policy.include_user_dimension,
            settings.user_identity_mode,
            settings.user_id,
            settings.dataset_id,
            claims,
        )
        if policy.include_user_dimension and not identity.user_id:
            if settings.user_identity_mode == "teamAlias":
                validation = validate_team_alias(settings.user_id)
                logger.warning(
                    "sync.identity.unresolved",
                    identity_mode=settings.user_identity_mode,
                    reason=validation.error,
                    fix="set COPILOT_BACKEND_USER_ID to a valid team alias",
                )
            else:
                logger.warning(
                    "sync.identity.unresolved", identity_mode=settings.user_identity_mode
                )
        return identity

    async def _upload_session_logs(
        self,
        settings: Settings,
        creds: DataPlaneCredentials,
        session_files: list[str],
    ) -> None:
        if not settings.blob_upload_enabled or self.blob_upload_service is None:
            return
        machine_id = settings.effective_machine_id
        try:
            if not await self.blob_upload_service.should_upload(machine_id, settings):
                hours = await self.blob_upload_service.hours_since_last_upload(machine_id)
                logger.info(
                    "blob.upload.skipped",
                    hours_since_last_upload=round(hours or 0),
                    frequency_hours=settings.blob_upload_frequency_hours,
                )
                return
            result = await self.blob_upload_service.upload_session_files(
                settings,
                creds.blob_credential,
                session_files,
                machine_id,
                creds.secrets_to_redact,
            )
            if result.success:
                logger.info("blob.upload.result", message=result.message)
            else:
                logger.warning("blob.upload.result", message=result.message)
        except Exception as e:
            logger.warning(
                "blob.upload.failed",
                error=redact_secrets_in_text(str(e), creds.secrets_to_redact),
            )


def _policy_for(settings: Settings) -> SharingPolicy:
    return compute_sharing_policy(
        settings.enabled,
        settings.effective_sharing_profile,
        settings.share_workspace_machine_names,
    )
