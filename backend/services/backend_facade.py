"""Single entry point for backend sync, queries and shared-key commands.

BackendFacade wires the credential, data-plane, query, sync and blob
services together and reads settings through a provider on every call, so
a settings reload takes effect on the next operation. Callers (the CLI or
an editor integration) depend on this class only.
"""

from collections.abc import Callable

from core.config import Settings, get_settings, is_backend_configured
from core.logger import get_logger
from core.prompts import ConsolePrompter, UserPrompts
from core.secrets import KeyringSecretStore, SecretStore
from core.state import JsonFileStateStore, StateStore
from schemas import BackendQueryResult, QueryFilters, SessionStats, SharingPolicy, SyncResult
from services.blob_upload_service import BlobUploadService
from services.credential_service import CredentialService
from services.data_plane_service import DataPlaneService
from services.query_service import QueryService
from services.session_sources import DirectorySessionSource, SessionDataSource
from services.sharing_policy_service import compute_sharing_policy
from services.sync_service import SyncService

logger = get_logger(__name__)


class BackendFacade:
    def __init__(
        self,
        *,
        settings_provider: Callable[[], Settings] = get_settings,
        session_source: SessionDataSource | None = None,
        secret_store: SecretStore | None = None,
        prompts: UserPrompts | None = None,
        state_store: StateStore | None = None,
        credential_service: CredentialService | None = None,
        data_plane_service: DataPlaneService | None = None,
        query_service: QueryService | None = None,
        sync_service: SyncService | None = None,
        blob_upload_service: BlobUploadService | None = None,
    ) -> None:
        self._settings_provider = settings_provider
        settings = settings_provider()

        self.prompts = prompts or ConsolePrompter()
        self.session_source = session_source or DirectorySessionSource(
            settings.session_dir_paths
        )
        self.state_store = state_store or JsonFileStateStore(settings.state_dir_path)
        self.credential_service = credential_service or CredentialService(
            secret_store or KeyringSecretStore(), self.prompts
        )
        self.data_plane_service = data_plane_service or DataPlaneService(
            settings.effective_machine_id
        )
        self.query_service = query_service or QueryService(
            self.credential_service, self.data_plane_service
        )
        self.blob_upload_service = blob_upload_service or BlobUploadService(
            self.state_store
        )
        self.sync_service = sync_service or SyncService(
            session_source=self.session_source,
            credential_service=self.credential_service,
            data_plane_service=self.data_plane_service,
            state_store=self.state_store,
            prompts=self.prompts,
            blob_upload_service=self.blob_upload_service,
        )

    @property
    def settings(self) -> Settings:
        return self._settings_provider()

    def is_configured(self) -> bool:
        return is_backend_configured(self.settings)

    def get_sharing_policy(self) -> SharingPolicy:
        settings = self.settings
        return compute_sharing_policy(
            settings.enabled,
            settings.effective_sharing_profile,
            settings.share_workspace_machine_names,
        )

    # =========================================================================
    # Sync
    # =========================================================================

    async def sync_to_backend_store(self, force: bool = False) -> SyncResult:
        return await self.sync_service.sync_to_backend_store(force, self.settings)

    def start_timer_if_enabled(self) -> bool:
        return self.sync_service.start_timer_if_enabled(self.settings)

    def stop_timer(self) -> None:
        self.sync_service.stop_timer()

    def on_settings_changed(self) -> bool:
        """Drop cached query results and restart the timer under the new settings."""
        self.query_service.clear_query_cache()
        return self.start_timer_if_enabled()

    async def validate_backend(self) -> None:
        """Check credentials, table existence and data-plane write access.

        Raises BackendAuthError or BackendError with a redacted message.
        """
        settings = self.settings
        creds = await self.credential_service.get_data_plane_credentials_or_raise(
            settings
        )
        try:
            await self.data_plane_service.ensure_table_exists(
                settings, creds.table_credential, creds.secrets_to_redact
            )
            await self.data_plane_service.validate_access(settings, creds.table_credential)
        finally:
            creds.close()

    # =========================================================================
    # Queries
    # =========================================================================

    async def query_backend_rollups(
        self, filters: QueryFilters, start_day: str, end_day: str
    ) -> BackendQueryResult:
        return await self.query_service.query_backend_rollups(
            self.settings, filters, start_day, end_day
        )

    async def try_get_backend_detailed_stats_for_status_bar(self) -> SessionStats | None:
        return await self.query_service.try_get_backend_detailed_stats_for_status_bar(
            self.settings
        )

    async def get_stats_for_details_panel(self) -> SessionStats | None:
        return await self.query_service.get_stats_for_details_panel(self.settings)

    def get_filters(self) -> QueryFilters:
        return self.query_service.get_filters()

    def set_filters(self, **filters: str | int | None) -> QueryFilters:
        return self.query_service.set_filters(**filters)  # type: ignore[arg-type]

    # =========================================================================
    # Shared key commands
    # =========================================================================

    async def set_backend_shared_key(self) -> bool:
        return await self._prompt_and_store_key(
            "Set Storage Shared Key for Backend Sync",
            "Backend sync Shared Key stored securely for this machine.",
            "Failed to set Shared Key",
        )

    async def rotate_backend_shared_key(self) -> bool:
        return await self._prompt_and_store_key(
            "Rotate Storage Shared Key for Backend Sync",
            "Backend sync Shared Key rotated securely for this machine.",
            "Failed to rotate Shared Key",
        )

    async def _prompt_and_store_key(
        self, title: str, success_message: str, failure_prefix: str
    ) -> bool:
        storage_account = self.settings.storage_account
        try:
            stored = await self.credential_service.prompt_for_and_store_shared_key(
                storage_account, title
            )
        except Exception as e:
            await self.prompts.show_error(f"{failure_prefix}: {e}")
            return False
        if stored:
            self.query_service.clear_query_cache()
            logger.info("credentials.command.completed", message=success_message)
        return stored

    async def clear_backend_shared_key(self) -> bool:
        storage_account = self.settings.storage_account
        if not storage_account:
            await self.prompts.show_error("Backend storage account is not configured yet.")
            return False
        if not await self.prompts.confirm(
            f"Clear the stored Shared Key for '{storage_account}' on this machine?"
        ):
            return False
        try:
            await self.credential_service.clear_stored_shared_key(storage_account)
        except Exception as e:
            await self.prompts.show_error(
                f"Failed to clear Shared Key: {e}"
            )
            return False
        self.query_service.clear_query_cache()
        logger.info(
            "credentials.command.completed",
            message="Backend sync Shared Key cleared for this machine.",
        )
        return True
