"""Data-plane credentials for Azure Tables and Blob Storage.

Entra ID mode uses DefaultAzureCredential (environment, Azure CLI, managed
identity) and holds no secrets. Shared Key mode reads the account key from
the platform secret store, asking the user once when it is missing.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from azure.core.credentials import AzureNamedKeyCredential

from core.azure_auth import create_azure_credential
from core.config import Settings, should_prompt_to_set_shared_key
from core.errors import BackendAuthError, BackendConfigError
from core.logger import get_logger
from core.prompts import UserPrompts
from core.secrets import SecretStore, shared_key_secret_name

logger = get_logger(__name__)

MISSING_SHARED_KEY_MESSAGE = (
    "Backend sync is configured to use Storage Shared Key auth, "
    "but the key is not set on this machine."
)


@dataclass
class DataPlaneCredentials:
    """Credentials for one sync pass or query, plus the secrets to scrub."""

    table_credential: Any
    blob_credential: Any
    secrets_to_redact: list[str] = field(default_factory=list)

    def close(self) -> None:
        """Release the token credential's HTTP session (Entra ID mode).

        Named-key credentials hold no connections and have no close().
        """
        credentials = [self.table_credential]
        if self.blob_credential is not self.table_credential:
            credentials.append(self.blob_credential)
        for credential in credentials:
            close = getattr(credential, "close", None)
            if not callable(close):
                continue
            try:
                close()
            except Exception as e:
                logger.debug("credentials.close_failed", error=type(e).__name__)


class CredentialService:
    def __init__(
        self,
        secret_store: SecretStore,
        prompts: UserPrompts,
        credential_factory: Callable[[], Any] = create_azure_credential,
    ) -> None:
        self.secret_store = secret_store
        self.prompts = prompts
        self._credential_factory = credential_factory

    def create_azure_credential(self) -> Any:
        return self._credential_factory()

    async def get_stored_shared_key(self, storage_account: str) -> str | None:
        if not storage_account:
            return None
        return await self.secret_store.get(shared_key_secret_name(storage_account))

    async def set_stored_shared_key(self, storage_account: str, shared_key: str) -> None:
        if not storage_account:
            raise BackendConfigError("Backend storage account is not configured.")
        if not shared_key.strip():
            raise BackendConfigError("Shared Key is required.")
        await self.secret_store.store(
            shared_key_secret_name(storage_account), shared_key.strip()
        )
        logger.info("credentials.shared_key.stored", storage_account=storage_account)

    async def clear_stored_shared_key(self, storage_account: str) -> None:
        if not storage_account:
            raise BackendConfigError("Backend storage account is not configured.")
        await self.secret_store.delete(shared_key_secret_name(storage_account))
        logger.info("credentials.shared_key.cleared", storage_account=storage_account)

    async def prompt_for_and_store_shared_key(
        self, storage_account: str, title: str = "Set Storage Shared Key"
    ) -> bool:
        """Ask for the account key and store it. False when the user declines."""
        if not storage_account:
            await self.prompts.show_error(
                "Backend storage account is not configured yet. "
                "Set COPILOT_BACKEND_STORAGE_ACCOUNT first."
            )
            return False
        shared_key = await self.prompts.ask_secret(
            f"{title}: enter the Shared Key for storage account '{storage_account}'"
            " (stored in the system keychain)"
        )
        if not shared_key or not shared_key.strip():
            return False
        await self.set_stored_shared_key(storage_account, shared_key)
        return True

    async def _ensure_shared_key(self, settings: Settings) -> str | None:
        storage_account = settings.storage_account
        existing = await self.get_stored_shared_key(storage_account)
        if not should_prompt_to_set_shared_key(
            settings.auth_mode, storage_account, existing
        ):
            return existing or None

        wants_to_set = await self.prompts.confirm(
            "Backend sync is set to use Storage Shared Key auth, but no key is set "
            "on this machine. Set it now?"
        )
        if not wants_to_set:
            return None
        if not await self.prompt_for_and_store_shared_key(
            storage_account, "Set Storage Shared Key for Backend Sync"
        ):
            return None
        return await self.get_stored_shared_key(storage_account)

    async def get_data_plane_credentials(
        self, settings: Settings
    ) -> DataPlaneCredentials | None:
        """Credentials for the configured auth mode; None if the user declined."""
        if settings.auth_mode == "entraId":
            credential = self.create_azure_credential()
            return DataPlaneCredentials(
                table_credential=credential, blob_credential=credential
            )

        shared_key = await self._ensure_shared_key(settings)
        if not shared_key:
            return None
        named_key = AzureNamedKeyCredential(settings.storage_account, shared_key)
        return DataPlaneCredentials(
            table_credential=named_key,
            blob_credential=named_key,
            secrets_to_redact=[shared_key],
        )

    async def get_data_plane_credentials_or_raise(
        self, settings: Settings
    ) -> DataPlaneCredentials:
        credentials = await self.get_data_plane_credentials(settings)
        if credentials is None:
            raise BackendAuthError(MISSING_SHARED_KEY_MESSAGE)
        return credentials

    async def get_secrets_to_redact_for_error(self, settings: Settings) -> list[str]:
        if settings.auth_mode != "sharedKey":
            return []
        try:
            shared_key = await self.get_stored_shared_key(settings.storage_account)
        except Exception as e:
            logger.debug("credentials.redaction.lookup_failed", error=type(e).__name__)
            return []
        return [shared_key] if shared_key else []
