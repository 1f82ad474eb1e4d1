"""Shared-key storage in the platform secret store (keyring).

Storage account shared keys never touch settings files or logs; they live in
the OS keychain under one entry per storage account.
"""

import asyncio
from typing import Protocol

import keyring
from keyring.errors import PasswordDeleteError

from core.logger import get_logger

logger = get_logger(__name__)

KEYRING_SERVICE_NAME = "copilot-token-tracker"
_SHARED_KEY_PREFIX = "copilotTokenTracker.backend.storageSharedKey"


def shared_key_secret_name(storage_account: str) -> str:
    return f"{_SHARED_KEY_PREFIX}:{storage_account}"


class SecretStore(Protocol):
    async def get(self, name: str) -> str | None: ...

    async def store(self, name: str, value: str) -> None: ...

    async def delete(self, name: str) -> None: ...


class KeyringSecretStore:
    """SecretStore over the keyring backend selected for this platform."""

    def __init__(self, service_name: str = KEYRING_SERVICE_NAME) -> None:
        self._service_name = service_name

    async def get(self, name: str) -> str | None:
        return await asyncio.to_thread(keyring.get_password, self._service_name, name)

    async def store(self, name: str, value: str) -> None:
        await asyncio.to_thread(keyring.set_password, self._service_name, name, value)

    async def delete(self, name: str) -> None:
        try:
            await asyncio.to_thread(
                keyring.delete_password, self._service_name, name
            )
        except PasswordDeleteError:
            logger.debug("secret.delete.missing", name=name)
