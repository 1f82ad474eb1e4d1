"""Upload raw Copilot session logs to Azure Blob Storage.

Runs after a successful rollup sync when enabled, at most once per
configured frequency per machine. Blob layout:

    {datasetId}/{machineId}/{YYYY-MM-DD}/{file}[.gz]

where the date is the UTC day of the file's modification time. Upload
failures are reported in the result and the persisted status; they never
fail the sync pass.
"""

import asyncio
import gzip
import os
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from azure.core.exceptions import ResourceExistsError
from azure.storage.blob import ContainerClient, ContentSettings

from core.config import Settings
from core.errors import redact_secrets_in_text
from core.logger import get_logger
from core.state import BLOB_UPLOAD_STATUS_KEY, StateStore
from core.telemetry import track_dependency

logger = get_logger(__name__)

BLOB_UPLOAD_TIMEOUT_SECONDS = 120

ContainerClientFactory = Callable[[str, str, Any], ContainerClient]


def blob_endpoint(storage_account: str) -> str:
    return f"https://{storage_account}.blob.core.windows.net"


def create_container_client(
    storage_account: str, container_name: str, credential: Any
) -> ContainerClient:
    return ContainerClient(
        account_url=blob_endpoint(storage_account),
        container_name=container_name,
        credential=credential,
    )


def build_blob_name(
    dataset_id: str, machine_id: str, session_file: str, mtime: float, compress: bool
) -> str:
    day = datetime.fromtimestamp(mtime, tz=UTC).strftime("%Y-%m-%d")
    name = Path(session_file).name
    return f"{dataset_id}/{machine_id}/{day}/{name}{'.gz' if compress else ''}"


@dataclass(frozen=True)
class BlobUploadResult:
    success: bool
    files_uploaded: int
    message: str


class BlobUploadService:
    """Uploads session log files; remembers the last upload per machine."""

    def __init__(
        self,
        state_store: StateStore,
        container_client_factory: ContainerClientFactory = create_container_client,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.state_store = state_store
        self._container_client_factory = container_client_factory
        self._clock = clock

    async def get_upload_status(self, machine_id: str) -> dict[str, Any] | None:
        statuses = await self.state_store.get(BLOB_UPLOAD_STATUS_KEY, {}) or {}
        status = statuses.get(machine_id)
        return status if isinstance(status, dict) else None

    async def _save_upload_status(
        self, machine_id: str, files_uploaded: int, last_error: str | None
    ) -> None:
        statuses = dict(await self.state_store.get(BLOB_UPLOAD_STATUS_KEY, {}) or {})
        statuses[machine_id] = {
            "lastUploadTime": self._clock().timestamp() * 1000,
            "filesUploaded": files_uploaded,
            "lastError": last_error,
        }
        await self.state_store.update(BLOB_UPLOAD_STATUS_KEY, statuses)

    async def hours_since_last_upload(self, machine_id: str) -> float | None:
        status = await self.get_upload_status(machine_id)
        if not status or not isinstance(status.get("lastUploadTime"), int | float):
            return None
        elapsed_ms = self._clock().timestamp() * 1000 - status["lastUploadTime"]
        return elapsed_ms / (1000 * 60 * 60)

    async def should_upload(self, machine_id: str, settings: Settings) -> bool:
        if not settings.blob_upload_enabled:
            return False
        hours = await self.hours_since_last_upload(machine_id)
        if hours is None:
            return True
        return hours >= settings.blob_upload_frequency_hours

    async def _ensure_container(self, container: ContainerClient, name: str) -> None:
        try:
            await asyncio.to_thread(container.create_container)
            logger.info("blob.container.created", container=name)
        except ResourceExistsError:
            pass

    def _upload_file_sync(
        self,
        container: ContainerClient,
        session_file: str,
        machine_id: str,
        dataset_id: str,
        compress: bool,
    ) -> None:
        mtime = os.stat(session_file).st_mtime
        content = Path(session_file).read_bytes()
        if compress:
            content = gzip.compress(content)
        blob_name = build_blob_name(dataset_id, machine_id, session_file, mtime, compress)
        container.upload_blob(
            blob_name,
            content,
            overwrite=True,
            content_settings=ContentSettings(
                content_type="application/gzip" if compress else "application/json"
            ),
            metadata={
                "originalFileName": Path(session_file).name,
                "machineId": machine_id[:16],
                "datasetId": dataset_id,
                "uploadedAt": self._clock().isoformat(),
                "compressed": str(compress).lower(),
            },
        )

    @track_dependency("blob.upload_session_files", dependency_type="azure_blob")
    async def upload_session_files(
        self,
        settings: Settings,
        credential: Any,
        session_files: list[str],
        machine_id: str,
        secrets_to_redact: list[str] | None = None,
    ) -> BlobUploadResult:
        if not settings.blob_upload_enabled:
            return BlobUploadResult(False, 0, "Blob upload disabled")

        if not await self.should_upload(machine_id, settings):
            hours = round(await self.hours_since_last_upload(machine_id) or 0)
            return BlobUploadResult(
                True,
                0,
                f"Upload skipped (last upload {hours}h ago, "
                f"frequency: {settings.blob_upload_frequency_hours}h)",
            )

        container: ContainerClient | None = None
        try:
            try:
                container = self._container_client_factory(
                    settings.storage_account, settings.blob_container_name, credential
                )
                await self._ensure_container(container, settings.blob_container_name)
            except Exception as e:
                message = redact_secrets_in_text(
                    f"{type(e).__name__}: {e}", secrets_to_redact
                )
                logger.warning("blob.upload.failed", error=message)
                await self._save_upload_status(machine_id, 0, message)
                return BlobUploadResult(False, 0, f"Upload failed: {message}")

            files_uploaded, errors = await self._upload_files(
                container, settings, session_files, machine_id, secrets_to_redact
            )
        finally:
            if container is not None:
                container.close()

        await self._save_upload_status(
            machine_id, files_uploaded, "; ".join(errors) if errors else None
        )
        if errors:
            message = (
                f"Uploaded {files_uploaded}/{len(session_files)} files "
                f"({len(errors)} errors)"
            )
        else:
            message = f"Successfully uploaded {files_uploaded} files"
        logger.info(
            "blob.upload.completed",
            files_uploaded=files_uploaded,
            errors=len(errors),
        )
        return BlobUploadResult(not errors, files_uploaded, message)

    async def _upload_files(
        self,
        container: ContainerClient,
        settings: Settings,
        session_files: list[str],
        machine_id: str,
        secrets_to_redact: list[str] | None,
    ) -> tuple[int, list[str]]:
        files_uploaded = 0
        errors: list[str] = []
        for session_file in session_files:
            try:
                async with asyncio.timeout(BLOB_UPLOAD_TIMEOUT_SECONDS):
                    await asyncio.to_thread(
                        self._upload_file_sync,
                        container,
                        session_file,
                        machine_id,
                        settings.dataset_id,
                        settings.blob_compress_files,
                    )
                files_uploaded += 1
            except Exception as e:
                message = redact_secrets_in_text(
                    f"{type(e).__name__}: {e}", secrets_to_redact
                )
                errors.append(f"{Path(session_file).name}: {message}")
                logger.warning(
                    "blob.file.upload_failed",
                    file=Path(session_file).name,
                    error=message,
                )
        return files_uploaded, errors
