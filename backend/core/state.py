"""Small persisted key/value state (last sync time, blob upload status)."""

import asyncio
import json
import os
from pathlib import Path
from typing import Any, Protocol

from core.logger import get_logger

logger = get_logger(__name__)

LAST_SYNC_AT_KEY = "backend.lastSyncAt"
BLOB_UPLOAD_STATUS_KEY = "backend.blobUploadStatus"

STATE_FILE_NAME = "backend-state.json"


class StateStore(Protocol):
    async def get(self, key: str, default: Any = None) -> Any: ...

    async def update(self, key: str, value: Any) -> None: ...


class JsonFileStateStore:
    """StateStore backed by one JSON object file, rewritten atomically."""

    def __init__(self, state_dir: Path) -> None:
        self._path = state_dir / STATE_FILE_NAME
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _read(self) -> dict[str, Any]:
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except ValueError:
            logger.warning("state.file.corrupt", path=str(self._path))
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(".tmp")
        tmp.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")
        os.replace(tmp, self._path)

    async def get(self, key: str, default: Any = None) -> Any:
        data = await asyncio.to_thread(self._read)
        return data.get(key, default)

    async def update(self, key: str, value: Any) -> None:
        async with self._lock:
            data = await asyncio.to_thread(self._read)
            if value is None:
                data.pop(key, None)
            else:
                data[key] = value
            await asyncio.to_thread(self._write, data)
