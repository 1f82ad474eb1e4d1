"""Local session data sources.

The sync pass reads Copilot chat session logs through the SessionDataSource
port. Editor integrations supply a source backed by their own session cache;
the CLI ships DirectorySessionSource, which scans configured directories and
has no cache (so every file goes through the direct-parse path).
"""

import asyncio
import math
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any, Protocol

from core.logger import get_logger

logger = get_logger(__name__)

DEFAULT_MODEL = "gpt-4o"

# Rough average for English text across GPT/Claude tokenizers
_CHARS_PER_TOKEN = 4

SESSION_FILE_SUFFIXES = (".json", ".jsonl")


class SessionDataSource(Protocol):
    async def get_copilot_session_files(self) -> list[str]: ...

    async def get_session_file_data_cached(
        self, session_file: str, mtime_ms: float
    ) -> Mapping[str, Any] | None:
        """Cached {modelUsage, interactions, usageAnalysis} or None on a miss."""
        ...

    def estimate_tokens_from_text(self, text: str, model: str) -> int: ...

    def get_model_from_request(self, request: Mapping[str, Any]) -> str: ...


def estimate_tokens_from_text(text: str, model: str = DEFAULT_MODEL) -> int:
    if not text:
        return 0
    return math.ceil(len(text) / _CHARS_PER_TOKEN)


def get_model_from_request(request: Mapping[str, Any]) -> str:
    for field in ("model", "modelId"):
        value = request.get(field)
        if isinstance(value, str) and value.strip():
            model = value.strip()
            # "copilot/gpt-4o" style identifiers
            return model.rsplit("/", 1)[-1]
    return DEFAULT_MODEL


class DirectorySessionSource:
    """Session files found under a set of directories (recursive)."""

    def __init__(self, directories: Iterable[Path]) -> None:
        self._directories = [Path(d) for d in directories]

    def _scan(self) -> list[str]:
        files: list[str] = []
        for directory in self._directories:
            if not directory.is_dir():
                logger.warning("session.directory.missing", directory=str(directory))
                continue
            for path in sorted(directory.rglob("*")):
                if path.suffix in SESSION_FILE_SUFFIXES and path.is_file():
                    files.append(str(path))
        return files

    async def get_copilot_session_files(self) -> list[str]:
        files = await asyncio.to_thread(self._scan)
        logger.debug("session.files.found", count=len(files))
        return files

    async def get_session_file_data_cached(
        self, session_file: str, mtime_ms: float
    ) -> Mapping[str, Any] | None:
        return None

    def estimate_tokens_from_text(self, text: str, model: str) -> int:
        return estimate_tokens_from_text(text, model)

    def get_model_from_request(self, request: Mapping[str, Any]) -> str:
        return get_model_from_request(request)
