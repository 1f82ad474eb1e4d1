"""Table-key sanitizing and workspace/machine name helpers."""

import json
import re
from pathlib import Path, PurePosixPath
from urllib.parse import unquote

from core.logger import get_logger

logger = get_logger(__name__)

MAX_DISPLAY_NAME_LENGTH = 64

# Azure Tables reject these in PartitionKey/RowKey, plus control characters
_DISALLOWED_KEY_CHARS = re.compile(r"[/\\#?\x00-\x1f\x7f-\x9f]")
_WINDOWS_DRIVE_URI = re.compile(r"^/[A-Za-z]:/")

_CODE_WORKSPACE_SUFFIX = ".code-workspace"


def sanitize_table_key(value: str) -> str:
    return _DISALLOWED_KEY_CHARS.sub("_", value)


def strip_hostname_domain(hostname: str | None) -> str:
    trimmed = (hostname or "").strip()
    if not trimmed:
        return ""
    idx = trimmed.find(".")
    return trimmed[:idx] if idx > 0 else trimmed


def normalize_name_for_storage(name: str | None) -> str | None:
    """Trim and cap a display name; blank names become None."""
    if not name or not isinstance(name, str):
        return None
    trimmed = name.strip()
    if not trimmed:
        return None
    return trimmed[:MAX_DISPLAY_NAME_LENGTH]


def extract_workspace_id_from_session_path(session_file: str) -> str:
    """Identify which workspace a session log belongs to from its path.

    Returns the ``workspaceStorage/<id>`` folder name, or one of the fixed
    buckets ``emptyWindow``, ``copilot-chat``, ``copilot-cli``, ``unknown``.
    """
    normalized = session_file.replace("\\", "/")
    parts = normalized.split("/")
    lowered = normalized.lower()
    for idx, part in enumerate(parts):
        if part.lower() == "workspacestorage" and idx + 1 < len(parts):
            if parts[idx + 1]:
                return parts[idx + 1]
            break
    if "/globalstorage/emptywindowchatsessions/" in lowered:
        return "emptyWindow"
    if "/globalstorage/github.copilot-chat/" in lowered:
        return "copilot-chat"
    if "/.copilot/session-state/" in lowered:
        return "copilot-cli"
    return "unknown"


def _uri_to_path(uri: str) -> str:
    if not uri.startswith("file://"):
        return uri
    fs_path = uri[len("file://") :]
    if _WINDOWS_DRIVE_URI.match(fs_path):
        fs_path = fs_path[1:]
    return unquote(fs_path)


def _workspace_name_from_metadata(metadata_file: Path) -> str | None:
    try:
        parsed = json.loads(metadata_file.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    if not isinstance(parsed, dict):
        return None
    uri = parsed.get("folder") or parsed.get("workspace") or parsed.get("configuration")
    if not uri:
        return None
    fs_path = _uri_to_path(str(uri)).rstrip("/")
    base = PurePosixPath(fs_path).name
    if not base:
        return None
    if base.lower().endswith(_CODE_WORKSPACE_SUFFIX):
        base = base[: -len(_CODE_WORKSPACE_SUFFIX)]
    return normalize_name_for_storage(base)


def try_resolve_workspace_name_from_session_path(session_file: str) -> str | None:
    """Read the folder name from workspace.json/meta.json beside the session.

    Best-effort: any missing or unreadable metadata yields None.
    """
    normalized = session_file.replace("\\", "/")
    marker = "/workspacestorage/"
    idx = normalized.lower().find(marker)
    if idx < 0:
        return None
    workspace_storage_id = normalized[idx + len(marker) :].split("/")[0]
    if not workspace_storage_id:
        return None

    root = Path(normalized[:idx]) / normalized[idx + 1 : idx + len(marker) - 1]
    root = root / workspace_storage_id
    for candidate in ("workspace.json", "meta.json"):
        name = _workspace_name_from_metadata(root / candidate)
        if name:
            return name
    logger.debug("workspace.name.unresolved", workspace_id=workspace_storage_id)
    return None
