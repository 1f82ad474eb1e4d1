"""Sharing profiles: what a sync pass is allowed to upload.

Five presets trade detail for privacy:
- off: nothing leaves the machine
- soloFull: raw workspace/machine IDs and names, no user dimension
- teamAnonymized: hashed IDs, no names, no user dimension
- teamPseudonymous / teamIdentified: hashed IDs plus a user dimension;
  names only when explicitly opted in

Team profiles hash IDs with an HMAC keyed by the dataset ID, so the same
workspace hashes differently in another dataset.
"""

import hashlib
import hmac

from core.config import DEFAULT_DATASET_ID, SharingProfile
from schemas import SharingPolicy

SHARING_PROFILES: tuple[SharingProfile, ...] = (
    "off",
    "soloFull",
    "teamAnonymized",
    "teamPseudonymous",
    "teamIdentified",
)

_HASH_HEX_CHARS = 16


def parse_sharing_profile(value: object) -> SharingProfile | None:
    if isinstance(value, str) and value in SHARING_PROFILES:
        return value  # type: ignore[return-value]
    return None


def compute_sharing_policy(
    enabled: bool,
    profile: SharingProfile,
    share_workspace_machine_names: bool,
) -> SharingPolicy:
    allow_cloud_sync = enabled and profile != "off"

    if profile == "off":
        return SharingPolicy(
            profile="off",
            allow_cloud_sync=allow_cloud_sync,
            include_user_dimension=False,
            include_names=False,
            workspace_id_strategy="raw",
            machine_id_strategy="raw",
        )

    if profile == "soloFull":
        return SharingPolicy(
            profile="soloFull",
            allow_cloud_sync=allow_cloud_sync,
            include_user_dimension=False,
            include_names=True,
            workspace_id_strategy="raw",
            machine_id_strategy="raw",
        )

    if profile == "teamAnonymized":
        return SharingPolicy(
            profile="teamAnonymized",
            allow_cloud_sync=allow_cloud_sync,
            include_user_dimension=False,
            include_names=False,
            workspace_id_strategy="hashed",
            machine_id_strategy="hashed",
        )

    return SharingPolicy(
        profile=profile,
        allow_cloud_sync=allow_cloud_sync,
        include_user_dimension=True,
        include_names=share_workspace_machine_names,
        workspace_id_strategy="hashed",
        machine_id_strategy="hashed",
    )


def _hmac_hex_truncated(key: str, message: str) -> str:
    digest = hmac.new(key.encode(), message.encode(), hashlib.sha256).hexdigest()
    return digest[:_HASH_HEX_CHARS]


def _dataset_key(dataset_id: str | None) -> str:
    return (dataset_id or "").strip() or DEFAULT_DATASET_ID


def hash_workspace_id_for_team(dataset_id: str | None, workspace_id: str) -> str:
    return _hmac_hex_truncated(_dataset_key(dataset_id), f"workspace:{workspace_id}")


def hash_machine_id_for_team(dataset_id: str | None, machine_id: str) -> str:
    return _hmac_hex_truncated(_dataset_key(dataset_id), f"machine:{machine_id}")


def apply_id_strategy(
    policy: SharingPolicy, dataset_id: str, workspace_id: str, machine_id: str
) -> tuple[str, str]:
    """Return (workspace_id, machine_id) as they may be stored under policy."""
    stored_workspace = (
        hash_workspace_id_for_team(dataset_id, workspace_id)
        if policy.workspace_id_strategy == "hashed"
        else workspace_id
    )
    stored_machine = (
        hash_machine_id_for_team(dataset_id, machine_id)
        if policy.machine_id_strategy == "hashed"
        else machine_id
    )
    return stored_workspace, stored_machine
