"""Backend sync configuration using pydantic-settings."""

import hashlib
import re
import socket
import uuid
from functools import cached_property, lru_cache
from pathlib import Path
from typing import Literal, Self

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

AuthMode = Literal["entraId", "sharedKey"]
SharingProfile = Literal[
    "off", "soloFull", "teamAnonymized", "teamPseudonymous", "teamIdentified"
]
UserIdentityMode = Literal["pseudonymous", "teamAlias", "entraObjectId"]

MIN_LOOKBACK_DAYS = 1
MAX_LOOKBACK_DAYS = 90
DEFAULT_LOOKBACK_DAYS = 30

DEFAULT_DATASET_ID = "default"
DEFAULT_AGG_TABLE = "usageAggDaily"

# Azure Tables: alphanumeric, starts with a letter, 3-63 chars
_TABLE_NAME_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9]{2,62}$")
_STORAGE_ACCOUNT_PATTERN = re.compile(r"^[a-z0-9]{3,24}$")


def clamp_lookback_days(value: int) -> int:
    return max(MIN_LOOKBACK_DAYS, min(MAX_LOOKBACK_DAYS, value))


class Settings(BaseSettings):
    """Backend sync settings loaded from environment variables.

    Every variable is prefixed with ``COPILOT_BACKEND_`` (for example
    ``COPILOT_BACKEND_STORAGE_ACCOUNT``). The instance is frozen: settings are
    a read-only snapshot for the duration of a sync pass or query.
    """

    model_config = SettingsConfigDict(
        env_prefix="COPILOT_BACKEND_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    enabled: bool = False
    auth_mode: AuthMode = "entraId"
    dataset_id: str = DEFAULT_DATASET_ID

    # When unset, inferred from enabled/share_with_team/user_identity_mode
    sharing_profile: SharingProfile | None = None
    # Legacy flag kept for profile inference only
    share_with_team: bool = False
    share_workspace_machine_names: bool = False
    share_consent_at: str = ""

    user_identity_mode: UserIdentityMode = "pseudonymous"
    user_id: str = ""

    storage_account: str = ""
    agg_table: str = DEFAULT_AGG_TABLE

    lookback_days: int = DEFAULT_LOOKBACK_DAYS

    # Stable per-machine identifier; derived from hostname + MAC when blank
    machine_id: str = ""

    # Raw session log upload to Blob Storage (off by default)
    blob_upload_enabled: bool = False
    blob_container_name: str = "copilot-session-logs"
    blob_upload_frequency_hours: int = 24
    blob_compress_files: bool = True

    # Local state (last sync timestamp, upload status)
    state_dir: str = ""

    # Comma-separated directories scanned by the CLI session source
    session_dirs: str = ""

    @field_validator("lookback_days", mode="before")
    @classmethod
    def _clamp_lookback(cls, value: object) -> int:
        return clamp_lookback_days(int(value))  # type: ignore[call-overload]

    @field_validator("dataset_id", "user_id", "storage_account", mode="before")
    @classmethod
    def _strip(cls, value: object) -> object:
        return value.strip() if isinstance(value, str) else value

    @field_validator("agg_table")
    @classmethod
    def _validate_table_name(cls, value: str) -> str:
        if not _TABLE_NAME_PATTERN.match(value):
            raise ValueError(
                f"Invalid Azure table name '{value}'. Table names must start with "
                "a letter and contain 3-63 letters or digits."
            )
        return value

    @model_validator(mode="after")
    def validate_config(self) -> Self:
        if self.storage_account and not _STORAGE_ACCOUNT_PATTERN.match(
            self.storage_account
        ):
            raise ValueError(
                f"Invalid storage account name '{self.storage_account}'. "
                "Use 3-24 lowercase letters or digits."
            )
        if not self.dataset_id:
            object.__setattr__(self, "dataset_id", DEFAULT_DATASET_ID)
        if self.blob_upload_frequency_hours < 1:
            raise ValueError("BLOB_UPLOAD_FREQUENCY_HOURS must be at least 1.")
        return self

    @cached_property
    def effective_sharing_profile(self) -> SharingProfile:
        """Explicit profile, or the minimizing default inferred from legacy flags."""
        if self.sharing_profile is not None:
            return self.sharing_profile
        if not self.enabled:
            return "off"
        if self.share_with_team and self.user_identity_mode != "pseudonymous":
            return "teamIdentified"
        if self.share_with_team:
            return "teamPseudonymous"
        return "teamAnonymized"

    @cached_property
    def effective_machine_id(self) -> str:
        if self.machine_id:
            return self.machine_id
        raw = f"{socket.gethostname()}|{uuid.getnode():012x}"
        return hashlib.sha256(raw.encode()).hexdigest()

    @cached_property
    def state_dir_path(self) -> Path:
        if self.state_dir:
            return Path(self.state_dir)
        return Path.home() / ".copilot-token-tracker"

    @cached_property
    def session_dir_paths(self) -> list[Path]:
        return [Path(p.strip()) for p in self.session_dirs.split(",") if p.strip()]


def is_backend_configured(settings: Settings) -> bool:
    return bool(settings.storage_account and settings.agg_table)


def should_prompt_to_set_shared_key(
    auth_mode: AuthMode, storage_account: str, shared_key: str | None
) -> bool:
    if auth_mode != "sharedKey":
        return False
    if not storage_account.strip():
        return False
    return not (shared_key and shared_key.strip())


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Call this in tests, or after the environment changes, so the next
    get_settings() call builds a fresh Settings instance. A sharing-profile
    change therefore takes effect on the very next sync pass.
    """
    get_settings.cache_clear()
