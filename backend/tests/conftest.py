"""Pytest configuration and shared fixtures.

This module provides:
- Settings factories that ignore the developer's environment and .env
- Fixtures for the in-memory fakes in tests/fakes.py
- Service fixtures wired to those fakes
"""

import os
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

from core.config import Settings, clear_settings_cache
from services.credential_service import CredentialService
from services.data_plane_service import DataPlaneService
from tests.fakes import (
    FakePrompts,
    FakeSecretStore,
    FakeStateStore,
    FakeTableClient,
    InMemorySessionSource,
)

# =============================================================================
# Settings
# =============================================================================


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Drop COPILOT_BACKEND_* variables so local config never leaks into tests."""
    for name in list(os.environ):
        if name.startswith("COPILOT_BACKEND_"):
            monkeypatch.delenv(name, raising=False)
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def make_settings(tmp_path: Path) -> Callable[..., Settings]:
    """Build Settings for a configured backend; keyword overrides win."""

    def _make(**overrides: Any) -> Settings:
        values: dict[str, Any] = {
            "enabled": True,
            "auth_mode": "entraId",
            "sharing_profile": "soloFull",
            "dataset_id": "default",
            "storage_account": "teststorage",
            "agg_table": "usageAggDaily",
            "machine_id": "m1",
            "state_dir": str(tmp_path / "state"),
            "lookback_days": 30,
        }
        values.update(overrides)
        return Settings(_env_file=None, **values)

    return _make


@pytest.fixture
def settings(make_settings: Callable[..., Settings]) -> Settings:
    return make_settings()


# =============================================================================
# Fakes
# =============================================================================


@pytest.fixture
def table_client() -> FakeTableClient:
    return FakeTableClient()


@pytest.fixture
def secret_store() -> FakeSecretStore:
    return FakeSecretStore()


@pytest.fixture
def prompts() -> FakePrompts:
    return FakePrompts()


@pytest.fixture
def state_store() -> FakeStateStore:
    return FakeStateStore()


@pytest.fixture
def session_source() -> InMemorySessionSource:
    return InMemorySessionSource()


# =============================================================================
# Services
# =============================================================================


@pytest.fixture
def sleeps() -> list[float]:
    """Delays requested by retry/timer loops (nothing actually sleeps)."""
    return []


@pytest.fixture
def fake_sleep(sleeps: list[float]) -> Callable[[float], Any]:
    async def _sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return _sleep


@pytest.fixture
def credential_service(
    secret_store: FakeSecretStore, prompts: FakePrompts
) -> CredentialService:
    return CredentialService(secret_store, prompts, credential_factory=lambda: "entra")


@pytest.fixture
def data_plane_service(
    table_client: FakeTableClient, fake_sleep: Callable[[float], Any]
) -> DataPlaneService:
    return DataPlaneService(
        "m1",
        table_client_factory=lambda settings, credential: table_client,
        sleep=fake_sleep,
    )
