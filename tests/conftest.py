"""Global test fixtures for attoteam."""

from __future__ import annotations

from pathlib import Path

import pytest

from attoteam.config.schema import TeamYamlConfig
from attoteam.protocol.store import MemoryStateStore
from tests.helpers.fakes import fast_settings


@pytest.fixture
def tmp_workdir(tmp_path: Path) -> Path:
    """Provide a temporary working directory for file operation tests."""
    return tmp_path


@pytest.fixture
def settings() -> TeamYamlConfig:
    return fast_settings()


@pytest.fixture
def memory_store() -> MemoryStateStore:
    return MemoryStateStore()


@pytest.fixture(autouse=True)
def _clear_attoteam_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "ATTOTEAM_SCALING_ENABLED",
        "ATTOTEAM_READY_TIMEOUT_MS",
        "ATTOTEAM_SKIP_READY_WAIT",
        "ATTOTEAM_DISPATCH_LOCK_TIMEOUT_MS",
        "ATTOTEAM_DISPATCH_ACK_TIMEOUT_MS",
        "ATTOTEAM_TEAM_STATE_ROOT",
    ):
        monkeypatch.delenv(name, raising=False)
