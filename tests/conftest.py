"""Pytest fixtures shared across the vaultsync test suite.

The drive fixtures wire a real DriveClient to an in-memory FakeDrive through
httpx.MockTransport, so orchestrator tests exercise the full HTTP path.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest
from fake_drive import API_URL, UPLOAD_URL, FakeDrive
from helpers import FakeClock

from vaultsync.client.api import DriveClient
from vaultsync.client.auth import StaticTokenProvider
from vaultsync.client.state import SqliteStateStore
from vaultsync.client.sync.engine import SyncOrchestrator
from vaultsync.client.vault import LocalVault
from vaultsync.core.config import RemoteConfig, SyncConfig


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def drive(clock: FakeClock) -> FakeDrive:
    return FakeDrive(clock)


@pytest.fixture
def vault_dir(tmp_path: Path) -> Path:
    path = tmp_path / "vault"
    path.mkdir()
    return path


@pytest.fixture
def store(tmp_path: Path) -> Iterator[SqliteStateStore]:
    state = SqliteStateStore(tmp_path / "state.db")
    yield state
    state.close()


@pytest.fixture
def remote_config() -> RemoteConfig:
    return RemoteConfig(api_url=API_URL, upload_url=UPLOAD_URL)


@pytest.fixture
def client(drive: FakeDrive, remote_config: RemoteConfig) -> Iterator[DriveClient]:
    api = DriveClient(
        remote_config,
        StaticTokenProvider("test-token"),
        transport=drive.transport(),
        max_retries=2,
        sleep=lambda _: None,
    )
    yield api
    api.close()


@pytest.fixture
def make_orchestrator(
    client: DriveClient,
    vault_dir: Path,
    store: SqliteStateStore,
    clock: FakeClock,
) -> Callable[..., SyncOrchestrator]:
    """Build an orchestrator; each call simulates a process restart."""

    def make(**overrides: Any) -> SyncOrchestrator:
        config = SyncConfig(vault_path=vault_dir, **overrides)
        return SyncOrchestrator(client, LocalVault(vault_dir), store, config, clock=clock)

    return make
