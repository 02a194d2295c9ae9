"""Tests for conflict resolution."""

from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from helpers import DAY, FakeClock, write_file

from vaultsync.client.api import APIError, RemoteFile
from vaultsync.client.state import SqliteStateStore
from vaultsync.client.sync.conflict import (
    ConflictResolver,
    generate_conflict_filename,
    is_conflict_backup,
)
from vaultsync.client.sync.index import LocalIndex
from vaultsync.client.sync.transfers import NOT_MODIFIED, UploadResult
from vaultsync.client.sync.types import ConflictResolutionError, FileSnapshot
from vaultsync.client.vault import LocalVault
from vaultsync.core.types import ConflictPolicy

NOW = 1_735_813_800_000  # 2025-01-02T10:30:00Z
STAMP = "2025-01-02T10-30-00"


@pytest.fixture
def conflict_clock() -> FakeClock:
    return FakeClock(NOW)


@pytest.fixture
def vault(vault_dir: Path) -> LocalVault:
    return LocalVault(vault_dir)


@pytest.fixture
def index(store: SqliteStateStore, vault: LocalVault, conflict_clock: FakeClock) -> LocalIndex:
    return LocalIndex(store, vault, clock=conflict_clock)


@pytest.fixture
def transfers() -> MagicMock:
    engine = MagicMock()
    engine.download.return_value = b"remote text"
    uploaded = RemoteFile(id="r1", name="a.md", mime_type="text/markdown", size=10, modified_time=NOW, md5_checksum="up")
    engine.upload.return_value = UploadResult("r1", "up", uploaded)
    return engine


def make_resolver(
    vault: LocalVault, index: LocalIndex, transfers: MagicMock, clock: FakeClock, policy: ConflictPolicy
) -> ConflictResolver:
    return ConflictResolver(vault, index, transfers, policy, clock=clock)


def remote_snapshot(mtime: int) -> FileSnapshot:
    return FileSnapshot(path="a.md", size=11, modified_time=mtime, remote_id="r1", revision_tag="t2")


class TestConflictFilename:
    """Tests for backup naming."""

    def test_generate(self) -> None:
        ts = datetime(2025, 1, 2, 10, 30, 0, tzinfo=timezone.utc)
        assert generate_conflict_filename("notes/todo.md", ts) == f"notes/todo (conflict {STAMP}).md"

    def test_without_extension(self) -> None:
        ts = datetime(2025, 1, 2, 10, 30, 0, tzinfo=timezone.utc)
        assert generate_conflict_filename("README", ts) == f"README (conflict {STAMP})"

    def test_is_conflict_backup(self) -> None:
        assert is_conflict_backup(f"notes/todo (conflict {STAMP}).md")
        assert not is_conflict_backup("notes/todo.md")


class TestLastWriterWins:
    """Tests for the last-writer-wins policy."""

    def test_remote_newer(
        self, vault: LocalVault, vault_dir: Path, index: LocalIndex, transfers: MagicMock, conflict_clock: FakeClock
    ) -> None:
        """Remote wins: local content goes to the backup, remote replaces the file."""
        write_file(vault_dir, "a.md", "local text", mtime_ms=NOW - DAY)
        resolver = make_resolver(vault, index, transfers, conflict_clock, ConflictPolicy.LAST_WRITER_WINS)

        outcome = resolver.resolve("a.md", remote_snapshot(NOW - 1000), "root")

        backup = f"a (conflict {STAMP}).md"
        assert outcome.winner == "remote"
        assert outcome.backup_paths == [backup]
        assert (vault_dir / backup).read_text() == "local text"
        assert (vault_dir / "a.md").read_text() == "remote text"
        entry = index.get_entry("a.md")
        assert entry is not None and entry.remote_revision_tag == "t2"
        transfers.upload.assert_not_called()

    def test_tie_goes_to_remote(
        self, vault: LocalVault, vault_dir: Path, index: LocalIndex, transfers: MagicMock, conflict_clock: FakeClock
    ) -> None:
        write_file(vault_dir, "a.md", "local text", mtime_ms=NOW - DAY)
        resolver = make_resolver(vault, index, transfers, conflict_clock, ConflictPolicy.LAST_WRITER_WINS)

        assert resolver.resolve("a.md", remote_snapshot(NOW - DAY), "root").winner == "remote"

    def test_local_newer(
        self, vault: LocalVault, vault_dir: Path, index: LocalIndex, transfers: MagicMock, conflict_clock: FakeClock
    ) -> None:
        """Local wins: remote content goes to the backup, local is uploaded."""
        write_file(vault_dir, "a.md", "local text", mtime_ms=NOW - 1000)
        resolver = make_resolver(vault, index, transfers, conflict_clock, ConflictPolicy.LAST_WRITER_WINS)

        outcome = resolver.resolve("a.md", remote_snapshot(NOW - DAY), "root")

        backup = f"a (conflict {STAMP}).md"
        assert outcome.winner == "local"
        assert (vault_dir / backup).read_text() == "remote text"
        assert (vault_dir / "a.md").read_text() == "local text"
        args, kwargs = transfers.upload.call_args
        assert args[:4] == ("a.md", b"local text", "text/markdown", "root")
        assert kwargs["existing_remote_id"] == "r1"
        entry = index.get_entry("a.md")
        assert entry is not None and entry.remote_revision_tag == "up"

    def test_backup_name_collision(
        self, vault: LocalVault, vault_dir: Path, index: LocalIndex, transfers: MagicMock, conflict_clock: FakeClock
    ) -> None:
        """An existing backup with the same stamp should get a counter."""
        write_file(vault_dir, "a.md", "local text", mtime_ms=NOW - DAY)
        write_file(vault_dir, f"a (conflict {STAMP}).md", "older backup")
        resolver = make_resolver(vault, index, transfers, conflict_clock, ConflictPolicy.LAST_WRITER_WINS)

        outcome = resolver.resolve("a.md", remote_snapshot(NOW), "root")

        assert outcome.backup_paths == [f"a (conflict {STAMP}) 2.md"]
        assert (vault_dir / f"a (conflict {STAMP}).md").read_text() == "older backup"

    def test_transfer_failure_wrapped(
        self, vault: LocalVault, vault_dir: Path, index: LocalIndex, transfers: MagicMock, conflict_clock: FakeClock
    ) -> None:
        """Failures should surface as ConflictResolutionError and leave the file alone."""
        write_file(vault_dir, "a.md", "local text", mtime_ms=NOW - DAY)
        transfers.download.side_effect = APIError("boom", 500)
        resolver = make_resolver(vault, index, transfers, conflict_clock, ConflictPolicy.LAST_WRITER_WINS)

        with pytest.raises(ConflictResolutionError):
            resolver.resolve("a.md", remote_snapshot(NOW), "root")
        assert (vault_dir / "a.md").read_text() == "local text"

    def test_not_modified_is_an_error(
        self, vault: LocalVault, vault_dir: Path, index: LocalIndex, transfers: MagicMock, conflict_clock: FakeClock
    ) -> None:
        write_file(vault_dir, "a.md", "local text", mtime_ms=NOW - DAY)
        transfers.download.return_value = NOT_MODIFIED
        resolver = make_resolver(vault, index, transfers, conflict_clock, ConflictPolicy.LAST_WRITER_WINS)

        with pytest.raises(ConflictResolutionError, match="remote content unavailable"):
            resolver.resolve("a.md", remote_snapshot(NOW), "root")

    def test_preview(
        self, vault: LocalVault, vault_dir: Path, index: LocalIndex, transfers: MagicMock, conflict_clock: FakeClock
    ) -> None:
        """Preview should name the winner without touching anything."""
        write_file(vault_dir, "a.md", "local text", mtime_ms=NOW - 1000)
        resolver = make_resolver(vault, index, transfers, conflict_clock, ConflictPolicy.LAST_WRITER_WINS)

        preview = resolver.preview("a.md", remote_snapshot(NOW - DAY))

        assert preview.winner == "local"
        assert preview.backup_paths == [f"a (conflict {STAMP}).md"]
        transfers.download.assert_not_called()
        assert sorted(p.name for p in vault_dir.iterdir()) == ["a.md"]


class TestManual:
    """Tests for the manual policy."""

    def test_backs_up_both_sides(
        self, vault: LocalVault, vault_dir: Path, index: LocalIndex, transfers: MagicMock, conflict_clock: FakeClock
    ) -> None:
        """Both versions are saved, the original stays, the path is unresolved."""
        write_file(vault_dir, "a.md", "local text")
        resolver = make_resolver(vault, index, transfers, conflict_clock, ConflictPolicy.MANUAL)

        outcome = resolver.resolve("a.md", remote_snapshot(NOW), "root")

        assert outcome.unresolved
        assert outcome.backup_paths == [
            f"a (conflict {STAMP}).md",
            f"a (remote) (conflict {STAMP}).md",
        ]
        assert (vault_dir / outcome.backup_paths[0]).read_text() == "local text"
        assert (vault_dir / outcome.backup_paths[1]).read_text() == "remote text"
        assert (vault_dir / "a.md").read_text() == "local text"
        assert index.is_unresolved("a.md")
        transfers.upload.assert_not_called()


class TestCleanup:
    """Tests for cleanup_old_backups."""

    def test_removes_only_old_backups(
        self, vault: LocalVault, vault_dir: Path, index: LocalIndex, transfers: MagicMock, conflict_clock: FakeClock
    ) -> None:
        old = f"a (conflict {STAMP}).md"
        fresh = "b (conflict 2025-01-01T00-00-00).md"
        write_file(vault_dir, old, "x", mtime_ms=NOW - 40 * DAY)
        write_file(vault_dir, fresh, "x", mtime_ms=NOW - DAY)
        write_file(vault_dir, "plain.md", "x", mtime_ms=NOW - 40 * DAY)
        resolver = make_resolver(vault, index, transfers, conflict_clock, ConflictPolicy.LAST_WRITER_WINS)

        assert resolver.cleanup_old_backups() == 1
        assert not (vault_dir / old).exists()
        assert (vault_dir / fresh).exists()
        assert (vault_dir / "plain.md").exists()
