"""Tests for the local file index."""

import json
from pathlib import Path

import pytest
from helpers import FakeClock, write_file

from vaultsync.client.state import SqliteStateStore
from vaultsync.client.sync.ignore import IgnorePatterns
from vaultsync.client.sync.index import DEFAULT_INDEX_KEY, LocalIndex
from vaultsync.client.sync.types import IndexCorruptionError
from vaultsync.client.vault import LocalVault


@pytest.fixture
def index(store: SqliteStateStore, vault_dir: Path, clock: FakeClock) -> LocalIndex:
    return LocalIndex(store, LocalVault(vault_dir), clock=clock)


def reopen(store: SqliteStateStore, vault_dir: Path, clock: FakeClock) -> LocalIndex:
    return LocalIndex(store, LocalVault(vault_dir), clock=clock)


class TestScan:
    """Tests for scan_local_tree / detect_local_changes."""

    def test_scan_applies_filters(self, index: LocalIndex, vault_dir: Path) -> None:
        """Ignored and filtered paths should not appear in the scan."""
        write_file(vault_dir, "a.md", "a")
        write_file(vault_dir, "b.png", "b")
        write_file(vault_dir, "scratch.tmp", "t")
        write_file(vault_dir, ".git/HEAD", "ref")

        ignore = IgnorePatterns(["*.tmp"])
        scan = index.scan_local_tree(ignore, lambda p: not p.endswith(".png"))

        assert sorted(scan) == ["a.md"]
        assert scan["a.md"].size == 1

    def test_scan_folders(self, index: LocalIndex, vault_dir: Path) -> None:
        """Directories should be included only when allowed."""
        write_file(vault_dir, "Notes/a.md", "a")

        assert "Notes" not in index.scan_local_tree()
        scan = index.scan_local_tree(allow_folders=True)
        assert scan["Notes"].is_directory

    def test_detect_local_changes(self, index: LocalIndex, vault_dir: Path) -> None:
        """Should classify new, changed and deleted paths."""
        write_file(vault_dir, "same.md", "same", mtime_ms=1000)
        write_file(vault_dir, "edited.md", "v1", mtime_ms=1000)
        write_file(vault_dir, "gone.md", "bye", mtime_ms=1000)
        for path in ("same.md", "edited.md", "gone.md"):
            index.upsert_entry(path, f"id-{path}")

        write_file(vault_dir, "edited.md", "version two", mtime_ms=2000)
        (vault_dir / "gone.md").unlink()
        write_file(vault_dir, "fresh.md", "new")

        changes = index.detect_local_changes(index.scan_local_tree())

        assert changes.new == ["fresh.md"]
        assert changes.changed == ["edited.md"]
        assert changes.deleted == ["gone.md"]


class TestEntries:
    """Tests for upsert_entry / remove_entry."""

    def test_upsert_reads_local_state(self, index: LocalIndex, vault_dir: Path, clock: FakeClock) -> None:
        """Size and mtime should default to the file on disk."""
        write_file(vault_dir, "a.md", "hello", mtime_ms=1_700_000_000_000)

        entry = index.upsert_entry("a.md", "r1", "tag1")

        assert entry.size == 5
        assert entry.modified_time == 1_700_000_000_000
        assert entry.remote_id == "r1"
        assert entry.remote_revision_tag == "tag1"
        assert entry.last_sync_time == clock.now
        assert index.get_path_for_remote_id("r1") == "a.md"

    def test_last_sync_time_not_before_remote(self, index: LocalIndex, clock: FakeClock) -> None:
        """A remote timestamp ahead of the clock should lift last_sync_time."""
        entry = index.upsert_entry(
            "a.md", "r1", size=1, modified_time=1, is_directory=False,
            remote_modified_time=clock.now + 60_000,
        )
        assert entry.last_sync_time == clock.now + 60_000

    def test_upsert_keeps_remote_mapping(self, index: LocalIndex) -> None:
        """Omitted remote fields should keep their stored values."""
        index.upsert_entry("a.md", "r1", "tag1", size=1, modified_time=1, is_directory=False)
        entry = index.upsert_entry("a.md", size=2, modified_time=2, is_directory=False)
        assert entry.remote_id == "r1"
        assert entry.remote_revision_tag == "tag1"

    def test_duplicate_remote_id_rejected(self, index: LocalIndex) -> None:
        """Two paths must never share a remote id."""
        index.upsert_entry("a.md", "r1", size=1, modified_time=1, is_directory=False)
        with pytest.raises(IndexCorruptionError):
            index.upsert_entry("b.md", "r1", size=1, modified_time=1, is_directory=False)

    def test_remote_id_change_updates_reverse_map(self, index: LocalIndex) -> None:
        index.upsert_entry("a.md", "r1", size=1, modified_time=1, is_directory=False)
        index.upsert_entry("a.md", "r2", size=1, modified_time=1, is_directory=False)

        assert index.get_path_for_remote_id("r1") is None
        assert index.get_path_for_remote_id("r2") == "a.md"

    def test_remove_entry(self, index: LocalIndex) -> None:
        index.upsert_entry("a.md", "r1", size=1, modified_time=1, is_directory=False)
        index.remove_entry("a.md")
        index.remove_entry("a.md")

        assert "a.md" not in index
        assert index.get_path_for_remote_id("r1") is None


class TestPersistence:
    """Tests for loading and saving the index document."""

    def test_survives_restart(
        self, index: LocalIndex, store: SqliteStateStore, vault_dir: Path, clock: FakeClock
    ) -> None:
        """Entries, folders and conflicts should be reloaded."""
        index.upsert_entry("a.md", "r1", "t1", size=3, modified_time=10, is_directory=False)
        index.set_folder("f-root", "")
        index.mark_unresolved("a.md")

        again = reopen(store, vault_dir, clock)

        assert again.get_entry("a.md") == index.get_entry("a.md")
        assert again.get_folder_path("f-root") == ""
        assert again.is_unresolved("a.md")

    def test_corrupt_document_resets(self, store: SqliteStateStore, vault_dir: Path, clock: FakeClock) -> None:
        """An unparseable document should load as an empty index."""
        store.save(DEFAULT_INDEX_KEY, "{broken")
        assert len(reopen(store, vault_dir, clock)) == 0

    def test_duplicate_ids_on_disk_reset(self, store: SqliteStateStore, vault_dir: Path, clock: FakeClock) -> None:
        """A stored document violating id uniqueness should be discarded."""
        entry = {"size": 1, "modified_time": 1, "remote_id": "dup"}
        store.save(
            DEFAULT_INDEX_KEY,
            json.dumps({
                "version": 1,
                "files": {
                    "a.md": {"path": "a.md", **entry},
                    "b.md": {"path": "b.md", **entry},
                },
            }),
        )
        assert len(reopen(store, vault_dir, clock)) == 0

    def test_unknown_version_resets(self, store: SqliteStateStore, vault_dir: Path, clock: FakeClock) -> None:
        store.save(DEFAULT_INDEX_KEY, json.dumps({"version": 99, "files": {}}))
        assert reopen(store, vault_dir, clock).stats().total_entries == 0


class TestFoldersAndConflicts:
    """Tests for the folder map and unresolved conflicts."""

    def test_folder_map(self, index: LocalIndex) -> None:
        index.set_folder("d1", "Notes")
        assert index.get_folder_id("Notes") == "d1"

        index.replace_folders({"d2": "Other"})
        assert index.get_folder_id("Notes") is None
        assert index.folders() == {"d2": "Other"}

        index.remove_folder("d2")
        assert index.folders() == {}

    def test_unresolved(self, index: LocalIndex) -> None:
        index.mark_unresolved("b.md")
        index.mark_unresolved("a.md")

        assert index.unresolved_paths() == ["a.md", "b.md"]
        assert index.clear_unresolved("a.md")
        assert not index.clear_unresolved("a.md")
        assert index.unresolved_paths() == ["b.md"]


class TestMaintenance:
    """Tests for clear / rebuild / stats."""

    def test_clear(self, index: LocalIndex) -> None:
        index.upsert_entry("a.md", "r1", size=1, modified_time=1, is_directory=False)
        index.clear()
        assert len(index) == 0

    def test_rebuild_keeps_remote_mapping(self, index: LocalIndex, vault_dir: Path) -> None:
        """Present paths keep their ids; vanished or unmapped paths are dropped."""
        write_file(vault_dir, "a.md", "a", mtime_ms=1000)
        write_file(vault_dir, "gone.md", "g", mtime_ms=1000)
        index.upsert_entry("a.md", "r1")
        index.upsert_entry("gone.md", "r2")

        (vault_dir / "gone.md").unlink()
        write_file(vault_dir, "a.md", "edited", mtime_ms=5000)
        write_file(vault_dir, "unmapped.md", "u")

        kept = index.rebuild(index.scan_local_tree())

        assert kept == 1
        entry = index.get_entry("a.md")
        assert entry is not None
        assert entry.remote_id == "r1"
        assert entry.size == 6
        assert entry.modified_time == 5000
        assert "unmapped.md" not in index

    def test_stats(self, index: LocalIndex) -> None:
        index.upsert_entry("a.md", "r1", size=1, modified_time=1, is_directory=False)
        index.upsert_entry("Notes", "d1", size=0, modified_time=1, is_directory=True)
        index.mark_unresolved("a.md")

        stats = index.stats()

        assert stats.total_entries == 2
        assert stats.synced_files == 1
        assert stats.directories == 1
        assert stats.unresolved_conflicts == 1
