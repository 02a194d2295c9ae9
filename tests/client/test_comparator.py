"""Tests for the three-way comparator."""

from pathlib import Path

import pytest
from helpers import FakeClock

from vaultsync.client.state import SqliteStateStore
from vaultsync.client.sync.comparator import compare
from vaultsync.client.sync.index import LocalIndex
from vaultsync.client.sync.types import FileSnapshot
from vaultsync.client.vault import LocalVault

SYNCED_AT = 1_700_000_000_000


@pytest.fixture
def index(store: SqliteStateStore, vault_dir: Path) -> LocalIndex:
    return LocalIndex(store, LocalVault(vault_dir), clock=FakeClock(SYNCED_AT))


def track(index: LocalIndex, path: str, remote_id: str, size: int = 10, mtime: int = 1000, tag: str = "t1") -> None:
    index.upsert_entry(path, remote_id, tag, size=size, modified_time=mtime, is_directory=False)


def local(path: str, size: int = 10, mtime: int = 1000, is_directory: bool = False) -> FileSnapshot:
    return FileSnapshot(path=path, size=size, modified_time=mtime, is_directory=is_directory)


def remote(
    path: str, remote_id: str, tag: str = "t1", mtime: int = SYNCED_AT - 1, is_directory: bool = False
) -> FileSnapshot:
    return FileSnapshot(
        path=path,
        size=10,
        modified_time=mtime,
        is_directory=is_directory,
        remote_id=remote_id,
        revision_tag=tag,
    )


class TestCompare:
    """Tests for compare()."""

    def test_in_sync(self, index: LocalIndex) -> None:
        """Unchanged paths should produce an empty diff."""
        track(index, "a.md", "r1")

        diff = compare([remote("a.md", "r1")], {"a.md": local("a.md")}, index)

        assert diff.is_empty
        assert diff.remote_files["a.md"].remote_id == "r1"

    def test_new_on_each_side(self, index: LocalIndex) -> None:
        diff = compare([remote("r.md", "r1")], {"l.md": local("l.md")}, index)

        assert [s.path for s in diff.new_local] == ["l.md"]
        assert [s.path for s in diff.new_remote] == ["r.md"]

    def test_changed_local_by_mtime_or_size(self, index: LocalIndex) -> None:
        track(index, "a.md", "r1")
        track(index, "b.md", "r2")

        diff = compare(
            [remote("a.md", "r1"), remote("b.md", "r2")],
            {"a.md": local("a.md", mtime=2000), "b.md": local("b.md", size=11)},
            index,
        )

        assert diff.changed_local == ["a.md", "b.md"]

    def test_changed_remote_by_time_or_tag(self, index: LocalIndex) -> None:
        track(index, "a.md", "r1")
        track(index, "b.md", "r2")

        diff = compare(
            [remote("a.md", "r1", mtime=SYNCED_AT + 1), remote("b.md", "r2", tag="t2")],
            {"a.md": local("a.md"), "b.md": local("b.md")},
            index,
        )

        assert diff.changed_remote == ["a.md", "b.md"]

    def test_deleted_on_each_side(self, index: LocalIndex) -> None:
        track(index, "gone-local.md", "r1")
        track(index, "gone-remote.md", "r2")

        diff = compare(
            [remote("gone-local.md", "r1")],
            {"gone-remote.md": local("gone-remote.md")},
            index,
        )

        assert diff.deleted_local == ["gone-local.md"]
        assert diff.deleted_remote == ["gone-remote.md"]

    def test_conflict_excludes_single_sided_categories(self, index: LocalIndex) -> None:
        """A path changed on both sides should only be a conflict."""
        track(index, "a.md", "r1")

        diff = compare(
            [remote("a.md", "r1", tag="t2")],
            {"a.md": local("a.md", mtime=2000)},
            index,
        )

        assert diff.conflicts == ["a.md"]
        assert diff.categories_of("a.md") == ["conflicts"]

    def test_new_on_both_sides_conflicts(self, index: LocalIndex) -> None:
        diff = compare([remote("a.md", "r1")], {"a.md": local("a.md")}, index)

        assert diff.categories_of("a.md") == ["conflicts"]

    def test_new_directory_on_both_sides_is_shared(self, index: LocalIndex) -> None:
        """A directory created on both sides should just be adopted."""
        diff = compare(
            [remote("Notes", "d1", tag=None, is_directory=True)],
            {"Notes": local("Notes", size=0, is_directory=True)},
            index,
        )

        assert diff.conflicts == []
        assert diff.categories_of("Notes") == ["new_remote"]

    def test_deleted_locally_changed_remotely(self, index: LocalIndex) -> None:
        """The remote change should be downloaded again."""
        track(index, "a.md", "r1")

        diff = compare([remote("a.md", "r1", tag="t2")], {}, index)

        assert diff.categories_of("a.md") == ["changed_remote"]

    def test_changed_locally_deleted_remotely(self, index: LocalIndex) -> None:
        """The local change should be uploaded again."""
        track(index, "a.md", "r1")

        diff = compare([], {"a.md": local("a.md", mtime=2000)}, index)

        assert diff.categories_of("a.md") == ["changed_local"]

    def test_deleted_on_both_sides(self, index: LocalIndex) -> None:
        """Only the index entry needs reconciling."""
        track(index, "a.md", "r1")

        diff = compare([], {}, index)

        assert diff.categories_of("a.md") == ["deleted_remote"]

    def test_remote_move(self, index: LocalIndex) -> None:
        """A remote rename is a deletion of the old path plus a new path."""
        track(index, "old.md", "r1")

        diff = compare([remote("new.md", "r1")], {"old.md": local("old.md")}, index)

        assert diff.deleted_remote == ["old.md"]
        assert [s.path for s in diff.new_remote] == ["new.md"]

    def test_path_filter(self, index: LocalIndex) -> None:
        """Filtered paths should be invisible on every side."""
        track(index, "skip.tmp", "r9")

        diff = compare(
            [remote("x.tmp", "r1")],
            {"y.tmp": local("y.tmp")},
            index,
            path_filter=lambda path, is_dir: not path.endswith(".tmp"),
        )

        assert diff.is_empty
        assert diff.remote_files == {}

    def test_categories_are_disjoint(self, index: LocalIndex) -> None:
        """Every path should land in at most one category."""
        track(index, "conflict.md", "r1")
        track(index, "lchange.md", "r2")
        track(index, "rchange.md", "r3")
        track(index, "ldel.md", "r4")
        track(index, "rdel.md", "r5")

        diff = compare(
            [
                remote("conflict.md", "r1", tag="x"),
                remote("lchange.md", "r2"),
                remote("rchange.md", "r3", tag="x"),
                remote("ldel.md", "r4"),
                remote("new-remote.md", "r6"),
            ],
            {
                "conflict.md": local("conflict.md", mtime=5000),
                "lchange.md": local("lchange.md", mtime=5000),
                "rchange.md": local("rchange.md"),
                "rdel.md": local("rdel.md"),
                "new-local.md": local("new-local.md"),
            },
            index,
        )

        for path in ("conflict.md", "lchange.md", "rchange.md", "ldel.md", "rdel.md", "new-remote.md", "new-local.md"):
            assert len(diff.categories_of(path)) == 1, path
        assert diff.total == 7


class TestDuplicateRemoteNames:
    """Tests for two remote objects sharing one path."""

    def test_first_untracked_object_kept(self, index: LocalIndex, caplog: pytest.LogCaptureFixture) -> None:
        """Should sync one object and warn about the other."""
        diff = compare([remote("a.md", "r1"), remote("a.md", "r2")], {}, index)

        assert [s.remote_id for s in diff.new_remote] == ["r1"]
        assert diff.remote_files["a.md"].remote_id == "r1"
        assert "used by both r1 and r2" in caplog.text

    def test_tracked_object_wins(self, index: LocalIndex) -> None:
        """A duplicate must not make the tracked object look deleted."""
        track(index, "a.md", "r2")

        diff = compare(
            [remote("a.md", "r1"), remote("a.md", "r2")],
            {"a.md": local("a.md")},
            index,
        )

        assert diff.is_empty
        assert diff.remote_files["a.md"].remote_id == "r2"
