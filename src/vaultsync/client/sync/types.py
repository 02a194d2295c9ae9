"""Shared types and dataclasses for sync operations.

This module provides:
- SyncError and its subclasses: the sync core's error taxonomy
- IndexEntry: one tracked path in the local index
- FileSnapshot: one side's observed state of a path during a pass
- LocalChanges, DiffResult: change detection results
- SyncStats, SyncOptions, SyncResult, ConflictPreview: pass bookkeeping
- Type aliases for callbacks
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


# Clock injected into time-dependent components (returns epoch ms)
Clock = Callable[[], int]


class SyncError(Exception):
    """Base exception for sync errors."""


class ChangeTrackingUnavailable(SyncError):
    """Remote change polling is not functional for this session."""


class ConflictResolutionError(SyncError):
    """A conflicting path could not be resolved (backup or fetch failed)."""

    def __init__(self, path: str, message: str) -> None:
        self.path = path
        super().__init__(f"Cannot resolve conflict on {path}: {message}")


class SyncInProgressError(SyncError):
    """A sync pass is already running."""


class IndexCorruptionError(SyncError):
    """The persisted index cannot be parsed or violates its invariants."""


@dataclass
class IndexEntry:
    """Last-known synced state of one local path.

    Attributes:
        path: Vault-relative, forward-slash path.
        size: Size in bytes when last synced.
        modified_time: Local mtime (epoch ms) when last synced.
        remote_id: Remote object id, absent until first upload.
        remote_revision_tag: Remote fingerprint at last sync.
        content_hash: Local content fingerprint, if computed.
        last_sync_time: Epoch ms of the last reconciliation of this path.
        is_directory: Entry tracks a directory.
    """

    path: str
    size: int
    modified_time: int
    remote_id: str | None = None
    remote_revision_tag: str | None = None
    content_hash: str | None = None
    last_sync_time: int = 0
    is_directory: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "size": self.size,
            "modified_time": self.modified_time,
            "remote_id": self.remote_id,
            "remote_revision_tag": self.remote_revision_tag,
            "content_hash": self.content_hash,
            "last_sync_time": self.last_sync_time,
            "is_directory": self.is_directory,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IndexEntry:
        """Create from a persisted dictionary."""
        return cls(
            path=data["path"],
            size=int(data["size"]),
            modified_time=int(data["modified_time"]),
            remote_id=data.get("remote_id"),
            remote_revision_tag=data.get("remote_revision_tag"),
            content_hash=data.get("content_hash"),
            last_sync_time=int(data.get("last_sync_time", 0)),
            is_directory=bool(data.get("is_directory", False)),
        )


@dataclass
class FileSnapshot:
    """Observed state of a path on one side during a single pass.

    Local snapshots only carry path, size, mtime and the directory flag.
    Remote snapshots also carry the remote id, revision tag and placement.
    """

    path: str
    size: int
    modified_time: int
    is_directory: bool = False
    remote_id: str | None = None
    revision_tag: str | None = None
    name: str | None = None
    parent_id: str | None = None
    mime_type: str | None = None


@dataclass
class LocalChanges:
    """Local paths that differ from the index baseline."""

    changed: list[str] = field(default_factory=list)
    new: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)


@dataclass
class DiffResult:
    """Classified differences between local, index and remote.

    The seven categories are disjoint. ``remote_files`` maps every remote
    path seen in this pass to its snapshot, for lookups by later phases.
    """

    new_local: list[FileSnapshot] = field(default_factory=list)
    new_remote: list[FileSnapshot] = field(default_factory=list)
    changed_local: list[str] = field(default_factory=list)
    changed_remote: list[str] = field(default_factory=list)
    deleted_local: list[str] = field(default_factory=list)
    deleted_remote: list[str] = field(default_factory=list)
    conflicts: list[str] = field(default_factory=list)
    remote_files: dict[str, FileSnapshot] = field(default_factory=dict)

    @property
    def total(self) -> int:
        """Number of classified items across all categories."""
        return (
            len(self.new_local)
            + len(self.new_remote)
            + len(self.changed_local)
            + len(self.changed_remote)
            + len(self.deleted_local)
            + len(self.deleted_remote)
            + len(self.conflicts)
        )

    @property
    def is_empty(self) -> bool:
        return self.total == 0

    def categories_of(self, path: str) -> list[str]:
        """Names of every category a path appears in (used by tests and logs)."""
        found = []
        if any(s.path == path for s in self.new_local):
            found.append("new_local")
        if any(s.path == path for s in self.new_remote):
            found.append("new_remote")
        for name in (
            "changed_local",
            "changed_remote",
            "deleted_local",
            "deleted_remote",
            "conflicts",
        ):
            if path in getattr(self, name):
                found.append(name)
        return found


@dataclass
class SyncStats:
    """Counters for a single sync pass."""

    uploaded: int = 0
    downloaded: int = 0
    deleted: int = 0
    conflicts_resolved: int = 0
    errors: int = 0
    start_time: int = 0
    end_time: int | None = None

    @property
    def duration(self) -> int | None:
        """Pass duration in milliseconds, once finished."""
        if self.end_time is None:
            return None
        return self.end_time - self.start_time


@dataclass
class SyncOptions:
    """Options for one sync pass."""

    dry_run: bool = False
    force_full_sync: bool = False


@dataclass
class ConflictPreview:
    """What resolving a conflict would do, without doing it."""

    path: str
    winner: str  # "local", "remote" or "manual"
    backup_paths: list[str] = field(default_factory=list)


@dataclass
class SyncResult:
    """Overall result of a sync pass."""

    success: bool
    stats: SyncStats
    error: str | None = None
    conflicts: list[str] = field(default_factory=list)
    error_messages: list[str] = field(default_factory=list)
    diff: DiffResult | None = None
    conflict_previews: list[ConflictPreview] = field(default_factory=list)


# on_progress(operation, current, total, item_name)
ProgressCallback = Callable[[str, int, int, str | None], None]
