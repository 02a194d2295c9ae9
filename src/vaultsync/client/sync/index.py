"""Local file index: the reconciliation ledger between vault and remote.

This module provides:
- LocalIndex: persisted map of vault path -> last synced state, plus the
  reverse remote-id map, the remote folder map and unresolved conflicts
- IndexStats: summary used by the CLI status command

Architecture:
    The whole index is one JSON document in the state store. Every mutating
    call rewrites it immediately; there is no batching. A document that
    cannot be parsed, or in which two paths claim the same remote id, is
    logged and replaced by an empty index, which makes the next pass a full
    re-sync instead of a crash.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from vaultsync.client.sync.types import (
    Clock,
    FileSnapshot,
    IndexCorruptionError,
    IndexEntry,
    LocalChanges,
    now_ms,
)

if TYPE_CHECKING:
    from vaultsync.client.state import StateStore
    from vaultsync.client.vault import LocalVault

logger = logging.getLogger(__name__)

INDEX_VERSION = 1
DEFAULT_INDEX_KEY = "file_index"


@dataclass
class IndexStats:
    """Summary of the index contents."""

    total_entries: int
    synced_files: int
    directories: int
    unresolved_conflicts: int
    last_updated: int | None
    version: int


class LocalIndex:
    """Persistent map from vault path to last-known synced metadata.

    Only the orchestrator thread mutates the index.
    """

    def __init__(
        self,
        store: StateStore,
        vault: LocalVault,
        key: str = DEFAULT_INDEX_KEY,
        clock: Clock = now_ms,
    ) -> None:
        self._store = store
        self._vault = vault
        self._key = key
        self._clock = clock

        self._entries: dict[str, IndexEntry] = {}
        self._by_remote_id: dict[str, str] = {}
        self._folders: dict[str, str] = {}  # remote folder id -> dir path
        self._unresolved: set[str] = set()
        self._last_updated: int | None = None

        self._load()

    # === Persistence ===

    def _load(self) -> None:
        blob = self._store.load(self._key)
        if blob is None:
            return
        try:
            self._parse(blob)
        except (IndexCorruptionError, KeyError, TypeError, ValueError) as e:
            logger.error(f"Local index is corrupt, starting from an empty index: {e}")
            self._reset()

    def _parse(self, blob: str) -> None:
        data = json.loads(blob)
        if not isinstance(data, dict):
            raise IndexCorruptionError("index document is not an object")
        version = data.get("version", INDEX_VERSION)
        if version != INDEX_VERSION:
            raise IndexCorruptionError(f"unsupported index version {version}")

        self._entries = {
            path: IndexEntry.from_dict(raw)
            for path, raw in data.get("files", {}).items()
        }
        self._folders = {str(k): str(v) for k, v in data.get("folders", {}).items()}
        self._unresolved = set(data.get("unresolved", []))
        self._last_updated = data.get("last_updated")
        self._rebuild_reverse_map()

    def _reset(self) -> None:
        self._entries = {}
        self._by_remote_id = {}
        self._folders = {}
        self._unresolved = set()
        self._last_updated = None

    def _rebuild_reverse_map(self) -> None:
        reverse: dict[str, str] = {}
        for path, entry in self._entries.items():
            if entry.remote_id is None:
                continue
            owner = reverse.get(entry.remote_id)
            if owner is not None and owner != path:
                raise IndexCorruptionError(
                    f"remote id {entry.remote_id} claimed by {owner} and {path}"
                )
            reverse[entry.remote_id] = path
        self._by_remote_id = reverse

    def _persist(self) -> None:
        self._last_updated = self._clock()
        document: dict[str, Any] = {
            "version": INDEX_VERSION,
            "last_updated": self._last_updated,
            "files": {path: e.to_dict() for path, e in sorted(self._entries.items())},
            "folders": dict(sorted(self._folders.items())),
            "unresolved": sorted(self._unresolved),
        }
        self._store.save(self._key, json.dumps(document))

    # === Scanning ===

    def scan_local_tree(
        self,
        ignore_predicate: Callable[[str], bool] | None = None,
        extension_filter: Callable[[str], bool] | None = None,
        allow_folders: bool = False,
    ) -> dict[str, FileSnapshot]:
        """Enumerate the vault.

        Args:
            ignore_predicate: True for paths to exclude. Directories are
                passed with a trailing slash and pruned with their subtree.
            extension_filter: False for files to exclude (files only).
            allow_folders: Include directories as snapshots.

        Returns:
            Mapping of vault path to snapshot.
        """
        prune = None
        if ignore_predicate is not None:
            prune = lambda d: ignore_predicate(f"{d}/")  # noqa: E731

        snapshots: dict[str, FileSnapshot] = {}
        for path in self._vault.list_files(prune):
            if ignore_predicate is not None and ignore_predicate(path):
                continue
            if extension_filter is not None and not extension_filter(path):
                continue
            try:
                st = self._vault.stat(path)
            except FileNotFoundError:
                # Deleted between listing and stat
                continue
            snapshots[path] = FileSnapshot(path=path, size=st.size, modified_time=st.mtime)

        if allow_folders:
            for path in self._vault.list_folders(prune):
                try:
                    st = self._vault.stat(path)
                except FileNotFoundError:
                    continue
                snapshots[path] = FileSnapshot(
                    path=path, size=0, modified_time=st.mtime, is_directory=True
                )

        logger.debug(f"Scanned {len(snapshots)} local items")
        return snapshots

    def detect_local_changes(self, scan: dict[str, FileSnapshot]) -> LocalChanges:
        """Compare a scan with the stored entries.

        A file is changed when its mtime is newer than the stored one or its
        size differs. Content edits that keep both are not detected.
        """
        changes = LocalChanges()
        for path, snap in scan.items():
            entry = self._entries.get(path)
            if entry is None:
                changes.new.append(path)
            elif snap.is_directory or entry.is_directory:
                continue
            elif snap.modified_time > entry.modified_time or snap.size != entry.size:
                changes.changed.append(path)
        changes.deleted = [path for path in self._entries if path not in scan]
        return changes

    # === Entries ===

    def get_entry(self, path: str) -> IndexEntry | None:
        return self._entries.get(path)

    def get_path_for_remote_id(self, remote_id: str) -> str | None:
        return self._by_remote_id.get(remote_id)

    def entries(self) -> list[IndexEntry]:
        return list(self._entries.values())

    def __contains__(self, path: object) -> bool:
        return path in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def upsert_entry(
        self,
        path: str,
        remote_id: str | None = None,
        revision_tag: str | None = None,
        *,
        size: int | None = None,
        modified_time: int | None = None,
        content_hash: str | None = None,
        remote_modified_time: int | None = None,
        is_directory: bool | None = None,
    ) -> IndexEntry:
        """Record a path as synced.

        Size and mtime default to the current local state of the path.
        The remote id and revision tag default to the stored ones.

        Raises:
            IndexCorruptionError: If remote_id is held by another path.
        """
        existing = self._entries.get(path)

        if size is None or modified_time is None or is_directory is None:
            st = self._vault.stat(path)
            size = st.size if size is None else size
            modified_time = st.mtime if modified_time is None else modified_time
            is_directory = st.is_directory if is_directory is None else is_directory

        if remote_id is None and existing is not None:
            remote_id = existing.remote_id
        if revision_tag is None and existing is not None:
            revision_tag = existing.remote_revision_tag
        if content_hash is None and existing is not None and existing.size == size:
            content_hash = existing.content_hash

        if remote_id is not None:
            owner = self._by_remote_id.get(remote_id)
            if owner is not None and owner != path:
                raise IndexCorruptionError(
                    f"remote id {remote_id} already belongs to {owner}, not {path}"
                )

        # Never earlier than the remote timestamp, so server clock skew does
        # not make a freshly synced file look remotely modified
        last_sync_time = max(self._clock(), remote_modified_time or 0)

        entry = IndexEntry(
            path=path,
            size=size,
            modified_time=modified_time,
            remote_id=remote_id,
            remote_revision_tag=revision_tag,
            content_hash=content_hash,
            last_sync_time=last_sync_time,
            is_directory=is_directory,
        )

        if existing is not None and existing.remote_id and existing.remote_id != remote_id:
            self._by_remote_id.pop(existing.remote_id, None)
        self._entries[path] = entry
        if remote_id is not None:
            self._by_remote_id[remote_id] = path
        self._persist()
        return entry

    def remove_entry(self, path: str) -> None:
        entry = self._entries.pop(path, None)
        if entry is None:
            return
        if entry.remote_id is not None:
            self._by_remote_id.pop(entry.remote_id, None)
        self._persist()

    # === Remote folder map ===

    def set_folder(self, folder_id: str, path: str) -> None:
        """Record where a remote folder lives in the vault ("" is the root)."""
        if self._folders.get(folder_id) == path:
            return
        self._folders[folder_id] = path
        self._persist()

    def replace_folders(self, folders: dict[str, str]) -> None:
        """Replace the whole folder map (after a full listing)."""
        if folders == self._folders:
            return
        self._folders = dict(folders)
        self._persist()

    def remove_folder(self, folder_id: str) -> None:
        if self._folders.pop(folder_id, None) is not None:
            self._persist()

    def get_folder_path(self, folder_id: str) -> str | None:
        return self._folders.get(folder_id)

    def get_folder_id(self, path: str) -> str | None:
        for folder_id, folder_path in self._folders.items():
            if folder_path == path:
                return folder_id
        return None

    def folders(self) -> dict[str, str]:
        return dict(self._folders)

    # === Unresolved conflicts ===

    def mark_unresolved(self, path: str) -> None:
        if path not in self._unresolved:
            self._unresolved.add(path)
            self._persist()

    def clear_unresolved(self, path: str) -> bool:
        """Forget a manual conflict. Returns False if it was not recorded."""
        if path not in self._unresolved:
            return False
        self._unresolved.discard(path)
        self._persist()
        return True

    def is_unresolved(self, path: str) -> bool:
        return path in self._unresolved

    def unresolved_paths(self) -> list[str]:
        return sorted(self._unresolved)

    # === Maintenance ===

    def clear(self) -> None:
        """Drop every entry; the next pass re-syncs from scratch."""
        self._reset()
        self._persist()
        logger.info("Cleared local index")

    def rebuild(self, scan: dict[str, FileSnapshot]) -> int:
        """Re-baseline the index on the current local state.

        Entries for paths still present keep their remote mapping and take
        the scanned size/mtime; entries for vanished paths are dropped.

        Returns:
            Number of entries kept.
        """
        rebuilt: dict[str, IndexEntry] = {}
        now = self._clock()
        for path, snap in scan.items():
            old = self._entries.get(path)
            rebuilt[path] = IndexEntry(
                path=path,
                size=snap.size,
                modified_time=snap.modified_time,
                remote_id=old.remote_id if old else None,
                remote_revision_tag=old.remote_revision_tag if old else None,
                content_hash=None,
                last_sync_time=old.last_sync_time if old else now,
                is_directory=snap.is_directory,
            )
        # Paths without a remote id would otherwise look synced but never upload
        self._entries = {p: e for p, e in rebuilt.items() if e.remote_id is not None}
        self._rebuild_reverse_map()
        self._persist()
        logger.info(f"Rebuilt local index with {len(self._entries)} entries")
        return len(self._entries)

    def stats(self) -> IndexStats:
        return IndexStats(
            total_entries=len(self._entries),
            synced_files=sum(
                1 for e in self._entries.values() if e.remote_id and not e.is_directory
            ),
            directories=sum(1 for e in self._entries.values() if e.is_directory),
            unresolved_conflicts=len(self._unresolved),
            last_updated=self._last_updated,
            version=INDEX_VERSION,
        )
