"""Three-way comparison of local scan, local index and remote listing.

The index is the baseline: a side "changed" when it differs from what was
recorded at the last successful sync of a path.

Classification:
1. scanned path not in the index                     -> new_local
2. indexed file with newer mtime or different size   -> changed_local
3. indexed path missing from the scan                -> deleted_local
4. remote file whose id is not in the index          -> new_remote
5. indexed remote id missing from the remote files   -> deleted_remote
6. remote file newer than last sync or retagged      -> changed_remote
7. changed on both sides (or new on both sides)      -> conflicts

Overlaps are settled so every path lands in exactly one category:
- conflicts always win over single-sided changes
- deleted locally but changed remotely: the remote change is downloaded again
- changed locally but deleted remotely: the local change is uploaded again
- deleted on both sides: only the index entry needs reconciling (deleted_remote)
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING

from vaultsync.client.sync.types import DiffResult, FileSnapshot, IndexEntry

if TYPE_CHECKING:
    from vaultsync.client.sync.index import LocalIndex

logger = logging.getLogger(__name__)

# path_filter(path, is_directory) -> keep?
PathFilter = Callable[[str, bool], bool]


def _remote_changed(entry: IndexEntry, remote: FileSnapshot) -> bool:
    if entry.is_directory or remote.is_directory:
        return False
    if remote.modified_time > entry.last_sync_time:
        return True
    return remote.revision_tag is not None and remote.revision_tag != entry.remote_revision_tag


def _local_changed(entry: IndexEntry, local: FileSnapshot) -> bool:
    if entry.is_directory or local.is_directory:
        return False
    return local.modified_time > entry.modified_time or local.size != entry.size


def compare(
    remote_files: Iterable[FileSnapshot],
    local_scan: dict[str, FileSnapshot],
    index: LocalIndex,
    path_filter: PathFilter | None = None,
) -> DiffResult:
    """Classify differences between remote, local and the index baseline.

    Args:
        remote_files: Remote snapshots (with remote_id) for this pass.
        local_scan: Local snapshots keyed by path.
        index: Baseline of the last successful sync.
        path_filter: Paths it rejects are skipped on every side, including
            index entries for paths that became ignored after syncing.

    Returns:
        Disjoint classification of all pending work.
    """

    def keep(path: str, is_directory: bool) -> bool:
        return path_filter is None or path_filter(path, is_directory)

    diff = DiffResult()

    remote_by_id: dict[str, FileSnapshot] = {}
    for snap in remote_files:
        if snap.remote_id is None or not keep(snap.path, snap.is_directory):
            continue
        taken = diff.remote_files.get(snap.path)
        if taken is not None and taken.remote_id is not None:
            logger.warning(
                f"Remote path {snap.path} is used by both {taken.remote_id} and {snap.remote_id}; "
                "only one of them is synced"
            )
            # Keep the object the index already tracks at this path
            if index.get_path_for_remote_id(snap.remote_id) != snap.path:
                continue
            remote_by_id.pop(taken.remote_id, None)
        remote_by_id[snap.remote_id] = snap
        diff.remote_files[snap.path] = snap

    local = {p: s for p, s in local_scan.items() if keep(p, s.is_directory)}
    entries = {e.path: e for e in index.entries() if keep(e.path, e.is_directory)}

    new_local: dict[str, FileSnapshot] = {}
    changed_local: set[str] = set()
    deleted_local: set[str] = set()
    new_remote: dict[str, FileSnapshot] = {}
    changed_remote: set[str] = set()
    deleted_remote: set[str] = set()

    # Steps 1-3: local side against the baseline
    for path, snap in local.items():
        entry = entries.get(path)
        if entry is None:
            new_local[path] = snap
        elif _local_changed(entry, snap):
            changed_local.add(path)
    deleted_local = {path for path in entries if path not in local}

    # Step 4: remote objects the index has never seen
    for remote_id, snap in remote_by_id.items():
        owner = index.get_path_for_remote_id(remote_id)
        if owner is None:
            new_remote[snap.path] = snap
        elif owner != snap.path and owner in entries:
            # Moved or renamed remotely: old path goes, new path arrives
            new_remote[snap.path] = snap
            deleted_remote.add(owner)

    # Steps 5-6: indexed remote objects
    for path, entry in entries.items():
        if entry.remote_id is None or path in deleted_remote:
            continue
        remote = remote_by_id.get(entry.remote_id)
        if remote is None:
            deleted_remote.add(path)
        elif _remote_changed(entry, remote):
            changed_remote.add(path)

    # Step 7: both sides touched the same path
    conflicts = changed_local & changed_remote
    conflicts |= set(new_local) & set(new_remote)
    # A directory created on both sides is simply shared
    for path in list(conflicts):
        if path in new_local and new_local[path].is_directory and new_remote[path].is_directory:
            conflicts.discard(path)
            del new_local[path]

    changed_local -= conflicts
    changed_remote -= conflicts
    for path in conflicts:
        new_local.pop(path, None)
        new_remote.pop(path, None)

    # Single-sided overlaps
    deleted_local -= changed_remote
    changed_local_wins = changed_local & deleted_remote
    deleted_remote -= changed_local_wins
    deleted_local -= deleted_remote

    diff.new_local = [new_local[p] for p in sorted(new_local)]
    diff.new_remote = [new_remote[p] for p in sorted(new_remote)]
    diff.changed_local = sorted(changed_local)
    diff.changed_remote = sorted(changed_remote)
    diff.deleted_local = sorted(deleted_local)
    diff.deleted_remote = sorted(deleted_remote)
    diff.conflicts = sorted(conflicts)

    logger.debug(
        f"Diff: {len(diff.new_local)} new local, {len(diff.new_remote)} new remote, "
        f"{len(diff.changed_local)} changed local, {len(diff.changed_remote)} changed remote, "
        f"{len(diff.deleted_local)} deleted local, {len(diff.deleted_remote)} deleted remote, "
        f"{len(diff.conflicts)} conflicts"
    )
    return diff
