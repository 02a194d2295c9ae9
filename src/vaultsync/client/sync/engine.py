"""Sync orchestrator: sequences one synchronization pass.

A pass runs these phases in strict order:

1. resolve the remote sync folder
2. acquire the remote view (change feed overlaid on the index baseline,
   or a full / timestamp-filtered listing)
3. scan the vault and compare against the index
4. resolve conflicts
5. upload new and changed local files (bounded thread pool)
6. download new and changed remote files (bounded thread pool)
7. apply deletions on both sides
8. commit the change cursor and last sync time, only if nothing failed

Only the calling thread mutates the index; transfer workers return their
outcomes and the orchestrator records them as futures complete.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Any, TypeVar

import httpx

from vaultsync.client.api import APIError, NotFoundError
from vaultsync.client.auth import AuthError
from vaultsync.client.state import load_json, save_json
from vaultsync.client.sync.changes import (
    ChangeCursor,
    ChangeTracker,
    TrackerState,
    overlay_changes,
    snapshot_from_remote,
)
from vaultsync.client.sync.comparator import compare
from vaultsync.client.sync.conflict import ConflictResolver
from vaultsync.client.sync.ignore import IgnorePatterns, should_sync_file
from vaultsync.client.sync.index import IndexStats, LocalIndex
from vaultsync.client.sync.transfers import NotModified, TransferEngine, mime_type_for
from vaultsync.client.sync.types import (
    ChangeTrackingUnavailable,
    Clock,
    ConflictResolutionError,
    DiffResult,
    FileSnapshot,
    IndexCorruptionError,
    ProgressCallback,
    SyncInProgressError,
    SyncOptions,
    SyncResult,
    SyncStats,
    now_ms,
)
from vaultsync.core.types import SyncState

if TYPE_CHECKING:
    from vaultsync.client.api import DriveClient, RemoteFile
    from vaultsync.client.state import StateStore
    from vaultsync.client.sync.transfers import UploadResult
    from vaultsync.client.vault import FileStat, LocalVault
    from vaultsync.core.config import SyncConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

PASS_STATE_KEY = "sync_state"
MAX_TRACKER_FAILURES = 3

# Failures that only affect one item of a phase
ITEM_ERRORS = (APIError, httpx.HTTPError, OSError, ValueError, IndexCorruptionError)


@dataclass
class PassState:
    """Orchestrator state persisted across passes."""

    last_sync_time: int | None = None
    consecutive_tracker_failures: int = 0
    change_tracking_disabled: bool = False
    root_folder_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "last_sync_time": self.last_sync_time,
            "consecutive_tracker_failures": self.consecutive_tracker_failures,
            "change_tracking_disabled": self.change_tracking_disabled,
            "root_folder_id": self.root_folder_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PassState:
        """Create from a persisted dictionary."""
        return cls(
            last_sync_time=data.get("last_sync_time"),
            consecutive_tracker_failures=int(data.get("consecutive_tracker_failures", 0)),
            change_tracking_disabled=bool(data.get("change_tracking_disabled", False)),
            root_folder_id=data.get("root_folder_id"),
        )


@dataclass
class RemoteView:
    """Remote state used for one pass."""

    files: list[FileSnapshot]
    folders: dict[str, str]
    mode: str  # "incremental", "full", "filtered" or "empty"
    cursor: ChangeCursor | None = None


@dataclass
class SyncStatus:
    """Snapshot of the orchestrator for status displays."""

    state: SyncState
    last_sync_time: int | None
    change_tracking_disabled: bool
    consecutive_tracker_failures: int
    tracker_state: TrackerState
    index: IndexStats
    unresolved_conflicts: list[str] = field(default_factory=list)


class SyncOrchestrator:
    """Runs sync passes between one vault and one remote folder."""

    def __init__(
        self,
        client: DriveClient,
        vault: LocalVault,
        store: StateStore,
        config: SyncConfig,
        clock: Clock = now_ms,
        transfers: TransferEngine | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            client: Remote API client.
            vault: Local vault adapter.
            store: State store for index, cursor and pass state.
            config: Sync settings.
            clock: Epoch-ms clock.
            transfers: Transfer engine (defaults to one over client).
        """
        self._client = client
        self._vault = vault
        self._store = store
        self._config = config
        self._clock = clock

        self._index = LocalIndex(store, vault, clock=clock)
        self._tracker = ChangeTracker(client, store, clock=clock)
        self._transfers = transfers or TransferEngine(
            client,
            simple_upload_limit=config.simple_upload_limit,
            chunk_size=config.chunk_size,
        )
        self._resolver = ConflictResolver(
            vault, self._index, self._transfers, config.conflict_policy, clock=clock
        )
        self._ignore = IgnorePatterns(config.ignore_patterns)

        self._lock = threading.Lock()
        self._state = SyncState.IDLE
        self._pass_state = self._load_pass_state()

    @property
    def vault(self) -> LocalVault:
        return self._vault

    @property
    def index(self) -> LocalIndex:
        return self._index

    @property
    def tracker(self) -> ChangeTracker:
        return self._tracker

    @property
    def resolver(self) -> ConflictResolver:
        return self._resolver

    @property
    def state(self) -> SyncState:
        return self._state

    # === Pass state ===

    def _load_pass_state(self) -> PassState:
        data = load_json(self._store, PASS_STATE_KEY)
        if data is None:
            return PassState()
        try:
            return PassState.from_dict(data)
        except (TypeError, ValueError) as e:
            logger.warning(f"Discarding malformed sync state: {e}")
            return PassState()

    def _save_pass_state(self) -> None:
        save_json(self._store, PASS_STATE_KEY, self._pass_state.to_dict())

    # === Filters ===

    def _path_filter(self, path: str, is_directory: bool) -> bool:
        return should_sync_file(
            path,
            self._config.enable_extension_filtering,
            self._config.allowed_extensions,
            ignore=self._ignore,
            allow_folders=self._config.allow_folders,
            is_directory=is_directory,
        )

    def _extension_filter(self, path: str) -> bool:
        return should_sync_file(
            path,
            self._config.enable_extension_filtering,
            self._config.allowed_extensions,
            is_directory=False,
        )

    def _remote_snapshots(self, items: list[tuple[str, RemoteFile]]) -> list[FileSnapshot]:
        return [
            snapshot_from_remote(path, f)
            for path, f in items
            if should_sync_file(
                path,
                enable_extension_filtering=False,
                allowed_extensions=(),
                is_directory=f.is_folder,
                mime_type=f.mime_type,
            )
        ]

    # === Public API ===

    def perform_sync(
        self,
        options: SyncOptions | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> SyncResult:
        """Run one sync pass.

        Args:
            options: dry_run previews without mutating anything;
                force_full_sync lists the whole remote folder.
            on_progress: Called as on_progress(operation, current, total, item).

        Returns:
            The pass result. Pass-level failures (authentication, remote
            listing) return success=False with error set.

        Raises:
            SyncInProgressError: If another pass is running.
        """
        if not self._lock.acquire(blocking=False):
            raise SyncInProgressError("A sync pass is already running")
        try:
            self._state = SyncState.RUNNING
            result = self._run_pass(options or SyncOptions(), on_progress)
            self._state = SyncState.FAILED if result.error else SyncState.IDLE
            return result
        except Exception:
            self._state = SyncState.FAILED
            raise
        finally:
            self._lock.release()

    def reset_change_tracking(self) -> None:
        """Drop the cursor and re-enable change tracking after escalation."""
        with self._exclusive():
            self._tracker.clear()
            self._pass_state.consecutive_tracker_failures = 0
            self._pass_state.change_tracking_disabled = False
            self._save_pass_state()
            logger.info("Change tracking reset")

    def clear_conflict(self, path: str) -> bool:
        """Release a manually resolved conflict.

        The path is re-baselined against the current remote object so the
        local file is uploaded on the next pass.

        Returns:
            False if the path had no unresolved conflict.
        """
        with self._exclusive():
            if not self._index.clear_unresolved(path):
                return False
            entry = self._index.get_entry(path)
            if entry is None or entry.remote_id is None:
                return True
            try:
                remote = self._client.get_file_metadata(entry.remote_id)
            except NotFoundError:
                self._index.remove_entry(path)
                return True
            self._index.upsert_entry(
                path,
                remote.id,
                remote.revision_tag,
                size=entry.size,
                modified_time=0,
                remote_modified_time=remote.modified_time,
                is_directory=entry.is_directory,
            )
            logger.info(f"Cleared conflict on {path}; local version will be uploaded")
            return True

    def rebuild_index(self) -> int:
        """Re-baseline the index on the current vault contents.

        Returns:
            Number of entries kept.
        """
        with self._exclusive():
            scan = self._index.scan_local_tree(
                self._ignore, self._extension_filter, self._config.allow_folders
            )
            return self._index.rebuild(scan)

    def status(self) -> SyncStatus:
        return SyncStatus(
            state=self._state,
            last_sync_time=self._pass_state.last_sync_time,
            change_tracking_disabled=self._pass_state.change_tracking_disabled,
            consecutive_tracker_failures=self._pass_state.consecutive_tracker_failures,
            tracker_state=self._tracker.state,
            index=self._index.stats(),
            unresolved_conflicts=self._index.unresolved_paths(),
        )

    def _exclusive(self) -> _PassLock:
        return _PassLock(self._lock)

    # === Pass ===

    def _fail(self, result: SyncResult, message: str) -> SyncResult:
        logger.error(message)
        result.success = False
        result.error = message
        result.stats.end_time = self._clock()
        return result

    def _run_pass(self, options: SyncOptions, on_progress: ProgressCallback | None) -> SyncResult:
        stats = SyncStats(start_time=self._clock())
        result = SyncResult(success=False, stats=stats)

        def progress(operation: str, current: int, total: int, item: str | None = None) -> None:
            if on_progress is not None:
                on_progress(operation, current, total, item)

        logger.info("Sync pass started" + (" (dry run)" if options.dry_run else ""))

        # Phases 1-2
        try:
            folder_id = self._resolve_root_folder(options.dry_run)
            view = self._acquire_remote_view(folder_id, options)
        except AuthError as e:
            return self._fail(result, f"Authentication failed: {e}")
        except (APIError, httpx.HTTPError) as e:
            return self._fail(result, f"Cannot list remote folder: {e}")
        progress("list", 1, 1, None)

        # Phase 3
        scan = self._index.scan_local_tree(
            self._ignore, self._extension_filter, self._config.allow_folders
        )
        diff = compare(view.files, scan, self._index, self._path_filter)
        diff = self._exclude_unresolved(diff)
        result.diff = diff
        result.conflicts = self._index.unresolved_paths()
        logger.info(f"Remote view: {view.mode}, {diff.total} pending changes")

        if options.dry_run:
            result.conflict_previews = [
                self._resolver.preview(path, diff.remote_files[path])
                for path in diff.conflicts
            ]
            result.success = True
            stats.end_time = self._clock()
            return result

        if folder_id is None:
            return self._fail(result, "Remote folder unavailable")
        self._index.replace_folders(view.folders)

        if diff.is_empty:
            self._finish(view, stats)
            result.success = True
            logger.info("Everything up to date")
            return result

        try:
            self._resolve_conflicts(diff, folder_id, result, progress)
            self._upload_phase(diff, folder_id, result, progress)
            self._download_phase(diff, result, progress)
            self._deletion_phase(diff, result, progress)
        except AuthError as e:
            return self._fail(result, f"Authentication failed: {e}")

        if stats.errors == 0:
            self._finish(view, stats)
        else:
            stats.end_time = self._clock()
            logger.warning(f"{stats.errors} items failed; cursor not advanced")

        result.success = stats.errors == 0
        result.conflicts = sorted(set(result.conflicts) | set(self._index.unresolved_paths()))
        logger.info(
            f"Sync pass finished: {stats.uploaded} uploaded, {stats.downloaded} downloaded, "
            f"{stats.deleted} deleted, {stats.conflicts_resolved} conflicts resolved, "
            f"{stats.errors} errors"
        )
        return result

    def _finish(self, view: RemoteView, stats: SyncStats) -> None:
        if view.cursor is not None:
            self._tracker.commit(view.cursor)
        # Start of the pass, so edits made while it ran are listed next time
        self._pass_state.last_sync_time = stats.start_time
        self._save_pass_state()
        stats.end_time = self._clock()

    def _exclude_unresolved(self, diff: DiffResult) -> DiffResult:
        unresolved = set(self._index.unresolved_paths())
        if not unresolved:
            return diff
        return DiffResult(
            new_local=[s for s in diff.new_local if s.path not in unresolved],
            new_remote=[s for s in diff.new_remote if s.path not in unresolved],
            changed_local=[p for p in diff.changed_local if p not in unresolved],
            changed_remote=[p for p in diff.changed_remote if p not in unresolved],
            deleted_local=[p for p in diff.deleted_local if p not in unresolved],
            deleted_remote=[p for p in diff.deleted_remote if p not in unresolved],
            conflicts=[p for p in diff.conflicts if p not in unresolved],
            remote_files=diff.remote_files,
        )

    # === Phase 1: remote folder ===

    def _resolve_root_folder(self, dry_run: bool) -> str | None:
        if self._config.remote_folder_id:
            folder_id: str | None = self._config.remote_folder_id
        elif dry_run:
            found = self._client.find_folder(self._config.remote_folder_name)
            folder_id = found.id if found else None
        else:
            folder_id = self._client.create_or_find_folder(self._config.remote_folder_name).id

        previous = self._pass_state.root_folder_id
        if folder_id is None or dry_run or previous == folder_id:
            return folder_id

        if previous is not None:
            # Entries point at objects of the old folder; keeping them would
            # turn every file into a remote deletion
            logger.warning(f"Remote folder changed from {previous} to {folder_id}, resetting index")
            self._index.clear()
            self._pass_state = PassState(
                change_tracking_disabled=self._pass_state.change_tracking_disabled,
                consecutive_tracker_failures=self._pass_state.consecutive_tracker_failures,
            )
        self._pass_state.root_folder_id = folder_id
        self._save_pass_state()
        return folder_id

    # === Phase 2: remote view ===

    def _baseline(self) -> dict[str, FileSnapshot]:
        """Remote state as recorded in the index at the last sync."""
        return {
            entry.remote_id: FileSnapshot(
                path=entry.path,
                size=entry.size,
                modified_time=entry.last_sync_time,
                is_directory=entry.is_directory,
                remote_id=entry.remote_id,
                revision_tag=entry.remote_revision_tag,
                name=PurePosixPath(entry.path).name,
            )
            for entry in self._index.entries()
            if entry.remote_id is not None
        }

    def _full_listing(self, folder_id: str) -> RemoteView:
        items = self._client.list_tree(folder_id)
        folders = {folder_id: ""}
        folders.update({f.id: path for path, f in items if f.is_folder})
        logger.info(f"Full remote listing: {len(items)} items")
        return RemoteView(self._remote_snapshots(items), folders, "full")

    def _filtered_listing(self, folder_id: str, since: int) -> RemoteView:
        """Files modified since the last sync, over the index baseline.

        Remote deletions are not visible in this mode.
        """
        items = self._client.list_tree(folder_id, modified_since=since)
        folders = {folder_id: ""}
        folders.update({f.id: path for path, f in items if f.is_folder})
        files = self._baseline()
        for snap in self._remote_snapshots(items):
            if snap.remote_id is not None:
                files[snap.remote_id] = snap
        logger.info(f"Timestamp-filtered remote listing: {len(items)} items")
        return RemoteView(list(files.values()), folders, "filtered")

    def _fallback_listing(self, folder_id: str) -> RemoteView:
        if self._pass_state.last_sync_time is not None and len(self._index) > 0:
            return self._filtered_listing(folder_id, self._pass_state.last_sync_time)
        return self._full_listing(folder_id)

    def _record_tracker_failure(self, error: Exception, dry_run: bool) -> None:
        if dry_run:
            logger.warning(f"Change tracking failed during dry run: {error}")
            return
        ps = self._pass_state
        ps.consecutive_tracker_failures += 1
        logger.warning(
            f"Change tracking failed ({ps.consecutive_tracker_failures} in a row): {error}"
        )
        if ps.consecutive_tracker_failures >= MAX_TRACKER_FAILURES and not ps.change_tracking_disabled:
            ps.change_tracking_disabled = True
            logger.warning(
                "Change tracking disabled; using timestamp-filtered listings until reset"
            )
        self._save_pass_state()

    def _record_tracker_success(self, dry_run: bool) -> None:
        if not dry_run and self._pass_state.consecutive_tracker_failures:
            self._pass_state.consecutive_tracker_failures = 0
            self._save_pass_state()

    def _acquire_remote_view(self, folder_id: str | None, options: SyncOptions) -> RemoteView:
        if folder_id is None:
            return RemoteView([], {}, "empty")

        tracking = not self._pass_state.change_tracking_disabled and self._tracker.available

        if options.force_full_sync:
            cursor = None
            if tracking:
                try:
                    cursor = self._tracker.bootstrap(folder_id, self._tracker.load_cursor())
                except (APIError, httpx.HTTPError) as e:
                    if isinstance(e, AuthError):
                        raise
                    self._record_tracker_failure(e, options.dry_run)
            view = self._full_listing(folder_id)
            view.cursor = self._tracker.mark_full_scan(cursor) if cursor else None
            return view

        if not tracking:
            return self._fallback_listing(folder_id)

        try:
            poll = self._tracker.poll_changes(folder_id)
        except (ChangeTrackingUnavailable, APIError, httpx.HTTPError) as e:
            if isinstance(e, AuthError):
                raise
            self._record_tracker_failure(e, options.dry_run)
            return self._fallback_listing(folder_id)
        self._record_tracker_success(options.dry_run)

        if poll.was_bootstrapped:
            if (
                self._pass_state.last_sync_time is not None
                and len(self._index) > 0
                and self._tracker.should_skip_full_listing(poll.cursor)
            ):
                logger.info("Skipping full listing after recent bootstraps")
                view = self._filtered_listing(folder_id, self._pass_state.last_sync_time)
                view.cursor = poll.cursor
                return view
            view = self._full_listing(folder_id)
            view.cursor = self._tracker.mark_full_scan(poll.cursor)
            return view

        if len(self._index) == 0:
            # No baseline to apply events to
            view = self._full_listing(folder_id)
            view.cursor = self._tracker.mark_full_scan(poll.cursor)
            return view

        folders = self._index.folders()
        folders[folder_id] = ""
        overlay = overlay_changes(poll.events, self._baseline(), folders)
        if overlay.needs_full_listing:
            view = self._full_listing(folder_id)
            view.cursor = self._tracker.mark_full_scan(poll.cursor)
            return view

        files = [
            snap for snap in overlay.files.values()
            if should_sync_file(
                snap.path,
                enable_extension_filtering=False,
                allowed_extensions=(),
                is_directory=snap.is_directory,
                mime_type=snap.mime_type,
            )
        ]
        logger.info(f"Incremental remote view from {len(poll.events)} change events")
        return RemoteView(files, overlay.folders, "incremental", poll.cursor)

    # === Remote folders ===

    def _ensure_remote_folder(self, dir_path: str, root_id: str) -> str:
        """Id of the remote folder mirroring dir_path, created if needed."""
        if dir_path in ("", "."):
            return root_id
        known = self._index.get_folder_id(dir_path)
        if known is not None:
            return known
        p = PurePosixPath(dir_path)
        parent_id = self._ensure_remote_folder(str(p.parent), root_id)
        folder = self._client.create_or_find_folder(p.name, parent_id)
        self._index.set_folder(folder.id, dir_path)
        return folder.id

    def _remote_parent(self, path: str, root_id: str) -> str:
        return self._ensure_remote_folder(str(PurePosixPath(path).parent), root_id)

    # === Phase 4: conflicts ===

    def _resolve_conflicts(
        self,
        diff: DiffResult,
        root_id: str,
        result: SyncResult,
        progress: ProgressCallback,
    ) -> None:
        stats = result.stats
        total = len(diff.conflicts)
        for i, path in enumerate(diff.conflicts, start=1):
            progress("conflict", i, total, path)
            try:
                parent_id = self._remote_parent(path, root_id)
                outcome = self._resolver.resolve(path, diff.remote_files[path], parent_id)
            except AuthError:
                raise
            except (ConflictResolutionError, *ITEM_ERRORS) as e:
                stats.errors += 1
                result.conflicts.append(path)
                result.error_messages.append(str(e))
                logger.error(f"Conflict on {path} left unresolved: {e}")
                continue
            if outcome.unresolved:
                result.conflicts.append(path)
            else:
                stats.conflicts_resolved += 1

    # === Phase 5: uploads ===

    def _upload_one(
        self, path: str, parent_id: str, existing_remote_id: str | None
    ) -> tuple[FileStat, UploadResult]:
        # Stat before reading: edits during the upload show up as changes next pass
        st = self._vault.stat(path)
        content = self._vault.read_binary(path)
        upload = self._transfers.upload(
            PurePosixPath(path).name,
            content,
            mime_type_for(path),
            parent_id,
            existing_remote_id=existing_remote_id,
        )
        return st, upload

    def _run_batch(
        self,
        jobs: dict[str, Callable[[], T]],
        operation: str,
        on_done: Callable[[str, T], None],
        result: SyncResult,
        progress: ProgressCallback,
    ) -> None:
        """Run jobs on the bounded pool and record outcomes on this thread."""
        if not jobs:
            return
        auth_error: AuthError | None = None
        total = len(jobs)
        done = 0
        with ThreadPoolExecutor(max_workers=self._config.max_concurrent_transfers) as pool:
            futures: dict[Future[T], str] = {pool.submit(job): path for path, job in jobs.items()}
            for future in as_completed(futures):
                path = futures[future]
                done += 1
                try:
                    value = future.result()
                    on_done(path, value)
                except AuthError as e:
                    auth_error = e
                except ITEM_ERRORS as e:
                    result.stats.errors += 1
                    result.error_messages.append(f"{operation} {path}: {e}")
                    logger.error(f"Failed to {operation} {path}: {e}")
                progress(operation, done, total, path)
        if auth_error is not None:
            raise auth_error

    def _upload_phase(
        self,
        diff: DiffResult,
        root_id: str,
        result: SyncResult,
        progress: ProgressCallback,
    ) -> None:
        stats = result.stats
        jobs: dict[str, Callable[[], tuple[FileStat, UploadResult]]] = {}

        # Folders first, sequentially, so file jobs know their parents
        for snap in diff.new_local:
            if not snap.is_directory:
                continue
            try:
                folder_id = self._ensure_remote_folder(snap.path, root_id)
                self._index.upsert_entry(
                    snap.path, folder_id, None,
                    size=0, modified_time=snap.modified_time, is_directory=True,
                )
            except AuthError:
                raise
            except ITEM_ERRORS as e:
                stats.errors += 1
                result.error_messages.append(f"upload {snap.path}: {e}")
                logger.error(f"Failed to create remote folder {snap.path}: {e}")

        paths = [s.path for s in diff.new_local if not s.is_directory] + diff.changed_local
        for path in paths:
            entry = self._index.get_entry(path)
            remote = diff.remote_files.get(path)
            # Update in place only when the indexed object still backs this path
            existing = (
                entry.remote_id
                if entry is not None and remote is not None and remote.remote_id == entry.remote_id
                else None
            )
            try:
                parent_id = self._remote_parent(path, root_id)
            except AuthError:
                raise
            except ITEM_ERRORS as e:
                stats.errors += 1
                result.error_messages.append(f"upload {path}: {e}")
                logger.error(f"Failed to prepare upload of {path}: {e}")
                continue
            jobs[path] = lambda p=path, pid=parent_id, rid=existing: self._upload_one(p, pid, rid)

        def record(path: str, outcome: tuple[FileStat, UploadResult]) -> None:
            st, upload = outcome
            previous = self._index.get_path_for_remote_id(upload.remote_id)
            if previous is not None and previous != path:
                self._index.remove_entry(previous)
            self._index.upsert_entry(
                path,
                upload.remote_id,
                upload.revision_tag,
                size=st.size,
                modified_time=st.mtime,
                remote_modified_time=upload.remote_file.modified_time,
                is_directory=False,
            )
            stats.uploaded += 1
            logger.info(f"Uploaded {path}")

        self._run_batch(jobs, "upload", record, result, progress)

    # === Phase 6: downloads ===

    def _download_one(self, snap: FileSnapshot, known_tag: str | None) -> bool:
        if snap.remote_id is None:
            raise NotFoundError(f"No remote id for {snap.path}", 404)
        tag = known_tag if self._vault.exists(snap.path) else None
        content = self._transfers.download(snap.remote_id, if_revision_differs=tag)
        if isinstance(content, NotModified):
            return False
        self._vault.write_binary(snap.path, content)
        return True

    def _download_phase(
        self,
        diff: DiffResult,
        result: SyncResult,
        progress: ProgressCallback,
    ) -> None:
        stats = result.stats
        snaps = list(diff.new_remote) + [diff.remote_files[p] for p in diff.changed_remote]

        for snap in snaps:
            if not snap.is_directory or snap.remote_id is None:
                continue
            try:
                self._vault.create_folder(snap.path)
                self._index.set_folder(snap.remote_id, snap.path)
                self._index.upsert_entry(snap.path, snap.remote_id, None, is_directory=True)
            except ITEM_ERRORS as e:
                stats.errors += 1
                result.error_messages.append(f"download {snap.path}: {e}")
                logger.error(f"Failed to create local folder {snap.path}: {e}")

        jobs: dict[str, Callable[[], bool]] = {}
        by_path: dict[str, FileSnapshot] = {}
        for snap in snaps:
            if snap.is_directory:
                continue
            entry = self._index.get_entry(snap.path)
            known_tag = entry.remote_revision_tag if entry is not None else None
            by_path[snap.path] = snap
            jobs[snap.path] = lambda s=snap, t=known_tag: self._download_one(s, t)

        def record(path: str, written: bool) -> None:
            snap = by_path[path]
            previous = self._index.get_path_for_remote_id(snap.remote_id or "")
            if previous is not None and previous != path:
                # Moved remotely; the old path is removed in the deletion phase
                self._index.remove_entry(previous)
            self._index.upsert_entry(
                path,
                snap.remote_id,
                snap.revision_tag,
                remote_modified_time=snap.modified_time,
                is_directory=False,
            )
            if written:
                stats.downloaded += 1
                logger.info(f"Downloaded {path}")

        self._run_batch(jobs, "download", record, result, progress)

    # === Phase 7: deletions ===

    def _deletion_phase(
        self,
        diff: DiffResult,
        result: SyncResult,
        progress: ProgressCallback,
    ) -> None:
        stats = result.stats
        total = len(diff.deleted_remote) + len(diff.deleted_local)
        done = 0
        dirs_remote: list[str] = []
        dirs_local: list[str] = []

        # Deleted remotely: remove the local file
        for path in diff.deleted_remote:
            done += 1
            entry = self._index.get_entry(path)
            if entry is not None and entry.is_directory:
                dirs_remote.append(path)
                continue
            try:
                if self._vault.exists(path):
                    self._vault.delete(path)
                    stats.deleted += 1
                    logger.info(f"Deleted local {path} (removed remotely)")
                self._index.remove_entry(path)
            except OSError as e:
                stats.errors += 1
                result.error_messages.append(f"delete {path}: {e}")
                logger.error(f"Failed to delete local {path}: {e}")
            progress("delete", done, total, path)

        # Deleted locally: remove the remote object
        for path in diff.deleted_local:
            done += 1
            entry = self._index.get_entry(path)
            if entry is None:
                continue
            if entry.is_directory:
                dirs_local.append(path)
                continue
            try:
                if entry.remote_id is not None:
                    try:
                        self._client.delete_file(entry.remote_id)
                    except NotFoundError:
                        logger.debug(f"Remote object for {path} already gone")
                    stats.deleted += 1
                    logger.info(f"Deleted remote {path} (removed locally)")
                self._index.remove_entry(path)
            except AuthError:
                raise
            except ITEM_ERRORS as e:
                stats.errors += 1
                result.error_messages.append(f"delete {path}: {e}")
                logger.error(f"Failed to delete remote {path}: {e}")
            progress("delete", done, total, path)

        # Directories last, deepest first, and only when empty on the other side
        for path in sorted(dirs_remote, key=lambda p: p.count("/"), reverse=True):
            try:
                self._vault.delete(path)
                stats.deleted += 1
            except FileNotFoundError:
                pass
            except OSError:
                logger.info(f"Keeping local folder {path}: not empty")
            self._index.remove_entry(path)
            progress("delete", done, total, path)

        for path in sorted(dirs_local, key=lambda p: p.count("/"), reverse=True):
            entry = self._index.get_entry(path)
            try:
                if entry is not None and entry.remote_id is not None:
                    if self._client.list_children(entry.remote_id):
                        logger.info(f"Keeping remote folder {path}: not empty")
                    else:
                        self._client.delete_file(entry.remote_id)
                        self._index.remove_folder(entry.remote_id)
                        stats.deleted += 1
                self._index.remove_entry(path)
            except NotFoundError:
                self._index.remove_entry(path)
            except AuthError:
                raise
            except ITEM_ERRORS as e:
                stats.errors += 1
                result.error_messages.append(f"delete {path}: {e}")
                logger.error(f"Failed to delete remote folder {path}: {e}")
            progress("delete", done, total, path)


class _PassLock:
    """Non-blocking exclusive section shared with sync passes."""

    def __init__(self, lock: threading.Lock) -> None:
        self._lock = lock

    def __enter__(self) -> None:
        if not self._lock.acquire(blocking=False):
            raise SyncInProgressError("A sync pass is already running")

    def __exit__(self, *args: object) -> None:
        self._lock.release()
