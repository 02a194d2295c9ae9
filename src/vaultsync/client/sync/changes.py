"""Remote change tracking through the change-feed cursor.

This module provides:
- ChangeCursor: persisted position in the remote change feed
- ChangeTracker: bootstrap / poll / commit of the cursor
- overlay_changes: applies change events on top of the index baseline
- snapshot_from_remote: RemoteFile -> FileSnapshot

Architecture:
    A cursor is only valid for the folder it was bootstrapped for and for
    STALE_CURSOR_MS after its last refresh. Polling never persists anything;
    the orchestrator commits the returned cursor once the whole pass has
    succeeded, so a failed pass replays the same events next time.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Any

from vaultsync.client.api import FileChanged, FileRemoved, InvalidPageTokenError, is_valid_name
from vaultsync.client.state import load_json, save_json
from vaultsync.client.sync.types import (
    ChangeTrackingUnavailable,
    Clock,
    FileSnapshot,
    now_ms,
)

if TYPE_CHECKING:
    from vaultsync.client.api import DriveClient, RemoteChange, RemoteFile
    from vaultsync.client.state import StateStore

logger = logging.getLogger(__name__)

CURSOR_KEY = "change_cursor"

STALE_CURSOR_MS = 7 * 24 * 60 * 60 * 1000
MAX_PAGES_PER_POLL = 100

# Anti-thrash: prefer stale data over repeated full listings
BOOTSTRAP_WINDOW_MS = 15 * 60 * 1000
BOOTSTRAPS_BEFORE_SKIP = 2
FULL_SCAN_COOLDOWN_MS = 60 * 60 * 1000


class TrackerState(str, Enum):
    UNINITIALIZED = "uninitialized"
    BOOTSTRAPPED = "bootstrapped"
    ACTIVE = "active"


@dataclass
class ChangeCursor:
    """Position in the remote change feed, scoped to one folder."""

    token: str
    timestamp: int
    scope_folder_id: str
    bootstrap_count: int = 0
    bootstrap_history: list[int] = field(default_factory=list)
    last_full_scan_time: int | None = None
    poll_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "token": self.token,
            "timestamp": self.timestamp,
            "scope_folder_id": self.scope_folder_id,
            "bootstrap_count": self.bootstrap_count,
            "bootstrap_history": list(self.bootstrap_history),
            "last_full_scan_time": self.last_full_scan_time,
            "poll_count": self.poll_count,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChangeCursor:
        """Create from a persisted dictionary."""
        return cls(
            token=str(data["token"]),
            timestamp=int(data["timestamp"]),
            scope_folder_id=str(data["scope_folder_id"]),
            bootstrap_count=int(data.get("bootstrap_count", 0)),
            bootstrap_history=[int(t) for t in data.get("bootstrap_history", [])],
            last_full_scan_time=data.get("last_full_scan_time"),
            poll_count=int(data.get("poll_count", 0)),
        )


@dataclass
class PollResult:
    """Events gathered by one poll and the cursor to commit afterwards.

    When was_bootstrapped is True the events list is empty and the caller
    must list the remote folder to catch changes made before the new cursor.
    """

    events: list[RemoteChange]
    cursor: ChangeCursor
    was_bootstrapped: bool


class ChangeTracker:
    """Turns the cursor-based change feed into remote file events."""

    def __init__(
        self,
        client: DriveClient,
        store: StateStore,
        clock: Clock = now_ms,
        max_pages: int = MAX_PAGES_PER_POLL,
    ) -> None:
        self._client = client
        self._store = store
        self._clock = clock
        self._max_pages = max_pages
        self._state = TrackerState.UNINITIALIZED
        self._unavailable = False

    @property
    def state(self) -> TrackerState:
        return self._state

    @property
    def available(self) -> bool:
        """False once the feed proved broken for this session."""
        return not self._unavailable

    # === Cursor persistence ===

    def load_cursor(self) -> ChangeCursor | None:
        data = load_json(self._store, CURSOR_KEY)
        if data is None:
            return None
        try:
            return ChangeCursor.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Discarding malformed change cursor: {e}")
            return None

    def commit(self, cursor: ChangeCursor) -> None:
        """Persist a cursor returned by poll_changes or bootstrap."""
        save_json(self._store, CURSOR_KEY, cursor.to_dict())
        logger.debug(f"Committed change cursor {cursor.token}")

    def clear(self) -> None:
        """Forget the cursor and re-enable polling."""
        self._store.delete(CURSOR_KEY)
        self._state = TrackerState.UNINITIALIZED
        self._unavailable = False

    # === Bootstrap ===

    def is_stale(self, cursor: ChangeCursor, folder_id: str) -> bool:
        if cursor.scope_folder_id != folder_id:
            return True
        return self._clock() - cursor.timestamp > STALE_CURSOR_MS

    def bootstrap(
        self, folder_id: str, previous: ChangeCursor | None = None
    ) -> ChangeCursor:
        """Start tracking from "now" with a fresh start token."""
        return self._bootstrap_with(self._client.get_start_page_token(), folder_id, previous)

    def _bootstrap_with(
        self, token: str, folder_id: str, previous: ChangeCursor | None
    ) -> ChangeCursor:
        now = self._clock()
        # Anti-thrash bookkeeping only carries over within the same folder
        same_scope = previous is not None and previous.scope_folder_id == folder_id
        history = previous.bootstrap_history if same_scope and previous else []
        cursor = ChangeCursor(
            token=token,
            timestamp=now,
            scope_folder_id=folder_id,
            bootstrap_count=(previous.bootstrap_count if same_scope and previous else 0) + 1,
            bootstrap_history=[t for t in history if now - t < BOOTSTRAP_WINDOW_MS] + [now],
            last_full_scan_time=previous.last_full_scan_time if same_scope and previous else None,
            poll_count=0,
        )
        self._state = TrackerState.BOOTSTRAPPED
        logger.info(f"Bootstrapped change tracking for folder {folder_id}")
        return cursor

    def should_skip_full_listing(self, cursor: ChangeCursor) -> bool:
        """Whether the expensive full listing should be skipped this pass.

        True after repeated bootstraps in a short window, or when a full
        listing already ran recently.
        """
        now = self._clock()
        recent = [t for t in cursor.bootstrap_history if now - t < BOOTSTRAP_WINDOW_MS]
        if len(recent) >= BOOTSTRAPS_BEFORE_SKIP:
            return True
        return (
            cursor.last_full_scan_time is not None
            and now - cursor.last_full_scan_time < FULL_SCAN_COOLDOWN_MS
        )

    def mark_full_scan(self, cursor: ChangeCursor) -> ChangeCursor:
        return replace(cursor, last_full_scan_time=self._clock())

    # === Polling ===

    def poll_changes(
        self, folder_id: str, cursor: ChangeCursor | None = None
    ) -> PollResult:
        """Collect remote events since the cursor.

        Args:
            folder_id: Folder the caller is syncing.
            cursor: Cursor to poll from; defaults to the persisted one.

        Raises:
            ChangeTrackingUnavailable: If the feed is broken for this session.
        """
        if self._unavailable:
            raise ChangeTrackingUnavailable("change tracking disabled for this session")

        if cursor is None:
            cursor = self.load_cursor()
        if cursor is None:
            logger.info("No change cursor, bootstrapping")
            return PollResult([], self.bootstrap(folder_id), True)
        if cursor.scope_folder_id != folder_id:
            logger.info(
                f"Change cursor belongs to folder {cursor.scope_folder_id}, "
                f"bootstrapping for {folder_id}"
            )
            return PollResult([], self.bootstrap(folder_id, cursor), True)
        if self.is_stale(cursor, folder_id):
            logger.info("Change cursor is stale, bootstrapping")
            return PollResult([], self.bootstrap(folder_id, cursor), True)

        events: list[RemoteChange] = []
        token = cursor.token
        pages = 0
        while True:
            try:
                page = self._client.list_changes(token)
            except InvalidPageTokenError:
                fresh = self._client.get_start_page_token()
                if fresh == token:
                    self._unavailable = True
                    raise ChangeTrackingUnavailable(
                        f"change feed rejected token {token} and re-issued it"
                    ) from None
                logger.warning(f"Change token {token} rejected, bootstrapping with {fresh}")
                return PollResult([], self._bootstrap_with(fresh, folder_id, cursor), True)

            pages += 1
            events.extend(page.changes)

            if not page.next_page_token:
                new_token = page.new_start_page_token or token
                break
            if pages >= self._max_pages:
                logger.warning(f"Change feed exceeded {self._max_pages} pages, bootstrapping")
                return PollResult([], self.bootstrap(folder_id, cursor), True)
            token = page.next_page_token

        self._state = TrackerState.ACTIVE
        new_cursor = replace(
            cursor,
            token=new_token,
            timestamp=self._clock(),
            poll_count=cursor.poll_count + 1,
        )
        logger.debug(f"Polled {len(events)} remote changes over {pages} pages")
        return PollResult(events, new_cursor, False)


# === Event normalization ===


def snapshot_from_remote(path: str, file: RemoteFile) -> FileSnapshot:
    return FileSnapshot(
        path=path,
        size=0 if file.is_folder else file.size,
        modified_time=file.modified_time,
        is_directory=file.is_folder,
        remote_id=file.id,
        revision_tag=None if file.is_folder else file.revision_tag,
        name=file.name,
        parent_id=file.parents[0] if file.parents else None,
        mime_type=file.mime_type,
    )


def latest_per_file(events: Iterable[RemoteChange]) -> list[RemoteChange]:
    """Keep only the newest event per file id, in feed order."""
    latest: dict[str, RemoteChange] = {}
    for event in events:
        latest.pop(event.file_id, None)
        latest[event.file_id] = event
    return list(latest.values())


@dataclass
class Overlay:
    """Remote view after applying events to the baseline.

    needs_full_listing is set when a folder was renamed, moved or removed;
    paths below it cannot be derived from events alone.
    """

    files: dict[str, FileSnapshot]  # remote id -> snapshot
    folders: dict[str, str]  # remote folder id -> dir path
    needs_full_listing: bool = False


def _usable(event: RemoteChange) -> bool:
    if isinstance(event, FileChanged) and not is_valid_name(event.file.name):
        logger.warning(f"Skipping remote item {event.file_id} with unusable name {event.file.name!r}")
        return False
    return True


def _join(parent: str, name: str) -> str:
    return f"{parent}/{name}" if parent else name


def _parent_path(file: RemoteFile, folders: dict[str, str]) -> str | None:
    for parent in file.parents:
        if parent in folders:
            return folders[parent]
    return None


def overlay_changes(
    events: Iterable[RemoteChange],
    baseline: dict[str, FileSnapshot],
    folders: dict[str, str],
) -> Overlay:
    """Apply change events to a remote baseline.

    Args:
        events: Change-feed events (any order of pages, feed order inside).
        baseline: Remote snapshots keyed by remote id, as of the last sync.
        folders: Known folder map (sync root maps to "").

    Returns:
        The updated view. Events for files outside the sync folder are
        dropped; known files that moved out of it count as removed.
    """
    events = [e for e in latest_per_file(events) if _usable(e)]
    files = dict(baseline)
    known_folders = dict(folders)
    new_folders = dict(folders)

    # Resolve folder events first; nested new folders may arrive in any order
    pending = [
        e for e in events
        if isinstance(e, FileChanged)
        and e.file.is_folder
        and known_folders.get(e.file_id) != ""  # the sync root itself
    ]
    progress = True
    while pending and progress:
        progress = False
        for event in list(pending):
            parent = _parent_path(event.file, new_folders)
            if parent is None:
                continue
            path = _join(parent, event.file.name)
            if event.file_id in known_folders and known_folders[event.file_id] != path:
                logger.info(f"Remote folder {known_folders[event.file_id]} moved to {path}")
                return Overlay(files, known_folders, needs_full_listing=True)
            new_folders[event.file_id] = path
            pending.remove(event)
            progress = True

    for event in pending:
        if event.file_id in known_folders:
            logger.info(f"Remote folder {known_folders[event.file_id]} left the sync folder")
            return Overlay(files, known_folders, needs_full_listing=True)

    for event in events:
        if isinstance(event, FileRemoved) and event.file_id in known_folders:
            logger.info(f"Remote folder {known_folders[event.file_id]} was removed")
            return Overlay(files, known_folders, needs_full_listing=True)

    for event in events:
        if isinstance(event, FileRemoved):
            files.pop(event.file_id, None)
            continue
        if event.file.is_folder:
            if event.file_id in new_folders and new_folders[event.file_id] != "":
                files[event.file_id] = snapshot_from_remote(new_folders[event.file_id], event.file)
            continue
        parent = _parent_path(event.file, new_folders)
        if parent is None:
            files.pop(event.file_id, None)
            continue
        files[event.file_id] = snapshot_from_remote(_join(parent, event.file.name), event.file)

    return Overlay(files, new_folders)
