"""Conflict resolution for paths changed on both sides.

Policies:
- last-writer-wins: the side with the newer modification time wins (ties
  go to the remote). The losing content is saved next to the original as
  ``<stem> (conflict <YYYY-MM-DDTHH-MM-SS>)<ext>`` and the winner is applied
  to both sides.
- manual: both versions are backed up, the original is left untouched and
  the path is marked unresolved until the user clears it.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import TYPE_CHECKING

from vaultsync.client.api import APIError
from vaultsync.client.auth import AuthError
from vaultsync.client.sync.transfers import NotModified, mime_type_for
from vaultsync.client.sync.types import (
    Clock,
    ConflictPreview,
    ConflictResolutionError,
    IndexCorruptionError,
    now_ms,
)
from vaultsync.core.types import ConflictPolicy

if TYPE_CHECKING:
    from vaultsync.client.sync.index import LocalIndex
    from vaultsync.client.sync.transfers import TransferEngine
    from vaultsync.client.sync.types import FileSnapshot
    from vaultsync.client.vault import LocalVault

logger = logging.getLogger(__name__)

BACKUP_PATTERN = re.compile(r"\(conflict \d{4}-\d{2}-\d{2}T\d{2}-\d{2}-\d{2}\)")
DEFAULT_BACKUP_MAX_AGE_MS = 30 * 24 * 60 * 60 * 1000


def generate_conflict_filename(path: str, timestamp: datetime) -> str:
    """Build the backup path for a conflicting file.

    Example: ``notes/todo.md`` -> ``notes/todo (conflict 2025-01-02T10-30-00).md``
    """
    p = PurePosixPath(path)
    stamp = timestamp.astimezone(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S")
    return str(p.with_name(f"{p.stem} (conflict {stamp}){p.suffix}"))


def is_conflict_backup(path: str) -> bool:
    return bool(BACKUP_PATTERN.search(PurePosixPath(path).name))


def _with_remote_marker(path: str) -> str:
    p = PurePosixPath(path)
    return str(p.with_name(f"{p.stem} (remote){p.suffix}"))


@dataclass
class ConflictOutcome:
    """What resolving one conflict did."""

    path: str
    winner: str  # "local", "remote" or "manual"
    backup_paths: list[str] = field(default_factory=list)

    @property
    def unresolved(self) -> bool:
        return self.winner == "manual"


class ConflictResolver:
    """Applies the configured policy to conflicting paths."""

    def __init__(
        self,
        vault: LocalVault,
        index: LocalIndex,
        transfers: TransferEngine,
        policy: ConflictPolicy = ConflictPolicy.LAST_WRITER_WINS,
        clock: Clock = now_ms,
    ) -> None:
        self._vault = vault
        self._index = index
        self._transfers = transfers
        self._policy = ConflictPolicy(policy)
        self._clock = clock

    @property
    def policy(self) -> ConflictPolicy:
        return self._policy

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock() / 1000, tz=timezone.utc)

    def _backup_path(self, path: str) -> str:
        """Conflict backup name, suffixed with a counter if already taken."""
        candidate = generate_conflict_filename(path, self._now())
        if not self._vault.exists(candidate):
            return candidate
        p = PurePosixPath(candidate)
        counter = 2
        while True:
            numbered = str(p.with_name(f"{p.stem} {counter}{p.suffix}"))
            if not self._vault.exists(numbered):
                return numbered
            counter += 1

    def _fetch_remote(self, path: str, remote: FileSnapshot) -> bytes:
        if remote.remote_id is None:
            raise ConflictResolutionError(path, "remote id missing")
        content = self._transfers.download(remote.remote_id)
        if isinstance(content, NotModified):
            raise ConflictResolutionError(path, "remote content unavailable")
        return content

    def preview(self, path: str, remote: FileSnapshot) -> ConflictPreview:
        """Describe the resolution without touching either side."""
        if self._policy is ConflictPolicy.MANUAL:
            stamp_path = generate_conflict_filename(path, self._now())
            remote_path = generate_conflict_filename(_with_remote_marker(path), self._now())
            return ConflictPreview(path, "manual", [stamp_path, remote_path])

        try:
            local_mtime = self._vault.stat(path).mtime
        except FileNotFoundError:
            local_mtime = 0
        winner = "local" if local_mtime > remote.modified_time else "remote"
        return ConflictPreview(path, winner, [generate_conflict_filename(path, self._now())])

    def resolve(self, path: str, remote: FileSnapshot, parent_id: str) -> ConflictOutcome:
        """Resolve one conflict.

        Args:
            path: Conflicting vault path.
            remote: Remote snapshot of the same path.
            parent_id: Remote folder holding the file (for re-uploads).

        Raises:
            ConflictResolutionError: If a backup or a transfer fails.
            AuthError: If authentication fails mid-resolution.
        """
        try:
            if self._policy is ConflictPolicy.MANUAL:
                return self._resolve_manual(path, remote)
            return self._resolve_last_writer_wins(path, remote, parent_id)
        except (AuthError, ConflictResolutionError):
            raise
        except (OSError, APIError, IndexCorruptionError) as e:
            raise ConflictResolutionError(path, str(e)) from e

    def _resolve_last_writer_wins(
        self, path: str, remote: FileSnapshot, parent_id: str
    ) -> ConflictOutcome:
        local_mtime = self._vault.stat(path).mtime

        if local_mtime > remote.modified_time:
            remote_content = self._fetch_remote(path, remote)
            backup = self._backup_path(path)
            self._vault.write_binary(backup, remote_content)

            content = self._vault.read_binary(path)
            result = self._transfers.upload(
                PurePosixPath(path).name,
                content,
                mime_type_for(path),
                parent_id,
                existing_remote_id=remote.remote_id,
            )
            self._index.upsert_entry(
                path,
                result.remote_id,
                result.revision_tag,
                remote_modified_time=result.remote_file.modified_time,
            )
            logger.warning(f"Conflict on {path}: kept local version, remote saved as {backup}")
            return ConflictOutcome(path, "local", [backup])

        local_content = self._vault.read_binary(path)
        remote_content = self._fetch_remote(path, remote)
        backup = self._backup_path(path)
        self._vault.write_binary(backup, local_content)
        self._vault.write_binary(path, remote_content)
        self._index.upsert_entry(
            path,
            remote.remote_id,
            remote.revision_tag,
            remote_modified_time=remote.modified_time,
        )
        logger.warning(f"Conflict on {path}: kept remote version, local saved as {backup}")
        return ConflictOutcome(path, "remote", [backup])

    def _resolve_manual(self, path: str, remote: FileSnapshot) -> ConflictOutcome:
        local_content = self._vault.read_binary(path)
        remote_content = self._fetch_remote(path, remote)

        local_backup = self._backup_path(path)
        self._vault.write_binary(local_backup, local_content)
        remote_backup = self._backup_path(_with_remote_marker(path))
        self._vault.write_binary(remote_backup, remote_content)

        # Baseline both sides as they are now; clearing the conflict later
        # forces the local file up from this point
        self._index.upsert_entry(
            path,
            remote.remote_id,
            remote.revision_tag,
            remote_modified_time=remote.modified_time,
        )
        self._index.mark_unresolved(path)
        logger.warning(
            f"Conflict on {path} needs manual resolution: "
            f"local copy {local_backup}, remote copy {remote_backup}"
        )
        return ConflictOutcome(path, "manual", [local_backup, remote_backup])

    def cleanup_old_backups(self, max_age_ms: int = DEFAULT_BACKUP_MAX_AGE_MS) -> int:
        """Delete conflict backups older than max_age_ms.

        Returns:
            Number of backups deleted.
        """
        now = self._clock()
        cleaned = 0
        for path in self._vault.list_files():
            if not is_conflict_backup(path):
                continue
            try:
                if now - self._vault.stat(path).mtime > max_age_ms:
                    self._vault.delete(path)
                    cleaned += 1
                    logger.info(f"Cleaned up old conflict backup: {path}")
            except OSError as e:
                logger.warning(f"Could not clean up {path}: {e}")
        return cleaned
