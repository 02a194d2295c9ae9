"""Local vault file-system adapter.

This module provides:
- LocalVault: read/write/stat/enumerate files under the vault root
- FileStat: size and mtime of a vault path

All paths are vault-relative with forward slashes. Missing paths raise
FileNotFoundError and access problems raise PermissionError, so callers can
tell them apart.
"""

from __future__ import annotations

import contextlib
import logging
import os
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

logger = logging.getLogger(__name__)

# Predicate on a vault-relative directory path; True prunes the subtree
DirFilter = Callable[[str], bool]


@dataclass
class FileStat:
    """Size and modification time of a vault path."""

    size: int
    mtime: int  # epoch ms
    is_directory: bool = False


class LocalVault:
    """File-system access rooted at the vault directory."""

    def __init__(self, root: Path) -> None:
        self._root = Path(root).expanduser().resolve()

    @property
    def root(self) -> Path:
        return self._root

    def _abs(self, path: str) -> Path:
        rel = PurePosixPath(path.replace("\\", "/"))
        if rel.is_absolute() or ".." in rel.parts:
            raise ValueError(f"Path escapes the vault: {path}")
        return self._root.joinpath(*rel.parts)

    def _rel(self, path: Path) -> str:
        return path.relative_to(self._root).as_posix()

    def _walk(self, prune: DirFilter | None) -> tuple[list[str], list[str]]:
        files: list[str] = []
        folders: list[str] = []
        if not self._root.is_dir():
            return files, folders

        for root_str, dirs, filenames in os.walk(self._root):
            root = Path(root_str)

            # Symlinked directories are never followed
            kept = []
            for d in sorted(dirs):
                dir_path = root / d
                if dir_path.is_symlink():
                    continue
                rel = self._rel(dir_path)
                if prune is not None and prune(rel):
                    continue
                kept.append(d)
                folders.append(rel)
            dirs[:] = kept

            for filename in sorted(filenames):
                file_path = root / filename
                if file_path.is_symlink():
                    continue
                files.append(self._rel(file_path))

        return files, folders

    def list_files(self, prune: DirFilter | None = None) -> list[str]:
        """List every regular file in the vault.

        Args:
            prune: Optional predicate; directories it accepts are skipped
                with their whole subtree.
        """
        return self._walk(prune)[0]

    def list_folders(self, prune: DirFilter | None = None) -> list[str]:
        """List every directory in the vault (root excluded)."""
        return self._walk(prune)[1]

    def exists(self, path: str) -> bool:
        return self._abs(path).exists()

    def stat(self, path: str) -> FileStat:
        """Stat a vault path.

        Raises:
            FileNotFoundError: If the path does not exist.
        """
        st = self._abs(path).stat()
        return FileStat(
            size=st.st_size,
            mtime=st.st_mtime_ns // 1_000_000,
            is_directory=self._abs(path).is_dir(),
        )

    def read_binary(self, path: str) -> bytes:
        return self._abs(path).read_bytes()

    def write_binary(self, path: str, content: bytes) -> None:
        """Write a file atomically, creating parent directories.

        Content goes to a temporary sibling first and is renamed over the
        target, so readers never observe a partial file.
        """
        target = self._abs(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = target.with_name(target.name + ".tmp")
        try:
            with open(tmp_path, "wb") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, target)
        except Exception:
            # Clean up temp file on failure
            if tmp_path.exists():
                with contextlib.suppress(OSError):
                    tmp_path.unlink()
            raise
        logger.debug(f"Wrote {path} ({len(content)} bytes)")

    def create_folder(self, path: str) -> None:
        self._abs(path).mkdir(parents=True, exist_ok=True)

    def delete(self, path: str) -> None:
        """Delete a file, or a directory if it is empty.

        Raises:
            FileNotFoundError: If the path does not exist.
            OSError: If the path is a non-empty directory.
        """
        target = self._abs(path)
        if target.is_dir() and not target.is_symlink():
            target.rmdir()
        else:
            target.unlink()
        logger.debug(f"Deleted {path}")
