"""Ignore patterns and extension filtering for file synchronization.

This module provides:
- DEFAULT_IGNORE_PATTERNS: Patterns always applied, regardless of user config
- IgnorePatterns: gitignore-style matcher (``**`` any depth, ``*`` one segment)
- matches_ignore: one-shot helper over a pattern list
- should_sync_file: ignore patterns plus optional extension filtering
"""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path, PurePosixPath

from pathspec import GitIgnoreSpec

# Version control, dependency, temp/lock and host-application directories
DEFAULT_IGNORE_PATTERNS = [
    ".git/",
    ".svn/",
    ".hg/",
    "node_modules/",
    ".obsidian/",
    ".trash/",
    ".vaultsync/",
    "*.tmp",
    "*.temp",
    "*.lock",
    "*.swp",
    "*.swo",
    "*~",
    ".DS_Store",
    "Thumbs.db",
]

# Native workspace documents have no binary content to sync
WORKSPACE_MIME_TYPES = frozenset({
    "application/vnd.google-apps.document",
    "application/vnd.google-apps.spreadsheet",
    "application/vnd.google-apps.presentation",
    "application/vnd.google-apps.form",
})


def _clean(lines: Iterable[str]) -> list[str]:
    return [
        line.strip()
        for line in lines
        if line.strip() and not line.lstrip().startswith("#")
    ]


class IgnorePatterns:
    """Handles ignore pattern matching for vault-relative paths.

    Matching is case-sensitive and uses gitignore semantics: a pattern
    without a slash matches a name at any depth, ``*`` stays within one
    path segment and ``**`` spans any number of segments.
    """

    def __init__(
        self,
        patterns: Iterable[str] | None = None,
        include_defaults: bool = True,
    ) -> None:
        """Initialize with patterns.

        Args:
            patterns: Extra gitignore-style patterns.
            include_defaults: Prepend DEFAULT_IGNORE_PATTERNS.
        """
        self._patterns: list[str] = list(DEFAULT_IGNORE_PATTERNS) if include_defaults else []
        if patterns:
            self._patterns.extend(_clean(patterns))
        self._spec = GitIgnoreSpec.from_lines(self._patterns)

    @property
    def patterns(self) -> list[str]:
        return list(self._patterns)

    def add_pattern(self, pattern: str) -> None:
        """Add an ignore pattern."""
        self._patterns.extend(_clean([pattern]))
        self._spec = GitIgnoreSpec.from_lines(self._patterns)

    def load_from_file(self, path: Path) -> None:
        """Load patterns from an ignore file (one pattern per line)."""
        if path.exists():
            lines = path.read_text(encoding="utf-8").splitlines()
            self._patterns.extend(_clean(lines))
            self._spec = GitIgnoreSpec.from_lines(self._patterns)

    def should_ignore(self, path: str, is_directory: bool = False) -> bool:
        """Check if a vault-relative path should be ignored.

        Directory-only patterns (``build/``) match the directory itself and
        everything below it. A trailing slash marks a directory too.
        """
        is_directory = is_directory or path.endswith("/")
        rel = PurePosixPath(path.replace("\\", "/")).as_posix().lstrip("/")
        if not rel or rel == ".":
            return False
        if is_directory and not rel.endswith("/"):
            rel = f"{rel}/"
        return self._spec.match_file(rel)

    def __call__(self, path: str) -> bool:
        return self.should_ignore(path)


def matches_ignore(path: str, patterns: Iterable[str]) -> bool:
    """Check a path against an explicit pattern list (no defaults)."""
    return IgnorePatterns(patterns, include_defaults=False).should_ignore(path)


def get_file_extension(path: str) -> str:
    """Lower-case extension without the dot ("" for none or dotfiles)."""
    suffix = PurePosixPath(path).suffix
    return suffix[1:].lower() if suffix else ""


def should_sync_file(
    path: str,
    enable_extension_filtering: bool,
    allowed_extensions: Iterable[str],
    ignore: IgnorePatterns | None = None,
    allow_folders: bool = True,
    is_directory: bool | None = None,
    mime_type: str | None = None,
) -> bool:
    """Decide whether a path takes part in synchronization.

    Args:
        path: Vault-relative path.
        enable_extension_filtering: Restrict files to allowed_extensions.
        allowed_extensions: Allowed extensions without the dot.
        ignore: Ignore matcher; None means no patterns.
        allow_folders: Whether directories themselves are synced.
        is_directory: Known directory flag; when None, a path without an
            extension is treated as a folder.
        mime_type: Remote mime type, if known.

    Returns:
        True if the path should be synced.
    """
    if mime_type in WORKSPACE_MIME_TYPES:
        return False

    extension = get_file_extension(path)
    if is_directory is None:
        is_directory = extension == ""

    if ignore is not None and ignore.should_ignore(path, is_directory=is_directory):
        return False

    if is_directory:
        return allow_folders

    if not enable_extension_filtering:
        return True

    allowed = {ext.lower().lstrip(".") for ext in allowed_extensions}
    return extension in allowed
