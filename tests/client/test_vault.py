"""Tests for the local vault adapter."""

import os
from pathlib import Path

import pytest
from helpers import write_file

from vaultsync.client.vault import LocalVault


@pytest.fixture
def vault(vault_dir: Path) -> LocalVault:
    return LocalVault(vault_dir)


class TestListing:
    """Tests for list_files / list_folders."""

    def test_lists_files_recursively(self, vault: LocalVault, vault_dir: Path) -> None:
        """Should return sorted vault-relative posix paths."""
        write_file(vault_dir, "b.md", "b")
        write_file(vault_dir, "Notes/a.md", "a")
        write_file(vault_dir, "Notes/Deep/c.md", "c")

        assert vault.list_files() == ["Notes/Deep/c.md", "Notes/a.md", "b.md"]
        assert vault.list_folders() == ["Notes", "Notes/Deep"]

    def test_prune_skips_subtree(self, vault: LocalVault, vault_dir: Path) -> None:
        """Pruned directories should not be descended into."""
        write_file(vault_dir, "keep/a.md", "a")
        write_file(vault_dir, "skip/b.md", "b")

        files = vault.list_files(prune=lambda d: d == "skip")

        assert files == ["keep/a.md"]

    @pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks unsupported")
    def test_symlinks_skipped(self, vault: LocalVault, vault_dir: Path, tmp_path: Path) -> None:
        """Should not follow or list symlinks."""
        outside = write_file(tmp_path, "outside.md", "x")
        write_file(vault_dir, "real.md", "r")
        (vault_dir / "link.md").symlink_to(outside)

        assert vault.list_files() == ["real.md"]

    def test_missing_root(self, tmp_path: Path) -> None:
        """A missing vault root lists as empty."""
        assert LocalVault(tmp_path / "missing").list_files() == []


class TestFileOperations:
    """Tests for read/write/stat/delete."""

    def test_write_creates_parents(self, vault: LocalVault, vault_dir: Path) -> None:
        """Should create parent directories and leave no temp file."""
        vault.write_binary("a/b/c.md", b"content")

        assert (vault_dir / "a/b/c.md").read_bytes() == b"content"
        assert not (vault_dir / "a/b/c.md.tmp").exists()

    def test_write_replaces(self, vault: LocalVault) -> None:
        """Should overwrite existing content."""
        vault.write_binary("x.md", b"one")
        vault.write_binary("x.md", b"two")
        assert vault.read_binary("x.md") == b"two"

    def test_stat(self, vault: LocalVault, vault_dir: Path) -> None:
        """Should report size and mtime in milliseconds."""
        write_file(vault_dir, "x.md", "12345", mtime_ms=1_700_000_000_123)

        st = vault.stat("x.md")

        assert st.size == 5
        assert st.mtime == 1_700_000_000_123
        assert st.is_directory is False

    def test_stat_missing(self, vault: LocalVault) -> None:
        """Should raise FileNotFoundError for missing paths."""
        with pytest.raises(FileNotFoundError):
            vault.stat("nope.md")

    def test_exists(self, vault: LocalVault, vault_dir: Path) -> None:
        write_file(vault_dir, "x.md", "x")
        assert vault.exists("x.md")
        assert not vault.exists("y.md")

    def test_delete_file(self, vault: LocalVault, vault_dir: Path) -> None:
        write_file(vault_dir, "x.md", "x")
        vault.delete("x.md")
        assert not (vault_dir / "x.md").exists()

    def test_delete_non_empty_directory_fails(self, vault: LocalVault, vault_dir: Path) -> None:
        """Should refuse to delete a directory with content."""
        write_file(vault_dir, "dir/x.md", "x")
        with pytest.raises(OSError):
            vault.delete("dir")
        vault.delete("dir/x.md")
        vault.delete("dir")
        assert not (vault_dir / "dir").exists()

    def test_rejects_escaping_paths(self, vault: LocalVault) -> None:
        """Should refuse paths outside the vault."""
        with pytest.raises(ValueError):
            vault.read_binary("../secret")
        with pytest.raises(ValueError):
            vault.write_binary("/etc/passwd", b"")
