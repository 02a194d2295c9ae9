"""Tests for ignore patterns and extension filtering."""

from pathlib import Path

import pytest

from vaultsync.client.sync.ignore import (
    IgnorePatterns,
    get_file_extension,
    matches_ignore,
    should_sync_file,
)


class TestIgnorePatterns:
    """Tests for IgnorePatterns."""

    def test_default_patterns(self) -> None:
        """Should ignore VCS, host-application and temp files by default."""
        ignore = IgnorePatterns()
        assert ignore.should_ignore(".git/config")
        assert ignore.should_ignore(".obsidian/workspace.json")
        assert ignore.should_ignore("notes/.DS_Store")
        assert ignore.should_ignore("draft.md.swp")
        assert ignore.should_ignore("backup~")
        assert not ignore.should_ignore(".gitignore")
        assert not ignore.should_ignore("notes/todo.md")

    def test_without_defaults(self) -> None:
        """Should only apply the given patterns."""
        ignore = IgnorePatterns(["*.log"], include_defaults=False)
        assert ignore.should_ignore("debug.log")
        assert not ignore.should_ignore(".git/config")

    def test_star_stays_in_one_segment(self) -> None:
        """A single star should not cross directory separators."""
        assert matches_ignore("drafts/a.md", ["drafts/*.md"])
        assert not matches_ignore("drafts/deep/a.md", ["drafts/*.md"])

    def test_double_star_spans_segments(self) -> None:
        """A double star should match any depth."""
        assert matches_ignore("drafts/deep/er/a.md", ["drafts/**/*.md"])
        assert matches_ignore("a/b/c/cache.db", ["**/cache.db"])

    def test_name_pattern_matches_at_any_depth(self) -> None:
        """A pattern without a slash should match names anywhere."""
        assert matches_ignore("scratch.tmp", ["*.tmp"])
        assert matches_ignore("deep/dir/scratch.tmp", ["*.tmp"])

    def test_matching_is_case_sensitive(self) -> None:
        """Should not fold case."""
        assert not matches_ignore("Scratch.TMP", ["*.tmp"])

    def test_directory_pattern(self) -> None:
        """A trailing slash pattern should match the directory and its contents."""
        ignore = IgnorePatterns(["build/"], include_defaults=False)
        assert ignore.should_ignore("build", is_directory=True)
        assert ignore.should_ignore("build/")
        assert ignore.should_ignore("build/out.md")
        assert not ignore.should_ignore("build", is_directory=False)

    def test_comments_and_blank_lines_skipped(self) -> None:
        """Should skip comments and blank lines."""
        ignore = IgnorePatterns(["# comment", "", "*.bak"], include_defaults=False)
        assert ignore.patterns == ["*.bak"]

    def test_add_pattern(self) -> None:
        """Should apply patterns added later."""
        ignore = IgnorePatterns(include_defaults=False)
        assert not ignore.should_ignore("a.bak")
        ignore.add_pattern("*.bak")
        assert ignore.should_ignore("a.bak")

    def test_load_from_file(self, tmp_path: Path) -> None:
        """Should read one pattern per line."""
        ignore_file = tmp_path / ".vaultsyncignore"
        ignore_file.write_text("# local\nprivate/\n*.secret\n")
        ignore = IgnorePatterns(include_defaults=False)
        ignore.load_from_file(ignore_file)
        assert ignore.should_ignore("private/diary.md")
        assert ignore.should_ignore("keys.secret")

    def test_callable(self) -> None:
        """Should be usable as a predicate."""
        ignore = IgnorePatterns(["*.tmp"])
        assert ignore("x.tmp")
        assert not ignore("x.md")


class TestShouldSyncFile:
    """Tests for should_sync_file."""

    def test_no_filtering(self) -> None:
        """Should sync everything when filtering is off."""
        assert should_sync_file("image.png", False, ["md"])

    @pytest.mark.parametrize(
        ("path", "expected"),
        [("notes/a.md", True), ("paper.PDF", True), ("image.png", False)],
    )
    def test_extension_filtering(self, path: str, expected: bool) -> None:
        """Should only sync allowed extensions, case-insensitively."""
        assert should_sync_file(path, True, ["md", "pdf"]) is expected

    def test_folders_follow_allow_folders(self) -> None:
        """Directories should be synced only when folders are allowed."""
        assert should_sync_file("notes", True, ["md"], allow_folders=True, is_directory=True)
        assert not should_sync_file("notes", True, ["md"], allow_folders=False, is_directory=True)

    def test_extensionless_path_treated_as_folder(self) -> None:
        """Without a directory flag, a path without extension is a folder."""
        assert should_sync_file("Makefile", True, ["md"], allow_folders=True)
        assert not should_sync_file("Makefile", True, ["md"], allow_folders=False)

    def test_ignore_patterns_apply(self) -> None:
        """Ignored paths should never sync."""
        ignore = IgnorePatterns(["*.tmp"])
        assert not should_sync_file("scratch.tmp", False, [], ignore=ignore, is_directory=False)

    def test_workspace_documents_skipped(self) -> None:
        """Native workspace documents have no content to sync."""
        assert not should_sync_file(
            "Budget",
            False,
            [],
            is_directory=False,
            mime_type="application/vnd.google-apps.spreadsheet",
        )


def test_get_file_extension() -> None:
    """Should return the lower-cased extension without dot."""
    assert get_file_extension("a/b/Note.MD") == "md"
    assert get_file_extension("README") == ""
    assert get_file_extension(".bashrc") == ""
