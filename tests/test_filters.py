"""Tests for ignore globs and inclusion/exclusion patterns."""
from __future__ import annotations

import pytest

from vaultindex.indexer.filters import (
    PatternCategory,
    PatternFilter,
    matches_ignore_pattern,
    split_patterns,
)


class TestIgnorePatterns:

    @pytest.mark.parametrize("path,pattern", [
        (".DS_Store", "**/.DS_Store"),
        ("a/b/.DS_Store", "**/.DS_Store"),
        (".obsidian/workspace.json", ".obsidian/**"),
        ("templates/daily.md", "templates/*.md"),
    ])
    def test_matches(self, path, pattern):
        assert matches_ignore_pattern(path, [pattern])

    def test_no_match(self):
        assert not matches_ignore_pattern("notes/a.md", [".obsidian/**", "**/.DS_Store"])

    def test_windows_separators(self):
        assert matches_ignore_pattern("a\\.obsidian\\x.md", ["**/.obsidian/**"])


class TestPatternCategory:

    def test_patterns_sorted_by_kind(self):
        cat = PatternCategory.from_patterns(["#Project", "*.md", "[[Inbox]]", "archive/"])
        assert cat.tags == ("project",)
        assert cat.extensions == ("md",)
        assert cat.notes == ("Inbox",)
        assert cat.folders == ("archive",)

    def test_split_patterns_accepts_encoded_string(self):
        assert split_patterns("#a, %5B%5BMy%20Note%5D%5D ,") == ["#a", "[[My Note]]"]
        assert split_patterns(["x", " "]) == ["x"]


class TestPatternFilter:

    def test_empty_filter_matches_everything(self):
        assert PatternFilter.from_patterns().matches("any/path.md", ["t"])

    def test_tag_exclusion(self):
        f = PatternFilter.from_patterns(exclusions=["#private"])
        assert not f.matches("a.md", ["private"])
        assert not f.matches("a.md", ["Private"])
        assert f.matches("a.md", ["public"])

    def test_nested_tag_matches_parent_pattern(self):
        f = PatternFilter.from_patterns(inclusions=["#project"])
        assert f.matches("a.md", ["project/alpha"])
        assert not f.matches("a.md", ["projects"])

    def test_folder_matches_whole_segments(self):
        f = PatternFilter.from_patterns(exclusions=["archive"])
        assert not f.matches("archive/old.md")
        assert f.matches("archives/new.md")

    def test_note_pattern_matches_basename(self):
        f = PatternFilter.from_patterns(exclusions=["[[Secret]]"])
        assert not f.matches("deep/folder/Secret.md")
        assert f.matches("Secret Plans.md")

    def test_extension_pattern(self):
        f = PatternFilter.from_patterns(inclusions=["*.md"])
        assert f.matches("a.MD")
        assert not f.matches("a.txt")

    def test_exclusion_wins_over_inclusion(self):
        f = PatternFilter.from_patterns(inclusions=["notes"], exclusions=["#draft"])
        assert f.matches("notes/a.md", ["final"])
        assert not f.matches("notes/a.md", ["draft"])
        assert not f.matches("other/a.md", ["final"])
