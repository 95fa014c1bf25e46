"""Tests for reading notes from a vault directory."""
from __future__ import annotations

from pathlib import Path

import pytest

import vaultindex.indexer.source as source_module
from vaultindex.errors import DocumentReadError
from vaultindex.indexer.filters import PatternFilter
from vaultindex.indexer.source import VaultDocumentSource


@pytest.fixture
def vault(tmp_path: Path) -> Path:
    root = tmp_path / "vault"
    (root / "notes").mkdir(parents=True)
    (root / ".obsidian").mkdir()
    (root / "notes" / "Alpha.md").write_text(
        "---\ntags: [project, Work]\n---\nAlpha body with #inline tag.\n", encoding="utf-8"
    )
    (root / "notes" / "Empty.md").write_text("---\ntitle: nothing\n---\n\n", encoding="utf-8")
    (root / "Beta.md").write_text("Beta body.\n```\n#notatag\n```\n", encoding="utf-8")
    (root / "image.png").write_bytes(b"\x89PNG")
    (root / ".obsidian" / "config.md").write_text("ignored", encoding="utf-8")
    return root


class TestVaultDocumentSource:

    def test_lists_markdown_notes_with_relative_paths(self, vault):
        src = VaultDocumentSource(vault, ignore=[".obsidian/**"])
        paths = [d.path for d in src.list_candidate_documents()]
        assert paths == ["Beta.md", "notes/Alpha.md"]

    def test_frontmatter_stripped_and_tags_merged(self, vault):
        src = VaultDocumentSource(vault)
        doc = src.read_document("notes/Alpha.md")
        assert doc.title == "Alpha"
        assert doc.content.startswith("Alpha body")
        assert "---" not in doc.content
        assert doc.tags == ("project", "Work", "inline")
        assert doc.mtime > 0

    def test_tags_inside_code_fences_ignored(self, vault):
        doc = VaultDocumentSource(vault).read_document("Beta.md")
        assert doc.tags == ()

    def test_empty_note_is_not_a_candidate(self, vault):
        src = VaultDocumentSource(vault)
        assert src.read_document("notes/Empty.md") is None

    def test_read_missing_or_ignored(self, vault):
        src = VaultDocumentSource(vault, ignore=[".obsidian/**"])
        assert src.read_document("nope.md") is None
        assert src.read_document(".obsidian/config.md") is None
        assert src.read_document("image.png") is None

    def test_filters_applied(self, vault):
        src = VaultDocumentSource(vault, ignore=[".obsidian/**"])
        f = PatternFilter.from_patterns(inclusions=["#project"])
        assert [d.path for d in src.list_candidate_documents(f)] == ["notes/Alpha.md"]

    def test_malformed_frontmatter_falls_back_to_raw_text(self, tmp_path):
        (tmp_path / "Bad.md").write_text("---\ntags: [unclosed\n---\nBody\n", encoding="utf-8")
        doc = VaultDocumentSource(tmp_path).read_document("Bad.md")
        assert doc is not None
        assert "Body" in doc.content

    def test_unreadable_note_reported_not_dropped_silently(self, vault, monkeypatch):
        real_read = source_module.safe_read_text

        def locked_read(path):
            if path.name == "Beta.md":
                raise PermissionError("file is locked")
            return real_read(path)

        monkeypatch.setattr(source_module, "safe_read_text", locked_read)
        src = VaultDocumentSource(vault, ignore=[".obsidian/**"])
        assert [d.path for d in src.list_candidate_documents()] == ["notes/Alpha.md"]
        assert src.unreadable == {"Beta.md"}

        with pytest.raises(DocumentReadError):
            src.read_document("Beta.md")

    def test_unreadable_set_resets_per_listing(self, vault, monkeypatch):
        src = VaultDocumentSource(vault, ignore=[".obsidian/**"])

        def busy(path):
            raise OSError("busy")

        monkeypatch.setattr(source_module, "safe_read_text", busy)
        list(src.list_candidate_documents())
        assert src.unreadable == {"Beta.md", "notes/Alpha.md", "notes/Empty.md"}

        monkeypatch.undo()
        list(src.list_candidate_documents())
        assert src.unreadable == set()
