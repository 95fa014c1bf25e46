"""Tests for the missing-embeddings set."""
from __future__ import annotations

from vaultindex.store.missing import MissingEmbeddingSet


class TestMissingEmbeddingSet:

    def test_persists_across_instances(self, tmp_path):
        path = tmp_path / "missing.json"
        m = MissingEmbeddingSet(path)
        m.add("a.md")
        m.update(["b.md", "a.md"])
        m.save()

        loaded = MissingEmbeddingSet(path)
        loaded.load()
        assert loaded.snapshot() == {"a.md", "b.md"}
        assert "a.md" in loaded
        assert len(loaded) == 2

    def test_discard_and_clear(self):
        m = MissingEmbeddingSet()
        m.update(["a.md", "b.md"])
        m.discard("a.md")
        m.discard("never.md")
        assert m.snapshot() == {"b.md"}
        m.clear()
        assert len(m) == 0

    def test_unreadable_file_loads_empty(self, tmp_path):
        path = tmp_path / "missing.json"
        path.write_text("{broken", encoding="utf-8")
        m = MissingEmbeddingSet(path)
        m.load()
        assert len(m) == 0

    def test_without_path_save_is_noop(self):
        m = MissingEmbeddingSet()
        m.add("a.md")
        m.save()
        assert "a.md" in m
