"""Tests for the partitioned on-disk index."""
from __future__ import annotations

import json
import threading

import numpy as np
import pytest

from vaultindex.errors import EmbeddingModelMismatchError
from vaultindex.store.partitioned_store import PartitionedStore
from vaultindex.store.partitions import MANIFEST_NAME, PARTITION_DIR, read_partition


def _reload(index_dir, **kwargs) -> PartitionedStore:
    s = PartitionedStore(index_dir, **kwargs)
    s.load()
    return s


class TestUpsertAndRemove:

    def test_upsert_replaces_whole_document(self, store, make_doc):
        store.upsert(make_doc("a.md", [[1, 0], [0, 1], [1, 1]]))
        assert store.chunk_count == 3
        store.upsert(make_doc("a.md", [[1, 0]]))
        assert store.chunk_count == 1
        assert [c.id for c in store.get("a.md").chunks] == ["a.md#0"]

    def test_remove_missing_path_is_noop(self, store, make_doc):
        store.upsert(make_doc("a.md", [[1, 0]]))
        store.remove_by_path("nope.md")
        store.remove_by_path("a.md")
        store.remove_by_path("a.md")
        assert store.is_empty()

    def test_chunk_of_other_document_rejected(self, store, make_doc):
        doc = make_doc("a.md", [[1, 0]])
        foreign = make_doc("b.md", [[0, 1]])
        bad = type(doc)(
            path="a.md", fingerprint="fp", embedding_model="fake-model",
            chunks=foreign.chunks, created_at=1,
        )
        with pytest.raises(ValueError):
            store.upsert(bad)

    def test_model_mismatch_rejected(self, store, make_doc):
        store.upsert(make_doc("a.md", [[1, 0]], model="model-a"))
        with pytest.raises(EmbeddingModelMismatchError):
            store.upsert(make_doc("b.md", [[1, 0]], model="model-b"))

    def test_dimension_mismatch_rejected(self, store, make_doc):
        store.upsert(make_doc("a.md", [[1, 0]]))
        with pytest.raises(EmbeddingModelMismatchError):
            store.upsert(make_doc("b.md", [[1, 0, 0]]))

    def test_generation_advances_on_writes(self, store, make_doc):
        g0 = store.generation
        store.upsert(make_doc("a.md", [[1, 0]]))
        g1 = store.generation
        store.remove_by_path("a.md")
        assert g0 < g1 < store.generation

    def test_latest_modified_time(self, store, make_doc):
        assert store.get_latest_modified_time() == 0
        store.upsert(make_doc("a.md", [[1, 0]], mtime=5))
        store.upsert(make_doc("b.md", [[1, 0]], mtime=9))
        assert store.get_latest_modified_time() == 9


class TestPersistence:

    def test_save_and_load_round_trip(self, store, make_doc, index_dir):
        store.upsert(make_doc("a.md", [[1, 0, 0], [0, 1, 0]]))
        store.upsert(make_doc("dir/b.md", [[0, 0, 1]]))
        store.save()

        loaded = _reload(index_dir)
        assert loaded.get_indexed_paths() == {"a.md", "dir/b.md"}
        assert loaded.embedding_model == "fake-model"
        assert loaded.dims == 3
        np.testing.assert_allclose(loaded.get("a.md").chunks[1].embedding, [0, 1, 0])
        assert loaded.get("dir/b.md").chunks[0].metadata.path == "dir/b.md"

    def test_partition_files_are_self_describing(self, store, make_doc, index_dir):
        store.upsert(make_doc("a.md", [[1, 0]]))
        store.save()
        header, docs = read_partition(index_dir / PARTITION_DIR / "partition-000.jsonl")
        assert header["format"] == "vaultindex-partition"
        assert header["embedding_model"] == "fake-model"
        assert [d.path for d, _ in docs] == ["a.md"]

    def test_save_without_changes_writes_nothing(self, store, index_dir):
        store.save()
        assert not (index_dir / MANIFEST_NAME).exists()

    def test_removed_documents_stay_removed(self, store, make_doc, index_dir):
        store.upsert(make_doc("a.md", [[1, 0]]))
        store.upsert(make_doc("b.md", [[0, 1]]))
        store.save()
        store.remove_by_path("a.md")
        store.save()
        assert _reload(index_dir).get_indexed_paths() == {"b.md"}

    def test_clear_removes_partition_files(self, store, make_doc, index_dir):
        store.upsert(make_doc("a.md", [[1, 0]]))
        store.save()
        store.clear(embedding_model="fake-model")
        store.save()
        assert list((index_dir / PARTITION_DIR).glob("partition-*.jsonl")) == []
        assert _reload(index_dir).is_empty()


class TestPartitionRotation:

    def test_new_partition_opened_when_full(self, index_dir, make_doc):
        store = _reload(index_dir, partition_max_bytes=1)
        for name in ("a.md", "b.md", "c.md"):
            store.upsert(make_doc(name, [[1, 0]]))
        assert store.partition_count == 3
        assert {store.partition_of(p) for p in ("a.md", "b.md", "c.md")} == {0, 1, 2}

        store.save()
        files = sorted(p.name for p in (index_dir / PARTITION_DIR).iterdir())
        assert files == ["partition-000.jsonl", "partition-001.jsonl", "partition-002.jsonl"]

    def test_documents_share_partition_under_bound(self, store, make_doc):
        for name in ("a.md", "b.md", "c.md"):
            store.upsert(make_doc(name, [[1, 0]]))
        assert store.partition_count == 1

    def test_updated_document_stays_in_its_partition(self, index_dir, make_doc):
        store = _reload(index_dir, partition_max_bytes=1)
        store.upsert(make_doc("a.md", [[1, 0]]))
        store.upsert(make_doc("b.md", [[1, 0]]))
        store.upsert(make_doc("a.md", [[0, 1]], fingerprint="fp2"))
        assert store.partition_of("a.md") == 0
        assert store.partition_count == 2


class TestCorruption:

    def _two_partitions(self, index_dir, make_doc):
        store = _reload(index_dir, partition_max_bytes=1)
        store.upsert(make_doc("a.md", [[1, 0]]))
        store.upsert(make_doc("b.md", [[0, 1]]))
        store.save()

    def test_corrupt_partition_is_isolated(self, index_dir, make_doc):
        self._two_partitions(index_dir, make_doc)
        (index_dir / PARTITION_DIR / "partition-000.jsonl").write_text("{garbage", encoding="utf-8")

        loaded = _reload(index_dir)
        assert loaded.get_indexed_paths() == {"b.md"}
        assert loaded.corrupt_partitions == ("partition-000.jsonl",)

    def test_corrupt_partition_moved_aside_on_save(self, index_dir, make_doc):
        self._two_partitions(index_dir, make_doc)
        part_dir = index_dir / PARTITION_DIR
        (part_dir / "partition-000.jsonl").write_text("{garbage", encoding="utf-8")

        loaded = _reload(index_dir)
        loaded.upsert(make_doc("a.md", [[1, 0]]))
        loaded.save()
        assert (part_dir / "partition-000.jsonl.corrupt").exists()
        assert loaded.corrupt_partitions == ("partition-000.jsonl",)

        reloaded = _reload(index_dir)
        assert reloaded.get_indexed_paths() == {"a.md", "b.md"}
        assert reloaded.corrupt_partitions == ("partition-000.jsonl",)

    def test_cleared_report_stays_cleared(self, index_dir, make_doc):
        self._two_partitions(index_dir, make_doc)
        (index_dir / PARTITION_DIR / "partition-000.jsonl").write_text("{garbage", encoding="utf-8")

        loaded = _reload(index_dir)
        loaded.clear_corrupt_partitions()
        loaded.save()
        assert loaded.corrupt_partitions == ()
        assert _reload(index_dir).corrupt_partitions == ()

    def test_unreadable_manifest_requests_rebuild(self, index_dir, make_doc):
        self._two_partitions(index_dir, make_doc)
        (index_dir / MANIFEST_NAME).write_text("not json", encoding="utf-8")

        loaded = _reload(index_dir)
        assert loaded.is_empty()
        assert loaded.consume_rebuild_required() is True
        assert loaded.consume_rebuild_required() is False

    def test_manifest_lists_documents(self, index_dir, make_doc):
        self._two_partitions(index_dir, make_doc)
        data = json.loads((index_dir / MANIFEST_NAME).read_text(encoding="utf-8"))
        assert data["document_partitions"] == {"a.md": 0, "b.md": 1}
        assert [p["file"] for p in data["partitions"]] == ["partition-000.jsonl", "partition-001.jsonl"]


class TestEmbeddingModelChange:

    def test_change_clears_index_once(self, store, make_doc):
        store.upsert(make_doc("a.md", [[1, 0]], model="model-a"))
        assert store.check_and_handle_embedding_model_change("model-b") is True
        assert store.is_empty()
        assert store.embedding_model == "model-b"
        assert store.check_and_handle_embedding_model_change("model-b") is False

    def test_same_model_keeps_documents(self, store, make_doc):
        store.upsert(make_doc("a.md", [[1, 0]]))
        assert store.check_and_handle_embedding_model_change("fake-model") is False
        assert store.has_index("a.md")


class TestVectorSearch:

    def test_nearest_chunk_first(self, store, make_doc):
        store.upsert(make_doc("a.md", [[1, 0, 0]]))
        store.upsert(make_doc("b.md", [[0, 1, 0], [0, 0.9, 0.1]]))
        hits = store.vector_search(np.array([0, 1, 0], dtype=np.float32), k=2)
        assert [h.chunk_id for h in hits] == ["b.md#0", "b.md#1"]
        assert hits[0].score == pytest.approx(1.0, abs=1e-5)

    def test_ties_keep_index_order(self, store, make_doc):
        for name in ("c.md", "a.md", "b.md"):
            store.upsert(make_doc(name, [[1, 0]]))
        hits = store.vector_search(np.array([1, 0], dtype=np.float32), k=3)
        assert [h.path for h in hits] == ["a.md", "b.md", "c.md"]

    def test_empty_store(self, store):
        assert store.vector_search(np.array([1.0, 0.0]), k=5) == []

    def test_dimension_mismatch_raises(self, store, make_doc):
        store.upsert(make_doc("a.md", [[1, 0]]))
        with pytest.raises(ValueError):
            store.vector_search(np.array([1.0, 0.0, 0.0]), k=1)


class TestConcurrentAccess:

    @staticmethod
    def _version(make_doc, path, v, n_chunks):
        return make_doc(path, [[1, v]] * n_chunks, content=f"v{v}", fingerprint=f"fp{v}")

    def test_readers_never_see_half_replaced_document(self, store, make_doc):
        store.upsert(self._version(make_doc, "a.md", 0, 3))
        stop = threading.Event()
        seen: list[set[str]] = []

        def writer():
            for v in range(1, 200):
                # Chunk count changes every version so partial swaps would show
                store.upsert(self._version(make_doc, "a.md", v, 1 + v % 4))
            stop.set()

        def reader():
            while not stop.is_set():
                doc = store.get("a.md")
                seen.append({c.content for c in doc.chunks})
                hits = store.vector_search(np.array([1.0, 1.0]), 10)
                seen.append({h.content for h in hits})

        threads = [threading.Thread(target=writer)] + [threading.Thread(target=reader) for _ in range(3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert seen
        assert all(len(versions) == 1 for versions in seen)
        assert store.get("a.md").chunks[0].content == "v199"

    def test_save_during_upserts_leaves_consistent_files(self, index_dir, make_doc):
        store = _reload(index_dir, partition_max_bytes=300)
        paths = [f"n{i}.md" for i in range(8)]
        for p in paths:
            store.upsert(self._version(make_doc, p, 0, 2))

        def writer(path):
            for v in range(1, 40):
                store.upsert(self._version(make_doc, path, v, 1 + v % 3))

        threads = [threading.Thread(target=writer, args=(p,)) for p in paths]
        for t in threads:
            t.start()
        for _ in range(10):
            store.save()
        for t in threads:
            t.join(timeout=30)
        store.save()

        loaded = _reload(index_dir)
        assert loaded.corrupt_partitions == ()
        assert loaded.get_indexed_paths() == set(paths)
        for p in paths:
            doc = loaded.get(p)
            assert {c.content for c in doc.chunks} == {"v39"}
            assert len(doc.chunks) == 1 + 39 % 3
        data = json.loads((index_dir / MANIFEST_NAME).read_text(encoding="utf-8"))
        assert set(data["document_partitions"]) == set(paths)
