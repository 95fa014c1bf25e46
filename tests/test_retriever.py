"""Tests for end-to-end hybrid retrieval over a synced index."""
from __future__ import annotations

import pytest

from vaultindex.errors import EmbeddingModelMismatchError
from vaultindex.retrieval.hybrid import RetrievalWeights
from vaultindex.retrieval.retriever import HybridRetriever

from conftest import FakeEmbeddingProvider


@pytest.fixture
def retriever(make_engine, store, provider):
    make_engine().sync()
    r = HybridRetriever(store, provider, top_k=5)
    yield r
    r.lexical.close()


class TestHybridRetriever:

    def test_relevant_note_ranks_first(self, retriever):
        results = retriever.retrieve("bananas tropical fruit")
        assert results[0].path == "notes/beta.md"
        assert results[0].source == "hybrid"
        assert results[0].snippet.startswith("Beta note")

    def test_empty_query_returns_nothing(self, retriever):
        assert retriever.retrieve("") == []
        assert retriever.retrieve("   ") == []

    def test_k_caps_results(self, retriever):
        assert len(retriever.retrieve("note about", k=1)) == 1

    def test_zero_k_returns_nothing(self, retriever):
        assert retriever.retrieve("bananas", k=0) == []
        assert retriever.retrieve("bananas", k=-3) == []

    def test_omitted_k_uses_default(self, retriever):
        assert len(retriever.retrieve("note about")) == 3

    def test_repeated_queries_rank_identically(self, retriever):
        first = retriever.retrieve("note about fruit", k=3)
        for _ in range(5):
            again = retriever.retrieve("note about fruit", k=3)
            assert [(r.path, r.score, r.chunk_id) for r in again] == [(r.path, r.score, r.chunk_id) for r in first]

    def test_float_weight_accepted(self, retriever):
        lexical_only = retriever.retrieve("cherries", weights=0.0)
        assert [r.path for r in lexical_only] == ["journal/gamma.md"]
        assert lexical_only[0].score == pytest.approx(1.0)

    def test_weights_object_accepted(self, retriever):
        results = retriever.retrieve("cherries", weights=RetrievalWeights(1.0))
        assert results
        assert all(r.source != "lexical" for r in results)

    def test_model_mismatch_raises(self, retriever, provider):
        provider.model_id = "different-model"
        with pytest.raises(EmbeddingModelMismatchError):
            retriever.retrieve("bananas")

    def test_dimension_mismatch_raises(self, make_engine, store, provider):
        make_engine().sync()
        other = FakeEmbeddingProvider(model_id=provider.model_id, dims=8)
        with pytest.raises(EmbeddingModelMismatchError):
            HybridRetriever(store, other).retrieve("bananas")

    def test_empty_index(self, store, provider):
        assert HybridRetriever(store, provider).retrieve("anything") == []


class TestSimilarNotes:

    @pytest.fixture
    def similar_store(self, store, make_doc):
        store.upsert(make_doc("a.md", [[1, 0], [0, 1]]))
        store.upsert(make_doc("b.md", [[1, 1]]))
        store.upsert(make_doc("c.md", [[1, 0]]))
        store.upsert(make_doc("d.md", [[-1, -1]]))
        return store

    def test_neighbours_ranked_by_mean_embedding(self, similar_store, provider):
        results = HybridRetriever(similar_store, provider).similar_notes("a.md")
        assert [r.path for r in results] == ["b.md", "c.md"]
        assert results[0].score == pytest.approx(1.0, abs=1e-5)
        assert results[1].score == pytest.approx(0.7071, abs=1e-3)
        assert all(r.source == "semantic" for r in results)

    def test_note_never_lists_itself(self, similar_store, provider):
        results = HybridRetriever(similar_store, provider).similar_notes("c.md")
        assert "c.md" not in [r.path for r in results]
        assert results[0].path == "a.md"

    def test_no_provider_call(self, similar_store, provider):
        HybridRetriever(similar_store, provider).similar_notes("a.md")
        assert provider.calls == 0

    def test_k_and_min_similarity(self, similar_store, provider):
        r = HybridRetriever(similar_store, provider, min_similarity=0.9)
        assert [x.path for x in r.similar_notes("a.md")] == ["b.md"]
        assert len(HybridRetriever(similar_store, provider).similar_notes("a.md", k=1)) == 1
        assert HybridRetriever(similar_store, provider).similar_notes("a.md", k=0) == []

    def test_unknown_or_empty_note(self, similar_store, provider, make_doc):
        r = HybridRetriever(similar_store, provider)
        assert r.similar_notes("nope.md") == []
        similar_store.upsert(make_doc("empty.md", []))
        assert r.similar_notes("empty.md") == []

    def test_model_mismatch_raises(self, similar_store, provider):
        provider.model_id = "different-model"
        with pytest.raises(EmbeddingModelMismatchError):
            HybridRetriever(similar_store, provider).similar_notes("a.md")
