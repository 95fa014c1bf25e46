from __future__ import annotations

import logging
from dataclasses import replace

import numpy as np

from ..embeddings.base import EmbeddingProvider
from ..errors import EmbeddingModelMismatchError
from ..models import ScoredDocument
from ..store.base import IndexBackend
from .hybrid import HybridRanker, RetrievalWeights
from .lexical import Fts5LexicalIndex, LexicalSearcher

logger = logging.getLogger(__name__)


class HybridRetriever:
    """Semantic + lexical retrieval over one IndexBackend.

    Query embedding failures propagate; so does an index built with a
    different embedding model, since mixed embedding spaces give
    meaningless distances.
    """

    def __init__(
        self,
        backend: IndexBackend,
        provider: EmbeddingProvider,
        lexical: LexicalSearcher | None = None,
        ranker: HybridRanker | None = None,
        top_k: int = 10,
        candidate_multiplier: int = 3,
        min_similarity: float = 0.0,
        weights: RetrievalWeights | None = None,
    ) -> None:
        self.backend = backend
        self.provider = provider
        self.lexical = lexical if lexical is not None else Fts5LexicalIndex(backend)
        self.ranker = ranker or HybridRanker()
        self.top_k = top_k
        self.candidate_multiplier = candidate_multiplier
        self.min_similarity = min_similarity
        self.weights = weights or RetrievalWeights()

    def retrieve(
        self,
        query: str,
        k: int | None = None,
        weights: RetrievalWeights | float | None = None,
    ) -> list[ScoredDocument]:
        if not query or not query.strip():
            return []
        k = self.top_k if k is None else k
        if k <= 0:
            return []
        if isinstance(weights, (int, float)):
            weights = RetrievalWeights(float(weights))
        weights = weights or self.weights
        n_candidates = k * self.candidate_multiplier

        semantic = []
        if not self.backend.is_empty():
            index_model = self._check_model()

            qv = np.asarray(self.provider.embed_query(query), dtype=np.float32).ravel()
            dims = self.backend.dims
            if dims and qv.shape[0] != dims:
                raise EmbeddingModelMismatchError(
                    index_model, self.provider.model_id, f"query dimension {qv.shape[0]} != index dimension {dims}"
                )
            for hit in self.backend.vector_search(qv, n_candidates):
                if hit.score < self.min_similarity:
                    continue
                semantic.append(replace(hit, score=max(hit.score, 0.0)))

        lexical = self.lexical.search(query, n_candidates)
        results = self.ranker.merge(semantic, lexical, k, weights, lookup=self.backend.get)
        logger.debug(
            f"Query {query!r}: {len(semantic)} semantic, {len(lexical)} lexical candidates -> {len(results)} results"
        )
        return results

    def similar_notes(self, path: str, k: int | None = None) -> list[ScoredDocument]:
        """Notes whose chunks lie closest to the mean embedding of `path`.

        Uses only stored vectors, so no provider call is made. The note
        itself never appears in the results; an unindexed note has no
        neighbours.
        """
        k = self.top_k if k is None else k
        if k <= 0:
            return []
        doc = self.backend.get(path)
        if doc is None or not doc.chunks:
            return []
        self._check_model()

        centroid = np.mean(
            np.stack([np.asarray(ch.embedding, dtype=np.float32).ravel() for ch in doc.chunks]), axis=0
        )
        own = path.lower()
        semantic = []
        # Over-fetch: the note's own chunks are likely the nearest hits
        for hit in self.backend.vector_search(centroid, k * self.candidate_multiplier + len(doc.chunks)):
            if hit.path.lower() == own or hit.score < self.min_similarity:
                continue
            semantic.append(replace(hit, score=max(hit.score, 0.0)))

        results = self.ranker.merge(semantic, [], k, RetrievalWeights(1.0), lookup=self.backend.get)
        logger.debug(f"Similar to {path!r}: {len(semantic)} candidates -> {len(results)} results")
        return results

    def _check_model(self) -> str | None:
        index_model = self.backend.embedding_model
        if index_model is not None and index_model != self.provider.model_id:
            raise EmbeddingModelMismatchError(index_model, self.provider.model_id)
        return index_model
