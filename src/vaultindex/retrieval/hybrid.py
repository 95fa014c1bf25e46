from __future__ import annotations

from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Callable, Sequence

from ..models import ChunkHit, IndexedDocument, ScoredDocument
from .lexical import LexicalHit, strip_chunk_header

SNIPPET_CHARS = 300


@dataclass(frozen=True)
class RetrievalWeights:
    semantic_weight: float = 0.6

    def __post_init__(self) -> None:
        if not 0.0 <= self.semantic_weight <= 1.0:
            raise ValueError(f"semantic_weight must be between 0.0 and 1.0, got {self.semantic_weight}")

    @property
    def lexical_weight(self) -> float:
        return 1.0 - self.semantic_weight


@dataclass
class _Candidate:
    path: str
    order: int
    semantic: float = 0.0
    lexical: float = 0.0
    has_semantic: bool = False
    has_lexical: bool = False
    chunk_id: str | None = None
    snippet: str = ""
    title: str = ""
    mtime: int = 0
    tags: tuple[str, ...] = ()

    def final(self, w: RetrievalWeights) -> float:
        return w.semantic_weight * self.semantic + w.lexical_weight * self.lexical

    @property
    def source(self) -> str:
        if self.has_semantic and self.has_lexical:
            return "hybrid"
        return "semantic" if self.has_semantic else "lexical"


@dataclass
class HybridRanker:
    """Merge semantic chunk hits and lexical document hits into ranked documents.

    finalScore = w * semantic + (1 - w) * lexical, where a document's
    semantic score is its best chunk's similarity (max aggregation). Paths
    that differ only by case collapse to the higher-scoring variant, with
    ties going to the newer mtime. Equal final scores keep discovery order:
    semantic hits first, then lexical-only hits.
    """

    snippet_chars: int = SNIPPET_CHARS

    def merge(
        self,
        semantic: Sequence[ChunkHit],
        lexical: Sequence[LexicalHit],
        k: int,
        weights: RetrievalWeights,
        lookup: Callable[[str], IndexedDocument | None] | None = None,
    ) -> list[ScoredDocument]:
        by_path: dict[str, _Candidate] = {}

        for hit in semantic:
            c = by_path.get(hit.path)
            if c is None:
                c = by_path[hit.path] = _Candidate(
                    path=hit.path, order=len(by_path), title=hit.title, mtime=hit.mtime, tags=hit.tags,
                )
            if not c.has_semantic or hit.score > c.semantic:
                c.semantic = hit.score
                c.chunk_id = hit.chunk_id
                c.snippet = self._snippet(hit.content, hit.title)
            c.has_semantic = True

        for hit in lexical:
            c = by_path.get(hit.path)
            if c is None:
                c = by_path[hit.path] = self._from_lookup(hit, len(by_path), lookup)
            c.lexical = max(c.lexical, hit.score)
            c.has_lexical = True

        # Case-insensitive dedupe
        kept: dict[str, _Candidate] = {}
        for c in by_path.values():
            key = c.path.lower()
            other = kept.get(key)
            if other is None or self._beats(c, other, weights):
                kept[key] = c

        ranked = sorted(kept.values(), key=lambda c: (-c.final(weights), c.order))
        out: list[ScoredDocument] = []
        for c in ranked:
            score = c.final(weights)
            if score <= 0.0:
                continue
            out.append(ScoredDocument(
                path=c.path,
                title=c.title,
                score=score,
                semantic_score=c.semantic,
                lexical_score=c.lexical,
                source=c.source,
                chunk_id=c.chunk_id,
                snippet=c.snippet,
                mtime=c.mtime,
                tags=c.tags,
            ))
            if len(out) >= k:
                break
        return out

    @staticmethod
    def _beats(a: _Candidate, b: _Candidate, weights: RetrievalWeights) -> bool:
        fa, fb = a.final(weights), b.final(weights)
        if fa != fb:
            return fa > fb
        if a.mtime != b.mtime:
            return a.mtime > b.mtime
        return a.order < b.order

    def _from_lookup(
        self,
        hit: LexicalHit,
        order: int,
        lookup: Callable[[str], IndexedDocument | None] | None,
    ) -> _Candidate:
        doc = lookup(hit.path) if lookup is not None else None
        if doc is None:
            return _Candidate(path=hit.path, order=order, chunk_id=hit.chunk_id, title=PurePosixPath(hit.path).stem)

        snippet = ""
        chunk_id = hit.chunk_id
        chunk = next((ch for ch in doc.chunks if ch.id == chunk_id), None)
        if chunk is None and doc.chunks:
            chunk = doc.chunks[0]
            chunk_id = chunk.id
        if chunk is not None:
            snippet = self._snippet(chunk.content, doc.title)
        return _Candidate(
            path=hit.path,
            order=order,
            chunk_id=chunk_id,
            snippet=snippet,
            title=doc.title,
            mtime=doc.mtime,
            tags=doc.tags,
        )

    def _snippet(self, content: str, title: str) -> str:
        return strip_chunk_header(content, title)[: self.snippet_chars].strip()
