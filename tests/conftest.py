"""Shared fixtures: a deterministic embedder and an in-memory vault."""
from __future__ import annotations

import hashlib
import re
import threading
from pathlib import Path, PurePosixPath
from typing import Callable, Sequence

import numpy as np
import pytest

from vaultindex.chunking.markdown_chunker import MarkdownChunker
from vaultindex.embeddings.pipeline import EmbeddingPipeline
from vaultindex.errors import DocumentReadError
from vaultindex.indexer.sync import SyncControl, SyncEngine
from vaultindex.models import Chunk, ChunkMetadata, IndexedDocument, SourceDocument
from vaultindex.store.missing import MISSING_EMBEDDINGS_NAME, MissingEmbeddingSet
from vaultindex.store.partitioned_store import PartitionedStore

TOKEN_RE = re.compile(r"\w+")


class FakeEmbeddingProvider:
    """Hashed bag-of-words vectors; same text, same vector.

    `fail_on` makes any batch containing that substring raise `error`.
    `on_call` runs at the start of every embed_documents call.
    """

    def __init__(self, model_id: str = "fake-model", dims: int = 32) -> None:
        self.model_id = model_id
        self.dims = dims
        self.calls = 0
        self.texts_embedded = 0
        self.fail_on: str | None = None
        self.error: Exception = ValueError("400 Bad Request")
        self.on_call: Callable[["FakeEmbeddingProvider"], None] | None = None
        self._lock = threading.Lock()

    def vector(self, text: str) -> np.ndarray:
        v = np.zeros(self.dims, dtype=np.float32)
        for tok in TOKEN_RE.findall(text.lower()):
            h = int(hashlib.blake2b(tok.encode("utf-8"), digest_size=4).hexdigest(), 16)
            v[h % self.dims] += 1.0
        if not v.any():
            v[0] = 1.0
        return v

    def embed_documents(self, texts: Sequence[str]) -> np.ndarray:
        with self._lock:
            self.calls += 1
            self.texts_embedded += len(texts)
        if self.on_call is not None:
            self.on_call(self)
        if self.fail_on and any(self.fail_on in t for t in texts):
            raise self.error
        return np.vstack([self.vector(t) for t in texts])

    def embed_query(self, query: str) -> np.ndarray:
        return self.vector(query)


class InMemoryDocumentSource:
    """DocumentSource over a dict, for sync tests that need no filesystem.

    Paths in `locked` exist but fail to read, like a note held open by
    another program.
    """

    def __init__(self) -> None:
        self.docs: dict[str, SourceDocument] = {}
        self.locked: set[str] = set()
        self.unreadable: set[str] = set()

    def put(self, path: str, content: str, tags: Sequence[str] = (), mtime: int = 1000) -> None:
        self.docs[path] = SourceDocument(
            path=path,
            title=PurePosixPath(path).stem,
            mtime=mtime,
            size=len(content),
            content=content,
            tags=tuple(tags),
        )

    def remove(self, path: str) -> None:
        del self.docs[path]

    def list_candidate_documents(self, filters=None):
        self.unreadable = set()
        for path in sorted(self.docs):
            if path in self.locked:
                self.unreadable.add(path)
                continue
            doc = self.docs[path]
            if filters is not None and not filters.matches(doc.path, doc.tags):
                continue
            yield doc

    def read_document(self, path: str) -> SourceDocument | None:
        if path in self.locked:
            raise DocumentReadError(path, "locked")
        return self.docs.get(path)


@pytest.fixture
def provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture
def source() -> InMemoryDocumentSource:
    src = InMemoryDocumentSource()
    src.put("notes/alpha.md", "Alpha note about apples and orchards.")
    src.put("notes/beta.md", "Beta note about bananas and tropical fruit.", tags=["fruit"])
    src.put("journal/gamma.md", "Gamma entry about cherries.", tags=["private"])
    return src


@pytest.fixture
def index_dir(tmp_path: Path) -> Path:
    return tmp_path / "index"


@pytest.fixture
def store(index_dir: Path) -> PartitionedStore:
    s = PartitionedStore(index_dir)
    s.load()
    return s


@pytest.fixture
def missing(index_dir: Path) -> MissingEmbeddingSet:
    return MissingEmbeddingSet(index_dir / MISSING_EMBEDDINGS_NAME)


@pytest.fixture
def make_engine(store, source, provider, missing):
    """Build a SyncEngine that embeds one chunk per batch, without backoff sleeps."""

    def factory(**kwargs) -> SyncEngine:
        pipeline = kwargs.pop("pipeline", None) or EmbeddingPipeline(
            batch_size=1, max_concurrency=1, retry_backoff_ms=0, max_retries=1
        )
        return SyncEngine(
            backend=kwargs.pop("backend", store),
            source=kwargs.pop("source", source),
            provider=kwargs.pop("provider", provider),
            pipeline=pipeline,
            chunker=kwargs.pop("chunker", MarkdownChunker(max_chunk_size=1000, overlap_chars=50)),
            missing=kwargs.pop("missing", missing),
            control=kwargs.pop("control", SyncControl()),
            **kwargs,
        )

    return factory


@pytest.fixture
def make_doc():
    """Build an IndexedDocument with one chunk per given vector."""

    def factory(
        path: str,
        vectors: Sequence[Sequence[float]],
        model: str = "fake-model",
        content: str | None = None,
        mtime: int = 1000,
        fingerprint: str = "fp",
    ) -> IndexedDocument:
        title = PurePosixPath(path).stem
        chunks = tuple(
            Chunk(
                id=Chunk.make_id(path, i),
                index=i,
                content=content if content is not None else f"{title} chunk {i}",
                embedding=np.asarray(vec, dtype=np.float32),
                metadata=ChunkMetadata(path=path, title=title, mtime=mtime),
            )
            for i, vec in enumerate(vectors)
        )
        return IndexedDocument(
            path=path,
            fingerprint=fingerprint,
            embedding_model=model,
            chunks=chunks,
            created_at=1,
            title=title,
            mtime=mtime,
        )

    return factory
