from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import numpy as np

from .errors import PartitionCorruptError

# Bump when ChunkMetadata gains or changes a field
METADATA_SCHEMA_VERSION = 1

_METADATA_FIELDS = ("path", "title", "tags", "mtime", "heading", "schema_version", "extra")


@dataclass(frozen=True)
class ChunkMetadata:
    """Closed, versioned metadata carried by every chunk.

    Provider- or source-specific values go in `extra`, which must stay
    JSON-serializable so partitions round-trip without loss.
    """
    path: str
    title: str
    tags: tuple[str, ...] = ()
    mtime: int = 0
    heading: str = ""
    schema_version: int = METADATA_SCHEMA_VERSION
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "title": self.title,
            "tags": list(self.tags),
            "mtime": self.mtime,
            "heading": self.heading,
            "schema_version": self.schema_version,
            "extra": dict(self.extra),
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "ChunkMetadata":
        version = int(data.get("schema_version", 1))
        if version > METADATA_SCHEMA_VERSION:
            raise PartitionCorruptError(
                str(data.get("path", "?")),
                f"metadata schema {version} is newer than supported {METADATA_SCHEMA_VERSION}",
            )
        extra = dict(data.get("extra") or {})
        # Unknown keys from older writers are preserved rather than dropped
        for key, value in data.items():
            if key not in _METADATA_FIELDS:
                extra.setdefault(key, value)
        return ChunkMetadata(
            path=str(data["path"]),
            title=str(data.get("title", "")),
            tags=tuple(data.get("tags") or ()),
            mtime=int(data.get("mtime", 0)),
            heading=str(data.get("heading", "")),
            schema_version=METADATA_SCHEMA_VERSION,
            extra=extra,
        )


@dataclass(frozen=True)
class Chunk:
    id: str
    index: int
    content: str
    embedding: np.ndarray = field(compare=False, repr=False)
    metadata: ChunkMetadata = field(compare=False)

    @staticmethod
    def make_id(path: str, index: int) -> str:
        return f"{path}#{index}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "index": self.index,
            "content": self.content,
            "embedding": [float(x) for x in np.asarray(self.embedding, dtype=np.float32)],
            "metadata": self.metadata.to_dict(),
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "Chunk":
        return Chunk(
            id=str(data["id"]),
            index=int(data["index"]),
            content=str(data["content"]),
            embedding=np.asarray(data["embedding"], dtype=np.float32),
            metadata=ChunkMetadata.from_dict(data["metadata"]),
        )


@dataclass(frozen=True)
class IndexedDocument:
    """A document's complete chunk set plus bookkeeping.

    Chunks are always replaced wholesale; a stored IndexedDocument is never
    mutated in place.
    """
    path: str
    fingerprint: str
    embedding_model: str
    chunks: tuple[Chunk, ...]
    created_at: int
    title: str = ""
    mtime: int = 0
    size: int = 0
    tags: tuple[str, ...] = ()

    @property
    def dims(self) -> int:
        if not self.chunks:
            return 0
        return int(np.asarray(self.chunks[0].embedding).shape[-1])

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "fingerprint": self.fingerprint,
            "embedding_model": self.embedding_model,
            "created_at": self.created_at,
            "title": self.title,
            "mtime": self.mtime,
            "size": self.size,
            "tags": list(self.tags),
            "chunks": [c.to_dict() for c in self.chunks],
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "IndexedDocument":
        return IndexedDocument(
            path=str(data["path"]),
            fingerprint=str(data["fingerprint"]),
            embedding_model=str(data["embedding_model"]),
            chunks=tuple(Chunk.from_dict(c) for c in data.get("chunks", [])),
            created_at=int(data.get("created_at", 0)),
            title=str(data.get("title", "")),
            mtime=int(data.get("mtime", 0)),
            size=int(data.get("size", 0)),
            tags=tuple(data.get("tags") or ()),
        )


@dataclass(frozen=True)
class SourceDocument:
    """A candidate note as yielded by a document source."""
    path: str
    title: str
    mtime: int
    size: int
    content: str
    tags: tuple[str, ...] = ()
    ctime: int = 0


@dataclass(frozen=True)
class ChunkHit:
    """One chunk matched by vector search."""
    path: str
    chunk_id: str
    score: float
    content: str
    mtime: int
    title: str = ""
    tags: tuple[str, ...] = ()


@dataclass(frozen=True)
class ScoredDocument:
    path: str
    title: str
    score: float
    semantic_score: float
    lexical_score: float
    source: str  # semantic|lexical|hybrid
    chunk_id: str | None = None
    snippet: str = ""
    mtime: int = 0
    tags: tuple[str, ...] = ()


@dataclass
class SyncSummary:
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    removed: int = 0
    cancelled: bool = False
    rebuild_required: bool = False
    failed_paths: list[str] = field(default_factory=list)
    elapsed_seconds: float = 0.0
    state: str = "idle"


@dataclass(frozen=True)
class IndexStats:
    indexed_document_count: int
    chunk_count: int
    partition_count: int
    missing_embeddings_count: int
    embedding_model_id: str | None
    corrupt_partitions: tuple[str, ...] = ()
