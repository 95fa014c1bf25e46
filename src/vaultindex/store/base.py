from __future__ import annotations

from typing import Protocol, Sequence
import numpy as np

from ..models import ChunkHit, IndexedDocument


class IndexBackend(Protocol):
    """Durable document -> chunk vectors store.

    `upsert` replaces a document's chunks as one unit; readers see either
    the old or the new chunk set. Writes are buffered until `save()`.
    """

    def upsert(self, document: IndexedDocument) -> IndexedDocument: ...
    def remove_by_path(self, path: str) -> None: ...
    def get_indexed_paths(self) -> set[str]: ...
    def get_latest_modified_time(self) -> int: ...
    def is_empty(self) -> bool: ...
    def has_index(self, path: str) -> bool: ...
    def get(self, path: str) -> IndexedDocument | None: ...
    def documents(self) -> Sequence[IndexedDocument]: ...
    def check_and_handle_embedding_model_change(self, model_id: str) -> bool: ...
    def vector_search(self, query_vec: np.ndarray, k: int) -> list[ChunkHit]: ...
    def clear(self, embedding_model: str | None = None) -> None: ...
    def save(self) -> None: ...
    def consume_rebuild_required(self) -> bool: ...
    def clear_corrupt_partitions(self) -> None: ...

    @property
    def embedding_model(self) -> str | None: ...

    @property
    def dims(self) -> int: ...

    @property
    def generation(self) -> int: ...

    @property
    def partition_count(self) -> int: ...

    @property
    def chunk_count(self) -> int: ...

    @property
    def corrupt_partitions(self) -> tuple[str, ...]: ...
