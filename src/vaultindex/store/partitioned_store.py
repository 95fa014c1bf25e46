from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path

import numpy as np

from ..errors import EmbeddingModelMismatchError, ManifestError, PartitionCorruptError
from ..models import ChunkHit, IndexedDocument
from ..utils import now_ms
from .partitions import (
    PARTITION_DIR,
    Manifest,
    PartitionInfo,
    encode_document,
    encoded_size,
    parse_partition_id,
    partition_filename,
    read_manifest,
    read_partition,
    write_manifest,
    write_partition,
)

logger = logging.getLogger(__name__)

DEFAULT_PARTITION_MAX_BYTES = 150 * 1024 * 1024


@dataclass(frozen=True)
class _SaveSnapshot:
    writes: dict[int, list[str]]
    keep: set[int]
    quarantine: dict[int, str]
    manifest: Manifest


class PartitionedStore:
    """In-memory document map persisted as size-bounded JSONL partitions.

    Locking:
    - `_lock` guards every in-memory structure. Readers copy under it, so a
      document swap is atomic from their point of view.
    - one lock per path serializes writers of the same document.
    - `_save_lock` serializes saves so an older snapshot never lands on
      disk after a newer one.
    """

    def __init__(self, index_dir: Path, partition_max_bytes: int = DEFAULT_PARTITION_MAX_BYTES) -> None:
        self.index_dir = Path(index_dir)
        self.partition_max_bytes = int(partition_max_bytes)

        self._lock = threading.RLock()
        self._save_lock = threading.Lock()
        self._path_locks: dict[str, threading.Lock] = {}
        self._path_locks_guard = threading.Lock()

        self._docs: dict[str, IndexedDocument] = {}
        self._lines: dict[str, str] = {}
        self._doc_partition: dict[str, int] = {}
        self._partitions: dict[int, set[str]] = {}
        self._partition_sizes: dict[int, int] = {}
        self._active: int | None = None
        self._dirty: set[int] = set()
        self._manifest_dirty = False
        # Reported until a sync clears them; quarantined files are moved aside on save
        self._corrupt: dict[int, str] = {}
        self._quarantine: dict[int, str] = {}

        self._embedding_model: str | None = None
        self._dims = 0
        self._generation = 0
        self._rebuild_required = False
        self._matrix_cache: tuple[int, np.ndarray, list[tuple[IndexedDocument, int]]] | None = None

    # -- loading -----------------------------------------------------------

    @property
    def partition_dir(self) -> Path:
        return self.index_dir / PARTITION_DIR

    def load(self) -> None:
        """Read the manifest and every partition.

        A corrupt partition is skipped and reported; the rest stay usable. An
        unreadable manifest leaves the store empty and flags a rebuild.
        """
        with self._lock:
            self._reset_memory()
            self._dirty.clear()
            self._corrupt.clear()
            self._quarantine.clear()
            try:
                manifest = read_manifest(self.index_dir)
            except ManifestError as e:
                logger.error(f"{e}; index will be rebuilt")
                self._rebuild_required = True
                self._manifest_dirty = True
                return

            if manifest is not None:
                self._embedding_model = manifest.embedding_model
                self._dims = manifest.dims
                self._corrupt.update(manifest.corrupt_partitions)

            # Files are self-describing; pick up any the manifest missed
            ids = set(manifest.partitions) if manifest else set()
            if self.partition_dir.exists():
                for p in self.partition_dir.iterdir():
                    pid = parse_partition_id(p.name)
                    if pid is not None:
                        ids.add(pid)

            for pid in sorted(ids):
                path = self.partition_dir / partition_filename(pid)
                try:
                    header, docs = read_partition(path)
                except PartitionCorruptError as e:
                    logger.warning(f"{e}; its documents are excluded until re-indexed")
                    self._corrupt[pid] = e.reason
                    self._quarantine[pid] = e.reason
                    continue

                if self._embedding_model is None:
                    self._embedding_model = header.get("embedding_model")
                self._partitions[pid] = set()
                self._partition_sizes[pid] = 0
                for doc, line in docs:
                    if doc.path in self._docs:
                        # Duplicate from an interrupted move; the later partition wins
                        self._detach(doc.path)
                    self._attach(doc, line, pid)

            if not self._dims:
                self._dims = next((d.dims for d in self._docs.values() if d.dims), 0)
            healthy = [pid for pid in self._partitions if self._partitions[pid]]
            self._active = max(healthy) if healthy else None
            self._generation += 1
            logger.info(
                f"Loaded {len(self._docs)} documents from {len(self._partitions)} partitions"
                + (f" ({len(self._quarantine)} corrupt)" if self._quarantine else "")
            )

    def _reset_memory(self) -> None:
        self._docs.clear()
        self._lines.clear()
        self._doc_partition.clear()
        self._partitions.clear()
        self._partition_sizes.clear()
        self._active = None
        self._matrix_cache = None

    # -- placement ---------------------------------------------------------

    def _attach(self, doc: IndexedDocument, line: str, pid: int) -> None:
        self._docs[doc.path] = doc
        self._lines[doc.path] = line
        self._doc_partition[doc.path] = pid
        self._partitions.setdefault(pid, set()).add(doc.path)
        self._partition_sizes[pid] = self._partition_sizes.get(pid, 0) + encoded_size(line)

    def _detach(self, path: str) -> int | None:
        pid = self._doc_partition.pop(path, None)
        line = self._lines.pop(path, None)
        self._docs.pop(path, None)
        if pid is not None:
            self._partitions[pid].discard(path)
            if line is not None:
                self._partition_sizes[pid] -= encoded_size(line)
            self._dirty.add(pid)
        return pid

    def _next_partition_id(self) -> int:
        known = set(self._partitions) | set(self._corrupt) | set(self._quarantine)
        return max(known) + 1 if known else 0

    def _choose_partition(self, path: str, size: int) -> int:
        current = self._doc_partition.get(path)
        if current is not None:
            old = encoded_size(self._lines[path])
            if self._partition_sizes[current] - old + size <= self.partition_max_bytes:
                return current
            if len(self._partitions[current]) == 1:
                return current

        active = self._active
        if active is not None and active != current:
            if self._partition_sizes[active] + size <= self.partition_max_bytes or not self._partitions[active]:
                return active

        new_pid = self._next_partition_id()
        self._partitions[new_pid] = set()
        self._partition_sizes[new_pid] = 0
        self._active = new_pid
        logger.info(f"Opened partition {new_pid}")
        return new_pid

    def _path_lock(self, path: str) -> threading.Lock:
        with self._path_locks_guard:
            lock = self._path_locks.get(path)
            if lock is None:
                lock = self._path_locks[path] = threading.Lock()
            return lock

    # -- writes ------------------------------------------------------------

    def upsert(self, document: IndexedDocument) -> IndexedDocument:
        for chunk in document.chunks:
            if chunk.metadata.path != document.path:
                raise ValueError(f"Chunk {chunk.id} belongs to {chunk.metadata.path}, not {document.path}")

        line = encode_document(document)
        size = encoded_size(line)

        with self._path_lock(document.path):
            with self._lock:
                if self._embedding_model is not None and document.embedding_model != self._embedding_model:
                    raise EmbeddingModelMismatchError(self._embedding_model, document.embedding_model)
                if self._dims and document.dims and document.dims != self._dims:
                    raise EmbeddingModelMismatchError(
                        self._embedding_model, document.embedding_model,
                        f"dimension {document.dims} != {self._dims}",
                    )

                pid = self._choose_partition(document.path, size)
                if document.path in self._docs:
                    self._detach(document.path)
                self._attach(document, line, pid)
                self._dirty.add(pid)

                if self._embedding_model is None:
                    self._embedding_model = document.embedding_model
                    self._manifest_dirty = True
                if not self._dims and document.dims:
                    self._dims = document.dims
                    self._manifest_dirty = True
                self._generation += 1
        return document

    def remove_by_path(self, path: str) -> None:
        with self._path_lock(path):
            with self._lock:
                if path not in self._docs:
                    return
                self._detach(path)
                self._generation += 1

    def clear(self, embedding_model: str | None = None) -> None:
        """Drop every document. Partition files go away on the next save."""
        with self._lock:
            for pid in list(self._partitions):
                self._dirty.add(pid)
            n = len(self._docs)
            self._reset_memory()
            self._dirty = set()
            self._embedding_model = embedding_model
            self._dims = 0
            self._manifest_dirty = True
            self._generation += 1
        logger.info(f"Cleared index ({n} documents)")

    def check_and_handle_embedding_model_change(self, model_id: str) -> bool:
        """Clear the index if any document was embedded with another model.

        Returns True when a rebuild was triggered.
        """
        with self._lock:
            stale = [d.path for d in self._docs.values() if d.embedding_model != model_id]
            if stale:
                previous = self._embedding_model
                self.clear(embedding_model=model_id)
                logger.warning(
                    f"Embedding model changed from {previous!r} to {model_id!r}; "
                    f"cleared {len(stale)} stale documents, full rebuild required"
                )
                return True
            if self._embedding_model != model_id:
                self._embedding_model = model_id
                self._dims = 0 if not self._docs else self._dims
                self._manifest_dirty = True
            return False

    def clear_corrupt_partitions(self) -> None:
        """Forget corrupt partitions once a sync has re-indexed their documents."""
        with self._lock:
            if not self._corrupt:
                return
            logger.info(f"Clearing {len(self._corrupt)} corrupt partition record(s)")
            self._corrupt.clear()
            self._manifest_dirty = True

    def consume_rebuild_required(self) -> bool:
        """Return and reset the flag set by an unreadable manifest."""
        with self._lock:
            flag = self._rebuild_required
            self._rebuild_required = False
            return flag

    # -- persistence -------------------------------------------------------

    def save(self) -> None:
        """Persist dirty partitions and the manifest.

        Takes a consistent snapshot under the store lock and writes outside
        it, so upserts for other paths may continue meanwhile.
        """
        with self._save_lock:
            snap = self._snapshot_for_save()
            if snap is None:
                return
            try:
                self._write_snapshot(snap)
            except OSError:
                with self._lock:
                    self._dirty.update(snap.writes)
                    self._quarantine.update(snap.quarantine)
                    self._manifest_dirty = True
                raise

    def _snapshot_for_save(self) -> _SaveSnapshot | None:
        with self._lock:
            if not self._dirty and not self._manifest_dirty and not self._quarantine:
                return None

            writes: dict[int, list[str]] = {}
            for pid in self._dirty:
                paths = self._partitions.get(pid)
                if paths:
                    writes[pid] = [self._lines[p] for p in sorted(paths)]

            keep = {pid for pid, paths in self._partitions.items() if paths}
            manifest = Manifest(
                embedding_model=self._embedding_model,
                dims=self._dims,
                partitions={
                    pid: PartitionInfo(
                        id=pid,
                        file=partition_filename(pid),
                        size_bytes=self._partition_sizes[pid],
                        documents=len(self._partitions[pid]),
                    )
                    for pid in sorted(keep)
                },
                document_partitions=dict(self._doc_partition),
                corrupt_partitions=dict(self._corrupt),
                updated_at=now_ms(),
            )
            quarantine = dict(self._quarantine)

            # Empty partitions are dropped from memory once snapshotted
            for pid in [pid for pid, paths in self._partitions.items() if not paths]:
                del self._partitions[pid]
                del self._partition_sizes[pid]
                if self._active == pid:
                    self._active = None
            self._dirty.clear()
            self._quarantine.clear()
            self._manifest_dirty = False
            return _SaveSnapshot(writes=writes, keep=keep, quarantine=quarantine, manifest=manifest)

    def _write_snapshot(self, snap: _SaveSnapshot) -> None:
        self.partition_dir.mkdir(parents=True, exist_ok=True)
        m = snap.manifest
        for pid, lines in snap.writes.items():
            path = self.partition_dir / partition_filename(pid)
            m.partitions[pid].size_bytes = write_partition(path, pid, m.embedding_model, m.dims, lines)

        for pid, reason in snap.quarantine.items():
            path = self.partition_dir / partition_filename(pid)
            if path.exists():
                path.replace(path.with_name(path.name + ".corrupt"))
                logger.warning(f"Moved corrupt partition {path.name} aside ({reason})")

        for p in self.partition_dir.iterdir():
            pid = parse_partition_id(p.name)
            if pid is not None and pid not in snap.keep:
                p.unlink()

        write_manifest(self.index_dir, m)
        logger.debug(f"Saved {len(snap.writes)} partitions, {len(m.document_partitions)} documents")

    # -- reads -------------------------------------------------------------

    @property
    def embedding_model(self) -> str | None:
        with self._lock:
            return self._embedding_model

    @property
    def dims(self) -> int:
        with self._lock:
            return self._dims

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    @property
    def partition_count(self) -> int:
        with self._lock:
            return sum(1 for paths in self._partitions.values() if paths)

    @property
    def corrupt_partitions(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(partition_filename(pid) for pid in sorted(self._corrupt))

    @property
    def chunk_count(self) -> int:
        with self._lock:
            return sum(len(d.chunks) for d in self._docs.values())

    def get(self, path: str) -> IndexedDocument | None:
        with self._lock:
            return self._docs.get(path)

    def documents(self) -> list[IndexedDocument]:
        with self._lock:
            return [self._docs[p] for p in sorted(self._docs)]

    def get_indexed_paths(self) -> set[str]:
        with self._lock:
            return set(self._docs)

    def get_latest_modified_time(self) -> int:
        with self._lock:
            return max((d.mtime for d in self._docs.values()), default=0)

    def is_empty(self) -> bool:
        with self._lock:
            return not self._docs

    def has_index(self, path: str) -> bool:
        with self._lock:
            return path in self._docs

    def partition_of(self, path: str) -> int | None:
        with self._lock:
            return self._doc_partition.get(path)

    def _vector_matrix(self) -> tuple[np.ndarray, list[tuple[IndexedDocument, int]]]:
        """Row-normalized chunk matrix for the current generation."""
        with self._lock:
            cached = self._matrix_cache
            if cached is not None and cached[0] == self._generation:
                return cached[1], cached[2]

            refs: list[tuple[IndexedDocument, int]] = []
            rows: list[np.ndarray] = []
            for path in sorted(self._docs):
                doc = self._docs[path]
                for i, chunk in enumerate(doc.chunks):
                    vec = np.asarray(chunk.embedding, dtype=np.float32).ravel()
                    if vec.size == 0 or vec.shape[0] != self._dims:
                        continue
                    refs.append((doc, i))
                    rows.append(vec)

            if rows:
                matrix = np.vstack(rows)
                matrix = matrix / (np.linalg.norm(matrix, axis=1, keepdims=True) + 1e-12)
            else:
                matrix = np.zeros((0, self._dims), dtype=np.float32)
            self._matrix_cache = (self._generation, matrix, refs)
            return matrix, refs

    def vector_search(self, query_vec: np.ndarray, k: int) -> list[ChunkHit]:
        """Brute-force cosine similarity over every chunk of healthy partitions."""
        if k <= 0:
            return []
        matrix, refs = self._vector_matrix()
        if not refs:
            return []

        q = np.asarray(query_vec, dtype=np.float32).ravel()
        if q.shape[0] != matrix.shape[1]:
            raise ValueError(f"Query dimension {q.shape[0]} != index dimension {matrix.shape[1]}")
        q = q / (np.linalg.norm(q) + 1e-12)
        sims = matrix @ q

        # Stable: equal scores keep index order
        order = np.argsort(-sims, kind="stable")[:k]
        hits: list[ChunkHit] = []
        for i in order:
            doc, ci = refs[int(i)]
            chunk = doc.chunks[ci]
            hits.append(ChunkHit(
                path=doc.path,
                chunk_id=chunk.id,
                score=float(sims[int(i)]),
                content=chunk.content,
                mtime=doc.mtime,
                title=doc.title,
                tags=doc.tags,
            ))
        return hits
