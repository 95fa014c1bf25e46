from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import Iterable, Iterator

from ..chunking.base import Chunked, Chunker
from ..embeddings.base import EmbeddingProvider
from ..embeddings.pipeline import CANCELLED, EmbeddingPipeline
from ..errors import DocumentReadError, EmbeddingModelMismatchError, RebuildRequiredError, VaultIndexError
from ..hashing import document_fingerprint
from ..models import Chunk, ChunkMetadata, IndexedDocument, SourceDocument, SyncSummary
from ..store.base import IndexBackend
from ..store.missing import MissingEmbeddingSet
from ..utils import now_ms
from .filters import PatternFilter
from .integrity import GarbageCollector, IntegrityChecker
from .source import DocumentSource

logger = logging.getLogger(__name__)


class SyncState(Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    PROCESSING = "processing"
    RECONCILING = "reconciling"
    ABORTED = "aborted"
    FAILED = "failed"


_TRANSITIONS: dict[SyncState, set[SyncState]] = {
    SyncState.IDLE: {SyncState.SCANNING},
    SyncState.SCANNING: {SyncState.PROCESSING, SyncState.RECONCILING, SyncState.ABORTED, SyncState.FAILED},
    SyncState.PROCESSING: {SyncState.RECONCILING, SyncState.ABORTED, SyncState.FAILED},
    SyncState.RECONCILING: {SyncState.IDLE, SyncState.ABORTED},
    SyncState.ABORTED: {SyncState.IDLE},
    SyncState.FAILED: {SyncState.SCANNING, SyncState.IDLE},
}


class _ModelChanged(Exception):
    def __init__(self, model_id: str) -> None:
        self.model_id = model_id
        super().__init__(model_id)


class SyncControl:
    """Pause/resume/cancel signals shared between a sync run and its caller."""

    def __init__(self) -> None:
        self._cancel = threading.Event()
        self._running = threading.Event()
        self._running.set()

    @property
    def cancel_event(self) -> threading.Event:
        return self._cancel

    @property
    def is_paused(self) -> bool:
        return not self._running.is_set()

    @property
    def is_cancelled(self) -> bool:
        return self._cancel.is_set()

    def pause(self) -> None:
        self._running.clear()

    def resume(self) -> None:
        self._running.set()

    def cancel(self) -> None:
        self._cancel.set()
        # Wake a paused run so it can observe the cancel
        self._running.set()

    def reset(self) -> None:
        self._cancel.clear()
        self._running.set()

    def wait_if_paused(self, poll_s: float = 0.1) -> bool:
        """Block while paused. Returns False once cancelled."""
        while not self._running.wait(timeout=poll_s):
            if self._cancel.is_set():
                return False
        return not self._cancel.is_set()


class SyncEngine:
    """Incremental vault -> index synchronization.

    One run: SCANNING (model check, candidate listing, fingerprint compare),
    PROCESSING (chunk, embed, upsert per document), RECONCILING (remove
    indexed paths that are no longer candidates), then save. A document is
    only upserted when every one of its chunks embedded; otherwise it lands
    in the MissingEmbeddingSet and the run continues.
    """

    def __init__(
        self,
        backend: IndexBackend,
        source: DocumentSource,
        provider: EmbeddingProvider,
        pipeline: EmbeddingPipeline,
        chunker: Chunker,
        missing: MissingEmbeddingSet,
        filters: PatternFilter | None = None,
        control: SyncControl | None = None,
        checkpoint_interval: int = 128,
        check_integrity_after_sync: bool = True,
    ) -> None:
        self.backend = backend
        self.source = source
        self.provider = provider
        self.pipeline = pipeline
        self.chunker = chunker
        self.missing = missing
        self.filters = filters
        self.control = control or SyncControl()
        self.checkpoint_interval = checkpoint_interval
        self.check_integrity_after_sync = check_integrity_after_sync

        self.gc = GarbageCollector(backend, missing)
        self.integrity = IntegrityChecker(backend, missing)
        self._state = SyncState.IDLE
        self._state_lock = threading.Lock()
        self._run_lock = threading.Lock()

    # -- state machine -----------------------------------------------------

    @property
    def state(self) -> SyncState:
        with self._state_lock:
            return self._state

    def _transition(self, new: SyncState) -> None:
        with self._state_lock:
            old = self._state
            if new not in _TRANSITIONS[old]:
                raise VaultIndexError(f"Invalid sync transition {old.value} -> {new.value}")
            self._state = new
        logger.info(f"Sync state: {old.value} -> {new.value}")

    def _reset_state(self) -> None:
        with self._state_lock:
            self._state = SyncState.IDLE

    # -- full sync ---------------------------------------------------------

    def sync(self, force: bool = False, reset_control: bool = True) -> SyncSummary:
        """Run one full sync.

        Pass `reset_control=False` when the caller already reset the control
        before scheduling the run, so an early cancel is not lost.
        """
        if not self._run_lock.acquire(blocking=False):
            raise VaultIndexError("A sync is already running")
        try:
            if reset_control:
                self.control.reset()
            return self._sync_locked(force)
        finally:
            self._run_lock.release()

    def _sync_locked(self, force: bool) -> SyncSummary:
        start = time.time()
        self._reset_state()
        summary = SyncSummary()
        rebuilt_mid_run = False

        self._transition(SyncState.SCANNING)
        while True:
            try:
                self._run(force, summary)
                break
            except _ModelChanged as e:
                self._transition(SyncState.FAILED)
                if rebuilt_mid_run:
                    logger.error(f"Embedding model changed again mid-run ({e.model_id}); giving up")
                    self._save()
                    break
                logger.warning(f"Embedding model changed to {e.model_id!r} mid-run; clearing index and rescanning")
                rebuilt_mid_run = True
                self.backend.clear(embedding_model=e.model_id)
                self.missing.clear()
                summary = SyncSummary(rebuild_required=True)
                self._transition(SyncState.SCANNING)

        summary.elapsed_seconds = time.time() - start
        summary.state = self.state.value
        logger.info(
            f"Sync {summary.state}: {summary.processed} processed, {summary.skipped} skipped, "
            f"{summary.failed} failed, {summary.removed} removed in {summary.elapsed_seconds:.1f}s"
        )
        return summary

    def _run(self, force: bool, summary: SyncSummary) -> None:
        model_id = self.provider.model_id
        rebuilt = self.backend.check_and_handle_embedding_model_change(model_id)
        if self.backend.consume_rebuild_required():
            rebuilt = True
        if rebuilt:
            summary.rebuild_required = True
            self.missing.clear()
            logger.warning("Index rebuild started: every document will be re-embedded")

        candidates = self._dedupe(self.source.list_candidate_documents(self.filters))
        candidate_paths = {doc.path for doc in candidates}
        # Present but unreadable: a per-note failure, never a deletion
        unreadable = set(self.source.unreadable) - candidate_paths
        for path in sorted(unreadable):
            self.missing.add(path)
            summary.failed += 1
            summary.failed_paths.append(path)
        flagged = self.missing.snapshot()

        todo: list[tuple[SourceDocument, str]] = []
        for doc in candidates:
            fp = document_fingerprint(doc.title, doc.tags, doc.content)
            stored = self.backend.get(doc.path)
            if (
                not force
                and stored is not None
                and stored.fingerprint == fp
                and stored.embedding_model == model_id
                and doc.path not in flagged
            ):
                summary.skipped += 1
                continue
            todo.append((doc, fp))

        logger.info(
            f"Scan found {len(candidates)} candidates: {len(todo)} to index, {summary.skipped} unchanged"
        )

        cancelled = self.control.is_cancelled
        if todo and not cancelled:
            self._transition(SyncState.PROCESSING)
            since_checkpoint = 0
            for group in self._groups(todo):
                if not self.control.wait_if_paused():
                    cancelled = True
                    break
                if self.provider.model_id != model_id:
                    raise _ModelChanged(self.provider.model_id)
                before = summary.processed
                self._process_group(group, model_id, summary)
                since_checkpoint += summary.processed - before
                if self.checkpoint_interval and since_checkpoint >= self.checkpoint_interval:
                    logger.info(f"Checkpoint save after {summary.processed} documents")
                    self._save()
                    since_checkpoint = 0
            cancelled = cancelled or self.control.is_cancelled

        if cancelled:
            self._transition(SyncState.ABORTED)
            summary.cancelled = True
            self._save()
            return

        self._transition(SyncState.RECONCILING)
        summary.removed = self.gc.collect(live_paths=candidate_paths | unreadable)
        if not summary.failed:
            self.backend.clear_corrupt_partitions()
        self._save()

        if self.check_integrity_after_sync:
            self.integrity.check()
            self.missing.save()
        self._transition(SyncState.IDLE)

    @staticmethod
    def _dedupe(docs: Iterable[SourceDocument]) -> list[SourceDocument]:
        seen: dict[str, SourceDocument] = {}
        for doc in docs:
            seen[doc.path] = doc
        return list(seen.values())

    def _groups(
        self, todo: list[tuple[SourceDocument, str]]
    ) -> Iterator[list[tuple[SourceDocument, str, list[Chunked]]]]:
        """Chunk lazily and yield groups that fill the pipeline's parallel batches."""
        target = max(self.pipeline.batch_size * self.pipeline.max_concurrency, 1)
        group: list[tuple[SourceDocument, str, list[Chunked]]] = []
        count = 0
        for doc, fp in todo:
            chunks = self.chunker.chunk_document(doc.content, doc.title)
            group.append((doc, fp, chunks))
            count += len(chunks)
            if count >= target:
                yield group
                group = []
                count = 0
        if group:
            yield group

    def _process_group(
        self,
        group: list[tuple[SourceDocument, str, list[Chunked]]],
        model_id: str,
        summary: SyncSummary,
    ) -> None:
        texts: list[str] = []
        offsets: list[int] = []
        for _, _, chunks in group:
            offsets.append(len(texts))
            texts.extend(c.text for c in chunks)

        results = self.pipeline.embed_batch(texts, self.provider, self.control.cancel_event)

        for (doc, fp, chunks), offset in zip(group, offsets):
            rs = results[offset:offset + len(chunks)]
            if not chunks:
                error = "no chunks"
            elif all(r.ok for r in rs):
                indexed = self._build_document(doc, fp, model_id, chunks, [r.vector for r in rs])
                try:
                    self.backend.upsert(indexed)
                except EmbeddingModelMismatchError as e:
                    raise _ModelChanged(model_id) from e
                self.missing.discard(doc.path)
                summary.processed += 1
                continue
            elif any(r.error == CANCELLED for r in rs):
                # Not a failure; the next run picks it up
                continue
            else:
                error = next(r.error for r in rs if not r.ok)

            self.missing.add(doc.path)
            summary.failed += 1
            summary.failed_paths.append(doc.path)
            logger.warning(f"Failed to embed {doc.path}: {error}")

    @staticmethod
    def _build_document(
        doc: SourceDocument, fp: str, model_id: str, chunks: list[Chunked], vectors: list
    ) -> IndexedDocument:
        built = []
        for c, vec in zip(chunks, vectors):
            meta = ChunkMetadata(
                path=doc.path,
                title=doc.title,
                tags=tuple(doc.tags),
                mtime=doc.mtime,
                heading=c.heading,
            )
            built.append(Chunk(
                id=Chunk.make_id(doc.path, c.index),
                index=c.index,
                content=c.text,
                embedding=vec,
                metadata=meta,
            ))
        return IndexedDocument(
            path=doc.path,
            fingerprint=fp,
            embedding_model=model_id,
            chunks=tuple(built),
            created_at=now_ms(),
            title=doc.title,
            mtime=doc.mtime,
            size=doc.size,
            tags=tuple(doc.tags),
        )

    def _save(self) -> None:
        self.backend.save()
        self.missing.save()

    # -- single-file updates (watch mode) ----------------------------------

    def reindex_path(self, path: str) -> bool:
        """Bring one note up to date. Returns True if it was (re)embedded.

        Raises RebuildRequiredError when the index holds vectors from another
        embedding model; only a full sync can rebuild it.
        """
        with self._run_lock:
            self.control.reset()
            try:
                doc = self.source.read_document(path)
            except DocumentReadError as e:
                logger.warning(f"{e}; will retry on the next sync")
                self.missing.add(path)
                self.missing.save()
                return False
            if doc is None or (self.filters is not None and not self.filters.matches(doc.path, doc.tags)):
                if self.gc.collect(deleted_paths=[path]):
                    self._save()
                return False

            model_id = self.provider.model_id
            index_model = self.backend.embedding_model
            if not self.backend.is_empty() and index_model != model_id:
                raise RebuildRequiredError(index_model, model_id, "a full sync is required")
            self.backend.check_and_handle_embedding_model_change(model_id)

            fp = document_fingerprint(doc.title, doc.tags, doc.content)
            stored = self.backend.get(doc.path)
            if stored is not None and stored.fingerprint == fp and doc.path not in self.missing:
                return False

            summary = SyncSummary()
            chunks = self.chunker.chunk_document(doc.content, doc.title)
            try:
                self._process_group([(doc, fp, chunks)], model_id, summary)
            except _ModelChanged as e:
                raise RebuildRequiredError(self.backend.embedding_model, model_id, f"while indexing {path}") from e
            self._save()
            return summary.processed == 1

    def remove_path(self, path: str) -> bool:
        with self._run_lock:
            removed = self.gc.collect(deleted_paths=[path])
            self._save()
            return removed > 0
