from __future__ import annotations

import logging
import queue
import threading
from concurrent.futures import Future, ThreadPoolExecutor

from .chunking.markdown_chunker import MarkdownChunker
from .config import VaultConfig, apply_offline_mode
from .embeddings.base import EmbeddingProvider
from .embeddings.ollama import OllamaEmbedder
from .embeddings.pipeline import EmbeddingPipeline
from .embeddings.rate_limiter import RateLimiter
from .errors import ConfigError, RebuildRequiredError, VaultIndexError
from .indexer.change_detector import ChangeDetector
from .indexer.filters import PatternFilter
from .indexer.integrity import GarbageCollector, IntegrityChecker, IntegrityReport
from .indexer.queue import Job, JobQueue
from .indexer.source import DocumentSource, VaultDocumentSource
from .indexer.sync import SyncControl, SyncEngine
from .models import IndexStats, ScoredDocument, SyncSummary
from .retrieval.hybrid import RetrievalWeights
from .retrieval.lexical import LexicalSearcher
from .retrieval.retriever import HybridRetriever
from .store.base import IndexBackend
from .store.missing import MISSING_EMBEDDINGS_NAME, MissingEmbeddingSet
from .store.partitioned_store import PartitionedStore

logger = logging.getLogger(__name__)


def create_embedder(cfg: VaultConfig) -> EmbeddingProvider:
    if cfg.embedding_provider == "sentence_transformers":
        apply_offline_mode(cfg)
        from .embeddings.sentence_transformers import SentenceTransformersEmbedder
        return SentenceTransformersEmbedder(
            model_id=cfg.embedding_model,
            device=cfg.embedding_device,
            batch_size=cfg.embedding_batch_size,
            use_query_prefix=cfg.use_query_prefix,
            query_prefix=cfg.query_prefix,
        )
    if cfg.embedding_provider == "ollama":
        return OllamaEmbedder(
            model_id=cfg.embedding_model,
            endpoint=cfg.ollama_endpoint,
            timeout_s=cfg.embedding_timeout_s,
        )
    raise ConfigError(f"Unknown embedding provider: {cfg.embedding_provider}")


class VaultIndex:
    """One vault's index: sync, retrieval and maintenance behind one handle.

    Every collaborator can be injected; anything not passed is built from
    `cfg`. The embedding provider is created on first use so that status and
    maintenance commands never load a model.
    """

    def __init__(
        self,
        cfg: VaultConfig,
        provider: EmbeddingProvider | None = None,
        source: DocumentSource | None = None,
        backend: IndexBackend | None = None,
        lexical: LexicalSearcher | None = None,
        missing: MissingEmbeddingSet | None = None,
    ) -> None:
        self.cfg = cfg
        if backend is None:
            store = PartitionedStore(cfg.index_dir, cfg.partition_max_bytes)
            store.load()
            backend = store
        self.backend = backend

        if missing is None:
            missing = MissingEmbeddingSet(cfg.index_dir / MISSING_EMBEDDINGS_NAME)
            missing.load()
        self.missing = missing

        self.source = source or VaultDocumentSource(cfg.vault_root, list(cfg.ignore), list(cfg.extensions))
        self.filters = PatternFilter.from_patterns(cfg.inclusions, cfg.exclusions)
        self.control = SyncControl()
        self.chunker = MarkdownChunker(max_chunk_size=cfg.max_chunk_size, overlap_chars=cfg.overlap_chars)
        self.rate_limiter = RateLimiter(cfg.requests_per_second)
        self.pipeline = EmbeddingPipeline(
            batch_size=cfg.embedding_batch_size,
            max_concurrency=cfg.max_concurrency,
            rate_limiter=self.rate_limiter,
            max_retries=cfg.max_retries,
            retry_backoff_ms=cfg.retry_backoff_ms,
            max_failure_ratio=cfg.max_failure_ratio,
        )
        self.gc = GarbageCollector(self.backend, self.missing)
        self.integrity = IntegrityChecker(self.backend, self.missing)

        self._lexical = lexical
        self._provider = provider
        self._engine: SyncEngine | None = None
        self._retriever: HybridRetriever | None = None
        self._init_lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="vaultindex-sync")

    # -- lazily built collaborators ----------------------------------------

    @property
    def provider(self) -> EmbeddingProvider:
        with self._init_lock:
            if self._provider is None:
                self._provider = create_embedder(self.cfg)
            return self._provider

    @property
    def engine(self) -> SyncEngine:
        provider = self.provider
        with self._init_lock:
            if self._engine is None:
                self._engine = SyncEngine(
                    backend=self.backend,
                    source=self.source,
                    provider=provider,
                    pipeline=self.pipeline,
                    chunker=self.chunker,
                    missing=self.missing,
                    filters=self.filters,
                    control=self.control,
                    checkpoint_interval=self.cfg.checkpoint_interval,
                    check_integrity_after_sync=self.cfg.check_integrity_after_sync,
                )
            return self._engine

    @property
    def retriever(self) -> HybridRetriever:
        provider = self.provider
        with self._init_lock:
            if self._retriever is None:
                self._retriever = HybridRetriever(
                    backend=self.backend,
                    provider=provider,
                    lexical=self._lexical,
                    top_k=self.cfg.top_k,
                    candidate_multiplier=self.cfg.candidate_multiplier,
                    min_similarity=self.cfg.min_similarity,
                    weights=RetrievalWeights(self.cfg.semantic_weight),
                )
            return self._retriever

    # -- sync --------------------------------------------------------------

    def sync(self, force: bool = False) -> SyncSummary:
        return self.engine.sync(force=force)

    def start_sync(self, force: bool = False) -> "Future[SyncSummary]":
        """Run a sync on the background worker; control it with pause/resume/cancel."""
        engine = self.engine
        self.control.reset()
        return self._executor.submit(engine.sync, force, False)

    def pause_sync(self) -> None:
        logger.info("Pausing sync")
        self.control.pause()

    def resume_sync(self) -> None:
        logger.info("Resuming sync")
        self.control.resume()

    def cancel_sync(self) -> None:
        logger.info("Cancelling sync")
        self.control.cancel()

    def set_rate_limit(self, requests_per_second: float) -> None:
        self.rate_limiter.set_rate(requests_per_second)

    # -- retrieval ---------------------------------------------------------

    def retrieve(
        self,
        query: str,
        k: int | None = None,
        weights: RetrievalWeights | float | None = None,
    ) -> list[ScoredDocument]:
        return self.retriever.retrieve(query, k=k, weights=weights)

    def similar_notes(self, path: str, k: int | None = None) -> list[ScoredDocument]:
        return self.retriever.similar_notes(path, k=k)

    # -- maintenance -------------------------------------------------------

    def get_stats(self) -> IndexStats:
        return IndexStats(
            indexed_document_count=len(self.backend.get_indexed_paths()),
            chunk_count=self.backend.chunk_count,
            partition_count=self.backend.partition_count,
            missing_embeddings_count=len(self.missing),
            embedding_model_id=self.backend.embedding_model,
            corrupt_partitions=self.backend.corrupt_partitions,
        )

    def garbage_collect(self) -> int:
        """Remove index entries for notes that are gone or now filtered out."""
        live = {doc.path for doc in self.source.list_candidate_documents(self.filters)}
        live |= self.source.unreadable
        removed = self.gc.collect(live_paths=live)
        self.backend.save()
        self.missing.save()
        return removed

    def check_integrity(self) -> IntegrityReport:
        report = self.integrity.check()
        self.missing.save()
        return report

    def clear_index(self) -> None:
        self.backend.clear(embedding_model=self.backend.embedding_model)
        self.missing.clear()
        self.backend.save()
        self.missing.save()

    def reindex_path(self, path: str) -> bool:
        return self.engine.reindex_path(path)

    def remove_path(self, path: str) -> bool:
        return self.engine.remove_path(path)

    # -- watch mode --------------------------------------------------------

    def apply_job(self, job: Job) -> None:
        if job.kind == "upsert":
            logger.info(f"Indexing: {job.rel_path}")
            self.reindex_path(job.rel_path)
        elif job.kind == "delete":
            logger.info(f"Deleting: {job.rel_path}")
            self.remove_path(job.rel_path)
        elif job.kind == "move":
            logger.info(f"Moving: {job.rel_path} -> {job.new_rel_path}")
            self.remove_path(job.rel_path)
            if job.new_rel_path:
                self.reindex_path(job.new_rel_path)
        else:
            raise ValueError(f"Unknown job kind: {job.kind}")

    def process_job(self, job: Job) -> None:
        """Apply one watch job; errors are logged so the watch loop keeps going.

        A job that needs a full rebuild (the embedding model changed) runs a
        full sync instead.
        """
        try:
            self.apply_job(job)
        except RebuildRequiredError as e:
            logger.warning(f"{e}; running a full sync")
            try:
                self.sync()
            except VaultIndexError as sync_error:
                logger.error(f"Rebuild sync failed: {sync_error}")
        except Exception as e:
            logger.error(f"Error processing {job.kind} job for {job.rel_path}: {e}")

    def watch(self, stop_event: threading.Event | None = None) -> None:
        """Apply filesystem changes as they happen until stopped or interrupted."""
        q = JobQueue()
        detector = ChangeDetector(
            root=self.cfg.vault_root, q=q, ignore=list(self.cfg.ignore), extensions=list(self.cfg.extensions)
        )
        stop = stop_event or threading.Event()
        detector_thread = threading.Thread(target=detector.watch, args=(stop,), daemon=True)
        detector_thread.start()

        try:
            while not stop.is_set():
                try:
                    job = q.get(timeout=1.0)
                except queue.Empty:
                    continue
                try:
                    self.process_job(job)
                finally:
                    q.task_done()
        except KeyboardInterrupt:
            logger.info("Stopping watch mode")
        finally:
            stop.set()
            detector_thread.join(timeout=2.0)

    # -- lifecycle ---------------------------------------------------------

    def close(self) -> None:
        self.control.cancel()
        self._executor.shutdown(wait=True)
        close = getattr(self._lexical or (self._retriever.lexical if self._retriever else None), "close", None)
        if close is not None:
            close()

    def __enter__(self) -> "VaultIndex":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()
