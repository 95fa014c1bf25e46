from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Sequence

import numpy as np

from .base import EmbeddingProvider
from .rate_limiter import RateLimiter
from .resilience import backoff_seconds, classify_error

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 16

CANCELLED = "cancelled"
ABORTED = "aborted: too many failed batches"


@dataclass(frozen=True)
class EmbeddingResult:
    """Vector or error for one input text."""
    vector: np.ndarray | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.vector is not None


class EmbeddingPipeline:
    """Batched, rate-limited embedding with per-text results.

    Batches run on a bounded thread pool. A failing batch is retried at half
    size (down to single texts) for transient errors; permanent errors fail
    the batch's texts immediately. Once more than `max_failure_ratio` of the
    batches in one call have failed, batches that have not started are
    abandoned. Holds no state between calls besides the rate limiter.
    """

    def __init__(
        self,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_concurrency: int = 3,
        rate_limiter: RateLimiter | None = None,
        max_retries: int = 3,
        retry_backoff_ms: int = 500,
        max_failure_ratio: float = 0.5,
    ) -> None:
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {max_concurrency}")
        self.batch_size = batch_size
        self.max_concurrency = max_concurrency
        self.rate_limiter = rate_limiter or RateLimiter(0.0)
        self.max_retries = max_retries
        self.retry_backoff_ms = retry_backoff_ms
        self.max_failure_ratio = max_failure_ratio

    def embed_batch(
        self,
        texts: Sequence[str],
        provider: EmbeddingProvider,
        cancel_event: threading.Event | None = None,
    ) -> list[EmbeddingResult]:
        if not texts:
            return []

        batches = [
            (start, list(texts[start:start + self.batch_size]))
            for start in range(0, len(texts), self.batch_size)
        ]
        results: list[EmbeddingResult | None] = [None] * len(texts)
        abort = threading.Event()
        failure_limit = self.max_failure_ratio * len(batches)
        failed_batches = 0
        dims_lock = threading.Lock()
        dims_seen: list[int] = []

        def run(start: int, batch: list[str]) -> tuple[int, list[EmbeddingResult]]:
            if cancel_event is not None and cancel_event.is_set():
                return start, [EmbeddingResult(error=CANCELLED)] * len(batch)
            if abort.is_set():
                return start, [EmbeddingResult(error=ABORTED)] * len(batch)
            out = self._embed_with_retry(batch, provider, cancel_event, attempt=0)
            return start, self._check_dims(out, dims_lock, dims_seen)

        workers = min(self.max_concurrency, len(batches))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [pool.submit(run, start, batch) for start, batch in batches]
            for fut in as_completed(futures):
                start, batch_results = fut.result()
                results[start:start + len(batch_results)] = batch_results
                if any(not r.ok and r.error not in (CANCELLED, ABORTED) for r in batch_results):
                    failed_batches += 1
                    if failed_batches > failure_limit and not abort.is_set():
                        logger.warning(
                            f"{failed_batches}/{len(batches)} embedding batches failed "
                            f"(limit {self.max_failure_ratio:.0%}); abandoning remaining batches"
                        )
                        abort.set()

        ok = sum(1 for r in results if r is not None and r.ok)
        logger.debug(f"Embedded {ok}/{len(texts)} texts in {len(batches)} batches")
        return [r if r is not None else EmbeddingResult(error=ABORTED) for r in results]

    def _embed_with_retry(
        self,
        texts: list[str],
        provider: EmbeddingProvider,
        cancel_event: threading.Event | None,
        attempt: int,
    ) -> list[EmbeddingResult]:
        if not self.rate_limiter.wait(cancel_event):
            return [EmbeddingResult(error=CANCELLED)] * len(texts)

        try:
            vectors = provider.embed_documents(texts)
            return self._validate(vectors, len(texts))
        except Exception as e:
            category = classify_error(e)
            error = f"{type(e).__name__}: {e}"
            if not category.retryable or attempt >= self.max_retries:
                logger.warning(
                    f"Embedding batch of {len(texts)} failed ({category.value}, attempt {attempt + 1}): {error}"
                )
                return [EmbeddingResult(error=error)] * len(texts)

            wait = backoff_seconds(e, category, attempt, self.retry_backoff_ms)
            logger.info(
                f"Retry {attempt + 1}/{self.max_retries} for batch of {len(texts)}: "
                f"{type(e).__name__} (waiting {wait:.1f}s)"
            )
            if cancel_event is not None:
                if cancel_event.wait(wait):
                    return [EmbeddingResult(error=CANCELLED)] * len(texts)
            elif wait > 0:
                time.sleep(wait)

        if len(texts) == 1:
            return self._embed_with_retry(texts, provider, cancel_event, attempt + 1)
        mid = (len(texts) + 1) // 2
        left = self._embed_with_retry(texts[:mid], provider, cancel_event, attempt + 1)
        right = self._embed_with_retry(texts[mid:], provider, cancel_event, attempt + 1)
        return left + right

    @staticmethod
    def _validate(vectors: object, expected: int) -> list[EmbeddingResult]:
        try:
            arr = np.asarray(vectors, dtype=np.float32)
        except (TypeError, ValueError) as e:
            return [EmbeddingResult(error=f"malformed vectors: {e}")] * expected
        if arr.ndim != 2 or arr.shape[0] != expected:
            return [EmbeddingResult(error=f"expected {expected} vectors, got shape {arr.shape}")] * expected

        out: list[EmbeddingResult] = []
        for row in arr:
            if row.size == 0:
                out.append(EmbeddingResult(error="empty vector"))
            elif not np.all(np.isfinite(row)):
                out.append(EmbeddingResult(error="non-finite vector"))
            else:
                out.append(EmbeddingResult(vector=row))
        return out

    @staticmethod
    def _check_dims(
        results: list[EmbeddingResult], lock: threading.Lock, dims_seen: list[int]
    ) -> list[EmbeddingResult]:
        """Fail vectors whose dimension differs from the first one seen in this call."""
        out: list[EmbeddingResult] = []
        with lock:
            for r in results:
                if r.vector is None:
                    out.append(r)
                    continue
                if not dims_seen:
                    dims_seen.append(int(r.vector.shape[0]))
                if r.vector.shape[0] != dims_seen[0]:
                    out.append(EmbeddingResult(error=f"dimension {r.vector.shape[0]} != {dims_seen[0]}"))
                else:
                    out.append(r)
        return out
