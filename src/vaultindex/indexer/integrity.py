from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable

import numpy as np

from ..store.base import IndexBackend
from ..store.missing import MissingEmbeddingSet

logger = logging.getLogger(__name__)


@dataclass
class IntegrityReport:
    checked: int = 0
    flagged: list[str] = field(default_factory=list)
    reasons: dict[str, str] = field(default_factory=dict)


@dataclass
class IntegrityChecker:
    """Flag indexed documents whose vectors cannot be trusted.

    Flagged paths go to the MissingEmbeddingSet; the next sync re-embeds
    them. Nothing is removed here.
    """
    backend: IndexBackend
    missing: MissingEmbeddingSet

    def check(self) -> IntegrityReport:
        report = IntegrityReport()
        expected_model = self.backend.embedding_model
        expected_dims = self.backend.dims

        for doc in self.backend.documents():
            report.checked += 1
            reason = self._violation(doc, expected_model, expected_dims)
            if reason:
                report.flagged.append(doc.path)
                report.reasons[doc.path] = reason

        if report.flagged:
            self.missing.update(report.flagged)
            logger.warning(f"Integrity check flagged {len(report.flagged)}/{report.checked} documents")
            for path in report.flagged:
                logger.debug(f"  {path}: {report.reasons[path]}")
        else:
            logger.info(f"Integrity check passed ({report.checked} documents)")
        return report

    @staticmethod
    def _violation(doc, expected_model: str | None, expected_dims: int) -> str | None:
        if not doc.chunks:
            return "no chunks"
        if expected_model is not None and doc.embedding_model != expected_model:
            return f"model {doc.embedding_model!r} != {expected_model!r}"
        for chunk in doc.chunks:
            vec = np.asarray(chunk.embedding)
            if vec.size == 0:
                return f"{chunk.id}: empty vector"
            if expected_dims and vec.shape[-1] != expected_dims:
                return f"{chunk.id}: dimension {vec.shape[-1]} != {expected_dims}"
            if not np.all(np.isfinite(vec)):
                return f"{chunk.id}: non-finite values"
            if chunk.metadata.path != doc.path:
                return f"{chunk.id}: belongs to {chunk.metadata.path}"
        return None


@dataclass
class GarbageCollector:
    """Remove index entries for notes that are gone or no longer eligible."""
    backend: IndexBackend
    missing: MissingEmbeddingSet

    def collect(
        self,
        live_paths: Iterable[str] | None = None,
        deleted_paths: Iterable[str] | None = None,
    ) -> int:
        """Remove documents outside `live_paths` and/or listed in `deleted_paths`.

        With neither argument nothing is removed. Returns the count removed.
        """
        indexed = self.backend.get_indexed_paths()
        doomed: set[str] = set()
        stale_missing: set[str] = set()
        if live_paths is not None:
            live = set(live_paths)
            doomed |= indexed - live
            stale_missing |= self.missing.snapshot() - live
        if deleted_paths is not None:
            deleted = set(deleted_paths)
            doomed |= indexed & deleted
            stale_missing |= deleted

        # Notes that never embedded and are now gone must not be retried
        for path in stale_missing:
            self.missing.discard(path)

        for path in sorted(doomed):
            self.backend.remove_by_path(path)
            self.missing.discard(path)
            logger.debug(f"Removed {path} from index")

        if doomed:
            logger.info(f"Garbage collection removed {len(doomed)} documents")
        return len(doomed)
