from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Iterable

from .partitions import atomic_write_text

logger = logging.getLogger(__name__)

MISSING_EMBEDDINGS_NAME = "missing_embeddings.json"


class MissingEmbeddingSet:
    """Paths whose embeddings failed or were found broken.

    The next sync re-embeds every path in the set regardless of its
    fingerprint; a successful upsert removes it.
    """

    def __init__(self, path: Path | None = None) -> None:
        self.path = path
        self._lock = threading.Lock()
        self._paths: set[str] = set()

    def load(self) -> None:
        if self.path is None or not self.path.exists():
            return
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            paths = data.get("paths", []) if isinstance(data, dict) else []
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read {self.path}: {e}")
            return
        with self._lock:
            self._paths = {str(p) for p in paths}

    def save(self) -> None:
        if self.path is None:
            return
        with self._lock:
            paths = sorted(self._paths)
        atomic_write_text(self.path, json.dumps({"paths": paths}, indent=2) + "\n")

    def add(self, path: str) -> None:
        with self._lock:
            self._paths.add(path)

    def update(self, paths: Iterable[str]) -> None:
        with self._lock:
            self._paths.update(paths)

    def discard(self, path: str) -> None:
        with self._lock:
            self._paths.discard(path)

    def clear(self) -> None:
        with self._lock:
            self._paths.clear()

    def snapshot(self) -> set[str]:
        with self._lock:
            return set(self._paths)

    def __contains__(self, path: object) -> bool:
        with self._lock:
            return path in self._paths

    def __len__(self) -> int:
        with self._lock:
            return len(self._paths)
