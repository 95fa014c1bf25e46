from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .filters import matches_ignore_pattern
from .queue import Job, JobQueue

logger = logging.getLogger(__name__)


class VaultEventHandler(FileSystemEventHandler):
    """Translate watchdog events into upsert/delete/move jobs.

    Only files with a watched extension and outside the ignore globs are
    queued. Upserts are debounced on the trailing edge: each event pushes the
    path's deadline out by `debounce_ms`, and `flush()` queues one upsert per
    path whose deadline has passed, so the last save of a burst is the one
    indexed.
    """

    def __init__(self, detector: "ChangeDetector", root: Path) -> None:
        self.detector = detector
        self.root = root
        self._pending: dict[str, float] = {}
        self._lock = threading.Lock()

    def _rel(self, raw: str | bytes) -> str | None:
        p = Path(raw.decode() if isinstance(raw, bytes) else raw)
        try:
            rel = str(p.relative_to(self.root)).replace("\\", "/")
        except ValueError:
            return None
        if p.suffix.lower() not in self.detector.extension_set:
            return None
        if matches_ignore_pattern(rel, self.detector.ignore):
            return None
        return rel

    def _upsert(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        rel = self._rel(event.src_path)
        if rel is None:
            return
        if self.detector.debounce_ms <= 0:
            self.detector.q.put(Job(kind="upsert", rel_path=rel))
            return
        with self._lock:
            self._pending[rel] = time.monotonic() + self.detector.debounce_ms / 1000

    def _cancel_pending(self, rel: str) -> None:
        with self._lock:
            self._pending.pop(rel, None)

    def flush(self, now: float | None = None) -> int:
        """Queue upserts whose debounce deadline has passed. Returns how many."""
        now = time.monotonic() if now is None else now
        with self._lock:
            due = sorted(rel for rel, deadline in self._pending.items() if deadline <= now)
            for rel in due:
                del self._pending[rel]
        for rel in due:
            self.detector.q.put(Job(kind="upsert", rel_path=rel))
        return len(due)

    def on_created(self, event: FileSystemEvent) -> None:
        self._upsert(event)

    def on_modified(self, event: FileSystemEvent) -> None:
        self._upsert(event)

    def on_deleted(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        rel = self._rel(event.src_path)
        if rel is not None:
            self._cancel_pending(rel)
            self.detector.q.put(Job(kind="delete", rel_path=rel))

    def on_moved(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        rel_src = self._rel(event.src_path)
        rel_dst = self._rel(event.dest_path)

        if rel_src is None and rel_dst is None:
            return
        if rel_src is not None:
            self._cancel_pending(rel_src)
        if rel_dst is not None:
            self._cancel_pending(rel_dst)
        if rel_src is None:
            self.detector.q.put(Job(kind="upsert", rel_path=rel_dst))
        elif rel_dst is None:
            self.detector.q.put(Job(kind="delete", rel_path=rel_src))
        else:
            self.detector.q.put(Job(kind="move", rel_path=rel_src, new_rel_path=rel_dst))


@dataclass
class ChangeDetector:
    """Watches a vault directory with watchdog and queues indexing jobs."""
    root: Path
    q: JobQueue
    ignore: list[str] = field(default_factory=list)
    extensions: list[str] = field(default_factory=lambda: [".md"])
    debounce_ms: int = 500

    def __post_init__(self) -> None:
        self.extension_set = {e.lower() for e in self.extensions}

    def watch(self, stop_event: threading.Event | None = None) -> None:
        """Block until `stop_event` is set (forever if None)."""
        # Resolve symlinks to match watchdog's resolved paths (e.g. /tmp on macOS)
        root = Path(self.root).resolve()
        handler = VaultEventHandler(self, root)
        observer = Observer()
        observer.schedule(handler, str(root), recursive=True)
        observer.start()
        logger.info(f"Watching {root} for changes")
        try:
            while stop_event is None or not stop_event.is_set():
                time.sleep(0.25)
                handler.flush()
        finally:
            observer.stop()
            observer.join()
