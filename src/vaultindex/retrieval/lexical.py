from __future__ import annotations

import logging
import re
import sqlite3
import threading
from dataclasses import dataclass
from typing import Protocol

from ..chunking.markdown_chunker import make_header
from ..store.base import IndexBackend

logger = logging.getLogger(__name__)

TOKEN_RE = re.compile(r"\w+", re.UNICODE)

SCHEMA_SQL = """
CREATE VIRTUAL TABLE chunks USING fts5(
  path UNINDEXED,
  chunk_id UNINDEXED,
  title,
  body,
  tokenize='unicode61'
);
"""


@dataclass(frozen=True)
class LexicalHit:
    path: str
    score: float  # normalized to [0, 1]
    chunk_id: str | None = None


class LexicalSearcher(Protocol):
    def search(self, query: str, k: int) -> list[LexicalHit]:
        ...


def _fts5_query(query: str) -> str:
    """OR together the query's terms, each quoted so FTS5 operators are literal."""
    terms: list[str] = []
    for t in TOKEN_RE.findall(query.lower()):
        if t not in terms:
            terms.append(t)
    return " OR ".join('"' + t.replace('"', '""') + '"' for t in terms)


def strip_chunk_header(content: str, title: str) -> str:
    header = make_header(title)
    return content[len(header):] if content.startswith(header) else content


class Fts5LexicalIndex:
    """BM25 keyword search over indexed chunks, held in an in-memory SQLite FTS5 table.

    The table is rebuilt from the backend whenever its generation counter has
    moved since the last search. Scores are the best chunk's BM25 relevance
    per document, divided by the best document's, so the top hit scores 1.0.
    """

    def __init__(self, backend: IndexBackend) -> None:
        self.backend = backend
        self._lock = threading.Lock()
        self._conn: sqlite3.Connection | None = None
        self._generation = -1

    def _ensure_fresh(self) -> sqlite3.Connection:
        generation = self.backend.generation
        if self._conn is not None and generation == self._generation:
            return self._conn

        conn = sqlite3.connect(":memory:", check_same_thread=False)
        conn.executescript(SCHEMA_SQL)
        rows = []
        for doc in self.backend.documents():
            for chunk in doc.chunks:
                rows.append((doc.path, chunk.id, doc.title, strip_chunk_header(chunk.content, doc.title)))
        conn.executemany("INSERT INTO chunks(path, chunk_id, title, body) VALUES (?, ?, ?, ?)", rows)
        conn.commit()

        if self._conn is not None:
            self._conn.close()
        self._conn = conn
        self._generation = generation
        logger.debug(f"Rebuilt lexical index: {len(rows)} chunks (generation {generation})")
        return conn

    def search(self, query: str, k: int) -> list[LexicalHit]:
        match = _fts5_query(query)
        if not match or k <= 0:
            return []

        with self._lock:
            conn = self._ensure_fresh()
            rows = conn.execute(
                """SELECT path, chunk_id, bm25(chunks) AS rank
                   FROM chunks
                   WHERE chunks MATCH ?
                   ORDER BY rank, path, chunk_id
                   LIMIT ?""",
                (match, k * 10),
            ).fetchall()

        best: dict[str, tuple[float, str]] = {}
        for path, chunk_id, rank in rows:
            relevance = -float(rank)
            if path not in best or relevance > best[path][0]:
                best[path] = (relevance, chunk_id)

        ranked = sorted(best.items(), key=lambda kv: -kv[1][0])[:k]
        if not ranked:
            return []
        top = ranked[0][1][0]
        if top <= 0:
            return [LexicalHit(path=p, score=1.0, chunk_id=cid) for p, (_, cid) in ranked]
        return [LexicalHit(path=p, score=max(rel, 0.0) / top, chunk_id=cid) for p, (rel, cid) in ranked]

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
                self._generation = -1
