from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Iterator, Protocol

import frontmatter

from ..errors import DocumentReadError
from ..models import SourceDocument
from ..utils import merge_tags, normalize_tags, parse_tags, safe_read_text
from .filters import PatternFilter, matches_ignore_pattern

logger = logging.getLogger(__name__)


class DocumentSource(Protocol):
    """Where notes come from.

    `unreadable` holds the paths the last listing found but could not read.
    They still exist, so sync must not treat them as deleted.
    """

    unreadable: set[str]

    def list_candidate_documents(self, filters: PatternFilter | None = None) -> Iterable[SourceDocument]:
        ...

    def read_document(self, path: str) -> SourceDocument | None:
        ...


@dataclass
class VaultDocumentSource:
    """Markdown notes under a vault root.

    Paths are vault-relative with forward slashes. Frontmatter is stripped
    from the indexed text; its `tags` merge with inline `#tags`. Notes that
    are empty after stripping are not candidates. Notes that exist but fail
    to read are left out of a listing and recorded in `unreadable`.
    """
    root: Path
    ignore: list[str] = field(default_factory=list)
    extensions: list[str] = field(default_factory=lambda: [".md"])

    def __post_init__(self) -> None:
        self.root = Path(self.root)
        self._extensions = {e.lower() for e in self.extensions}
        self.unreadable: set[str] = set()

    def _iter_files(self) -> Iterator[tuple[Path, str]]:
        for p in sorted(self.root.rglob("*")):
            if not p.is_file() or p.suffix.lower() not in self._extensions:
                continue
            rel = str(p.relative_to(self.root)).replace("\\", "/")
            if matches_ignore_pattern(rel, self.ignore):
                continue
            yield p, rel

    def list_candidate_documents(self, filters: PatternFilter | None = None) -> Iterator[SourceDocument]:
        unreadable: set[str] = set()
        self.unreadable = unreadable
        for p, rel in self._iter_files():
            try:
                doc = self._load(p, rel)
            except DocumentReadError as e:
                logger.warning(f"{e}; keeping its indexed copy")
                unreadable.add(rel)
                continue
            if doc is None:
                continue
            if filters is not None and not filters.matches(doc.path, doc.tags):
                continue
            yield doc

    def read_document(self, path: str) -> SourceDocument | None:
        """Load one note by relative path; None if missing, ignored or empty.

        Raises DocumentReadError when the note exists but cannot be read.
        """
        rel = path.replace("\\", "/")
        p = self.root / rel
        if not p.is_file() or p.suffix.lower() not in self._extensions:
            return None
        if matches_ignore_pattern(rel, self.ignore):
            return None
        return self._load(p, rel)

    def _load(self, p: Path, rel: str) -> SourceDocument | None:
        try:
            raw = safe_read_text(p)
            st = p.stat()
        except FileNotFoundError:
            # Deleted between listing and reading
            return None
        except (OSError, ValueError) as e:
            raise DocumentReadError(rel, str(e)) from e

        try:
            post = frontmatter.loads(raw)
            text = post.content
            fm = dict(post.metadata or {})
        except Exception as e:  # malformed YAML
            logger.warning(f"Bad frontmatter in {rel}, indexing raw text: {e}")
            text = raw
            fm = {}

        if not text.strip():
            return None

        tags = merge_tags(normalize_tags(fm.get("tags")), parse_tags(text))
        return SourceDocument(
            path=rel,
            title=p.stem,
            mtime=int(st.st_mtime * 1000),
            size=st.st_size,
            content=text,
            tags=tags,
            ctime=int(st.st_ctime * 1000),
        )
