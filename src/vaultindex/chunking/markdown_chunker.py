from __future__ import annotations

import re
from dataclasses import dataclass

from .base import Chunked

HEADING_RE = re.compile(r"^(#{1,6})\s+(.*)$")
FENCE_RE = re.compile(r"^\s*(```|~~~)")

HEADER_TEMPLATE = "NOTE TITLE: [[{title}]]\n\nNOTE BLOCK CONTENT:\n\n"

# Smallest max_chunk_size that still fits a header, a quarter-size title and overlap
MIN_CHUNK_SIZE = 200

# Coarsest first; "" means a hard character cut
SEPARATORS = ("\n\n", "\n", ". ", " ", "")


def make_header(title: str) -> str:
    return HEADER_TEMPLATE.format(title=title)


@dataclass
class MarkdownChunker:
    """Chunk markdown notes by headings, then by paragraph boundaries.

    Every chunk starts with a header naming the note so that small chunks
    still embed "which note is this from". Adjacent chunks share up to
    `overlap_chars` of text. Output depends only on (text, title, settings).

    No chunk, header and overlap included, exceeds `max_chunk_size`.
    """

    max_chunk_size: int = 5000
    overlap_chars: int = 200

    def __post_init__(self) -> None:
        if self.max_chunk_size < MIN_CHUNK_SIZE:
            raise ValueError(f"max_chunk_size must be at least {MIN_CHUNK_SIZE}, got {self.max_chunk_size}")
        if self.overlap_chars < 0:
            raise ValueError(f"overlap_chars must not be negative, got {self.overlap_chars}")
        if self.overlap_chars >= self.max_chunk_size // 2:
            raise ValueError(
                f"overlap_chars ({self.overlap_chars}) must be less than half of max_chunk_size ({self.max_chunk_size})"
            )

    def chunk(self, text: str, title: str) -> list[str]:
        return [c.text for c in self.chunk_document(text, title)]

    def chunk_document(self, text: str, title: str) -> list[Chunked]:
        if not text or not text.strip():
            return []

        # Very long titles must not eat the body budget
        title = title[: self.max_chunk_size // 4]
        header = make_header(title)
        budget = self.max_chunk_size - len(header) - self.overlap_chars - 2

        pieces: list[tuple[str, str]] = []
        for heading, section in self._sections(text):
            for part in self._split(section, budget, SEPARATORS):
                pieces.append((heading, part))

        packed = self._pack(pieces, budget)

        chunks: list[Chunked] = []
        prev_body = ""
        for i, (heading, body) in enumerate(packed):
            overlap = self._overlap_tail(prev_body) if i > 0 else ""
            content = header + (overlap + "\n\n" + body if overlap else body)
            chunks.append(Chunked(index=i, heading=heading, text=content, body=body))
            prev_body = body
        return chunks

    def _sections(self, text: str) -> list[tuple[str, str]]:
        """Split into (heading, section text) pairs, ignoring headings in code fences."""
        sections: list[tuple[str, list[str]]] = [("", [])]
        in_fence = False
        for line in text.splitlines():
            if FENCE_RE.match(line):
                in_fence = not in_fence
            m = None if in_fence else HEADING_RE.match(line)
            if m:
                sections.append((m.group(2).strip(), [line]))
            else:
                sections[-1][1].append(line)

        out: list[tuple[str, str]] = []
        for heading, lines in sections:
            body = "\n".join(lines).strip()
            if body:
                out.append((heading, body))
        return out

    def _split(self, text: str, budget: int, separators: tuple[str, ...]) -> list[str]:
        if len(text) <= budget:
            return [text]

        for i, sep in enumerate(separators):
            if sep == "":
                return [text[j:j + budget] for j in range(0, len(text), budget)]
            if sep not in text:
                continue

            parts = text.split(sep)
            parts = [p + sep for p in parts[:-1]] + [parts[-1]]
            out: list[str] = []
            current = ""
            for part in parts:
                if len(part) > budget:
                    if current:
                        out.append(current)
                        current = ""
                    out.extend(self._split(part, budget, separators[i + 1:]))
                elif len(current) + len(part) <= budget:
                    current += part
                else:
                    out.append(current)
                    current = part
            if current:
                out.append(current)
            return [p.strip() for p in out if p.strip()]

        return [text]

    def _pack(self, pieces: list[tuple[str, str]], budget: int) -> list[tuple[str, str]]:
        """Merge adjacent small pieces while the combined body fits the budget."""
        packed: list[tuple[str, str]] = []
        for heading, body in pieces:
            if packed:
                last_heading, last_body = packed[-1]
                merged = last_body + "\n\n" + body
                if len(merged) <= budget:
                    packed[-1] = (last_heading, merged)
                    continue
            packed.append((heading, body))
        return packed

    def _overlap_tail(self, prev_body: str) -> str:
        if self.overlap_chars <= 0 or not prev_body:
            return ""
        tail = prev_body[-self.overlap_chars:]
        if len(tail) < len(prev_body):
            # Start at a word boundary
            cut = tail.find(" ")
            nl = tail.find("\n")
            candidates = [c for c in (cut, nl) if c >= 0]
            if candidates:
                tail = tail[min(candidates) + 1:]
        return tail.strip()
