from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class Chunked:
    index: int
    heading: str
    text: str  # header + overlap + body, what gets embedded
    body: str


class Chunker(Protocol):
    def chunk(self, text: str, title: str) -> list[str]:
        ...

    def chunk_document(self, text: str, title: str) -> list[Chunked]:
        ...
