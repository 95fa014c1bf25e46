from __future__ import annotations

import re
import time
from pathlib import Path
from typing import Any, Iterable

TAG_RE = re.compile(r"(?<!\w)#([A-Za-z0-9_/-]+)")
CODE_FENCE_RE = re.compile(r"```.*?```", re.DOTALL)


def parse_tags(text: str) -> list[str]:
    # Fenced code often holds shell comments and color codes, not tags
    stripped = CODE_FENCE_RE.sub("", text)
    return [m.group(1) for m in TAG_RE.finditer(stripped)]


def normalize_tags(raw: Any) -> list[str]:
    """Coerce a frontmatter `tags` value into a list of bare tag names."""
    if raw is None:
        return []
    if isinstance(raw, str):
        items: Iterable[Any] = re.split(r"[,\s]+", raw)
    elif isinstance(raw, (list, tuple, set)):
        items = raw
    else:
        items = [raw]
    out: list[str] = []
    for item in items:
        tag = str(item).strip().lstrip("#")
        if tag and tag not in out:
            out.append(tag)
    return out


def merge_tags(*groups: Iterable[str]) -> tuple[str, ...]:
    seen: list[str] = []
    for group in groups:
        for tag in group:
            if tag not in seen:
                seen.append(tag)
    return tuple(seen)


def safe_read_text(path: Path, max_bytes: int = 10_000_000) -> str:
    b = path.read_bytes()
    if len(b) > max_bytes:
        raise ValueError(f"File too large for text read: {path} ({len(b)} bytes)")
    return b.decode("utf-8", errors="replace")


def now_ms() -> int:
    return int(time.time() * 1000)
