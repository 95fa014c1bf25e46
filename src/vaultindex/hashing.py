from __future__ import annotations

import hashlib


def blake2b_hex(data: bytes) -> str:
    h = hashlib.blake2b(digest_size=32)
    h.update(data)
    return h.hexdigest()


def document_fingerprint(title: str, tags: tuple[str, ...] | list[str], content: str) -> str:
    """Fingerprint over everything that ends up in a note's chunks.

    Frontmatter tags live outside `content`, so they are hashed too. An
    mtime-only touch keeps the fingerprint.
    """
    parts = [title, "\x1f".join(sorted(tags)), content]
    return blake2b_hex("\x00".join(parts).encode("utf-8"))
