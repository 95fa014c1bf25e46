"""On-disk layout of the partitioned index.

    <index_dir>/manifest.json
    <index_dir>/partitions/partition-000.jsonl
    <index_dir>/partitions/partition-001.jsonl
    ...

A partition file is JSON Lines. The first line is a header describing the
file; every following line is one serialized IndexedDocument. Files are
self-describing, so a partition can be read without the manifest. The
manifest records partition sizes and document placement and is written
last on every save.
"""
from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Any

import numpy as np

from ..errors import ManifestError, PartitionCorruptError
from ..models import IndexedDocument

logger = logging.getLogger(__name__)

PARTITION_FORMAT = "vaultindex-partition"
PARTITION_VERSION = 1
MANIFEST_VERSION = 1
MANIFEST_NAME = "manifest.json"
PARTITION_DIR = "partitions"

_PARTITION_RE = re.compile(r"^partition-(\d{3,})\.jsonl$")


class _JSONEncoder(json.JSONEncoder):
    """JSON encoder for metadata values: dates and numpy scalars."""
    def default(self, obj: Any) -> Any:
        if isinstance(obj, (datetime, date)):
            return obj.isoformat()
        if isinstance(obj, np.integer):
            return int(obj)
        if isinstance(obj, np.floating):
            return float(obj)
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        return super().default(obj)


def _json_dumps(obj: Any) -> str:
    return json.dumps(obj, cls=_JSONEncoder, ensure_ascii=False, separators=(",", ":"))


def partition_filename(partition_id: int) -> str:
    return f"partition-{partition_id:03d}.jsonl"


def parse_partition_id(name: str) -> int | None:
    m = _PARTITION_RE.match(name)
    return int(m.group(1)) if m else None


def atomic_write_text(path: Path, text: str) -> None:
    """Write via a temp file and rename so readers never see a partial file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    with tmp.open("w", encoding="utf-8") as f:
        f.write(text)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp, path)


def encode_document(doc: IndexedDocument) -> str:
    """One JSON line (no trailing newline)."""
    return _json_dumps(doc.to_dict())


def encoded_size(line: str) -> int:
    return len(line.encode("utf-8")) + 1


@dataclass
class PartitionInfo:
    id: int
    file: str
    size_bytes: int = 0
    documents: int = 0


@dataclass
class Manifest:
    embedding_model: str | None = None
    dims: int = 0
    partitions: dict[int, PartitionInfo] = field(default_factory=dict)
    document_partitions: dict[str, int] = field(default_factory=dict)
    # id -> reason; cleared once a sync has re-embedded the lost documents
    corrupt_partitions: dict[int, str] = field(default_factory=dict)
    updated_at: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": MANIFEST_VERSION,
            "embedding_model": self.embedding_model,
            "dims": self.dims,
            "updated_at": self.updated_at,
            "partitions": [
                {"id": p.id, "file": p.file, "size_bytes": p.size_bytes, "documents": p.documents}
                for p in sorted(self.partitions.values(), key=lambda p: p.id)
            ],
            "document_partitions": dict(sorted(self.document_partitions.items())),
            "corrupt_partitions": [
                {"id": pid, "file": partition_filename(pid), "reason": reason}
                for pid, reason in sorted(self.corrupt_partitions.items())
            ],
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "Manifest":
        version = int(data.get("version", 0))
        if version != MANIFEST_VERSION:
            raise ManifestError(f"Unsupported manifest version: {version}")
        partitions = {}
        for p in data.get("partitions", []):
            info = PartitionInfo(
                id=int(p["id"]),
                file=str(p["file"]),
                size_bytes=int(p.get("size_bytes", 0)),
                documents=int(p.get("documents", 0)),
            )
            partitions[info.id] = info
        return Manifest(
            embedding_model=data.get("embedding_model"),
            dims=int(data.get("dims", 0)),
            partitions=partitions,
            document_partitions={str(k): int(v) for k, v in data.get("document_partitions", {}).items()},
            corrupt_partitions={int(c["id"]): str(c.get("reason", "")) for c in data.get("corrupt_partitions", [])},
            updated_at=int(data.get("updated_at", 0)),
        )


def read_manifest(index_dir: Path) -> Manifest | None:
    """Load the manifest, or None when the index has never been saved."""
    path = index_dir / MANIFEST_NAME
    if not path.exists():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ManifestError(f"Manifest is not an object: {path}")
        return Manifest.from_dict(data)
    except ManifestError:
        raise
    except (OSError, ValueError, KeyError, TypeError) as e:
        raise ManifestError(f"Unreadable manifest {path}: {e}") from e


def write_manifest(index_dir: Path, manifest: Manifest) -> None:
    atomic_write_text(index_dir / MANIFEST_NAME, json.dumps(manifest.to_dict(), indent=2) + "\n")


def write_partition(
    path: Path,
    partition_id: int,
    embedding_model: str | None,
    dims: int,
    lines: list[str],
) -> int:
    """Write a partition file and return its size in bytes."""
    header = _json_dumps({
        "format": PARTITION_FORMAT,
        "version": PARTITION_VERSION,
        "partition": partition_id,
        "embedding_model": embedding_model,
        "dims": dims,
        "documents": len(lines),
    })
    text = "\n".join([header, *lines]) + "\n"
    atomic_write_text(path, text)
    return len(text.encode("utf-8"))


def read_partition(path: Path) -> tuple[dict[str, Any], list[tuple[IndexedDocument, str]]]:
    """Read a partition file.

    Returns the header and (document, raw line) pairs. Any decoding problem
    raises PartitionCorruptError for the whole file.
    """
    try:
        raw = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise PartitionCorruptError(path.name, str(e)) from e

    lines = [ln for ln in raw.split("\n") if ln.strip()]
    if not lines:
        raise PartitionCorruptError(path.name, "empty file")

    try:
        header = json.loads(lines[0])
    except ValueError as e:
        raise PartitionCorruptError(path.name, f"bad header: {e}") from e
    if not isinstance(header, dict) or header.get("format") != PARTITION_FORMAT:
        raise PartitionCorruptError(path.name, "missing partition header")
    if int(header.get("version", 0)) > PARTITION_VERSION:
        raise PartitionCorruptError(path.name, f"unsupported version {header.get('version')}")

    docs: list[tuple[IndexedDocument, str]] = []
    for lineno, line in enumerate(lines[1:], start=2):
        try:
            doc = IndexedDocument.from_dict(json.loads(line))
        except PartitionCorruptError:
            raise
        except (ValueError, KeyError, TypeError) as e:
            raise PartitionCorruptError(path.name, f"line {lineno}: {e}") from e
        docs.append((doc, line))

    expected = header.get("documents")
    if isinstance(expected, int) and expected != len(docs):
        raise PartitionCorruptError(path.name, f"header lists {expected} documents, found {len(docs)}")
    return header, docs
