"""Exception hierarchy for vaultindex.

Per-document failures during sync are recorded, not raised; these classes
cover the index-wide and retrieval-time failures that callers must see.
"""
from __future__ import annotations


class VaultIndexError(Exception):
    """Base exception for all vaultindex errors."""

    pass


class ConfigError(VaultIndexError, ValueError):
    """Raised when a configuration value is missing or out of range."""

    pass


class EmbeddingModelMismatchError(VaultIndexError):
    """Raised when a query is embedded with a different model than the index."""

    def __init__(self, index_model: str | None, query_model: str, detail: str = "") -> None:
        self.index_model = index_model
        self.query_model = query_model
        msg = f"Index was built with {index_model!r} but the provider is {query_model!r}"
        if detail:
            msg = f"{msg} ({detail})"
        super().__init__(msg)


class EmbeddingProviderError(VaultIndexError):
    """Raised when a provider returns a malformed response."""

    pass


class PartitionCorruptError(VaultIndexError):
    """Raised when a partition file cannot be decoded."""

    def __init__(self, partition_file: str, reason: str) -> None:
        self.partition_file = partition_file
        self.reason = reason
        super().__init__(f"Corrupt partition {partition_file}: {reason}")


class ManifestError(VaultIndexError):
    """Raised when the partition manifest is unreadable."""

    pass


class RebuildRequiredError(EmbeddingModelMismatchError):
    """Raised by single-note updates when only a full sync can bring the index to the current model."""

    pass


class DocumentReadError(VaultIndexError):
    """Raised when a note exists but cannot be read right now."""

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Cannot read {path}: {reason}")
