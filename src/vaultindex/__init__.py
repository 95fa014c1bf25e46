"""vaultindex: incremental semantic index and hybrid retrieval for Markdown vaults.

Notes are chunked, embedded in rate-limited concurrent batches and kept in
size-bounded partitions on disk; only changed notes are re-embedded. Queries
blend vector similarity with BM25 keyword relevance. All data stays local.

Public API:
- VaultConfig
- VaultIndex
- PartitionedStore
- SyncEngine
- HybridRetriever
"""

from .config import VaultConfig, load_config
from .errors import (
    ConfigError,
    DocumentReadError,
    EmbeddingModelMismatchError,
    EmbeddingProviderError,
    PartitionCorruptError,
    RebuildRequiredError,
    VaultIndexError,
)
from .indexer.sync import SyncControl, SyncEngine
from .models import IndexStats, ScoredDocument, SyncSummary
from .retrieval.hybrid import RetrievalWeights
from .retrieval.retriever import HybridRetriever
from .service import VaultIndex
from .store.partitioned_store import PartitionedStore

__all__ = [
    "VaultConfig",
    "load_config",
    "VaultIndex",
    "PartitionedStore",
    "SyncEngine",
    "SyncControl",
    "HybridRetriever",
    "RetrievalWeights",
    "SyncSummary",
    "IndexStats",
    "ScoredDocument",
    "VaultIndexError",
    "ConfigError",
    "EmbeddingModelMismatchError",
    "EmbeddingProviderError",
    "PartitionCorruptError",
    "RebuildRequiredError",
    "DocumentReadError",
]
