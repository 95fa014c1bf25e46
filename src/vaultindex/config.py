from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
import os
import tomllib
from typing import Any

from .errors import ConfigError


def _expand(p: str) -> str:
    return os.path.expandvars(os.path.expanduser(p))


def _int_in_range(section: dict[str, Any], key: str, default: int, lo: int, hi: int) -> int:
    value = int(section.get(key, default))
    if value < lo or value > hi:
        raise ConfigError(f"Invalid {key}: {value}. Must be between {lo} and {hi}.")
    return value


def _float_in_range(section: dict[str, Any], key: str, default: float, lo: float, hi: float) -> float:
    value = float(section.get(key, default))
    if value < lo or value > hi:
        raise ConfigError(f"Invalid {key}: {value}. Must be between {lo} and {hi}.")
    return value


@dataclass(frozen=True)
class VaultConfig:
    """Configuration for a single vault index."""

    vault_root: Path
    index_dir: Path

    # Vault scanning
    ignore: list[str] = field(default_factory=list)
    extensions: list[str] = field(default_factory=lambda: [".md"])
    inclusions: list[str] = field(default_factory=list)
    exclusions: list[str] = field(default_factory=list)

    def __post_init__(self):
        if isinstance(self.vault_root, str):
            object.__setattr__(self, "vault_root", Path(_expand(self.vault_root)))
        if isinstance(self.index_dir, str):
            object.__setattr__(self, "index_dir", Path(_expand(self.index_dir)))

    # Index persistence
    partition_max_mb: float = 150.0
    checkpoint_interval: int = 128  # documents between checkpoint saves; 0 disables
    check_integrity_after_sync: bool = True

    # Chunking
    max_chunk_size: int = 5000
    overlap_chars: int = 200

    # Embeddings
    embedding_provider: str = "sentence_transformers"  # sentence_transformers|ollama
    embedding_model: str = "BAAI/bge-small-en-v1.5"
    embedding_batch_size: int = 16
    embedding_device: str = "cpu"  # cpu|cuda|mps
    offline_mode: bool = True
    use_query_prefix: bool = True
    query_prefix: str = "Represent this sentence for searching relevant passages: "
    ollama_endpoint: str = "http://127.0.0.1:11434/api/embed"
    embedding_timeout_s: float = 30.0

    # Embedding pipeline
    requests_per_second: float = 0.0  # 0 = unlimited
    max_concurrency: int = 3
    max_retries: int = 3
    retry_backoff_ms: int = 500
    max_failure_ratio: float = 0.5

    # Retrieval
    top_k: int = 10
    semantic_weight: float = 0.6
    candidate_multiplier: int = 3
    min_similarity: float = 0.0

    # Logging
    log_level: str = "INFO"
    log_file: str | None = None

    @property
    def partition_max_bytes(self) -> int:
        return int(self.partition_max_mb * 1024 * 1024)

    @staticmethod
    def from_toml(path: str | Path) -> "VaultConfig":
        data = tomllib.loads(Path(path).read_text(encoding="utf-8"))
        return VaultConfig.from_dict(data)

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "VaultConfig":
        vault = data.get("vault", {})
        index = data.get("index", {})
        chunking = data.get("chunking", {})
        emb = data.get("embeddings", {})
        ret = data.get("retrieval", {})
        log = data.get("logging", {})

        if "root" not in vault:
            raise ConfigError("Missing required [vault] root")
        if "dir" not in index:
            raise ConfigError("Missing required [index] dir")

        vault_root = Path(_expand(vault["root"])).resolve()
        index_dir = Path(_expand(index["dir"])).resolve()

        extensions = [str(e) if str(e).startswith(".") else f".{e}" for e in vault.get("extensions", [".md"])]
        if not extensions:
            raise ConfigError("Invalid extensions: at least one file extension is required.")

        partition_max_mb = _float_in_range(index, "partition_max_mb", 150.0, 0.001, 4096.0)
        checkpoint_interval = _int_in_range(index, "checkpoint_interval", 128, 0, 1_000_000)

        overlap_chars = _int_in_range(chunking, "overlap_chars", 200, 0, 5000)
        max_chunk_size = _int_in_range(chunking, "max_chunk_size", 5000, 200, 50000)
        if overlap_chars >= max_chunk_size // 2:
            raise ConfigError(
                f"Invalid overlap_chars: {overlap_chars}. Must be less than half of max_chunk_size ({max_chunk_size})."
            )

        provider = emb.get("provider", "sentence_transformers")
        valid_providers = ("sentence_transformers", "ollama")
        if provider not in valid_providers:
            raise ConfigError(f"Invalid provider: {provider}. Must be one of {valid_providers}.")

        device = emb.get("device", "cpu")
        valid_devices = ("cpu", "cuda", "mps")
        if device not in valid_devices:
            raise ConfigError(f"Invalid device: {device}. Must be one of {valid_devices}.")

        batch_size = _int_in_range(emb, "batch_size", 16, 1, 10000)
        requests_per_second = _float_in_range(emb, "requests_per_second", 0.0, 0.0, 10000.0)
        max_concurrency = _int_in_range(emb, "max_concurrency", 3, 1, 64)
        max_retries = _int_in_range(emb, "max_retries", 3, 0, 20)
        retry_backoff_ms = _int_in_range(emb, "retry_backoff_ms", 500, 0, 600_000)
        max_failure_ratio = _float_in_range(emb, "max_failure_ratio", 0.5, 0.0, 1.0)
        timeout_s = _float_in_range(emb, "timeout_s", 30.0, 0.1, 3600.0)

        # Environment variable takes precedence if explicitly set
        offline_mode_env = os.environ.get("HF_OFFLINE_MODE")
        if offline_mode_env is not None:
            offline_mode = offline_mode_env.lower() in ("1", "true", "yes")
        else:
            offline_mode = bool(emb.get("offline_mode", True))

        top_k = _int_in_range(ret, "top_k", 10, 1, 1000)
        semantic_weight = _float_in_range(ret, "semantic_weight", 0.6, 0.0, 1.0)
        candidate_multiplier = _int_in_range(ret, "candidate_multiplier", 3, 1, 100)
        min_similarity = _float_in_range(ret, "min_similarity", 0.0, 0.0, 1.0)

        log_level = str(log.get("level", "INFO")).upper()
        if log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ConfigError(f"Invalid log level: {log_level}.")
        log_file = log.get("file")

        return VaultConfig(
            vault_root=vault_root,
            index_dir=index_dir,
            ignore=list(vault.get("ignore", [])),
            extensions=extensions,
            inclusions=list(vault.get("inclusions", [])),
            exclusions=list(vault.get("exclusions", [])),
            partition_max_mb=partition_max_mb,
            checkpoint_interval=checkpoint_interval,
            check_integrity_after_sync=bool(index.get("check_integrity_after_sync", True)),
            max_chunk_size=max_chunk_size,
            overlap_chars=overlap_chars,
            embedding_provider=provider,
            embedding_model=emb.get("model", "BAAI/bge-small-en-v1.5"),
            embedding_batch_size=batch_size,
            embedding_device=device,
            offline_mode=offline_mode,
            use_query_prefix=bool(emb.get("use_query_prefix", True)),
            query_prefix=emb.get("query_prefix", "Represent this sentence for searching relevant passages: "),
            ollama_endpoint=emb.get("ollama_endpoint", "http://127.0.0.1:11434/api/embed"),
            embedding_timeout_s=timeout_s,
            requests_per_second=requests_per_second,
            max_concurrency=max_concurrency,
            max_retries=max_retries,
            retry_backoff_ms=retry_backoff_ms,
            max_failure_ratio=max_failure_ratio,
            top_k=top_k,
            semantic_weight=semantic_weight,
            candidate_multiplier=candidate_multiplier,
            min_similarity=min_similarity,
            log_level=log_level,
            log_file=_expand(log_file) if log_file else None,
        )


def apply_offline_mode(cfg: VaultConfig) -> None:
    """Export HuggingFace offline variables for this process when configured."""
    if cfg.offline_mode:
        os.environ.setdefault("HF_HUB_OFFLINE", "1")
        os.environ.setdefault("TRANSFORMERS_OFFLINE", "1")


def load_config(path: str | Path) -> VaultConfig:
    p = Path(path)
    if not p.exists():
        raise ConfigError(f"Config file not found: {p}")
    return VaultConfig.from_toml(p)
