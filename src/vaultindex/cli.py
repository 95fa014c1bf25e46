from __future__ import annotations

import dataclasses
import json
import logging
from pathlib import Path

import typer

from .config import VaultConfig, load_config
from .errors import ConfigError, VaultIndexError
from .service import VaultIndex

app = typer.Typer(add_completion=False, no_args_is_help=True)


def _cfg(config: str) -> VaultConfig:
    try:
        return load_config(config)
    except ConfigError as e:
        raise typer.BadParameter(str(e), param_hint="--config") from e


def _setup_logging(log_file: str | None, log_level: str, verbose: bool) -> None:
    level = logging.DEBUG if verbose else getattr(logging, log_level.upper(), logging.INFO)

    fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"

    handlers: list[logging.Handler] = []

    console = logging.StreamHandler()
    console.setFormatter(logging.Formatter(fmt, datefmt))
    handlers.append(console)

    if log_file:
        from logging.handlers import RotatingFileHandler
        file_handler = RotatingFileHandler(
            log_file, maxBytes=10 * 1024 * 1024, backupCount=5
        )
        file_handler.setFormatter(logging.Formatter(fmt, datefmt))
        handlers.append(file_handler)

    logger = logging.getLogger("vaultindex")
    logger.setLevel(level)
    # Repeated invocations in one process must not stack handlers
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()
    for h in handlers:
        logger.addHandler(h)


def _open(cfg: VaultConfig, log_file: str | None, log_level: str | None, verbose: bool) -> VaultIndex:
    _setup_logging(log_file or cfg.log_file, log_level or cfg.log_level, verbose)
    return VaultIndex(cfg)


@app.command()
def init(vault: str = typer.Option(..., help="Vault root path"),
         index: str = typer.Option(..., help="Index directory"),
         out: str = typer.Option("config.toml", help="Write example config to this path")):
    """Write a starter config.toml."""
    outp = Path(out)
    outp.write_text(f"""[vault]
root = "{vault}"
ignore = [".git/**", ".obsidian/**", ".trash/**", "**/.DS_Store"]
extensions = [".md"]
# Notes must match one inclusion (when any are set) and no exclusion.
# Patterns: "#tag", "*.ext", "[[Note Title]]", "folder/sub"
inclusions = []
exclusions = []

[index]
dir = "{index}"
partition_max_mb = 150
checkpoint_interval = 128
check_integrity_after_sync = true

[chunking]
max_chunk_size = 5000
overlap_chars = 200

[embeddings]
provider = "sentence_transformers"
model = "BAAI/bge-small-en-v1.5"
batch_size = 16
device = "cpu"
# Set to true to use cached models only (no HuggingFace downloads)
# Can also be controlled via HF_OFFLINE_MODE environment variable
offline_mode = true
requests_per_second = 0
max_concurrency = 3
max_retries = 3

[retrieval]
top_k = 10
semantic_weight = 0.6
candidate_multiplier = 3
min_similarity = 0.0

[logging]
level = "INFO"
""", encoding="utf-8")
    typer.echo(f"Wrote {outp}")


@app.command()
def sync(config: str = typer.Option("config.toml"),
         force: bool = typer.Option(False, help="Re-embed every note even if unchanged"),
         log_file: str = typer.Option(None, "--log-file", "-l", help="Log file path for audit trail"),
         log_level: str = typer.Option(None, "--log-level", help="Log level: DEBUG, INFO, WARNING, ERROR (default: from config)"),
         verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose (DEBUG) logging")):
    """Bring the index up to date with the vault."""
    cfg = _cfg(config)
    with _open(cfg, log_file, log_level, verbose) as vi:
        try:
            summary = vi.sync(force=force)
        except VaultIndexError as e:
            typer.echo(f"Sync failed: {e}", err=True)
            raise typer.Exit(code=1)

    status = "cancelled" if summary.cancelled else "complete"
    typer.echo(
        f"Sync {status}: {summary.processed} indexed, {summary.skipped} unchanged, "
        f"{summary.removed} removed in {summary.elapsed_seconds:.1f}s"
    )
    if summary.rebuild_required:
        typer.echo("  (index was rebuilt for the current embedding model)")
    if summary.failed:
        typer.echo(f"  ({summary.failed} notes failed; they will be retried on the next sync)")
        for p in summary.failed_paths:
            typer.echo(f"    {p}")
        raise typer.Exit(code=2)


@app.command()
def query(q: str,
          config: str = typer.Option("config.toml"),
          k: int = typer.Option(None, "-k", help="Number of results (default: from config)"),
          semantic_weight: float = typer.Option(None, help="Override semantic weight, 0.0-1.0"),
          log_level: str = typer.Option("WARNING", "--log-level")):
    """Search the vault with hybrid semantic + keyword ranking."""
    cfg = _cfg(config)
    if semantic_weight is not None:
        if not 0.0 <= semantic_weight <= 1.0:
            raise typer.BadParameter("must be between 0.0 and 1.0", param_hint="--semantic-weight")
        cfg = dataclasses.replace(cfg, semantic_weight=semantic_weight)

    with _open(cfg, None, log_level, False) as vi:
        try:
            hits = vi.retrieve(q, k=k)
        except VaultIndexError as e:
            typer.echo(f"Query failed: {e}", err=True)
            raise typer.Exit(code=1)

    _echo_hits(hits)


@app.command()
def similar(path: str,
            config: str = typer.Option("config.toml"),
            k: int = typer.Option(None, "-k", help="Number of results (default: from config)"),
            log_level: str = typer.Option("WARNING", "--log-level")):
    """List notes semantically closest to PATH (vault-relative)."""
    cfg = _cfg(config)
    with _open(cfg, None, log_level, False) as vi:
        if not vi.backend.has_index(path):
            typer.echo(f"Not indexed: {path}", err=True)
            raise typer.Exit(code=1)
        try:
            hits = vi.similar_notes(path, k=k)
        except VaultIndexError as e:
            typer.echo(f"Search failed: {e}", err=True)
            raise typer.Exit(code=1)
    _echo_hits(hits)


def _echo_hits(hits) -> None:
    results = []
    for h in hits:
        results.append({
            "path": h.path,
            "title": h.title,
            "score": h.score,
            "semantic_score": h.semantic_score,
            "lexical_score": h.lexical_score,
            "source": h.source,
            "chunk_id": h.chunk_id,
            "snippet": h.snippet,
            "tags": list(h.tags),
        })
    typer.echo(json.dumps(results, indent=2))


@app.command()
def status(config: str = typer.Option("config.toml")):
    """Show index statistics."""
    cfg = _cfg(config)
    with VaultIndex(cfg) as vi:
        stats = vi.get_stats()
    typer.echo(f"Vault: {cfg.vault_root}")
    typer.echo(f"Index: {cfg.index_dir}")
    typer.echo(f"Embedding model: {stats.embedding_model_id or '(none)'}")
    typer.echo(f"Indexed notes: {stats.indexed_document_count}")
    typer.echo(f"Indexed chunks: {stats.chunk_count}")
    typer.echo(f"Partitions: {stats.partition_count}")
    typer.echo(f"Missing embeddings: {stats.missing_embeddings_count}")
    if stats.corrupt_partitions:
        typer.echo(f"Corrupt partitions: {', '.join(stats.corrupt_partitions)}")


@app.command()
def gc(config: str = typer.Option("config.toml"),
       log_level: str = typer.Option(None, "--log-level", help="Log level: DEBUG, INFO, WARNING, ERROR (default: from config)"),
       verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose (DEBUG) logging")):
    """Remove index entries for deleted or excluded notes."""
    cfg = _cfg(config)
    with _open(cfg, None, log_level, verbose) as vi:
        removed = vi.garbage_collect()
    typer.echo(f"Removed {removed} stale entries.")


@app.command()
def check(config: str = typer.Option("config.toml"),
          log_level: str = typer.Option(None, "--log-level", help="Log level: DEBUG, INFO, WARNING, ERROR (default: from config)"),
          verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose (DEBUG) logging")):
    """Validate stored vectors; flagged notes are re-embedded on the next sync."""
    cfg = _cfg(config)
    with _open(cfg, None, log_level, verbose) as vi:
        report = vi.check_integrity()
    typer.echo(f"Checked {report.checked} notes, {len(report.flagged)} flagged.")
    for p in report.flagged:
        typer.echo(f"  {p}: {report.reasons.get(p, '')}")


@app.command()
def clear(config: str = typer.Option("config.toml"),
          yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation")):
    """Delete every indexed note."""
    cfg = _cfg(config)
    if not yes:
        typer.confirm(f"Clear the index at {cfg.index_dir}?", abort=True)
    with VaultIndex(cfg) as vi:
        vi.clear_index()
    typer.echo("Index cleared.")


@app.command()
def watch(config: str = typer.Option("config.toml"),
          log_file: str = typer.Option(None, "--log-file", "-l", help="Log file path for audit trail"),
          log_level: str = typer.Option(None, "--log-level", help="Log level: DEBUG, INFO, WARNING, ERROR (default: from config)"),
          verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose (DEBUG) logging"),
          initial_sync: bool = typer.Option(True, help="Run a sync before watching")):
    """Watch the vault for changes and index continuously."""
    cfg = _cfg(config)
    with _open(cfg, log_file, log_level, verbose) as vi:
        if initial_sync:
            vi.sync()
        vi.watch()


if __name__ == "__main__":
    app()
