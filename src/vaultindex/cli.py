"""Command line interface for operating the vault index."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from vaultindex.config import AppConfig
from vaultindex.embedding.encoder import Embedder
from vaultindex.embedding.ollama import OllamaClient
from vaultindex.index.cache import ChangeCache
from vaultindex.index.local_index import LocalIndex
from vaultindex.index.search import Retriever
from vaultindex.index.storage import VectorStoreManager
from vaultindex.ingestion.queue import IngestionQueue
from vaultindex.models import FileEvent
from vaultindex.utils.files import iter_markdown_paths
from vaultindex.utils.rate_limit import RateLimiter

console = Console()
app = typer.Typer(help="vaultindex - incremental vector index for a markdown vault")

VaultOption = typer.Option(None, "--vault", help="Vault directory with markdown files")
StoreOption = typer.Option(None, "--store", help="Vector store directory")
VerboseOption = typer.Option(False, "--verbose", "-v", help="Verbose logging")


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )


def _load_config(vault: Path | None, store: Path | None) -> AppConfig:
    config = AppConfig.from_env()
    if vault is not None:
        config.vault_dir = vault
    if store is not None:
        config.store_dir = store
    return config


@dataclass
class Services:
    config: AppConfig
    client: OllamaClient
    cache: ChangeCache
    store: VectorStoreManager
    embedder: Embedder
    queue: IngestionQueue
    retriever: Retriever

    async def aclose(self) -> None:
        await self.client.aclose()
        await self.store.index.close()


def build_services(config: AppConfig, base_dir: Path | None = None) -> Services:
    """Wire every component from one configuration."""
    vault_dir = config.resolve_vault_dir(base_dir)
    store_dir = config.resolve_store_dir(base_dir)

    client = OllamaClient(config.ollama)
    cache = ChangeCache(config.resolve_cache_file(base_dir))
    store = VectorStoreManager(
        store_dir,
        cache,
        vault_dir=vault_dir,
        config=config.store,
        index=LocalIndex(store_dir, min_documents=config.search.min_documents),
    )
    embedder = Embedder(
        client,
        config.ollama,
        retry=config.retry,
        rate_limiter=RateLimiter(config.rate_limit),
    )
    queue = IngestionQueue(
        vault_dir=vault_dir,
        queue_file=config.resolve_queue_file(base_dir),
        cache=cache,
        embedder=embedder,
        store=store,
    )
    retriever = Retriever(embedder, store, config.search)
    return Services(config, client, cache, store, embedder, queue, retriever)


def _run(coro_factory, config: AppConfig):
    async def runner():
        services = build_services(config, Path.cwd())
        try:
            return await coro_factory(services)
        finally:
            await services.aclose()

    return asyncio.run(runner())


@app.command()
def index(
    inputs: Optional[List[Path]] = typer.Argument(None, help="Files or folders to index (default: whole vault)"),
    vault: Path = VaultOption,
    store: Path = StoreOption,
    verbose: bool = VerboseOption,
) -> None:
    """Recover the durable queue, then index markdown files."""
    config = _load_config(vault, store)
    _setup_logging(verbose or config.debug)

    async def work(services: Services) -> None:
        await services.queue.recover()
        await services.queue.wait_idle()
        paths = list(iter_markdown_paths(inputs or [services.queue.vault_dir]))
        if not paths:
            console.print("[yellow]No markdown files found.[/yellow]")
            return
        for path in paths:
            await services.queue.handle(FileEvent.ADD, path)
        await services.queue.wait_idle()
        stats = services.queue.stats
        console.print(
            f"Indexed: {stats.indexed}, touched: {stats.touched}, "
            f"skipped: {stats.skipped}, failed: {stats.failed}"
        )

    _run(work, config)


@app.command()
def remove(
    inputs: List[Path] = typer.Argument(..., help="Files to drop from the index"),
    vault: Path = VaultOption,
    store: Path = StoreOption,
    verbose: bool = VerboseOption,
) -> None:
    """Remove documents from the index."""
    config = _load_config(vault, store)
    _setup_logging(verbose or config.debug)

    async def work(services: Services) -> None:
        for path in inputs:
            await services.queue.handle(FileEvent.UNLINK, path)
        await services.queue.wait_idle()
        console.print(f"Removed {services.queue.stats.removed} documents.")

    _run(work, config)


@app.command()
def recover(
    vault: Path = VaultOption,
    store: Path = StoreOption,
    verbose: bool = VerboseOption,
) -> None:
    """Drain events left in the durable queue by a previous run."""
    config = _load_config(vault, store)
    _setup_logging(verbose or config.debug)

    async def work(services: Services) -> None:
        count = await services.queue.recover()
        await services.queue.wait_idle()
        console.print(f"Recovered {count} queued operations.")

    _run(work, config)


@app.command()
def search(
    query: str = typer.Argument(..., help="Query text"),
    limit: int = typer.Option(10, help="Number of results to display"),
    min_score: Optional[float] = typer.Option(None, help="Minimum similarity score"),
    file_path: Optional[str] = typer.Option(None, "--file", help="Only search this document"),
    vault: Path = VaultOption,
    store: Path = StoreOption,
    verbose: bool = VerboseOption,
) -> None:
    """Execute a semantic search."""
    config = _load_config(vault, store)
    _setup_logging(verbose or config.debug)
    metadata_filter = {"filePath": file_path} if file_path else None

    async def work(services: Services):
        return await services.retriever.search(
            query, limit=limit, min_score=min_score, metadata_filter=metadata_filter
        )

    results = _run(work, config)
    if not results:
        console.print("[yellow]No matches found.[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Score")
    table.add_column("Document")
    table.add_column("Chunk")
    table.add_column("Snippet")

    for result in results:
        snippet = result.text.replace("\n", " ")
        table.add_row(
            f"{result.score:.4f}",
            result.metadata.file_path,
            str(result.metadata.chunk_index),
            snippet[:180],
        )

    console.print(table)


@app.command()
def ask(
    query: str = typer.Argument(..., help="Question to answer from the vault"),
    limit: int = typer.Option(5, help="Number of chunks to include as context"),
    vault: Path = VaultOption,
    store: Path = StoreOption,
    verbose: bool = VerboseOption,
) -> None:
    """Retrieve context and stream an answer from the query model."""
    config = _load_config(vault, store)
    _setup_logging(verbose or config.debug)

    async def work(services: Services) -> None:
        results = await services.retriever.search(query, limit=limit)
        context = "\n".join(
            f"Source: {item['item']['metadata']['filePath']}\n"
            f"Score: {item['score']:.2f}\n"
            f"Content: {item['item']['metadata']['text']}\n"
            for item in (result.to_dict() for result in results)
        )
        prompt = f"Context:\n{context}\nQuestion: {query}" if context else query
        async for token in services.client.stream_chat(prompt):
            console.print(token, end="", markup=False, highlight=False, soft_wrap=True)
        console.print()

    _run(work, config)


@app.command()
def cleanup(
    vault: Path = VaultOption,
    store: Path = StoreOption,
    verbose: bool = VerboseOption,
) -> None:
    """Remove orphaned records that no cached document references."""
    config = _load_config(vault, store)
    _setup_logging(verbose or config.debug)

    async def work(services: Services):
        return await services.store.cleanup_orphans()

    stats = _run(work, config)
    console.print(f"Removed {stats.deleted} orphaned records, kept {stats.skipped}.")


@app.command()
def optimize(
    vault: Path = VaultOption,
    store: Path = StoreOption,
    verbose: bool = VerboseOption,
) -> None:
    """Rebuild the vector index."""
    config = _load_config(vault, store)
    _setup_logging(verbose or config.debug)

    async def work(services: Services):
        return await services.store.optimize()

    count = _run(work, config)
    console.print(f"Rebuilt index with {count} records.")


@app.command()
def backup(
    vault: Path = VaultOption,
    store: Path = StoreOption,
    verbose: bool = VerboseOption,
) -> None:
    """Snapshot the cache and records now, pruning old backups."""
    config = _load_config(vault, store)
    _setup_logging(verbose or config.debug)

    async def work(services: Services):
        return await services.store.backup(force=True)

    path = _run(work, config)
    console.print(f"Backup written to [bold]{path}[/bold]")


if __name__ == "__main__":  # pragma: no cover
    app()
