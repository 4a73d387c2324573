"""Application configuration defaults."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Tuple

DEFAULT_OLLAMA_URL = "http://localhost:11434"
DEFAULT_EMBEDDING_MODEL = "nomic-embed-text:latest"
DEFAULT_QUERY_MODEL = "mistral:latest"

DAY_SECONDS = 24 * 60 * 60


@dataclass(slots=True)
class OllamaConfig:
    base_url: str = DEFAULT_OLLAMA_URL
    embedding_model: str = DEFAULT_EMBEDDING_MODEL
    query_model: str = DEFAULT_QUERY_MODEL
    fallback_models: Tuple[str, ...] = ()
    timeout: float = 30.0
    vector_dimensions: int = 768


@dataclass(slots=True)
class RetryConfig:
    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    factor: float = 2.0


@dataclass(slots=True)
class RateLimitConfig:
    max_requests: int = 10
    time_window: float = 1.0


@dataclass(slots=True)
class VectorStoreConfig:
    max_orphan_age: float = DAY_SECONDS
    optimization_threshold: int = 100_000
    backup_interval: float = DAY_SECONDS
    max_backups: int = 7
    lock_timeout: float = 5.0
    # Safety valve: a held lock is force-released after this many seconds.
    lock_hold_timeout: float | None = None
    settle_delay: float = 0.1

    @property
    def effective_hold_timeout(self) -> float:
        return self.lock_hold_timeout if self.lock_hold_timeout is not None else self.lock_timeout


@dataclass(slots=True)
class SearchConfig:
    limit: int = 10
    min_score: float = 0.6
    metadata_filter: Dict[str, Any] | None = None
    min_documents: int = 1


@dataclass(slots=True)
class AppConfig:
    vault_dir: Path = Path("vault")
    store_dir: Path = Path("db")
    cache_file: Path | None = None
    queue_file: Path | None = None
    debug: bool = False
    ollama: OllamaConfig = field(default_factory=OllamaConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    store: VectorStoreConfig = field(default_factory=VectorStoreConfig)
    search: SearchConfig = field(default_factory=SearchConfig)

    @classmethod
    def from_env(cls, environ: Dict[str, str] | None = None) -> "AppConfig":
        """Build a config, honouring the ``VAULTINDEX_*``, ``OLLAMA_BASE_URL`` and ``DEBUG`` variables."""
        env = os.environ if environ is None else environ
        config = cls()
        if env.get("VAULTINDEX_VAULT_DIR"):
            config.vault_dir = Path(env["VAULTINDEX_VAULT_DIR"])
        if env.get("VAULTINDEX_STORE_DIR"):
            config.store_dir = Path(env["VAULTINDEX_STORE_DIR"])
        if env.get("OLLAMA_BASE_URL"):
            config.ollama.base_url = env["OLLAMA_BASE_URL"].rstrip("/")
        config.debug = env.get("DEBUG", "").lower() == "true"
        return config

    def resolve_vault_dir(self, base_dir: Path | None = None) -> Path:
        return _resolve(self.vault_dir, base_dir)

    def resolve_store_dir(self, base_dir: Path | None = None) -> Path:
        return _resolve(self.store_dir, base_dir)

    def resolve_cache_file(self, base_dir: Path | None = None) -> Path:
        if self.cache_file is None:
            return self.resolve_store_dir(base_dir) / ".cache.json"
        return _resolve(self.cache_file, base_dir)

    def resolve_queue_file(self, base_dir: Path | None = None) -> Path:
        if self.queue_file is None:
            return self.resolve_store_dir(base_dir) / ".queue.json"
        return _resolve(self.queue_file, base_dir)


def _resolve(path: Path, base_dir: Path | None) -> Path:
    if Path(path).is_absolute() or base_dir is None:
        return Path(path)
    return base_dir / path
