"""Tests for configuration module."""

from __future__ import annotations

from pathlib import Path

from vaultindex.config import (
    DAY_SECONDS,
    DEFAULT_EMBEDDING_MODEL,
    DEFAULT_OLLAMA_URL,
    DEFAULT_QUERY_MODEL,
    AppConfig,
    OllamaConfig,
    RateLimitConfig,
    RetryConfig,
    SearchConfig,
    VectorStoreConfig,
)


class TestDefaults:
    """Default values of the nested configs."""

    def test_ollama_defaults(self) -> None:
        config = OllamaConfig()
        assert config.base_url == DEFAULT_OLLAMA_URL == "http://localhost:11434"
        assert config.embedding_model == DEFAULT_EMBEDDING_MODEL
        assert config.query_model == DEFAULT_QUERY_MODEL
        assert config.fallback_models == ()
        assert config.timeout == 30.0
        assert config.vector_dimensions == 768

    def test_retry_and_rate_limit_defaults(self) -> None:
        assert RetryConfig() == RetryConfig(max_retries=3, initial_delay=1.0, max_delay=10.0, factor=2.0)
        assert RateLimitConfig() == RateLimitConfig(max_requests=10, time_window=1.0)

    def test_store_defaults(self) -> None:
        config = VectorStoreConfig()
        assert config.max_orphan_age == DAY_SECONDS
        assert config.backup_interval == DAY_SECONDS
        assert config.optimization_threshold == 100_000
        assert config.max_backups == 7
        assert config.lock_timeout == 5.0

    def test_hold_timeout_falls_back_to_lock_timeout(self) -> None:
        assert VectorStoreConfig(lock_timeout=2.0).effective_hold_timeout == 2.0
        assert VectorStoreConfig(lock_hold_timeout=9.0).effective_hold_timeout == 9.0

    def test_search_defaults(self) -> None:
        config = SearchConfig()
        assert config.limit == 10
        assert config.min_score == 0.6
        assert config.metadata_filter is None

    def test_nested_configs_are_independent(self) -> None:
        first = AppConfig()
        second = AppConfig()
        first.ollama.base_url = "http://other:1234"
        assert second.ollama.base_url == DEFAULT_OLLAMA_URL


class TestFromEnv:
    """Test AppConfig.from_env."""

    def test_empty_environment(self) -> None:
        config = AppConfig.from_env({})
        assert config.vault_dir == Path("vault")
        assert config.store_dir == Path("db")
        assert config.debug is False

    def test_overrides(self) -> None:
        config = AppConfig.from_env(
            {
                "VAULTINDEX_VAULT_DIR": "/data/vault",
                "VAULTINDEX_STORE_DIR": "/data/db",
                "OLLAMA_BASE_URL": "http://gpu-box:11434/",
                "DEBUG": "TRUE",
            }
        )
        assert config.vault_dir == Path("/data/vault")
        assert config.store_dir == Path("/data/db")
        assert config.ollama.base_url == "http://gpu-box:11434"
        assert config.debug is True

    def test_debug_requires_true(self) -> None:
        assert AppConfig.from_env({"DEBUG": "1"}).debug is False


class TestResolvePaths:
    def test_relative_paths_use_base_dir(self, tmp_path: Path) -> None:
        config = AppConfig()
        assert config.resolve_vault_dir(tmp_path) == tmp_path / "vault"
        assert config.resolve_cache_file(tmp_path) == tmp_path / "db" / ".cache.json"
        assert config.resolve_queue_file(tmp_path) == tmp_path / "db" / ".queue.json"

    def test_absolute_paths_are_kept(self, tmp_path: Path) -> None:
        config = AppConfig(store_dir=tmp_path / "store", cache_file=tmp_path / "c.json")
        assert config.resolve_store_dir(Path("/elsewhere")) == tmp_path / "store"
        assert config.resolve_cache_file(Path("/elsewhere")) == tmp_path / "c.json"

    def test_without_base_dir(self) -> None:
        assert AppConfig().resolve_store_dir() == Path("db")
