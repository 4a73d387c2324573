"""Shared fixtures: a fake Ollama endpoint and a store in a temp directory."""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Callable, List

import httpx
import pytest

from vaultindex.config import OllamaConfig, RateLimitConfig, RetryConfig, VectorStoreConfig
from vaultindex.embedding.encoder import Embedder
from vaultindex.embedding.ollama import OllamaClient
from vaultindex.index.cache import ChangeCache
from vaultindex.index.storage import VectorStoreManager
from vaultindex.utils.rate_limit import RateLimiter

DIMENSIONS = 4
FAST_RETRY = RetryConfig(max_retries=1, initial_delay=0.0, max_delay=0.0)


def fake_vector(text: str, dimensions: int = DIMENSIONS) -> List[float]:
    """Deterministic, strictly positive vector derived from the text."""
    digest = b""
    counter = 0
    while len(digest) < dimensions:
        digest += hashlib.sha256(f"{counter}:{text}".encode("utf-8")).digest()
        counter += 1
    return [byte / 255 + 0.01 for byte in digest[:dimensions]]


def embedding_handler(dimensions: int = DIMENSIONS, calls: List[dict] | None = None) -> Callable:
    """MockTransport handler answering ``/api/embeddings`` with fake vectors."""

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if calls is not None:
            calls.append(body)
        return httpx.Response(200, json={"embedding": fake_vector(body["prompt"], dimensions)})

    return handler


def make_embedder(handler: Callable, config: OllamaConfig | None = None) -> Embedder:
    config = config or OllamaConfig(vector_dimensions=DIMENSIONS)
    client = OllamaClient(config, transport=httpx.MockTransport(handler))
    return Embedder(
        client,
        retry=FAST_RETRY,
        rate_limiter=RateLimiter(RateLimitConfig(max_requests=10_000, time_window=1.0)),
    )


@pytest.fixture
def vault_dir(tmp_path: Path) -> Path:
    path = tmp_path / "vault"
    path.mkdir()
    return path


@pytest.fixture
def store_dir(tmp_path: Path) -> Path:
    return tmp_path / "db"


@pytest.fixture
def change_cache(store_dir: Path) -> ChangeCache:
    return ChangeCache(store_dir / ".cache.json")


@pytest.fixture
def store(store_dir: Path, vault_dir: Path, change_cache: ChangeCache) -> VectorStoreManager:
    return VectorStoreManager(
        store_dir,
        change_cache,
        vault_dir=vault_dir,
        config=VectorStoreConfig(settle_delay=0.0),
    )
