"""Chunk embedding with rate limiting, retries and model fallback."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Sequence, Tuple

from vaultindex.config import OllamaConfig, RetryConfig
from vaultindex.embedding.ollama import OllamaClient
from vaultindex.errors import EmbeddingValidationError
from vaultindex.ingestion.chunker import heading_of
from vaultindex.models import Chunk, EmbeddedChunk
from vaultindex.utils.rate_limit import RateLimiter
from vaultindex.utils.retry import retry_with_backoff

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class EmbeddingFailure:
    chunk: Chunk
    error: BaseException | None


@dataclass(slots=True)
class EmbeddingReport:
    """Outcome of embedding a batch: successes in input order plus drops."""

    embedded: List[EmbeddedChunk] = field(default_factory=list)
    failed: List[EmbeddingFailure] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.failed


class Embedder:
    """Turns chunks into vectors through the Ollama embedding endpoint.

    Each chunk is tried against the primary model and then every fallback
    model; each model gets a full retry-with-backoff budget. Chunks that fail
    on every model get exactly one more pass as a batch, after which any
    remaining failures are reported and dropped.
    """

    def __init__(
        self,
        client: OllamaClient,
        config: OllamaConfig | None = None,
        *,
        retry: RetryConfig | None = None,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        self.client = client
        self.config = config or client.config
        self.retry = retry or RetryConfig()
        self.rate_limiter = rate_limiter or RateLimiter()

    @property
    def models(self) -> List[str]:
        return [self.config.embedding_model, *self.config.fallback_models]

    def _validate(self, vector: Sequence[float]) -> None:
        expected = self.config.vector_dimensions
        if len(vector) != expected:
            raise EmbeddingValidationError(
                f"Vector dimension mismatch: expected {expected}, got {len(vector)}"
            )

    async def _embed_with_model(self, text: str, model: str) -> List[float]:
        async def attempt() -> List[float]:
            await self.rate_limiter.wait_for_slot()
            vector = await self.client.embed(text, model=model, timeout=self.config.timeout)
            self._validate(vector)
            return vector

        return await retry_with_backoff(attempt, self.retry)

    async def embed_query(self, text: str) -> List[float]:
        """Embed a search query with the primary model."""
        return await self._embed_with_model(text, self.config.embedding_model)

    async def _embed_pass(
        self, items: Sequence[Tuple[int, Chunk]]
    ) -> Tuple[List[Tuple[int, EmbeddedChunk]], List[Tuple[int, EmbeddingFailure]]]:
        embedded: List[Tuple[int, EmbeddedChunk]] = []
        failed: List[Tuple[int, EmbeddingFailure]] = []

        for count, (position, chunk) in enumerate(items, start=1):
            LOGGER.debug("Embedding chunk %d/%d", count, len(items))
            last_error: BaseException | None = None
            for model in self.models:
                try:
                    vector = await self._embed_with_model(chunk.text, model)
                except Exception as exc:
                    last_error = exc
                    LOGGER.warning("Embedding chunk %d with %s failed: %s", position, model, exc)
                    continue
                embedded.append(
                    (position, EmbeddedChunk(vector=vector, text=chunk.text, heading=heading_of(chunk)))
                )
                break
            else:
                failed.append((position, EmbeddingFailure(chunk=chunk, error=last_error)))

        return embedded, failed

    async def embed(self, chunks: Sequence[Chunk]) -> EmbeddingReport:
        """Embed ``chunks`` best-effort; never raises for per-chunk failures."""
        if not chunks:
            LOGGER.info("No chunks to embed")
            return EmbeddingReport()

        LOGGER.info("Embedding %d chunks", len(chunks))
        embedded, failed = await self._embed_pass(list(enumerate(chunks)))

        if failed:
            LOGGER.warning("Retrying %d of %d failed chunks", len(failed), len(chunks))
            retried, failed = await self._embed_pass(
                [(position, failure.chunk) for position, failure in failed]
            )
            embedded.extend(retried)

        embedded.sort(key=lambda item: item[0])
        report = EmbeddingReport(
            embedded=[chunk for _, chunk in embedded],
            failed=[failure for _, failure in failed],
        )
        if report.failed:
            LOGGER.error(
                "Dropped %d of %d chunks after all embedding attempts",
                len(report.failed),
                len(chunks),
            )
        LOGGER.info("Embedded %d/%d chunks", len(report.embedded), len(chunks))
        return report
