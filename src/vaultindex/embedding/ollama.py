"""Async client for the local Ollama inference endpoint."""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, List

import httpx

from vaultindex.config import OllamaConfig
from vaultindex.errors import EmbeddingError, EmbeddingValidationError

LOGGER = logging.getLogger(__name__)


def is_embedding_response(payload: Any) -> bool:
    """Check that ``payload`` is ``{"embedding": [number, ...]}``."""
    if not isinstance(payload, dict):
        return False
    embedding = payload.get("embedding")
    if not isinstance(embedding, list):
        return False
    return all(
        isinstance(item, (int, float)) and not isinstance(item, bool) for item in embedding
    )


class OllamaClient:
    """Thin wrapper around ``httpx.AsyncClient`` for embeddings and chat."""

    def __init__(
        self,
        config: OllamaConfig | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or OllamaConfig()
        self._client = httpx.AsyncClient(
            base_url=self.config.base_url,
            timeout=self.config.timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "OllamaClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def embed(
        self, text: str, *, model: str | None = None, timeout: float | None = None
    ) -> List[float]:
        """Request one embedding vector for ``text``.

        Raises ``EmbeddingError`` on transport failures or non-2xx replies and
        ``EmbeddingValidationError`` when the reply is not an embedding.
        """
        model = model or self.config.embedding_model
        try:
            response = await self._client.post(
                "/api/embeddings",
                json={"model": model, "prompt": text},
                timeout=timeout if timeout is not None else self.config.timeout,
            )
        except httpx.HTTPError as exc:
            raise EmbeddingError(f"Ollama request failed: {exc}") from exc

        if not response.is_success:
            raise EmbeddingError(
                f"Ollama API request failed with status {response.status_code}: {response.text}"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise EmbeddingValidationError("Ollama returned a non-JSON embedding reply") from exc

        if not is_embedding_response(payload):
            raise EmbeddingValidationError("Invalid embedding format received from Ollama")
        return [float(value) for value in payload["embedding"]]

    async def stream_chat(self, prompt: str, *, model: str | None = None) -> AsyncIterator[str]:
        """Yield response tokens from ``/api/chat`` as they arrive."""
        body = {
            "model": model or self.config.query_model,
            "messages": [{"role": "user", "content": prompt}],
            "stream": True,
        }
        LOGGER.debug("Streaming chat completion from %s", body["model"])
        async with self._client.stream("POST", "/api/chat", json=body, timeout=None) as response:
            response.raise_for_status()
            async for line in response.aiter_lines():
                if not line.strip():
                    continue
                try:
                    fragment = json.loads(line)
                except ValueError:
                    LOGGER.warning("Skipping malformed stream fragment: %r", line[:80])
                    continue
                message = fragment.get("message") if isinstance(fragment, dict) else None
                if isinstance(message, dict) and isinstance(message.get("content"), str):
                    yield message["content"]
                if isinstance(fragment, dict) and fragment.get("done"):
                    break
