"""Semantic search interface."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List

from vaultindex.config import SearchConfig
from vaultindex.embedding.encoder import Embedder
from vaultindex.errors import IndexTooSmallError
from vaultindex.index.storage import ScoredRecord, VectorStoreManager
from vaultindex.models import RecordMetadata

LOGGER = logging.getLogger(__name__)

TEXT_UNAVAILABLE = "[Text unavailable]"


@dataclass(slots=True)
class SearchResult:
    id: str
    score: float
    metadata: RecordMetadata
    text: str

    def to_dict(self) -> Dict[str, Any]:
        """Shape consumed by prompt builders: ``{item: {metadata}, score}``."""
        metadata = self.metadata.to_dict()
        metadata["text"] = self.text
        return {"item": {"id": self.id, "metadata": metadata}, "score": self.score}


def matches_filter(metadata: RecordMetadata, metadata_filter: Dict[str, Any]) -> bool:
    """Every filter key must equal the record value, or contain it if a list."""
    for key, expected in metadata_filter.items():
        actual = metadata.get(key)
        if isinstance(expected, (list, tuple, set, frozenset)):
            if actual not in expected:
                return False
        elif actual != expected:
            return False
    return True


class Retriever:
    """High-level API to query the vector store."""

    def __init__(
        self,
        embedder: Embedder,
        store: VectorStoreManager,
        config: SearchConfig | None = None,
    ) -> None:
        self.embedder = embedder
        self.store = store
        self.config = config or SearchConfig()

    async def search(
        self,
        query: str,
        *,
        limit: int | None = None,
        min_score: float | None = None,
        metadata_filter: Dict[str, Any] | None = None,
    ) -> List[SearchResult]:
        limit = self.config.limit if limit is None else limit
        min_score = self.config.min_score if min_score is None else min_score
        if metadata_filter is None:
            metadata_filter = self.config.metadata_filter

        try:
            await self.store.ensure_index()
            vector = await self.embedder.embed_query(query)
            candidates = await self.store.search(vector, query, k=limit)
        except IndexTooSmallError as exc:
            LOGGER.info("Not enough documents in the index to search: %s", exc)
            return []

        LOGGER.debug("Vector search returned %d candidates", len(candidates))
        scored = [(candidate, RecordMetadata.from_dict(candidate.record.metadata)) for candidate in candidates]
        if metadata_filter:
            scored = [item for item in scored if matches_filter(item[1], metadata_filter)]
        scored = [item for item in scored if item[0].score >= min_score][:limit]

        results = [await self._hydrate(candidate, metadata) for candidate, metadata in scored]
        LOGGER.info("Search for %r found %d results", query, len(results))
        return results

    async def _hydrate(self, candidate: ScoredRecord, metadata: RecordMetadata) -> SearchResult:
        text = TEXT_UNAVAILABLE
        if metadata.document_id:
            try:
                text = await self.store.read_text(metadata.document_id)
            except (OSError, UnicodeDecodeError) as exc:
                LOGGER.warning(
                    "Could not load text for %s (%s): %s", candidate.record.id, metadata.document_id, exc
                )
        else:
            LOGGER.warning("Record %s has no document id", candidate.record.id)
        return SearchResult(
            id=candidate.record.id,
            score=candidate.score,
            metadata=metadata,
            text=text,
        )
