"""Tests for the Retriever search pipeline."""

from __future__ import annotations

import httpx
import pytest

from conftest import make_embedder
from vaultindex.config import OllamaConfig, SearchConfig
from vaultindex.index.search import TEXT_UNAVAILABLE, Retriever, matches_filter
from vaultindex.index.storage import VectorStoreManager
from vaultindex.models import EmbeddedChunk, RecordMetadata

QUERY_VECTOR = [1.0, 0.0]


def _query_handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"embedding": QUERY_VECTOR})


def _retriever(store: VectorStoreManager, **config) -> Retriever:
    embedder = make_embedder(_query_handler, OllamaConfig(vector_dimensions=2))
    return Retriever(embedder, store, SearchConfig(**config))


async def _populate(store: VectorStoreManager) -> None:
    await store.store(
        "PHB.md",
        [EmbeddedChunk(vector=[1.0, 0.0], text="Fireball deals 8d6", heading="# Fireball")],
        metadata={"source": "PHB"},
    )
    await store.store(
        "MM.md",
        [EmbeddedChunk(vector=[0.8, 0.6], text="Red dragons breathe fire", heading="# Dragon")],
        metadata={"source": "MM"},
    )
    await store.store(
        "DMG.md",
        [EmbeddedChunk(vector=[0.0, 1.0], text="Treasure tables", heading="# Loot")],
        metadata={"source": "DMG"},
    )


class TestMatchesFilter:
    """Test metadata filter semantics."""

    def _metadata(self) -> RecordMetadata:
        return RecordMetadata("text_files/a", "PHB.md", 0, extra={"source": "PHB"})

    def test_equality(self) -> None:
        assert matches_filter(self._metadata(), {"filePath": "PHB.md"})
        assert not matches_filter(self._metadata(), {"filePath": "MM.md"})

    def test_list_means_any_of(self) -> None:
        assert matches_filter(self._metadata(), {"filePath": ["PHB.md", "MM.md"]})
        assert not matches_filter(self._metadata(), {"filePath": ["DMG.md"]})

    def test_extra_fields(self) -> None:
        assert matches_filter(self._metadata(), {"source": "PHB", "chunkIndex": 0})

    def test_missing_key_does_not_match(self) -> None:
        assert not matches_filter(self._metadata(), {"author": "someone"})


class TestRetriever:
    """End-to-end search over a populated store."""

    @pytest.mark.asyncio
    async def test_results_ranked_and_hydrated(self, store: VectorStoreManager) -> None:
        await _populate(store)

        results = await _retriever(store).search("fire spells")

        assert [result.id for result in results] == ["PHB.md::0", "MM.md::0"]
        assert results[0].score == pytest.approx(1.0)
        assert results[1].score == pytest.approx(0.8)
        assert results[0].text == "Fireball deals 8d6"
        assert results[0].metadata.heading == "# Fireball"

    @pytest.mark.asyncio
    async def test_min_score_floor(self, store: VectorStoreManager) -> None:
        await _populate(store)

        results = await _retriever(store).search("fire", min_score=0.0)
        assert len(results) == 3

        results = await _retriever(store).search("fire", min_score=0.9)
        assert [result.id for result in results] == ["PHB.md::0"]

    @pytest.mark.asyncio
    async def test_default_floor_drops_weak_matches(self, store: VectorStoreManager) -> None:
        """A 0.55 similarity falls under the default 0.6 floor."""
        await _populate(store)
        await store.store("XGE.md", [EmbeddedChunk(vector=[0.55, 0.835], text="Faint", heading="# Faint")])

        results = await _retriever(store).search("fire")

        assert [result.id for result in results] == ["PHB.md::0", "MM.md::0"]

    @pytest.mark.asyncio
    async def test_list_filter(self, store: VectorStoreManager) -> None:
        await _populate(store)

        results = await _retriever(store).search(
            "fire", min_score=0.0, metadata_filter={"filePath": ["PHB.md", "MM.md"]}
        )

        assert {result.metadata.file_path for result in results} == {"PHB.md", "MM.md"}

    @pytest.mark.asyncio
    async def test_frontmatter_filter(self, store: VectorStoreManager) -> None:
        await _populate(store)

        results = await _retriever(store).search("fire", min_score=0.0, metadata_filter={"source": "DMG"})

        assert [result.id for result in results] == ["DMG.md::0"]

    @pytest.mark.asyncio
    async def test_default_filter_from_config(self, store: VectorStoreManager) -> None:
        await _populate(store)

        results = await _retriever(store, metadata_filter={"filePath": "MM.md"}).search("fire")

        assert [result.id for result in results] == ["MM.md::0"]

    @pytest.mark.asyncio
    async def test_limit_truncates(self, store: VectorStoreManager) -> None:
        await _populate(store)

        results = await _retriever(store).search("fire", limit=1, min_score=0.0)

        assert len(results) == 1

    @pytest.mark.asyncio
    async def test_missing_text_uses_placeholder(self, store: VectorStoreManager) -> None:
        await _populate(store)
        store.text_path("PHB.md::0").unlink()

        results = await _retriever(store).search("fire")

        assert results[0].text == TEXT_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_empty_index_returns_nothing(self, store: VectorStoreManager) -> None:
        """A collection too small to search yields no results, not an error."""
        assert await _retriever(store).search("anything") == []
        assert await store.index.is_index_created()

    @pytest.mark.asyncio
    async def test_to_dict_shape(self, store: VectorStoreManager) -> None:
        await _populate(store)

        payload = (await _retriever(store).search("fire"))[0].to_dict()

        assert payload["score"] == pytest.approx(1.0)
        metadata = payload["item"]["metadata"]
        assert metadata["filePath"] == "PHB.md"
        assert metadata["text"] == "Fireball deals 8d6"
        assert metadata["source"] == "PHB"
