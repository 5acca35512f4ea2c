"""Unit tests for EmbeddingService."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from tests.conftest import KeywordEmbedder, add_chunks
from townplanner.interfaces.embedding_provider import IEmbeddingProvider
from townplanner.interfaces.store_provider import Collection
from townplanner.models.documents import Embedding
from townplanner.providers.store.memory_store import MemoryStoreProvider
from townplanner.services.embedding_service import EmbeddingService
from townplanner.utils.errors import DimensionMismatchError, EmbeddingError

CONTENTS = [
    "Heritage significance of the terrace.",
    "Zoning and height controls for the site.",
    "Parking and drainage arrangements.",
]


def _mock_provider(vectors: list[list[float]], dimension: int = 3) -> IEmbeddingProvider:
    provider = MagicMock(spec=IEmbeddingProvider)
    provider.get_model_name.return_value = "mock-model"
    provider.get_provider_name.return_value = "mock"
    provider.get_dimension.return_value = dimension
    provider.embed = AsyncMock(return_value=vectors)
    return provider


class TestEmbedDocument:
    @pytest.mark.asyncio
    async def test_one_embedding_per_chunk(self, store: MemoryStoreProvider, embedder: KeywordEmbedder) -> None:
        chunks = await add_chunks(store, "doc-1", CONTENTS)

        written = await EmbeddingService(store, embedder).embed_document("doc-1")

        assert written == 3
        rows = await store.query(Collection.EMBEDDINGS, {"document_id": "doc-1"})
        assert {r["id"] for r in rows} == {Embedding.make_id(c.id, "keyword-v1") for c in chunks}
        assert all(r["dimension"] == embedder.get_dimension() for r in rows)

    @pytest.mark.asyncio
    async def test_existing_embeddings_are_skipped(
        self, store: MemoryStoreProvider, embedder: KeywordEmbedder
    ) -> None:
        await add_chunks(store, "doc-1", CONTENTS)
        service = EmbeddingService(store, embedder)

        await service.embed_document("doc-1")
        assert await service.embed_document("doc-1") == 0
        assert len(embedder.embedded) == 3

    @pytest.mark.asyncio
    async def test_failed_batch_keeps_earlier_batches_and_resumes(self, store: MemoryStoreProvider) -> None:
        await add_chunks(store, "doc-1", CONTENTS)
        failing = KeywordEmbedder(fail_on={CONTENTS[2]})

        with pytest.raises(EmbeddingError):
            await EmbeddingService(store, failing, batch_size=2).embed_document("doc-1")
        assert len(await store.query(Collection.EMBEDDINGS)) == 2

        resumed = KeywordEmbedder()
        assert await EmbeddingService(store, resumed, batch_size=2).embed_document("doc-1") == 1
        assert resumed.embedded == [CONTENTS[2]]

    @pytest.mark.asyncio
    async def test_new_model_gets_its_own_embeddings(self, store: MemoryStoreProvider) -> None:
        await add_chunks(store, "doc-1", CONTENTS)
        await EmbeddingService(store, KeywordEmbedder(model="v1")).embed_document("doc-1")

        assert await EmbeddingService(store, KeywordEmbedder(model="v2")).embed_document("doc-1") == 3
        assert len(await store.query(Collection.EMBEDDINGS)) == 6

    @pytest.mark.asyncio
    async def test_vector_count_mismatch_is_an_error(self, store: MemoryStoreProvider) -> None:
        await add_chunks(store, "doc-1", CONTENTS)
        provider = _mock_provider([[0.1, 0.2, 0.3]])

        with pytest.raises(EmbeddingError, match="Expected 3 vectors, got 1"):
            await EmbeddingService(store, provider).embed_document("doc-1")
        assert await store.query(Collection.EMBEDDINGS) == []

    @pytest.mark.asyncio
    async def test_wrong_dimension_is_rejected(self, store: MemoryStoreProvider) -> None:
        await add_chunks(store, "doc-1", CONTENTS[:1])
        provider = _mock_provider([[0.1, 0.2]], dimension=3)

        with pytest.raises(DimensionMismatchError):
            await EmbeddingService(store, provider).embed_document("doc-1")

    @pytest.mark.asyncio
    async def test_outbox_handler(self, store: MemoryStoreProvider, embedder: KeywordEmbedder) -> None:
        await add_chunks(store, "doc-1", CONTENTS[:2])

        await EmbeddingService(store, embedder).handle_event({"document_id": "doc-1"})

        assert len(await store.query(Collection.EMBEDDINGS)) == 2
