"""Chunk embedding generation.

Triggered by the ``document.chunked`` outbox event.  Embeddings may lag
chunking; at most one embedding exists per (chunk, model) because ids are
derived from that pair and chunks that already have one are skipped.
"""

from __future__ import annotations

import structlog

from townplanner.interfaces.embedding_provider import IEmbeddingProvider
from townplanner.interfaces.store_provider import Collection, IStoreProvider
from townplanner.models.documents import Chunk, Embedding
from townplanner.utils.concurrency import with_timeout
from townplanner.utils.errors import DimensionMismatchError, EmbeddingError
from townplanner.utils.retry import RetryPolicy

logger = structlog.get_logger(logger_name=__name__)


class EmbeddingService:
    def __init__(
        self,
        store: IStoreProvider,
        provider: IEmbeddingProvider,
        batch_size: int = 32,
        timeout_seconds: float | None = 60.0,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._store = store
        self._provider = provider
        self._batch_size = max(1, batch_size)
        self._timeout = timeout_seconds
        self._retry = retry_policy or RetryPolicy(max_attempts=1)

    async def embed_document(self, document_id: str) -> int:
        """Embed every chunk of *document_id* that lacks an embedding.

        Returns the number of embeddings written.  A failing batch raises
        after earlier batches were stored; calling again resumes from there.
        """
        model = self._provider.get_model_name()
        dimension = self._provider.get_dimension()

        chunk_rows = await self._store.query(
            Collection.CHUNKS, {"document_id": document_id}, order_by="sequence_index"
        )
        existing = {
            row["chunk_id"]
            for row in await self._store.query(
                Collection.EMBEDDINGS, {"document_id": document_id, "model": model}
            )
        }
        chunks = [Chunk.model_validate(r) for r in chunk_rows if r["id"] not in existing]
        if not chunks:
            logger.debug("embeddings_up_to_date", document_id=document_id, model=model)
            return 0

        written = 0
        for start in range(0, len(chunks), self._batch_size):
            batch = chunks[start : start + self._batch_size]
            texts = [c.content for c in batch]
            vectors = await self._retry.run(
                lambda texts=texts: with_timeout(
                    self._provider.embed(texts),
                    self._timeout,
                    provider_name=self._provider.get_provider_name(),
                    operation="chunk embedding",
                ),
                name="chunk_embedding",
            )
            if len(vectors) != len(batch):
                raise EmbeddingError(
                    message=f"Expected {len(batch)} vectors, got {len(vectors)}",
                    provider_name=self._provider.get_provider_name(),
                )

            records = []
            for chunk, vector in zip(batch, vectors):
                if len(vector) != dimension:
                    raise DimensionMismatchError(
                        message=f"Model '{model}' returned {len(vector)} dimensions, expected {dimension}",
                        provider_name=self._provider.get_provider_name(),
                    )
                records.append(
                    Embedding(
                        id=Embedding.make_id(chunk.id, model),
                        chunk_id=chunk.id,
                        document_id=chunk.document_id,
                        collection_id=chunk.collection_id,
                        model=model,
                        dimension=dimension,
                        vector=[float(v) for v in vector],
                    ).model_dump(mode="json")
                )
            written += await self._store.upsert_many(Collection.EMBEDDINGS, records)

        logger.info(
            "document_embedded",
            document_id=document_id,
            model=model,
            embeddings=written,
            skipped=len(existing),
        )
        return written

    async def handle_event(self, payload: dict) -> None:
        """Outbox handler for ``document.chunked``."""
        await self.embed_document(payload["document_id"])
