"""Batch semantic search over chunk embeddings.

``search(queries, scope, top_k, similarity_threshold)`` returns exactly one
:class:`QueryResult` per query, in input order.  Queries are embedded and
ranked independently with bounded concurrency; a query whose embedding or
ranking fails gets an empty result list and a populated error, while the
other queries still return results.

Ranking is cosine similarity (numpy) against every embedding of the current
model inside the scope.  Ties are broken by chunk sequence index, then by
chunk id, so equal scores always come back in the same order.  Stored
vectors whose dimension differs from the provider's are ignored, and a
query vector of the wrong dimension fails that query.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

import numpy as np
import structlog

from townplanner.interfaces.embedding_provider import IEmbeddingProvider
from townplanner.interfaces.store_provider import Collection, IStoreProvider, Record
from townplanner.models.retrieval import QueryResult, RetrievedChunk, SearchScope
from townplanner.utils.concurrency import throttled_gather, with_timeout
from townplanner.utils.errors import (
    DimensionMismatchError,
    RequestValidationError,
    error_payload,
)
from townplanner.utils.retry import RetryPolicy

logger = structlog.get_logger(logger_name=__name__)


def cosine_similarities(matrix: np.ndarray, vector: np.ndarray) -> np.ndarray:
    """Cosine similarity of *vector* against every row of *matrix*.

    Rows (or a query) with zero norm score 0.0.
    """
    if matrix.size == 0:
        return np.zeros(0, dtype=float)
    denom = np.linalg.norm(matrix, axis=1) * np.linalg.norm(vector)
    with np.errstate(divide="ignore", invalid="ignore"):
        scores = np.where(denom > 0, (matrix @ vector) / denom, 0.0)
    return np.clip(scores, -1.0, 1.0)


@dataclass
class _ScopeIndex:
    """Embeddings of one scope, loaded once per batch."""

    dimension: int
    chunk_ids: list[str] = field(default_factory=list)
    chunks: dict[str, Record] = field(default_factory=dict)
    matrix: np.ndarray = field(default_factory=lambda: np.zeros((0, 0)))


class RetrievalService:
    def __init__(
        self,
        store: IStoreProvider,
        embedding_provider: IEmbeddingProvider,
        top_k: int = 5,
        similarity_threshold: float = 0.3,
        max_concurrency: int = 4,
        timeout_seconds: float | None = 30.0,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._store = store
        self._embedder = embedding_provider
        self._top_k = top_k
        self._threshold = similarity_threshold
        self._max_concurrency = max(1, max_concurrency)
        self._timeout = timeout_seconds
        self._retry = retry_policy or RetryPolicy(max_attempts=1)

    async def search(
        self,
        queries: list[str],
        scope: SearchScope,
        top_k: int | None = None,
        similarity_threshold: float | None = None,
    ) -> list[QueryResult]:
        """Rank chunks in *scope* for each query.

        Raises
        ------
        RequestValidationError
            If ``top_k`` is not positive.  Per-query failures never raise.
        """
        top_k = self._top_k if top_k is None else top_k
        threshold = self._threshold if similarity_threshold is None else similarity_threshold
        if top_k <= 0:
            raise RequestValidationError(message="top_k must be positive")
        if not queries:
            return []

        try:
            index = await self._load_index(scope)
        except Exception as exc:
            payload = error_payload(exc)
            logger.error("retrieval_index_load_failed", collection_id=scope.collection_id, error=str(exc))
            return [
                QueryResult(query=q, error=payload["message"], error_code=payload["code"])
                for q in queries
            ]

        outcomes = await throttled_gather(
            [self._search_one(q, index, top_k, threshold) for q in queries],
            limit=self._max_concurrency,
        )

        results: list[QueryResult] = []
        for position, (query, outcome) in enumerate(zip(queries, outcomes)):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                payload = error_payload(outcome)
                logger.warning(
                    "retrieval_query_failed",
                    query_index=position,
                    error_code=payload["code"],
                    error=str(outcome),
                )
                results.append(QueryResult(query=query, error=payload["message"], error_code=payload["code"]))
            else:
                results.append(QueryResult(query=query, results=outcome))

        logger.info(
            "retrieval_batch_complete",
            collection_id=scope.collection_id,
            queries=len(queries),
            failed=sum(1 for r in results if not r.ok),
            indexed_chunks=len(index.chunk_ids),
        )
        return results

    async def _load_index(self, scope: SearchScope) -> _ScopeIndex:
        model = self._embedder.get_model_name()
        dimension = self._embedder.get_dimension()

        filters: dict[str, Any] = {"collection_id": scope.collection_id}
        if scope.document_ids:
            filters["document_id"] = list(scope.document_ids)
        chunks = {row["id"]: row for row in await self._store.query(Collection.CHUNKS, filters)}
        rows = await self._store.query(Collection.EMBEDDINGS, {**filters, "model": model})

        index = _ScopeIndex(dimension=dimension)
        vectors: list[list[float]] = []
        mismatched = 0
        for row in rows:
            if row.get("dimension") != dimension or len(row.get("vector") or []) != dimension:
                mismatched += 1
                continue
            if row["chunk_id"] not in chunks:
                continue
            index.chunk_ids.append(row["chunk_id"])
            vectors.append(row["vector"])
        if mismatched:
            logger.warning(
                "embedding_dimension_mismatch",
                collection_id=scope.collection_id,
                model=model,
                expected=dimension,
                skipped=mismatched,
            )
        index.chunks = chunks
        index.matrix = np.asarray(vectors, dtype=float).reshape(len(vectors), dimension)
        return index

    async def _search_one(
        self,
        query: str,
        index: _ScopeIndex,
        top_k: int,
        threshold: float,
    ) -> list[RetrievedChunk]:
        if not query or not query.strip():
            raise RequestValidationError(message="query text must not be empty")

        raw = await self._retry.run(
            lambda: with_timeout(
                self._embedder.embed_single(query),
                self._timeout,
                provider_name=self._embedder.get_provider_name(),
                operation="query embedding",
            ),
            name="query_embedding",
        )
        vector = np.asarray(raw, dtype=float)
        if vector.shape != (index.dimension,):
            raise DimensionMismatchError(
                message=f"Query vector has {vector.size} dimensions, index has {index.dimension}",
                provider_name=self._embedder.get_provider_name(),
            )

        scores = cosine_similarities(index.matrix, vector)
        ranked = sorted(
            (
                (float(score), index.chunks[chunk_id]["sequence_index"], chunk_id)
                for chunk_id, score in zip(index.chunk_ids, scores)
                if score >= threshold
            ),
            key=lambda item: (-item[0], item[1], item[2]),
        )
        return [self._enrich(index.chunks[chunk_id], score) for score, _, chunk_id in ranked[:top_k]]

    @staticmethod
    def _enrich(chunk: Record, score: float) -> RetrievedChunk:
        return RetrievedChunk(
            chunk_id=chunk["id"],
            document_id=chunk["document_id"],
            content=chunk["content"],
            similarity=round(score, 6),
            sequence_index=chunk["sequence_index"],
            chunk_type=chunk.get("chunk_type", "text"),
            section_title=chunk.get("section_title"),
            subsection_title=chunk.get("subsection_title"),
            metadata_fields=list(chunk.get("metadata_fields") or []),
        )
