"""Embedding contract for chunk indexing and query vectors."""

from __future__ import annotations

from abc import ABC, abstractmethod


class IEmbeddingProvider(ABC):
    """Turns text into fixed-length vectors.

    Every stored embedding records :meth:`get_model_name` and
    :meth:`get_dimension`; search only compares vectors produced by the same
    model, so switching models means re-embedding the collection.
    """

    @abstractmethod
    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Vectors for *texts*, in input order.

        Adapters split large inputs into several requests.  Raises a
        :class:`~townplanner.utils.errors.TransientProviderError` subclass
        for retryable failures and
        :class:`~townplanner.utils.errors.EmbeddingError` otherwise.
        """

    async def embed_single(self, text: str) -> list[float]:
        [vector] = await self.embed([text])
        return vector

    @abstractmethod
    def get_dimension(self) -> int: ...

    @abstractmethod
    def get_model_name(self) -> str: ...

    @abstractmethod
    def get_provider_name(self) -> str: ...

    @abstractmethod
    def is_available(self) -> bool: ...
