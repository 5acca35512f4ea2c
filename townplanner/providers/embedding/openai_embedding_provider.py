"""Embeddings through an OpenAI-compatible ``/embeddings`` endpoint.

The default is ``text-embedding-3-small``; ``openai_base_url`` and
``openai_embedding_model`` select a compatible host and model (for example
``BAAI/bge-large-en-v1.5`` on TogetherAI).
"""

from __future__ import annotations

import openai
import structlog

from townplanner.config.settings import Settings
from townplanner.interfaces.embedding_provider import IEmbeddingProvider
from townplanner.providers.llm.openai_provider import openai_client
from townplanner.providers.sdk_errors import translate_sdk_error
from townplanner.utils.errors import EmbeddingError

logger = structlog.get_logger(logger_name=__name__)


class OpenAIEmbeddingProvider(IEmbeddingProvider):
    """Batched embedding requests; subclasses change endpoint, limits and model table."""

    name = "openai_embedding"
    default_model = "text-embedding-3-small"
    max_batch = 2048
    fallback_dimension = 768
    dimensions: dict[str, int] = {
        "text-embedding-3-small": 1536,
        "text-embedding-3-large": 3072,
        "text-embedding-ada-002": 1536,
        "BAAI/bge-base-en-v1.5": 768,
        "BAAI/bge-large-en-v1.5": 1024,
    }

    def __init__(self, settings: Settings) -> None:
        self._configured = bool(settings.openai_api_key)
        self._model = settings.openai_embedding_model or self.default_model
        self._label = "openai-compatible_embedding" if settings.openai_base_url else self.name
        self._client = openai_client(
            settings.openai_api_key,
            settings.embedding_timeout_seconds,
            base_url=settings.openai_base_url or None,
        )

    async def embed(self, texts: list[str]) -> list[list[float]]:
        vectors: list[list[float]] = []
        for offset in range(0, len(texts), self.max_batch):
            batch = texts[offset : offset + self.max_batch]
            try:
                response = await self._client.embeddings.create(input=batch, model=self._model)
            except openai.APIError as exc:
                raise translate_sdk_error(
                    exc, openai, self._label, EmbeddingError, operation="embeddings"
                ) from exc
            vectors.extend(item.embedding for item in response.data)
            usage = getattr(response, "usage", None)
            logger.debug(
                "embedding_batch",
                provider=self._label,
                model=self._model,
                size=len(batch),
                tokens=usage.total_tokens if usage else None,
            )
        return vectors

    def get_dimension(self) -> int:
        return self.dimensions.get(self._model, self.fallback_dimension)

    def get_model_name(self) -> str:
        return self._model

    def get_provider_name(self) -> str:
        return self._label

    def is_available(self) -> bool:
        return self._configured
