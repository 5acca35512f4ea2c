"""Embedding provider adapters (OpenAI text-embedding-3, nomic-embed-text via Ollama)."""

from townplanner.providers.embedding.nomic_embedding_provider import NomicEmbeddingProvider
from townplanner.providers.embedding.openai_embedding_provider import OpenAIEmbeddingProvider

__all__ = ["NomicEmbeddingProvider", "OpenAIEmbeddingProvider"]
