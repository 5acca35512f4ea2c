"""``nomic-embed-text`` (and other Ollama embedding models) served locally.

No API key; the Ollama server only needs the model pulled.
"""

from __future__ import annotations

from townplanner.config.settings import Settings
from townplanner.providers.embedding.openai_embedding_provider import OpenAIEmbeddingProvider
from townplanner.providers.llm.ollama_provider import ollama_v1_url
from townplanner.providers.llm.openai_provider import openai_client


class NomicEmbeddingProvider(OpenAIEmbeddingProvider):
    name = "nomic_embedding"
    default_model = "nomic-embed-text"
    max_batch = 512
    dimensions = {
        "nomic-embed-text": 768,
        "mxbai-embed-large": 1024,
        "all-minilm": 384,
    }

    def __init__(self, settings: Settings) -> None:
        server = settings.ollama_base_url
        self._configured = bool(server)
        self._model = settings.ollama_embedding_model or self.default_model
        self._label = self.name
        self._client = openai_client(
            "ollama",
            settings.embedding_timeout_seconds,
            base_url=ollama_v1_url(server) if server else None,
        )
