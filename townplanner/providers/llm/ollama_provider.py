"""Local generation through an Ollama server.

Ollama serves an OpenAI-compatible ``/v1`` API, so requests go through
:class:`OpenAILLMProvider`; only the endpoint, the model default and the
health check differ.
"""

from __future__ import annotations

import httpx

from townplanner.config.settings import Settings
from townplanner.providers.llm.openai_provider import OpenAILLMProvider, openai_client


def ollama_v1_url(base_url: str) -> str:
    return f"{base_url.rstrip('/')}/v1"


class OllamaLLMProvider(OpenAILLMProvider):
    name = "ollama"
    default_model = "llama3.1:8b"

    def __init__(self, settings: Settings) -> None:
        self._server = settings.ollama_base_url
        self._credential = "ollama"
        self._model = settings.ollama_model or self.default_model
        self._label = self.name
        self._client = openai_client(
            self._credential,
            settings.generation_timeout_seconds,
            base_url=ollama_v1_url(self._server) if self._server else None,
        )

    def is_available(self) -> bool:
        return bool(self._server)

    async def validate_credentials(self) -> bool:
        """``/api/tags`` answers 200 when the server is up."""
        if not self._server:
            return False
        try:
            async with httpx.AsyncClient(timeout=5.0) as http:
                response = await http.get(f"{self._server.rstrip('/')}/api/tags")
        except httpx.HTTPError:
            return False
        return response.status_code == 200

