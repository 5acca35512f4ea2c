"""Chat-completions adapter for OpenAI and OpenAI-compatible endpoints.

Setting ``openai_base_url`` points the client at TogetherAI, Fireworks,
Groq and the like; the provider then reports itself as
``openai-compatible``.  :class:`OllamaLLMProvider` reuses the same request
path against a local server.
"""

from __future__ import annotations

from typing import Any

import openai
import structlog

from townplanner.config.settings import Settings
from townplanner.interfaces.llm_provider import ILLMProvider
from townplanner.providers.sdk_errors import translate_sdk_error
from townplanner.utils.errors import LLMError

logger = structlog.get_logger(logger_name=__name__)

_CONNECT_TIMEOUT = 5.0


def openai_client(api_key: str, timeout: float, base_url: str | None = None) -> openai.AsyncOpenAI:
    """Async client with SDK retries off; :class:`RetryPolicy` owns retries."""
    options: dict[str, Any] = {
        "api_key": api_key,
        "timeout": openai.Timeout(timeout, connect=_CONNECT_TIMEOUT),
        "max_retries": 0,
    }
    if base_url:
        options["base_url"] = base_url
    return openai.AsyncOpenAI(**options)


class OpenAILLMProvider(ILLMProvider):
    """Text generation through ``chat.completions`` (``gpt-4o-mini`` by default)."""

    name = "openai"
    default_model = "gpt-4o-mini"

    def __init__(self, settings: Settings) -> None:
        self._credential = settings.openai_api_key
        self._model = settings.openai_text_model or self.default_model
        self._label = "openai-compatible" if settings.openai_base_url else self.name
        self._client = openai_client(
            self._credential,
            settings.generation_timeout_seconds,
            base_url=settings.openai_base_url or None,
        )

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float = 0.3,
        max_tokens: int = 4000,
        model: str | None = None,
    ) -> str:
        chosen = model or self._model
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]
        try:
            response = await self._client.chat.completions.create(
                model=chosen,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except openai.APIError as exc:
            raise translate_sdk_error(exc, openai, self._label, LLMError, operation="chat completion") from exc

        text = response.choices[0].message.content if response.choices else None
        if not text:
            raise LLMError(message=f"{self._label} returned empty response", provider_name=self._label)

        usage = getattr(response, "usage", None)
        logger.info(
            "llm_completion",
            provider=self._label,
            model=chosen,
            tokens=usage.total_tokens if usage else None,
        )
        return text

    def is_available(self) -> bool:
        return bool(self._credential)

    async def validate_credentials(self) -> bool:
        # Listing models costs nothing and fails fast on a bad key.
        if not self.is_available():
            return False
        try:
            await self._client.models.list()
        except openai.APIError:
            return False
        return True

    def get_provider_name(self) -> str:
        return self._label
