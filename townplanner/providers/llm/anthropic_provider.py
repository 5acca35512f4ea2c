"""Claude models through the Anthropic Messages API.

The system prompt travels as its own parameter and the reply is a list of
content blocks; only ``text`` blocks are kept.
"""

from __future__ import annotations

import anthropic
import structlog

from townplanner.config.settings import Settings
from townplanner.interfaces.llm_provider import ILLMProvider
from townplanner.providers.sdk_errors import translate_sdk_error
from townplanner.utils.errors import LLMError

logger = structlog.get_logger(logger_name=__name__)


class AnthropicLLMProvider(ILLMProvider):
    name = "anthropic"
    default_model = "claude-sonnet-4-20250514"

    def __init__(self, settings: Settings) -> None:
        self._credential = settings.anthropic_api_key
        self._model = settings.anthropic_model or self.default_model
        self._client = anthropic.AsyncAnthropic(
            api_key=self._credential,
            timeout=settings.generation_timeout_seconds,
            max_retries=0,
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
        try:
            message = await self._client.messages.create(
                model=chosen,
                system=system_prompt,
                messages=[{"role": "user", "content": user_prompt}],
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except anthropic.APIError as exc:
            raise translate_sdk_error(exc, anthropic, self.name, LLMError, operation="messages.create") from exc

        parts = [block.text for block in message.content if block.type == "text"]
        if not parts:
            raise LLMError(message="Anthropic returned no text content", provider_name=self.name)

        logger.info(
            "llm_completion",
            provider=self.name,
            model=chosen,
            input_tokens=message.usage.input_tokens,
            output_tokens=message.usage.output_tokens,
        )
        return "\n".join(parts)

    def is_available(self) -> bool:
        return bool(self._credential)

    async def validate_credentials(self) -> bool:
        """Send a ten-token request; the Messages API has no free endpoint."""
        if not self.is_available():
            return False
        try:
            await self._client.messages.create(
                model=self._model,
                max_tokens=10,
                messages=[{"role": "user", "content": "ping"}],
            )
        except anthropic.APIError:
            return False
        return True

    def get_provider_name(self) -> str:
        return self.name
