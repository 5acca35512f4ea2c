"""Unit tests for LLM provider adapters: OpenAI, Anthropic, Ollama."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import anthropic
import httpx
import openai
import pytest

from townplanner.config.settings import Settings
from townplanner.providers.llm.anthropic_provider import AnthropicLLMProvider
from townplanner.providers.llm.ollama_provider import OllamaLLMProvider
from townplanner.providers.llm.openai_provider import OpenAILLMProvider
from townplanner.providers.sdk_errors import translate_sdk_error
from townplanner.utils.errors import (
    LLMError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    RateLimitError,
    TransientProviderError,
)

_REQUEST = httpx.Request("POST", "https://api.example.test/v1/chat/completions")


# ======================================================================
# Shared helpers
# ======================================================================


def _settings(**overrides) -> Settings:
    defaults = {
        "openai_api_key": "sk-test",
        "openai_base_url": "",
        "openai_text_model": "",
        "anthropic_api_key": "test-anthropic",
        "anthropic_model": "",
        "ollama_base_url": "http://localhost:11434",
        "ollama_model": "",
    }
    defaults.update(overrides)
    return Settings(_env_file=None, **defaults)


def _status_error(sdk, status: int):
    response = httpx.Response(status, request=_REQUEST)
    if status == 429:
        return sdk.RateLimitError("slow down", response=response, body=None)
    return sdk.APIStatusError(f"status {status}", response=response, body=None)


def _chat_response(content: str | None) -> MagicMock:
    response = MagicMock()
    response.choices = [MagicMock(message=MagicMock(content=content))]
    response.usage = MagicMock(total_tokens=42)
    return response


# ======================================================================
# SDK error translation
# ======================================================================


class TestTranslateSdkError:
    @pytest.mark.parametrize("sdk", [openai, anthropic])
    def test_transient_errors(self, sdk) -> None:
        timeout = translate_sdk_error(sdk.APITimeoutError(request=_REQUEST), sdk, "p", LLMError)
        limited = translate_sdk_error(_status_error(sdk, 429), sdk, "p", LLMError)
        down = translate_sdk_error(sdk.APIConnectionError(request=_REQUEST), sdk, "p", LLMError)
        server = translate_sdk_error(_status_error(sdk, 503), sdk, "p", LLMError)

        assert isinstance(timeout, ProviderTimeoutError)
        assert isinstance(limited, RateLimitError)
        assert isinstance(down, ProviderUnavailableError)
        assert isinstance(server, ProviderUnavailableError)
        assert all(isinstance(e, TransientProviderError) for e in (timeout, limited, down, server))

    def test_client_error_uses_fallback(self) -> None:
        error = translate_sdk_error(_status_error(openai, 400), openai, "openai", LLMError, operation="chat")

        assert type(error) is LLMError
        assert not isinstance(error, TransientProviderError)
        assert error.provider_name == "openai"
        assert "chat failed" in error.message


# ======================================================================
# OpenAI LLM Provider
# ======================================================================


class TestOpenAILLMProvider:
    @pytest.fixture()
    def settings(self) -> Settings:
        return _settings()

    def test_provider_label(self, settings: Settings) -> None:
        assert OpenAILLMProvider(settings).get_provider_name() == "openai"
        compatible = OpenAILLMProvider(_settings(openai_base_url="https://api.together.xyz/v1"))
        assert compatible.get_provider_name() == "openai-compatible"

    def test_is_available(self, settings: Settings) -> None:
        assert OpenAILLMProvider(settings).is_available() is True
        assert OpenAILLMProvider(_settings(openai_api_key="")).is_available() is False

    @pytest.mark.asyncio
    async def test_complete_success(self, settings: Settings) -> None:
        mock_client = AsyncMock()
        mock_client.chat.completions.create = AsyncMock(return_value=_chat_response("Section text"))

        with patch("townplanner.providers.llm.openai_provider.openai.AsyncOpenAI", return_value=mock_client):
            provider = OpenAILLMProvider(settings)
            result = await provider.complete("system prompt", "user prompt", temperature=0.1, max_tokens=500)

        assert result == "Section text"
        kwargs = mock_client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4o-mini"
        assert kwargs["temperature"] == 0.1
        assert kwargs["max_tokens"] == 500
        assert kwargs["messages"][0] == {"role": "system", "content": "system prompt"}

    @pytest.mark.asyncio
    async def test_complete_empty_response_raises(self, settings: Settings) -> None:
        mock_client = AsyncMock()
        mock_client.chat.completions.create = AsyncMock(return_value=_chat_response(""))

        with patch("townplanner.providers.llm.openai_provider.openai.AsyncOpenAI", return_value=mock_client):
            provider = OpenAILLMProvider(settings)
            with pytest.raises(LLMError, match="empty response"):
                await provider.complete("system", "user")

    @pytest.mark.asyncio
    async def test_rate_limit_is_transient(self, settings: Settings) -> None:
        mock_client = AsyncMock()
        mock_client.chat.completions.create = AsyncMock(side_effect=_status_error(openai, 429))

        with patch("townplanner.providers.llm.openai_provider.openai.AsyncOpenAI", return_value=mock_client):
            provider = OpenAILLMProvider(settings)
            with pytest.raises(RateLimitError):
                await provider.complete("system", "user")

    @pytest.mark.asyncio
    async def test_validate_credentials(self, settings: Settings) -> None:
        mock_client = AsyncMock()
        mock_client.models.list = AsyncMock(side_effect=[MagicMock(), _status_error(openai, 401)])

        with patch("townplanner.providers.llm.openai_provider.openai.AsyncOpenAI", return_value=mock_client):
            provider = OpenAILLMProvider(settings)
            assert await provider.validate_credentials() is True
            assert await provider.validate_credentials() is False

    @pytest.mark.asyncio
    async def test_validate_credentials_without_key(self) -> None:
        assert await OpenAILLMProvider(_settings(openai_api_key="")).validate_credentials() is False


# ======================================================================
# Anthropic LLM Provider
# ======================================================================


class TestAnthropicLLMProvider:
    @pytest.fixture()
    def settings(self) -> Settings:
        return _settings()

    def test_get_provider_name(self, settings: Settings) -> None:
        assert AnthropicLLMProvider(settings).get_provider_name() == "anthropic"

    def test_is_available_without_key(self) -> None:
        assert AnthropicLLMProvider(_settings(anthropic_api_key="")).is_available() is False

    @pytest.mark.asyncio
    async def test_complete_joins_text_blocks(self, settings: Settings) -> None:
        mock_response = MagicMock()
        mock_response.content = [
            MagicMock(type="text", text="First part."),
            MagicMock(type="tool_use", text="ignored"),
            MagicMock(type="text", text="Second part."),
        ]
        mock_response.usage = MagicMock(input_tokens=10, output_tokens=20)
        mock_client = AsyncMock()
        mock_client.messages.create = AsyncMock(return_value=mock_response)

        with patch("townplanner.providers.llm.anthropic_provider.anthropic.AsyncAnthropic", return_value=mock_client):
            provider = AnthropicLLMProvider(settings)
            result = await provider.complete("system", "user")

        assert result == "First part.\nSecond part."
        kwargs = mock_client.messages.create.call_args.kwargs
        assert kwargs["system"] == "system"
        assert kwargs["messages"] == [{"role": "user", "content": "user"}]

    @pytest.mark.asyncio
    async def test_no_text_blocks_raises(self, settings: Settings) -> None:
        mock_response = MagicMock()
        mock_response.content = []
        mock_client = AsyncMock()
        mock_client.messages.create = AsyncMock(return_value=mock_response)

        with patch("townplanner.providers.llm.anthropic_provider.anthropic.AsyncAnthropic", return_value=mock_client):
            provider = AnthropicLLMProvider(settings)
            with pytest.raises(LLMError, match="no text"):
                await provider.complete("system", "user")

    @pytest.mark.asyncio
    async def test_overloaded_is_transient(self, settings: Settings) -> None:
        mock_client = AsyncMock()
        mock_client.messages.create = AsyncMock(side_effect=_status_error(anthropic, 529))

        with patch("townplanner.providers.llm.anthropic_provider.anthropic.AsyncAnthropic", return_value=mock_client):
            provider = AnthropicLLMProvider(settings)
            with pytest.raises(ProviderUnavailableError):
                await provider.complete("system", "user")


# ======================================================================
# Ollama LLM Provider
# ======================================================================


class TestOllamaLLMProvider:
    @pytest.fixture()
    def settings(self) -> Settings:
        return _settings()

    def test_is_available(self, settings: Settings) -> None:
        assert OllamaLLMProvider(settings).is_available() is True
        assert OllamaLLMProvider(_settings(ollama_base_url="")).is_available() is False

    @pytest.mark.asyncio
    async def test_complete_uses_v1_endpoint(self, settings: Settings) -> None:
        mock_client = AsyncMock()
        mock_client.chat.completions.create = AsyncMock(return_value=_chat_response("Local answer"))

        with patch(
            "townplanner.providers.llm.openai_provider.openai.AsyncOpenAI", return_value=mock_client
        ) as client_cls:
            provider = OllamaLLMProvider(settings)
            result = await provider.complete("system", "user")

        assert result == "Local answer"
        assert client_cls.call_args.kwargs["base_url"] == "http://localhost:11434/v1"
        assert mock_client.chat.completions.create.call_args.kwargs["model"] == "llama3.1:8b"

    @pytest.mark.asyncio
    async def test_connection_refused_is_transient(self, settings: Settings) -> None:
        mock_client = AsyncMock()
        mock_client.chat.completions.create = AsyncMock(
            side_effect=openai.APIConnectionError(request=_REQUEST)
        )

        with patch("townplanner.providers.llm.openai_provider.openai.AsyncOpenAI", return_value=mock_client):
            provider = OllamaLLMProvider(settings)
            with pytest.raises(ProviderUnavailableError):
                await provider.complete("system", "user")

    @pytest.mark.asyncio
    async def test_validate_credentials_failure(self, settings: Settings) -> None:
        mock_http = AsyncMock()
        mock_http.get = AsyncMock(side_effect=httpx.ConnectError("refused"))
        mock_http.__aenter__ = AsyncMock(return_value=mock_http)
        mock_http.__aexit__ = AsyncMock(return_value=False)

        with patch("townplanner.providers.llm.ollama_provider.httpx.AsyncClient", return_value=mock_http):
            provider = OllamaLLMProvider(settings)
            assert await provider.validate_credentials() is False
