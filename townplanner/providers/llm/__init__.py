"""LLM provider adapters.

Three concrete implementations of ILLMProvider (townplanner/interfaces/llm_provider.py):
    - AnthropicLLMProvider -- Claude models via the Messages API
    - OpenAILLMProvider    -- gpt-4o family (also OpenAI-compatible endpoints)
    - OllamaLLMProvider    -- local models via an Ollama server

main.py picks the configured ``llm_provider`` when it is available, and
otherwise falls back through Anthropic, OpenAI and Ollama in that order.
"""

from townplanner.providers.llm.anthropic_provider import AnthropicLLMProvider
from townplanner.providers.llm.ollama_provider import OllamaLLMProvider
from townplanner.providers.llm.openai_provider import OpenAILLMProvider

__all__ = ["AnthropicLLMProvider", "OllamaLLMProvider", "OpenAILLMProvider"]
