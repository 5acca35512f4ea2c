"""Text-generation contract shared by metadata discovery, report drafting and Q&A.

Adapters live in ``townplanner/providers/llm/``.  Services receive an
``ILLMProvider`` from :mod:`townplanner.main` and never import an SDK.
"""

from __future__ import annotations

from abc import ABC, abstractmethod


class ILLMProvider(ABC):
    """One prompt in, one text reply out.

    Failures surface as :class:`~townplanner.utils.errors.TransientProviderError`
    subclasses (timeouts, 429, 5xx, refused connections), which
    :class:`~townplanner.utils.retry.RetryPolicy` retries, or as
    :class:`~townplanner.utils.errors.LLMError`, which it does not.
    """

    @abstractmethod
    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float = 0.3,
        max_tokens: int = 4000,
        model: str | None = None,
    ) -> str:
        """Return the model's reply; ``model`` overrides the configured one for this call."""

    @abstractmethod
    def get_provider_name(self) -> str: ...

    @abstractmethod
    def is_available(self) -> bool:
        """Whether credentials or an endpoint are configured; makes no request."""

    @abstractmethod
    async def validate_credentials(self) -> bool:
        """Make the cheapest request the backend allows and report success."""
