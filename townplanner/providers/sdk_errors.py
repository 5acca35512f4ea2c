"""Map OpenAI / Anthropic SDK exceptions onto the pipeline's error taxonomy.

Both SDKs expose the same exception names (``APITimeoutError``,
``RateLimitError``, ``APIConnectionError``, ``APIStatusError``), so one
translator serves every adapter built on them.
"""

from __future__ import annotations

from types import ModuleType

from townplanner.utils.errors import (
    ProviderTimeoutError,
    ProviderUnavailableError,
    RateLimitError,
    TownPlannerError,
)


def translate_sdk_error(
    exc: Exception,
    sdk: ModuleType,
    provider_name: str,
    fallback: type[TownPlannerError],
    operation: str = "API call",
) -> TownPlannerError:
    """Return the taxonomy error for *exc* raised by *sdk*.

    Timeouts, 429s, connection failures and 5xx responses are transient;
    anything else becomes *fallback* (e.g. ``LLMError``).
    """
    if isinstance(exc, sdk.APITimeoutError):
        return ProviderTimeoutError(message=f"{operation} timed out", provider_name=provider_name)
    if isinstance(exc, sdk.RateLimitError):
        return RateLimitError(message=f"{operation} rate limited: {exc}", provider_name=provider_name)
    if isinstance(exc, sdk.APIConnectionError):
        return ProviderUnavailableError(
            message=f"{operation} connection failed: {exc}",
            provider_name=provider_name,
        )
    status = getattr(exc, "status_code", None)
    if isinstance(status, int) and status >= 500:
        return ProviderUnavailableError(
            message=f"{operation} server error {status}: {exc}",
            provider_name=provider_name,
        )
    return fallback(message=f"{operation} failed: {exc}", provider_name=provider_name)
