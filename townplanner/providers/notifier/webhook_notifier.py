"""HTTP webhook notifier (e.g. an n8n or Zapier workflow trigger)."""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from townplanner.interfaces.notifier import INotifier
from townplanner.utils.errors import ProviderTimeoutError, ProviderUnavailableError

logger = structlog.get_logger(logger_name=__name__)


class WebhookNotifier(INotifier):
    """POSTs ``{"event": ..., "payload": ...}`` to a configured URL."""

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = url
        self._timeout = timeout
        self._transport = transport

    async def notify(self, event: str, payload: dict[str, Any]) -> None:
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(self._url, json={"event": event, "payload": payload})
        except httpx.TimeoutException as exc:
            raise ProviderTimeoutError(message=f"webhook {event} timed out", provider_name="webhook") from exc
        except httpx.TransportError as exc:
            raise ProviderUnavailableError(message=f"webhook {event} failed: {exc}", provider_name="webhook") from exc

        if response.status_code >= 400:
            raise ProviderUnavailableError(
                message=f"webhook {event} returned {response.status_code}",
                provider_name="webhook",
            )
        logger.info("webhook_delivered", notify_event=event, status=response.status_code)

    def get_provider_name(self) -> str:
        return "webhook"
