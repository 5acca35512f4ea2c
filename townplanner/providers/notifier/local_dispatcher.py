"""In-process event dispatcher.

Maps event names to async handlers, e.g. ``document.chunked`` ->
``EmbeddingService.embed_document``.  Events without a handler are
acknowledged and dropped; a handler that raises leaves the outbox row
pending so it is retried on the next dispatch.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable

import structlog

from townplanner.interfaces.notifier import INotifier

logger = structlog.get_logger(logger_name=__name__)

EventHandler = Callable[[dict[str, Any]], Awaitable[Any]]


class LocalEventDispatcher(INotifier):
    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = {}

    def subscribe(self, event: str, handler: EventHandler) -> None:
        self._handlers.setdefault(event, []).append(handler)

    async def notify(self, event: str, payload: dict[str, Any]) -> None:
        handlers = self._handlers.get(event, [])
        if not handlers:
            logger.debug("event_without_handler", notify_event=event)
            return
        for handler in handlers:
            await handler(payload)

    def get_provider_name(self) -> str:
        return "local"
