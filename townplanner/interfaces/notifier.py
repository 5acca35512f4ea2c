"""Abstract base class for downstream event delivery."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


# Concrete implementations: WebhookNotifier, LocalEventDispatcher
# Located in: townplanner/providers/notifier/
class INotifier(ABC):
    """Delivers one outbox event to a downstream consumer."""

    @abstractmethod
    async def notify(self, event: str, payload: dict[str, Any]) -> None:
        """Deliver *event*; raise on failure so the outbox can retry it."""

    @abstractmethod
    def get_provider_name(self) -> str:
        """Return a short identifier such as ``"webhook"``."""
