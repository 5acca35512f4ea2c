"""At-least-once event emission.

Downstream triggers (embedding generation after chunking, report webhooks)
are written as ``outbox`` rows instead of being called inline.  Emitting
never fails the triggering operation; delivery happens later through
:meth:`EventOutbox.dispatch`, which may deliver an event more than once if
the process dies between notifying and marking the row delivered.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import structlog

from townplanner.interfaces.notifier import INotifier
from townplanner.interfaces.store_provider import Collection, IStoreProvider
from townplanner.models.events import OutboxEvent, OutboxStatus

logger = structlog.get_logger(logger_name=__name__)


class EventOutbox:
    def __init__(self, store: IStoreProvider, max_attempts: int = 5) -> None:
        self._store = store
        self._max_attempts = max(1, max_attempts)

    async def emit(self, event: str, payload: dict[str, Any]) -> OutboxEvent | None:
        """Persist a pending event.  Returns ``None`` if the write failed."""
        record = OutboxEvent(event=event, payload=payload)
        try:
            await self._store.upsert(Collection.OUTBOX, record.model_dump(mode="json"))
        except Exception as exc:
            logger.error("outbox_emit_failed", notify_event=event, error=str(exc), exc_info=True)
            return None
        logger.debug("outbox_event_emitted", notify_event=event, event_id=record.id)
        return record

    async def pending(self) -> list[OutboxEvent]:
        rows = await self._store.query(
            Collection.OUTBOX,
            {"status": OutboxStatus.PENDING.value},
            order_by="created_at",
        )
        return [OutboxEvent.model_validate(r) for r in rows]

    async def dispatch(self, notifier: INotifier) -> dict[str, int]:
        """Deliver every pending event through *notifier*.

        Returns counts of ``delivered``, ``retrying`` and ``failed`` events.
        """
        counts = {"delivered": 0, "retrying": 0, "failed": 0}
        for record in await self.pending():
            try:
                await notifier.notify(record.event, record.payload)
            except Exception as exc:
                attempts = record.attempts + 1
                status = OutboxStatus.FAILED if attempts >= self._max_attempts else OutboxStatus.PENDING
                await self._store.update(
                    Collection.OUTBOX,
                    record.id,
                    {"attempts": attempts, "status": status.value, "last_error": str(exc)},
                )
                counts["failed" if status is OutboxStatus.FAILED else "retrying"] += 1
                logger.warning(
                    "outbox_delivery_failed",
                    notify_event=record.event,
                    event_id=record.id,
                    attempts=attempts,
                    notifier=notifier.get_provider_name(),
                    error=str(exc),
                )
                continue

            await self._store.update(
                Collection.OUTBOX,
                record.id,
                {
                    "attempts": record.attempts + 1,
                    "status": OutboxStatus.DELIVERED.value,
                    "delivered_at": datetime.now(tz=timezone.utc).isoformat(),  # noqa: UP017
                },
            )
            counts["delivered"] += 1

        if any(counts.values()):
            logger.info("outbox_dispatched", notifier=notifier.get_provider_name(), **counts)
        return counts
