"""Persisted state machines for documents, reports and report sections.

All cross-step communication goes through store rows, so the tracker is the
single place that moves a row from one status to the next.  Every move is
checked against an allowed-transition table; an illegal move raises
:class:`InvalidTransitionError` instead of silently overwriting state.

Progress of a report is a derived aggregate over its sections::

    progress = round(100 * (completed + skipped) / total)

Failed sections do not count as done, so resetting a failed section to
``pending`` for a retry never lowers the value.  Recomputation is serialized
per report with an ``asyncio.Lock``; the lock only covers the store reads
and the single write, never a provider call.

Listeners (sync or async callables) can subscribe to progress updates of a
report, e.g. a CLI progress printer.  Once a report is finished the
orchestrator calls :meth:`JobStateTracker.release`, which drops its lock and
listeners.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime, timezone
from enum import Enum
from typing import Any, TypeVar

import structlog
from pydantic import BaseModel

from townplanner.interfaces.store_provider import Collection, IStoreProvider
from townplanner.models.documents import Document, DocumentStatus
from townplanner.models.reports import (
    ReportGeneration,
    ReportSection,
    ReportStatus,
    SectionStatus,
)
from townplanner.utils.errors import InvalidTransitionError, RecordNotFoundError

logger = structlog.get_logger(logger_name=__name__)

_M = TypeVar("_M", bound=BaseModel)

DOCUMENT_TRANSITIONS: dict[DocumentStatus, frozenset[DocumentStatus]] = {
    DocumentStatus.PENDING: frozenset({DocumentStatus.PROCESSING}),
    DocumentStatus.PROCESSING: frozenset({DocumentStatus.COMPLETED, DocumentStatus.FAILED}),
    DocumentStatus.FAILED: frozenset({DocumentStatus.PROCESSING}),
    DocumentStatus.COMPLETED: frozenset({DocumentStatus.PROCESSING}),
}

REPORT_TRANSITIONS: dict[ReportStatus, frozenset[ReportStatus]] = {
    ReportStatus.PENDING: frozenset({ReportStatus.PROCESSING}),
    ReportStatus.PROCESSING: frozenset({ReportStatus.COMPLETED, ReportStatus.FAILED}),
    ReportStatus.FAILED: frozenset({ReportStatus.PROCESSING}),
    ReportStatus.COMPLETED: frozenset({ReportStatus.PROCESSING}),
}

SECTION_TRANSITIONS: dict[SectionStatus, frozenset[SectionStatus]] = {
    SectionStatus.PENDING: frozenset({SectionStatus.PROCESSING, SectionStatus.SKIPPED}),
    # processing -> pending only when resuming a report after a crash.
    SectionStatus.PROCESSING: frozenset(
        {SectionStatus.COMPLETED, SectionStatus.FAILED, SectionStatus.PENDING}
    ),
    SectionStatus.FAILED: frozenset({SectionStatus.PENDING, SectionStatus.SKIPPED}),
    SectionStatus.COMPLETED: frozenset(),
    SectionStatus.SKIPPED: frozenset(),
}


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)  # noqa: UP017


class JobStateTracker:
    """Guards status transitions and derives report progress."""

    def __init__(self, store: IStoreProvider) -> None:
        self._store = store
        self._locks: dict[str, asyncio.Lock] = {}
        self._listeners: dict[str, list[Callable]] = {}

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    async def get_document(self, document_id: str) -> Document:
        return await self._load(Collection.DOCUMENTS, document_id, Document)

    async def transition_document(
        self,
        document_id: str,
        target: DocumentStatus,
        **fields: Any,
    ) -> Document:
        """Move a document to *target*, merging *fields* into the row."""
        document = await self.get_document(document_id)
        self._check(DOCUMENT_TRANSITIONS, document.status, target, "document", document_id)
        updated = await self._write(Collection.DOCUMENTS, document, {"status": target, **fields})
        logger.info(
            "document_status_changed",
            document_id=document_id,
            from_status=document.status.value,
            to_status=target.value,
        )
        return updated

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    async def create_report(
        self,
        report: ReportGeneration,
        sections: list[ReportSection],
    ) -> ReportGeneration:
        """Persist a report and all of its sections, or nothing.

        The section batch is written in one transaction; if it fails, the
        report row written just before it is removed again.
        """
        report = report.model_copy(update={"section_count": len(sections)})
        await self._store.upsert(Collection.REPORTS, report.model_dump(mode="json"))
        try:
            await self._store.upsert_many(
                Collection.SECTIONS, [s.model_dump(mode="json") for s in sections]
            )
        except Exception:
            await self._store.delete(Collection.REPORTS, {"id": report.id})
            raise
        logger.info("report_created", report_id=report.id, sections=len(sections))
        return report

    async def get_report(self, report_id: str) -> ReportGeneration:
        return await self._load(Collection.REPORTS, report_id, ReportGeneration)

    async def list_reports(self, collection_id: str | None = None) -> list[ReportGeneration]:
        filters = {"collection_id": collection_id} if collection_id else None
        rows = await self._store.query(Collection.REPORTS, filters, order_by="created_at")
        return [ReportGeneration.model_validate(r) for r in rows]

    async def transition_report(
        self,
        report_id: str,
        target: ReportStatus,
        **fields: Any,
    ) -> ReportGeneration:
        report = await self.get_report(report_id)
        self._check(REPORT_TRANSITIONS, report.status, target, "report", report_id)
        updated = await self._write(Collection.REPORTS, report, {"status": target, **fields})
        logger.info(
            "report_status_changed",
            report_id=report_id,
            from_status=report.status.value,
            to_status=target.value,
        )
        return updated

    # ------------------------------------------------------------------
    # Sections
    # ------------------------------------------------------------------

    async def get_section(self, section_id: str) -> ReportSection:
        return await self._load(Collection.SECTIONS, section_id, ReportSection)

    async def list_sections(
        self,
        report_id: str,
        statuses: list[SectionStatus] | None = None,
    ) -> list[ReportSection]:
        """Sections of a report in ``section_order``."""
        filters: dict[str, Any] = {"report_id": report_id}
        if statuses:
            filters["status"] = [s.value for s in statuses]
        rows = await self._store.query(Collection.SECTIONS, filters, order_by="section_order")
        return [ReportSection.model_validate(r) for r in rows]

    async def transition_section(
        self,
        section_id: str,
        target: SectionStatus,
        **fields: Any,
    ) -> ReportSection:
        section = await self.get_section(section_id)
        self._check(SECTION_TRANSITIONS, section.status, target, "section", section_id)
        updated = await self._write(Collection.SECTIONS, section, {"status": target, **fields})
        logger.debug(
            "section_status_changed",
            report_id=section.report_id,
            section_id=section_id,
            from_status=section.status.value,
            to_status=target.value,
        )
        return updated

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    async def recompute_progress(self, report_id: str) -> ReportGeneration:
        """Derive and persist ``progress`` and section counters for a report."""
        async with self._lock_for(report_id):
            sections = await self.list_sections(report_id)
            total = len(sections)
            completed = sum(1 for s in sections if s.status is SectionStatus.COMPLETED)
            skipped = sum(1 for s in sections if s.status is SectionStatus.SKIPPED)
            failed = sum(1 for s in sections if s.status is SectionStatus.FAILED)
            progress = round(100 * (completed + skipped) / total) if total else 0

            report = await self.get_report(report_id)
            report = await self._write(
                Collection.REPORTS,
                report,
                {
                    "progress": progress,
                    "section_count": total,
                    "completed_count": completed,
                    "failed_count": failed,
                },
            )

        logger.debug(
            "report_progress",
            report_id=report_id,
            progress=progress,
            completed=completed,
            skipped=skipped,
            failed=failed,
            total=total,
        )
        await self._notify_listeners(report_id, report)
        return report

    async def get_report_status(self, report_id: str) -> dict[str, Any]:
        """Snapshot of a report and its sections for status displays."""
        report = await self.get_report(report_id)
        sections = await self.list_sections(report_id)
        return {
            "report_id": report.id,
            "title": report.title,
            "status": report.status.value,
            "progress": report.progress,
            "section_count": len(sections),
            "completed_count": report.completed_count,
            "failed_count": report.failed_count,
            "output_path": report.output_path,
            "error_code": report.error_code,
            "error_message": report.error_message,
            "sections": [
                {
                    "id": s.id,
                    "order": s.section_order,
                    "heading": s.heading,
                    "status": s.status.value,
                    "attempts": s.attempts,
                    "error_code": s.error_code,
                    "error_message": s.error_message,
                }
                for s in sections
            ],
        }

    def register_listener(self, report_id: str, callback: Callable) -> None:
        """Register ``callback(report_id, progress, status)`` for a report."""
        listeners = self._listeners.setdefault(report_id, [])
        if callback not in listeners:
            listeners.append(callback)

    def unregister_listener(self, report_id: str, callback: Callable) -> None:
        listeners = self._listeners.get(report_id, [])
        if callback in listeners:
            listeners.remove(callback)

    def release(self, report_id: str) -> None:
        """Drop the progress lock and listeners of a finished report."""
        lock = self._locks.get(report_id)
        if lock is not None and not lock.locked():
            del self._locks[report_id]
        self._listeners.pop(report_id, None)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _lock_for(self, report_id: str) -> asyncio.Lock:
        lock = self._locks.get(report_id)
        if lock is None:
            lock = self._locks[report_id] = asyncio.Lock()
        return lock

    async def _load(self, collection: Collection, record_id: str, model: type[_M]) -> _M:
        row = await self._store.get(collection, record_id)
        if row is None:
            raise RecordNotFoundError(message=f"{collection.value} record '{record_id}' not found")
        return model.model_validate(row)

    async def _write(self, collection: Collection, current: _M, fields: dict[str, Any]) -> _M:
        if "updated_at" in type(current).model_fields:
            fields = {**fields, "updated_at": _utcnow()}
        merged = type(current).model_validate({**current.model_dump(), **fields})
        dumped = merged.model_dump(mode="json")
        await self._store.update(collection, current.id, {key: dumped[key] for key in fields})  # type: ignore[attr-defined]
        return merged

    @staticmethod
    def _check(
        table: dict[Any, frozenset[Any]],
        current: Enum,
        target: Enum,
        kind: str,
        record_id: str,
    ) -> None:
        if target not in table.get(current, frozenset()):
            raise InvalidTransitionError(
                message=f"{kind} '{record_id}' cannot move from {current.value} to {target.value}"
            )

    async def _notify_listeners(self, report_id: str, report: ReportGeneration) -> None:
        for callback in self._listeners.get(report_id, []):
            try:
                result = callback(report_id, report.progress, report.status.value)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as exc:
                logger.warning(
                    "listener_callback_error",
                    report_id=report_id,
                    error=str(exc),
                    callback=getattr(callback, "__name__", repr(callback)),
                )
