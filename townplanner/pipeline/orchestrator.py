"""Template-driven report generation.

ARCHITECTURE NOTE:
    A report moves through ``pending -> processing -> completed | failed``
    and each of its sections through ``pending -> processing -> completed |
    failed``.  All state lives in store rows driven by
    :class:`JobStateTracker`; nothing is handed between steps in memory.

    initiate_report()
        1. Look up and expand the template (unknown template or a bad
           request raises before anything is written).
        2. Persist the report and one ``pending`` section per template leaf
           in a single all-or-nothing step.

    process_report()
        3. One batch retrieval call for every pending section.
        4. Generate sections with bounded concurrency.  Each section has its
           own timeout and transient retry; a failure is recorded on that
           section only and the others carry on.
        5. Progress is recomputed after every section.
        6. Assemble the Markdown in ``section_order``, write it to disk and
           mark the report ``completed`` when the share of completed or
           skipped sections reaches ``completion_threshold`` (``failed``
           otherwise).  A ``report.completed`` / ``report.failed`` event is
           emitted through the outbox.

    retry_failed_sections() resets failed sections to pending and runs
    steps 3-6 again for those only; skip_section() marks one section
    ``skipped`` so it counts as done.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from pathlib import Path

import structlog

from townplanner.interfaces.llm_provider import ILLMProvider
from townplanner.models.events import REPORT_COMPLETED, REPORT_FAILED
from townplanner.models.reports import (
    GenerationConfig,
    ReportGeneration,
    ReportRequest,
    ReportSection,
    ReportStatus,
    SectionStatus,
)
from townplanner.models.retrieval import QueryResult, RetrievedChunk, SearchScope
from townplanner.pipeline.state_tracker import JobStateTracker
from townplanner.services.outbox import EventOutbox
from townplanner.services.reports.assembler import assemble_report, write_report
from townplanner.services.reports.templates import ReportTemplateCatalog, expand_template
from townplanner.services.retrieval_service import RetrievalService
from townplanner.utils.concurrency import throttled_gather, with_timeout
from townplanner.utils.errors import (
    InvalidTransitionError,
    MalformedOutputError,
    ReportError,
    RequestValidationError,
    TownPlannerError,
    error_payload,
)
from townplanner.utils.logging import log_context
from townplanner.utils.retry import RetryPolicy
from townplanner.utils.text_normalizer import word_count

logger = structlog.get_logger(logger_name=__name__)

CONTEXT_DELIMITER = "\n\n---\n\n"

_SECTION_SYSTEM_PROMPT = (
    "You are an experienced town planner writing one section of a professional "
    "planning report. Write clear, formal prose grounded in the supplied context "
    "from planning documents. Do not invent facts, figures or controls; if the "
    "context does not contain relevant information, state that clearly. Do not "
    "repeat the section heading."
)


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)  # noqa: UP017


def build_section_prompt(
    report: ReportGeneration,
    section: ReportSection,
    chunks: list[RetrievedChunk],
) -> str:
    """User prompt for one section: report framing, retrieved context, query."""
    lines = [f"Report: {report.title}", f"Topic: {report.topic}"]
    if report.address:
        lines.append(f"Site address: {report.address}")
    if report.additional_context:
        lines.append(f"Additional context: {report.additional_context}")

    target = f'"{section.section_title}"'
    if section.is_subsection:
        target += f' - subsection "{section.subsection_title}"'
    lines.extend(["", f"Write the section {target} of this report.", ""])

    if chunks:
        context = CONTEXT_DELIMITER.join(chunk.content for chunk in chunks)
    else:
        context = "(no relevant document content was found)"
    lines.extend(["Context from planning documents:", context, "", f"Query: {section.query_text}"])
    return "\n".join(lines)


class ReportOrchestrator:
    """Initiates, processes and finalizes report generations.

    Parameters
    ----------
    catalog:
        Report templates.
    retrieval:
        Batch search used for section context.
    llm:
        Provider used for section prose.
    tracker:
        Persisted state machines and progress.
    outbox:
        Completion / failure events.
    completion_threshold:
        Minimum share of completed or skipped sections for a report to end
        ``completed``.  ``1.0`` means any failed section fails the report.
    """

    def __init__(
        self,
        catalog: ReportTemplateCatalog,
        retrieval: RetrievalService,
        llm: ILLMProvider,
        tracker: JobStateTracker,
        outbox: EventOutbox,
        top_k: int = 5,
        similarity_threshold: float | None = None,
        section_concurrency: int = 3,
        completion_threshold: float = 0.5,
        generation_timeout_seconds: float | None = 120.0,
        retry_policy: RetryPolicy | None = None,
        output_dir: str | Path = "data/reports",
        default_generation: GenerationConfig | None = None,
    ) -> None:
        if not 0.0 <= completion_threshold <= 1.0:
            raise ValueError("completion_threshold must be within [0, 1]")
        self._catalog = catalog
        self._retrieval = retrieval
        self._llm = llm
        self._tracker = tracker
        self._outbox = outbox
        self._top_k = top_k
        self._similarity_threshold = similarity_threshold
        self._concurrency = max(1, section_concurrency)
        self._completion_threshold = completion_threshold
        self._timeout = generation_timeout_seconds
        self._retry = retry_policy or RetryPolicy(max_attempts=1)
        self._output_dir = Path(output_dir)
        self._default_generation = default_generation or GenerationConfig()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def generate_report(self, request: ReportRequest) -> ReportGeneration:
        """Initiate and fully process a report."""
        report = await self.initiate_report(request)
        return await self.process_report(report.id)

    async def initiate_report(self, request: ReportRequest) -> ReportGeneration:
        """Validate *request*, expand its template and persist pending rows.

        Raises
        ------
        RequestValidationError
            Missing collection id or topic.
        TemplateNotFoundError
            Unknown template name.
        """
        if not request.collection_id.strip():
            raise RequestValidationError(message="collection_id is required")
        if not request.topic.strip():
            raise RequestValidationError(message="topic is required")
        template = self._catalog.get(request.template_name)

        queries = expand_template(
            template,
            topic=request.topic,
            address=request.address,
            context=request.additional_context,
        )
        report = ReportGeneration(
            collection_id=request.collection_id,
            template_name=template.name,
            title=f"{template.display_name or template.name}: {request.topic.strip()}",
            topic=request.topic.strip(),
            address=request.address,
            additional_context=request.additional_context,
            document_ids=request.document_ids,
            generation=request.generation or self._default_generation,
        )
        sections = [ReportSection.from_query(report.id, q) for q in queries]
        report = await self._tracker.create_report(report, sections)
        logger.info(
            "report_initiated",
            report_id=report.id,
            template=template.name,
            sections=len(sections),
        )
        return report

    async def process_report(self, report_id: str) -> ReportGeneration:
        """Retrieve, generate and assemble every pending section of a report.

        Raises
        ------
        ReportError
            If processing fails outside the per-section isolation (e.g. the
            store is unavailable); the report is left ``failed``.
        """
        with log_context(report_id=report_id):
            report = await self._tracker.transition_report(
                report_id,
                ReportStatus.PROCESSING,
                error_code=None,
                error_message=None,
            )
            return await self._run(report)

    async def resume_report(self, report_id: str) -> ReportGeneration:
        """Continue a report left ``processing`` by an interrupted run.

        Sections caught mid-flight (``processing``) and ``failed`` sections
        go back to ``pending``; completed and skipped sections are kept.
        The caller must make sure no other run is still working on the
        report.
        """
        with log_context(report_id=report_id):
            report = await self._tracker.get_report(report_id)
            if report.status is not ReportStatus.PROCESSING:
                raise InvalidTransitionError(
                    message=(
                        f"report '{report_id}' is {report.status.value}; "
                        "only a processing report can be resumed"
                    )
                )
            interrupted = await self._tracker.list_sections(
                report_id, [SectionStatus.PROCESSING, SectionStatus.FAILED]
            )
            await self._reset_sections(interrupted)
            logger.info("report_resumed", sections=len(interrupted))
            return await self._run(report)

    async def retry_failed_sections(self, report_id: str) -> ReportGeneration:
        """Reset failed sections to pending and process only those.

        A report still marked ``processing`` (its run was interrupted) is
        resumed instead.
        """
        report = await self._tracker.get_report(report_id)
        if report.status is ReportStatus.PROCESSING:
            return await self.resume_report(report_id)
        if report.status not in (ReportStatus.COMPLETED, ReportStatus.FAILED):
            raise InvalidTransitionError(
                message=f"report '{report_id}' is {report.status.value}; only finished reports can be retried"
            )
        failed = await self._tracker.list_sections(report_id, [SectionStatus.FAILED])
        if not failed:
            logger.info("report_retry_nothing_failed", report_id=report_id)
            return report
        await self._reset_sections(failed)
        logger.info("report_retry_started", report_id=report_id, sections=len(failed))
        return await self.process_report(report_id)

    async def skip_section(self, section_id: str) -> ReportSection:
        """Mark a pending or failed section as deliberately skipped."""
        section = await self._tracker.transition_section(
            section_id, SectionStatus.SKIPPED, completed_at=_utcnow()
        )
        report = await self._tracker.recompute_progress(section.report_id)
        if report.status is not ReportStatus.PROCESSING:
            self._tracker.release(section.report_id)
        logger.info("section_skipped", report_id=section.report_id, section_id=section_id)
        return section

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _run(self, report: ReportGeneration) -> ReportGeneration:
        try:
            pending = await self._tracker.list_sections(report.id, [SectionStatus.PENDING])
            if pending:
                retrieved = await self._retrieve(report, pending)
                outcomes = await throttled_gather(
                    [self._process_section(report, s, retrieved[s.id]) for s in pending],
                    limit=self._concurrency,
                )
                for section, outcome in zip(pending, outcomes):
                    if isinstance(outcome, asyncio.CancelledError):
                        raise outcome
                    if isinstance(outcome, BaseException):
                        logger.error(
                            "section_processing_error",
                            section_id=section.id,
                            error=str(outcome),
                            exc_info=outcome,
                        )
            return await self._finalize(report.id)
        except Exception as exc:
            await self._fail_report(report.id, exc)
            raise ReportError(message=f"Report '{report.id}' failed: {exc}") from exc
        finally:
            self._tracker.release(report.id)

    async def _reset_sections(self, sections: list[ReportSection]) -> None:
        for section in sections:
            await self._tracker.transition_section(
                section.id,
                SectionStatus.PENDING,
                error_code=None,
                error_message=None,
                retrieval_error=None,
            )

    async def _retrieve(
        self,
        report: ReportGeneration,
        sections: list[ReportSection],
    ) -> dict[str, QueryResult]:
        scope = SearchScope(collection_id=report.collection_id, document_ids=report.document_ids)
        results = await self._retrieval.search(
            [s.query_text for s in sections],
            scope,
            top_k=self._top_k,
            similarity_threshold=self._similarity_threshold,
        )
        return {section.id: result for section, result in zip(sections, results)}

    async def _process_section(
        self,
        report: ReportGeneration,
        section: ReportSection,
        retrieved: QueryResult,
    ) -> None:
        section = await self._tracker.transition_section(
            section.id,
            SectionStatus.PROCESSING,
            started_at=_utcnow(),
            attempts=section.attempts + 1,
            chunk_ids=[chunk.chunk_id for chunk in retrieved.results],
            retrieval_error=retrieved.error,
        )
        try:
            if not retrieved.ok:
                raise ReportError(message=f"Retrieval failed: {retrieved.error}")
            content = await self._generate(report, section, retrieved.results)
        except TownPlannerError as exc:
            await self._fail_section(section, exc)
        except Exception as exc:
            logger.error("section_unexpected_error", section_id=section.id, exc_info=exc)
            await self._fail_section(section, exc)
        else:
            await self._tracker.transition_section(
                section.id,
                SectionStatus.COMPLETED,
                generated_content=content,
                word_count=word_count(content),
                completed_at=_utcnow(),
                error_code=None,
                error_message=None,
            )
            logger.info(
                "section_completed",
                report_id=report.id,
                section_id=section.id,
                order=section.section_order,
                chunks=len(retrieved.results),
            )
        await self._tracker.recompute_progress(report.id)

    async def _generate(
        self,
        report: ReportGeneration,
        section: ReportSection,
        chunks: list[RetrievedChunk],
    ) -> str:
        generation = report.generation
        prompt = build_section_prompt(report, section, chunks)
        text = await self._retry.run(
            lambda: with_timeout(
                self._llm.complete(
                    system_prompt=_SECTION_SYSTEM_PROMPT,
                    user_prompt=prompt,
                    temperature=generation.temperature,
                    max_tokens=generation.max_tokens,
                    model=generation.model,
                ),
                self._timeout,
                provider_name=self._llm.get_provider_name(),
                operation="section generation",
            ),
            name="section_generation",
        )
        content = (text or "").strip()
        if not content:
            raise MalformedOutputError(
                message="Model returned empty section content",
                provider_name=self._llm.get_provider_name(),
            )
        return content

    async def _fail_section(self, section: ReportSection, exc: BaseException) -> None:
        payload = error_payload(exc)
        logger.warning(
            "section_failed",
            report_id=section.report_id,
            section_id=section.id,
            order=section.section_order,
            error_code=payload["code"],
            error=str(exc),
        )
        await self._tracker.transition_section(
            section.id,
            SectionStatus.FAILED,
            error_code=payload["code"],
            error_message=payload["message"],
            completed_at=_utcnow(),
        )

    async def _finalize(self, report_id: str) -> ReportGeneration:
        report = await self._tracker.recompute_progress(report_id)
        sections = await self._tracker.list_sections(report_id)

        content = assemble_report(report, sections)
        path = await asyncio.to_thread(write_report, content, self._output_dir, report_id)

        total = len(sections)
        done = sum(1 for s in sections if s.status in (SectionStatus.COMPLETED, SectionStatus.SKIPPED))
        failed = total - done
        ratio = done / total if total else 0.0
        status = ReportStatus.COMPLETED if ratio >= self._completion_threshold else ReportStatus.FAILED

        fields: dict = {
            "generated_content": content,
            "output_path": str(path),
            "completed_at": _utcnow(),
        }
        if status is ReportStatus.FAILED:
            fields["error_code"] = ReportError.code
            fields["error_message"] = f"{failed} of {total} sections were not generated"
        report = await self._tracker.transition_report(report_id, status, **fields)

        await self._outbox.emit(
            REPORT_COMPLETED if status is ReportStatus.COMPLETED else REPORT_FAILED,
            {
                "report_id": report_id,
                "status": status.value,
                "progress": report.progress,
                "failed_sections": failed,
                "output_path": str(path),
            },
        )
        logger.info(
            "report_finalized",
            report_id=report_id,
            status=status.value,
            progress=report.progress,
            sections=total,
            failed=failed,
        )
        return report

    async def _fail_report(self, report_id: str, exc: BaseException) -> None:
        payload = error_payload(exc)
        logger.error("report_processing_failed", report_id=report_id, error=str(exc), exc_info=exc)
        try:
            await self._tracker.transition_report(
                report_id,
                ReportStatus.FAILED,
                error_code=payload["code"],
                error_message=payload["message"],
                completed_at=_utcnow(),
            )
        except Exception as mark_exc:
            logger.warning("report_mark_failed_error", report_id=report_id, error=str(mark_exc))
        await self._outbox.emit(REPORT_FAILED, {"report_id": report_id, **payload})
