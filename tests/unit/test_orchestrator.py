"""Unit tests for ReportOrchestrator.

Uses the in-memory store, the keyword embedder and a scripted LLM, so every
test runs the real retrieval, state tracking and assembly code.
"""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from tests.conftest import FakeLLM, KeywordEmbedder, add_chunks
from townplanner.interfaces.store_provider import Collection
from townplanner.models.events import REPORT_COMPLETED, REPORT_FAILED
from townplanner.models.reports import GenerationConfig, ReportRequest, ReportStatus, SectionStatus
from townplanner.pipeline.orchestrator import ReportOrchestrator
from townplanner.pipeline.state_tracker import JobStateTracker
from townplanner.providers.store.memory_store import MemoryStoreProvider
from townplanner.services.embedding_service import EmbeddingService
from townplanner.services.outbox import EventOutbox
from townplanner.services.reports.templates import ReportTemplateCatalog
from townplanner.services.retrieval_service import RetrievalService
from townplanner.utils.errors import (
    InvalidTransitionError,
    LLMError,
    RateLimitError,
    ReportError,
    RequestValidationError,
    TemplateNotFoundError,
)
from townplanner.utils.retry import RetryPolicy

REQUEST = ReportRequest(
    collection_id="c1",
    template_name="site_brief",
    topic="rear addition",
    address="12 Smith Street",
)

CHUNKS = [
    "The site is zoned R2 and the height limit is 9.5 metres.",
    "The heritage terrace contributes to the streetscape.",
    "Drainage is directed to the street gutter.",
]


def _fail_heritage(system: str, user: str) -> str:
    if 'subsection "Heritage Context"' in user:
        raise LLMError(message="content policy refusal", provider_name="fake-llm")
    return "Generated section text."


async def _orchestrator(
    store: MemoryStoreProvider,
    catalog: ReportTemplateCatalog,
    llm: FakeLLM,
    tmp_path: Path,
    fake_sleep,
    embedder: KeywordEmbedder | None = None,
    **kwargs,
) -> ReportOrchestrator:
    embedder = embedder or KeywordEmbedder()
    await add_chunks(store, "doc-1", CHUNKS)
    await EmbeddingService(store, embedder).embed_document("doc-1")
    return ReportOrchestrator(
        catalog=catalog,
        retrieval=RetrievalService(store, embedder, similarity_threshold=0.0),
        llm=llm,
        tracker=JobStateTracker(store),
        outbox=EventOutbox(store),
        output_dir=tmp_path / "reports",
        retry_policy=RetryPolicy(max_attempts=2, sleep=fake_sleep),
        **kwargs,
    )


async def _events(store: MemoryStoreProvider) -> list[str]:
    return [row["event"] for row in await store.query(Collection.OUTBOX, order_by="created_at")]


class TestInitiate:
    @pytest.mark.asyncio
    async def test_creates_one_pending_section_per_leaf(
        self, store, catalog, fake_llm, tmp_path, fake_sleep
    ) -> None:
        orchestrator = await _orchestrator(store, catalog, fake_llm, tmp_path, fake_sleep)

        report = await orchestrator.initiate_report(REQUEST)

        sections = await store.query(Collection.SECTIONS, {"report_id": report.id}, order_by="section_order")
        assert [s["section_order"] for s in sections] == [10, 11, 12]
        assert {s["status"] for s in sections} == {"pending"}
        assert report.status is ReportStatus.PENDING
        assert report.title == "Site Brief: rear addition"
        assert report.section_count == 3
        assert fake_llm.calls == []

    @pytest.mark.asyncio
    async def test_unknown_template_writes_nothing(self, store, catalog, fake_llm, tmp_path, fake_sleep) -> None:
        orchestrator = await _orchestrator(store, catalog, fake_llm, tmp_path, fake_sleep)

        with pytest.raises(TemplateNotFoundError):
            await orchestrator.initiate_report(REQUEST.model_copy(update={"template_name": "nope"}))

        assert await store.query(Collection.REPORTS) == []
        assert await store.query(Collection.SECTIONS) == []

    @pytest.mark.asyncio
    async def test_blank_topic_is_rejected(self, store, catalog, fake_llm, tmp_path, fake_sleep) -> None:
        orchestrator = await _orchestrator(store, catalog, fake_llm, tmp_path, fake_sleep)

        with pytest.raises(RequestValidationError):
            await orchestrator.initiate_report(REQUEST.model_copy(update={"topic": "  "}))


class TestProcess:
    @pytest.mark.asyncio
    async def test_all_sections_generated(self, store, catalog, fake_llm, tmp_path, fake_sleep) -> None:
        orchestrator = await _orchestrator(store, catalog, fake_llm, tmp_path, fake_sleep)

        report = await orchestrator.generate_report(REQUEST)

        assert report.status is ReportStatus.COMPLETED
        assert report.progress == 100
        assert report.completed_count == 3
        markdown = Path(report.output_path).read_text(encoding="utf-8")
        assert markdown == report.generated_content
        assert (
            markdown.index("## Site Analysis")
            < markdown.index("### Heritage Context")
            < markdown.index("### Zoning Controls")
        )
        assert len(fake_llm.calls) == 3
        assert "Context from planning documents:" in fake_llm.calls[0]["user_prompt"]
        assert await _events(store) == [REPORT_COMPLETED]

    @pytest.mark.asyncio
    async def test_failed_section_does_not_stop_the_others(self, store, catalog, tmp_path, fake_sleep) -> None:
        llm = FakeLLM(_fail_heritage)
        orchestrator = await _orchestrator(store, catalog, llm, tmp_path, fake_sleep)

        report = await orchestrator.generate_report(REQUEST)
        sections = await JobStateTracker(store).list_sections(report.id)

        assert [s.status for s in sections] == [
            SectionStatus.COMPLETED,
            SectionStatus.FAILED,
            SectionStatus.COMPLETED,
        ]
        assert sections[1].error_code == "llm_error"
        assert "content policy refusal" in sections[1].error_message
        assert report.status is ReportStatus.COMPLETED
        assert report.progress == 67
        assert report.failed_count == 1
        assert "## Sections not generated" in report.generated_content

    @pytest.mark.asyncio
    async def test_strict_threshold_fails_the_report(self, store, catalog, tmp_path, fake_sleep) -> None:
        orchestrator = await _orchestrator(
            store, catalog, FakeLLM(_fail_heritage), tmp_path, fake_sleep, completion_threshold=1.0
        )

        report = await orchestrator.generate_report(REQUEST)

        assert report.status is ReportStatus.FAILED
        assert report.error_code == "report_failed"
        assert report.error_message == "1 of 3 sections were not generated"
        assert Path(report.output_path).exists()
        assert await _events(store) == [REPORT_FAILED]

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried_per_section(self, store, catalog, tmp_path, fake_sleep) -> None:
        calls: list[int] = []

        def responder(system: str, user: str) -> str:
            calls.append(1)
            if len(calls) == 1:
                raise RateLimitError(message="slow down", provider_name="fake-llm")
            return "Generated section text."

        orchestrator = await _orchestrator(store, catalog, FakeLLM(responder), tmp_path, fake_sleep)

        report = await orchestrator.generate_report(REQUEST)

        assert report.progress == 100
        assert len(calls) == 4

    @pytest.mark.asyncio
    async def test_empty_generation_fails_the_section(self, store, catalog, tmp_path, fake_sleep) -> None:
        orchestrator = await _orchestrator(store, catalog, FakeLLM("   "), tmp_path, fake_sleep)

        report = await orchestrator.generate_report(REQUEST)
        sections = await JobStateTracker(store).list_sections(report.id)

        assert {s.error_code for s in sections} == {"malformed_output"}
        assert report.status is ReportStatus.FAILED

    @pytest.mark.asyncio
    async def test_retrieval_failure_fails_only_that_section(self, store, catalog, tmp_path, fake_sleep) -> None:
        embedder = KeywordEmbedder(fail_on={"Site Analysis for rear addition at 12 Smith Street"})
        llm = FakeLLM()
        orchestrator = await _orchestrator(store, catalog, llm, tmp_path, fake_sleep, embedder=embedder)

        report = await orchestrator.generate_report(REQUEST)
        sections = await JobStateTracker(store).list_sections(report.id)

        assert sections[0].status is SectionStatus.FAILED
        assert sections[0].error_message.startswith("Retrieval failed")
        assert sections[0].retrieval_error
        assert [s.status for s in sections[1:]] == [SectionStatus.COMPLETED, SectionStatus.COMPLETED]
        assert len(llm.calls) == 2

    @pytest.mark.asyncio
    async def test_generation_config_reaches_the_provider(
        self, store, catalog, fake_llm, tmp_path, fake_sleep
    ) -> None:
        orchestrator = await _orchestrator(store, catalog, fake_llm, tmp_path, fake_sleep)
        request = REQUEST.model_copy(
            update={"generation": GenerationConfig(model="planner-large", temperature=0.1, max_tokens=500)}
        )

        await orchestrator.generate_report(request)

        assert {(c["model"], c["temperature"], c["max_tokens"]) for c in fake_llm.calls} == {
            ("planner-large", 0.1, 500)
        }

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_the_report(self, store, catalog, fake_llm, tmp_path) -> None:
        retrieval = MagicMock(spec=RetrievalService)
        retrieval.search = AsyncMock(side_effect=RuntimeError("index unavailable"))
        tracker = JobStateTracker(store)
        orchestrator = ReportOrchestrator(
            catalog, retrieval, fake_llm, tracker, EventOutbox(store), output_dir=tmp_path
        )
        report = await orchestrator.initiate_report(REQUEST)

        with pytest.raises(ReportError):
            await orchestrator.process_report(report.id)

        failed = await tracker.get_report(report.id)
        assert failed.status is ReportStatus.FAILED
        assert failed.error_code == "internal_error"
        assert await _events(store) == [REPORT_FAILED]


class TestRetryAndSkip:
    @pytest.mark.asyncio
    async def test_retry_regenerates_only_failed_sections(self, store, catalog, tmp_path, fake_sleep) -> None:
        refuse = [True]

        def responder(system: str, user: str) -> str:
            if refuse[0]:
                return _fail_heritage(system, user)
            return "Recovered section text."

        llm = FakeLLM(responder)
        orchestrator = await _orchestrator(store, catalog, llm, tmp_path, fake_sleep)
        report = await orchestrator.generate_report(REQUEST)
        calls_before = len(llm.calls)

        refuse[0] = False
        retried = await orchestrator.retry_failed_sections(report.id)
        sections = await JobStateTracker(store).list_sections(report.id)

        assert len(llm.calls) == calls_before + 1
        assert retried.progress == 100
        assert retried.failed_count == 0
        assert sections[1].attempts == 2
        assert sections[1].generated_content == "Recovered section text."
        assert sections[0].generated_content == "Generated section text."

    @pytest.mark.asyncio
    async def test_retry_requires_a_finished_report(self, store, catalog, fake_llm, tmp_path, fake_sleep) -> None:
        orchestrator = await _orchestrator(store, catalog, fake_llm, tmp_path, fake_sleep)
        report = await orchestrator.initiate_report(REQUEST)

        with pytest.raises(InvalidTransitionError):
            await orchestrator.retry_failed_sections(report.id)

    @pytest.mark.asyncio
    async def test_interrupted_report_is_resumed(self, store, catalog, fake_llm, tmp_path, fake_sleep) -> None:
        orchestrator = await _orchestrator(store, catalog, fake_llm, tmp_path, fake_sleep)
        report = await orchestrator.initiate_report(REQUEST)
        tracker = JobStateTracker(store)
        first = (await tracker.list_sections(report.id))[0]
        # State left behind by a process that died mid-section.
        await tracker.transition_report(report.id, ReportStatus.PROCESSING)
        await tracker.transition_section(first.id, SectionStatus.PROCESSING, attempts=1)

        resumed = await orchestrator.retry_failed_sections(report.id)
        sections = await tracker.list_sections(report.id)

        assert resumed.status is ReportStatus.COMPLETED
        assert resumed.progress == 100
        assert {s.status for s in sections} == {SectionStatus.COMPLETED}
        assert sections[0].attempts == 2
        assert len(fake_llm.calls) == 3
        assert await _events(store) == [REPORT_COMPLETED]

    @pytest.mark.asyncio
    async def test_resume_keeps_finished_sections(self, store, catalog, fake_llm, tmp_path, fake_sleep) -> None:
        orchestrator = await _orchestrator(store, catalog, fake_llm, tmp_path, fake_sleep)
        report = await orchestrator.initiate_report(REQUEST)
        tracker = JobStateTracker(store)
        first = (await tracker.list_sections(report.id))[0]
        await tracker.transition_report(report.id, ReportStatus.PROCESSING)
        await tracker.transition_section(first.id, SectionStatus.PROCESSING)
        await tracker.transition_section(first.id, SectionStatus.COMPLETED, generated_content="Kept text.")

        resumed = await orchestrator.resume_report(report.id)

        assert resumed.status is ReportStatus.COMPLETED
        assert len(fake_llm.calls) == 2
        assert (await tracker.get_section(first.id)).generated_content == "Kept text."

    @pytest.mark.asyncio
    async def test_resume_requires_a_processing_report(
        self, store, catalog, fake_llm, tmp_path, fake_sleep
    ) -> None:
        orchestrator = await _orchestrator(store, catalog, fake_llm, tmp_path, fake_sleep)
        report = await orchestrator.generate_report(REQUEST)

        with pytest.raises(InvalidTransitionError):
            await orchestrator.resume_report(report.id)

    @pytest.mark.asyncio
    async def test_finished_report_releases_its_lock(self, store, catalog, fake_llm, tmp_path, fake_sleep) -> None:
        orchestrator = await _orchestrator(store, catalog, fake_llm, tmp_path, fake_sleep)

        report = await orchestrator.generate_report(REQUEST)

        assert report.id not in orchestrator._tracker._locks

    @pytest.mark.asyncio
    async def test_skipping_a_failed_section_counts_it_as_done(self, store, catalog, tmp_path, fake_sleep) -> None:
        orchestrator = await _orchestrator(store, catalog, FakeLLM(_fail_heritage), tmp_path, fake_sleep)
        report = await orchestrator.generate_report(REQUEST)
        failed = await JobStateTracker(store).list_sections(report.id, [SectionStatus.FAILED])

        skipped = await orchestrator.skip_section(failed[0].id)

        assert skipped.status is SectionStatus.SKIPPED
        assert (await JobStateTracker(store).get_report(report.id)).progress == 100

    def test_threshold_must_be_a_ratio(self, catalog, fake_llm, store) -> None:
        with pytest.raises(ValueError):
            ReportOrchestrator(
                catalog,
                MagicMock(spec=RetrievalService),
                fake_llm,
                JobStateTracker(store),
                EventOutbox(store),
                completion_threshold=1.5,
            )
