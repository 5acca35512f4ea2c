"""End-to-end report generation from ingested documents."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
import pytest_asyncio

from tests.conftest import FakeLLM, KeywordEmbedder
from townplanner.config.settings import Settings
from townplanner.interfaces.store_provider import Collection
from townplanner.main import Components, build_components
from townplanner.models.events import REPORT_COMPLETED
from townplanner.models.reports import ReportRequest, ReportStatus, SectionStatus
from townplanner.providers.store.memory_store import MemoryStoreProvider
from townplanner.services.reports.templates import ReportTemplateCatalog
from townplanner.utils.errors import LLMError

DISCOVERY = json.dumps({"discovered_fields": [], "new_field_suggestions": []})


class ScriptedWriter:
    """LLM responder that writes one line per section and can fail chosen ones."""

    def __init__(self) -> None:
        self.failing: set[str] = set()

    def __call__(self, system_prompt: str, user_prompt: str) -> str:
        if "discovered_fields" in system_prompt + user_prompt:
            return DISCOVERY
        target = user_prompt.split("Write the section ", 1)[1].split(" of this report.", 1)[0]
        if any(f'"{name}"' in target for name in self.failing):
            raise LLMError(message="content policy refusal", provider_name="fake-llm")
        return f"Body for {target}."


@pytest.fixture()
def writer() -> ScriptedWriter:
    return ScriptedWriter()


@pytest_asyncio.fixture
async def components(tmp_path: Path, project_root: Path, writer: ScriptedWriter, planning_file: Path) -> Components:
    settings = Settings(
        _env_file=None,
        report_output_dir=str(tmp_path / "reports"),
        retrieval_similarity_threshold=0.1,
        retry_max_attempts=1,
        llamacloud_api_key="",
        webhook_url="",
    )
    built = build_components(
        settings,
        store=MemoryStoreProvider(),
        llm=FakeLLM(writer),
        embedder=KeywordEmbedder(),
        catalog=ReportTemplateCatalog.from_yaml(project_root / "config" / "report_templates.yaml"),
    )
    await built.initialize()
    document = await built.ingestion.register_document("smith-st", planning_file)
    await built.ingestion.ingest(document.id)
    await built.dispatch_events()
    return built


def _request() -> ReportRequest:
    return ReportRequest(
        collection_id="smith-st",
        template_name="heritage_impact_report",
        topic="Rear addition",
        address="12 Smith Street, Paddington",
    )


class TestReportPipeline:
    @pytest.mark.asyncio
    async def test_full_report_is_written_in_template_order(self, components: Components) -> None:
        report = await components.orchestrator.generate_report(_request())

        assert report.status is ReportStatus.COMPLETED
        assert report.progress == 100
        assert report.section_count == report.completed_count == 17
        assert report.title == "Heritage Impact Report: Rear addition"

        markdown = Path(report.output_path).read_text(encoding="utf-8")
        assert markdown == report.generated_content
        assert markdown.startswith("# Heritage Impact Report: Rear addition\n")
        body = markdown.split("## Table of Contents", 1)[1]
        headings = [
            "## Executive Summary",
            "## Introduction",
            "### Purpose and Scope",
            "### Site Location and Description",
            "## Heritage Context",
            "### Heritage Listing Details",
            "## Proposal Assessment",
            "## Recommendations",
            "### Recommended Conditions",
            "## Conclusion",
        ]
        positions = [body.index(h + "\n") for h in headings]
        assert positions == sorted(positions)
        assert "Sections not generated" not in markdown

        pending = [e.event for e in await components.outbox.pending()]
        assert pending == [REPORT_COMPLETED]

    @pytest.mark.asyncio
    async def test_sections_carry_retrieved_context(self, components: Components) -> None:
        report = await components.orchestrator.generate_report(_request())

        sections = await components.tracker.list_sections(report.id)
        heritage = next(s for s in sections if s.subsection_title == "Heritage Listing Details")

        assert heritage.status is SectionStatus.COMPLETED
        assert heritage.chunk_ids
        assert await components.store.get(Collection.CHUNKS, heritage.chunk_ids[0]) is not None

    @pytest.mark.asyncio
    async def test_failed_section_then_retry(self, components: Components, writer: ScriptedWriter) -> None:
        writer.failing = {"Visual Impact Assessment"}

        report = await components.orchestrator.generate_report(_request())

        assert report.status is ReportStatus.COMPLETED
        assert report.failed_count == 1
        assert report.progress == 94
        markdown = Path(report.output_path).read_text(encoding="utf-8")
        assert "- Proposal Assessment / Visual Impact Assessment (failed:" in markdown
        assert "### Visual Impact Assessment" not in markdown

        writer.failing = set()
        retried = await components.orchestrator.retry_failed_sections(report.id)

        assert retried.status is ReportStatus.COMPLETED
        assert retried.progress == 100
        markdown = Path(retried.output_path).read_text(encoding="utf-8")
        assert "### Visual Impact Assessment" in markdown
        assert "Sections not generated" not in markdown

    @pytest.mark.asyncio
    async def test_mostly_failed_report_is_failed(self, components: Components, writer: ScriptedWriter) -> None:
        writer.failing = {
            "Executive Summary",
            "Introduction",
            "Heritage Context",
            "Proposal Assessment",
            "Recommendations",
        }

        report = await components.orchestrator.generate_report(_request())

        assert report.status is ReportStatus.FAILED
        assert report.error_code == "report_failed"
        assert report.error_message == f"{report.failed_count} of 17 sections were not generated"
        assert Path(report.output_path).exists()
