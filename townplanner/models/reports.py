"""Report template, generation and section models.

State machines::

    ReportGeneration:  pending -> processing -> completed | failed
    ReportSection:     pending -> processing -> completed | failed
                       pending | failed -> skipped
                       failed -> pending            (retry)
                       processing -> pending        (resume after a crash)

``ReportGeneration.progress`` is derived from its sections: it equals
``round(100 * done / total)`` where *done* counts ``completed`` and
``skipped`` sections.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

ORDER_SPACING = 10
MAX_SUBSECTIONS = ORDER_SPACING - 1


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)  # noqa: UP017


class ReportStatus(str, Enum):  # noqa: UP042
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class SectionStatus(str, Enum):  # noqa: UP042
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------

class TemplateSubsection(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    title: str


class TemplateSection(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    title: str
    order: int | None = Field(default=None, ge=1)
    subsections: list[TemplateSubsection] = Field(default_factory=list)

    @field_validator("subsections")
    @classmethod
    def _bounded(cls, v: list[TemplateSubsection]) -> list[TemplateSubsection]:
        if len(v) > MAX_SUBSECTIONS:
            raise ValueError(f"a section may have at most {MAX_SUBSECTIONS} subsections")
        return v


class ReportTemplate(BaseModel):
    """A named hierarchical report structure."""

    model_config = ConfigDict(frozen=True)

    name: str
    display_name: str = ""
    description: str = ""
    category: str = "general"
    sections: list[TemplateSection]

    @model_validator(mode="after")
    def _check_sections(self) -> ReportTemplate:
        if not self.sections:
            raise ValueError(f"template '{self.name}' has no sections")
        # Sections without an explicit order take their 1-based position.
        orders = [s.order or position for position, s in enumerate(self.sections, start=1)]
        if len(orders) != len(set(orders)):
            raise ValueError(f"template '{self.name}' has duplicate section orders")
        return self

    @property
    def leaf_count(self) -> int:
        return sum(1 + len(s.subsections) for s in self.sections)


class SectionQuery(BaseModel):
    """One expanded template node: the retrieval query and its ordering key."""

    model_config = ConfigDict(frozen=True)

    section_name: str
    section_title: str
    subsection_name: str | None = None
    subsection_title: str | None = None
    section_order: int
    query_text: str


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------

class GenerationConfig(BaseModel):
    """Provider config carried by a report request."""

    model_config = ConfigDict(frozen=True)

    model: str | None = None
    temperature: float = Field(default=0.3, ge=0.0, le=2.0)
    max_tokens: int = Field(default=2000, gt=0)


class ReportRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    collection_id: str
    template_name: str
    topic: str
    address: str | None = None
    additional_context: str | None = None
    document_ids: list[str] | None = None
    generation: GenerationConfig | None = None


class ReportGeneration(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    collection_id: str
    template_name: str
    title: str
    topic: str
    address: str | None = None
    additional_context: str | None = None
    document_ids: list[str] | None = None
    generation: GenerationConfig = Field(default_factory=GenerationConfig)
    status: ReportStatus = ReportStatus.PENDING
    progress: int = Field(default=0, ge=0, le=100)
    """Percent of sections done: ``round(100 * (completed + skipped) / total)``.

    Skipped sections count as done so that a report whose remaining
    sections were all skipped reaches 100.  With no skips this is
    ``round(100 * completed / total)``.
    """
    section_count: int = Field(default=0, ge=0)
    completed_count: int = Field(default=0, ge=0)
    failed_count: int = Field(default=0, ge=0)
    generated_content: str | None = None
    output_path: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    completed_at: datetime | None = None


class ReportSection(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    report_id: str
    section_name: str
    section_title: str
    subsection_name: str | None = None
    subsection_title: str | None = None
    section_order: int
    query_text: str
    chunk_ids: list[str] = Field(default_factory=list)
    generated_content: str | None = None
    word_count: int = Field(default=0, ge=0)
    status: SectionStatus = SectionStatus.PENDING
    attempts: int = Field(default=0, ge=0)
    retrieval_error: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_subsection(self) -> bool:
        return self.subsection_name is not None

    @property
    def heading(self) -> str:
        return self.subsection_title or self.section_title

    @classmethod
    def from_query(cls, report_id: str, query: SectionQuery) -> ReportSection:
        return cls(
            report_id=report_id,
            section_name=query.section_name,
            section_title=query.section_title,
            subsection_name=query.subsection_name,
            subsection_title=query.subsection_title,
            section_order=query.section_order,
            query_text=query.query_text,
        )
