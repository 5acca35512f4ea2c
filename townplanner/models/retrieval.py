"""Retrieval and question-answering result models."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SearchScope(BaseModel):
    """A collection, optionally narrowed to specific documents."""

    model_config = ConfigDict(frozen=True)

    collection_id: str
    document_ids: list[str] | None = None

    @field_validator("collection_id")
    @classmethod
    def _required(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("collection_id must not be empty")
        return v


class RetrievedChunk(BaseModel):
    """A chunk ranked for one query, enriched for citation display."""

    model_config = ConfigDict(frozen=True)

    chunk_id: str
    document_id: str
    content: str
    similarity: float = Field(ge=-1.0, le=1.0)
    sequence_index: int = Field(ge=0)
    chunk_type: str = "text"
    section_title: str | None = None
    subsection_title: str | None = None
    metadata_fields: list[str] = Field(default_factory=list)


class QueryResult(BaseModel):
    """Per-query entry of a batch search.

    A failed query carries an empty ``results`` list and a populated
    ``error`` / ``error_code``; the other entries are unaffected.
    """

    model_config = ConfigDict(frozen=True)

    query: str
    results: list[RetrievedChunk] = Field(default_factory=list)
    error: str | None = None
    error_code: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class Citation(BaseModel):
    model_config = ConfigDict(frozen=True)

    number: int = Field(ge=1)
    chunk_id: str
    document_id: str
    section_title: str | None = None
    similarity: float


class Answer(BaseModel):
    model_config = ConfigDict(frozen=True)

    question: str
    answer: str
    citations: list[Citation] = Field(default_factory=list)
    context_found: bool = True
