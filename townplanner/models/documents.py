"""Document, chunk and embedding models.

All models use frozen config; status changes produce new instances via
``model_copy(update={...})`` and are persisted through the store as JSON
(``model_dump(mode="json")``).

Lifecycle:
    Document   created ``pending`` on upload, driven through
               ``processing -> completed | failed`` by ingestion.
    Chunk      written in one batch per ingestion run, never mutated.
    Embedding  one per (chunk, model), written after chunking and may lag it.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)  # noqa: UP017


def new_id() -> str:
    return str(uuid.uuid4())


class DocumentStatus(str, Enum):  # noqa: UP042
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Document(BaseModel):
    """One ingested source file belonging to a collection."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    collection_id: str
    file_path: str = Field(description="Raw storage location of the uploaded file.")
    title: str = ""
    status: DocumentStatus = DocumentStatus.PENDING
    chunk_count: int = Field(default=0, ge=0)
    metadata_summary: dict[str, Any] = Field(
        default_factory=dict,
        description="Field name -> value summary of the extracted metadata.",
    )
    content_hash: str | None = None
    parser_name: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    processed_at: datetime | None = None


class PageText(BaseModel):
    model_config = ConfigDict(frozen=True)

    page_number: int = Field(ge=1)
    text: str


class ParsedDocument(BaseModel):
    """Output of a document parser: Markdown text plus per-page text."""

    model_config = ConfigDict(frozen=True)

    text: str
    pages: list[PageText] = Field(default_factory=list)
    parser_name: str = ""

    def page_for(self, needle: str) -> int | None:
        """Return the first page whose text contains *needle* (case-insensitive)."""
        target = needle.strip().lower()
        if not target:
            return None
        for page in self.pages:
            if target in page.text.lower():
                return page.page_number
        return None


class ChunkType(str, Enum):  # noqa: UP042
    TEXT = "text"
    TABLE = "table"


class TextChunk(BaseModel):
    """A chunker output unit, before it is attached to a document."""

    model_config = ConfigDict(frozen=True)

    sequence_index: int = Field(ge=0)
    content: str
    chunk_type: ChunkType = ChunkType.TEXT
    section_title: str | None = None
    subsection_title: str | None = None
    hierarchy_level: int = Field(default=0, ge=0, le=3)
    word_count: int = Field(default=0, ge=0)
    char_count: int = Field(default=0, ge=0)
    paragraph_count: int = Field(default=0, ge=0)
    oversized: bool = Field(
        default=False,
        description="True when a single paragraph exceeded the size limit.",
    )


class Chunk(BaseModel):
    """A persisted, retrievable content unit of a document."""

    model_config = ConfigDict(frozen=True)

    id: str
    document_id: str
    collection_id: str
    sequence_index: int = Field(ge=0)
    content: str
    chunk_type: ChunkType = ChunkType.TEXT
    section_title: str | None = None
    subsection_title: str | None = None
    hierarchy_level: int = Field(default=0, ge=0, le=3)
    word_count: int = Field(default=0, ge=0)
    char_count: int = Field(default=0, ge=0)
    metadata_fields: list[str] = Field(
        default_factory=list,
        description="Normalized names of metadata fields evidenced in this chunk.",
    )
    created_at: datetime = Field(default_factory=_utcnow)

    @classmethod
    def from_text_chunk(
        cls,
        chunk: TextChunk,
        document_id: str,
        collection_id: str,
        metadata_fields: list[str] | None = None,
    ) -> Chunk:
        # Deterministic id: re-ingesting a document reproduces the same ids.
        chunk_id = str(uuid.uuid5(uuid.NAMESPACE_URL, f"{document_id}/{chunk.sequence_index}"))
        return cls(
            id=chunk_id,
            document_id=document_id,
            collection_id=collection_id,
            sequence_index=chunk.sequence_index,
            content=chunk.content,
            chunk_type=chunk.chunk_type,
            section_title=chunk.section_title,
            subsection_title=chunk.subsection_title,
            hierarchy_level=chunk.hierarchy_level,
            word_count=chunk.word_count,
            char_count=chunk.char_count,
            metadata_fields=metadata_fields or [],
        )


class Embedding(BaseModel):
    """One embedding vector for a (chunk, model) pair."""

    model_config = ConfigDict(frozen=True)

    id: str
    chunk_id: str
    document_id: str
    collection_id: str
    model: str
    dimension: int = Field(gt=0)
    vector: list[float]
    created_at: datetime = Field(default_factory=_utcnow)

    @staticmethod
    def make_id(chunk_id: str, model: str) -> str:
        """The (chunk, model) key; at most one embedding exists per key."""
        return f"{chunk_id}::{model}"
