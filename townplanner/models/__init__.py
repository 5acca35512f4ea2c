"""Pydantic v2 data models for the town-planner pipeline.

All models are frozen; updates go through ``model_copy(update={...})`` and
are persisted as JSON documents by the store provider.
"""

from townplanner.models.documents import (
    Chunk,
    ChunkType,
    Document,
    DocumentStatus,
    Embedding,
    PageText,
    ParsedDocument,
    TextChunk,
)
from townplanner.models.events import OutboxEvent, OutboxStatus
from townplanner.models.metadata import (
    DiscoveredField,
    DiscoveryResult,
    DocumentMetadata,
    FieldCategory,
    FieldType,
    MetadataFieldDefinition,
    MetadataValueRecord,
    NewFieldSuggestion,
    coerce_value,
)
from townplanner.models.reports import (
    GenerationConfig,
    ReportGeneration,
    ReportRequest,
    ReportSection,
    ReportStatus,
    ReportTemplate,
    SectionQuery,
    SectionStatus,
)
from townplanner.models.retrieval import Answer, QueryResult, RetrievedChunk, SearchScope

__all__ = [
    "Answer",
    "Chunk",
    "ChunkType",
    "DiscoveredField",
    "DiscoveryResult",
    "Document",
    "DocumentMetadata",
    "DocumentStatus",
    "Embedding",
    "FieldCategory",
    "FieldType",
    "GenerationConfig",
    "MetadataFieldDefinition",
    "MetadataValueRecord",
    "NewFieldSuggestion",
    "OutboxEvent",
    "OutboxStatus",
    "PageText",
    "ParsedDocument",
    "QueryResult",
    "ReportGeneration",
    "ReportRequest",
    "ReportSection",
    "ReportStatus",
    "ReportTemplate",
    "RetrievedChunk",
    "SearchScope",
    "SectionQuery",
    "SectionStatus",
    "TextChunk",
    "coerce_value",
]
