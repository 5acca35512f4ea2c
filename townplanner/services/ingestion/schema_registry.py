"""Shared, append-only catalogue of metadata field definitions.

The registry is the one piece of state shared across concurrent document
ingestions.  Every definition is keyed by its normalized name, so
:meth:`MetadataSchemaRegistry.find_or_create` is an atomic
insert-if-absent followed by an atomic counter increment.  N concurrent
calls for the same name therefore leave exactly one row whose
``occurrence_count`` grew by N.

Definitions are never deleted.  Usage statistics (occurrence count and
confidence) let the registry put frequently seen fields first in the
snapshot handed to the discovery prompt.
"""

from __future__ import annotations

import structlog

from townplanner.interfaces.store_provider import Collection, IStoreProvider
from townplanner.models.metadata import FieldCategory, FieldType, MetadataFieldDefinition
from townplanner.utils.confidence import clamp_confidence
from townplanner.utils.errors import RequestValidationError
from townplanner.utils.text_normalizer import find_near_duplicate, normalize_field_name

logger = structlog.get_logger(logger_name=__name__)

# Fields every planning document is expected to carry.  Seeded once so the
# first discovery run already has something to match against.
DEFAULT_FIELDS: tuple[MetadataFieldDefinition, ...] = (
    MetadataFieldDefinition(
        id="document_title",
        display_name="Document Title",
        category=FieldCategory.GENERAL,
        description="Title of the report or document",
        extraction_patterns=[r"^#\s+(.+)$"],
    ),
    MetadataFieldDefinition(
        id="prepared_for",
        display_name="Prepared For",
        category=FieldCategory.CLIENT,
        description="Client or organisation the document was prepared for",
        extraction_patterns=[r"prepared\s+for[:\s]+([^\n]+)"],
    ),
    MetadataFieldDefinition(
        id="prepared_by",
        display_name="Prepared By",
        category=FieldCategory.PROJECT,
        description="Author or consultancy that prepared the document",
        extraction_patterns=[r"prepared\s+by[:\s]+([^\n]+)"],
    ),
    MetadataFieldDefinition(
        id="site_address",
        display_name="Site Address",
        category=FieldCategory.LOCATION,
        description="Street address of the subject site",
        extraction_patterns=[r"(?:site\s+)?address[:\s]+([^\n]+)"],
    ),
    MetadataFieldDefinition(
        id="report_issued_date",
        display_name="Report Issued Date",
        field_type=FieldType.DATE,
        category=FieldCategory.PROJECT,
        description="Date the report was issued",
        extraction_patterns=[r"(?:date\s+of\s+issue|issue\s+date|dated?)[:\s]+([^\n]+)"],
    ),
    MetadataFieldDefinition(
        id="lot_dp",
        display_name="Lot / DP",
        category=FieldCategory.LOCATION,
        description="Lot and deposited plan reference",
        extraction_patterns=[r"\b(lot\s+\d+\s+(?:in\s+)?DP\s*\d+)"],
    ),
    MetadataFieldDefinition(
        id="zoning",
        display_name="Zoning",
        category=FieldCategory.REGULATORY,
        description="Land-use zone of the site",
        extraction_patterns=[r"\bzon(?:ed|ing)[:\s]+([A-Z]{1,2}\d[^\n,.]*)"],
    ),
)


class MetadataSchemaRegistry:
    """Find-or-create access to :class:`MetadataFieldDefinition` rows."""

    def __init__(self, store: IStoreProvider, fuzzy_threshold: float = 0.85) -> None:
        self._store = store
        self._fuzzy_threshold = fuzzy_threshold

    async def seed_defaults(self) -> int:
        """Insert :data:`DEFAULT_FIELDS` that are missing; returns how many were added."""
        added = 0
        for definition in DEFAULT_FIELDS:
            _, created = await self._store.insert_if_absent(
                Collection.METADATA_FIELDS, definition.model_dump(mode="json")
            )
            added += int(created)
        if added:
            logger.info("registry_seeded", added=added)
        return added

    async def snapshot(self) -> list[MetadataFieldDefinition]:
        """All definitions, most frequently seen first."""
        rows = await self._store.query(Collection.METADATA_FIELDS)
        fields = [MetadataFieldDefinition.model_validate(r) for r in rows]
        fields.sort(key=lambda f: (-f.occurrence_count, f.id))
        return fields

    async def get(self, field_id: str) -> MetadataFieldDefinition | None:
        row = await self._store.get(Collection.METADATA_FIELDS, field_id)
        return MetadataFieldDefinition.model_validate(row) if row else None

    def find_near_duplicate(self, name: str, existing_ids: list[str]) -> str | None:
        """Return the id in *existing_ids* that *name* duplicates, if any."""
        return find_near_duplicate(name, existing_ids, threshold=self._fuzzy_threshold)

    async def find_or_create(
        self,
        name: str,
        field_type: FieldType = FieldType.TEXT,
        category: FieldCategory = FieldCategory.GENERAL,
        description: str = "",
        extraction_patterns: list[str] | None = None,
        confidence: float | None = None,
    ) -> tuple[MetadataFieldDefinition, bool]:
        """Atomically fetch or insert the definition for *name* and count one occurrence.

        Returns the up-to-date definition and whether this call created it.
        Type, category and description only apply when the row is created.
        """
        key = normalize_field_name(name)
        if not key:
            raise RequestValidationError(message=f"Field name {name!r} normalizes to nothing")

        candidate = MetadataFieldDefinition(
            id=key,
            display_name=name.strip() or key,
            field_type=field_type,
            category=category,
            description=description,
            extraction_patterns=extraction_patterns or [],
        )
        _, created = await self._store.insert_if_absent(
            Collection.METADATA_FIELDS, candidate.model_dump(mode="json")
        )
        if created:
            logger.info("registry_field_created", field=key, field_type=field_type.value)
        definition = await self.record_occurrence(key, confidence)
        return definition, created

    async def record_occurrence(
        self,
        field_id: str,
        confidence: float | None = None,
    ) -> MetadataFieldDefinition:
        """Count one more document that carried *field_id*."""
        amounts: dict[str, float] = {"occurrence_count": 1}
        if confidence is not None:
            amounts["confidence_total"] = clamp_confidence(confidence)
            amounts["confidence_samples"] = 1
        row = await self._store.increment(Collection.METADATA_FIELDS, field_id, amounts)
        return MetadataFieldDefinition.model_validate(row)
