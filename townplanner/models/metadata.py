"""Metadata registry and extracted-value models.

Extracted values are a tagged union over ``text | date | number | boolean |
array`` (discriminated by ``kind``) instead of loosely typed blobs.  Every
value record references the :class:`MetadataFieldDefinition` it belongs to.

The ``DiscoveredField`` / ``NewFieldSuggestion`` models validate the JSON
returned by the discovery prompt; validation failures there surface as
``MalformedOutputError`` in the extractor.
"""

from __future__ import annotations

import re
from datetime import date, datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

from townplanner.utils.confidence import clamp_confidence


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)  # noqa: UP017


class FieldType(str, Enum):  # noqa: UP042
    TEXT = "text"
    DATE = "date"
    NUMBER = "number"
    BOOLEAN = "boolean"
    ARRAY = "array"


class FieldCategory(str, Enum):  # noqa: UP042
    GENERAL = "general"
    CLIENT = "client"
    PROJECT = "project"
    LOCATION = "location"
    REGULATORY = "regulatory"
    TECHNICAL = "technical"


# ---------------------------------------------------------------------------
# Tagged metadata values
# ---------------------------------------------------------------------------

class TextValue(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["text"] = "text"
    value: str

    def as_text(self) -> str:
        return self.value


class DateValue(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["date"] = "date"
    value: date

    def as_text(self) -> str:
        return self.value.isoformat()


class NumberValue(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["number"] = "number"
    value: float
    unit: str | None = None

    def as_text(self) -> str:
        number = f"{self.value:g}"
        return f"{number} {self.unit}" if self.unit else number


class BooleanValue(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["boolean"] = "boolean"
    value: bool

    def as_text(self) -> str:
        return "yes" if self.value else "no"


class ArrayValue(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["array"] = "array"
    value: list[str]

    def as_text(self) -> str:
        return ", ".join(self.value)


MetadataValue = Annotated[
    Union[TextValue, DateValue, NumberValue, BooleanValue, ArrayValue],
    Field(discriminator="kind"),
]

_DATE_FORMATS = (
    "%Y-%m-%d",
    "%d/%m/%Y",
    "%d-%m-%Y",
    "%d.%m.%Y",
    "%d %B %Y",
    "%d %b %Y",
    "%B %d, %Y",
    "%b %d, %Y",
    "%B %d %Y",
)
_MONTH_YEAR_FORMATS = ("%B %Y", "%b %Y")
_NUMBER_RE = re.compile(
    r"^\$?\s*(-?\d+(?:\.\d+)?)\s*(%|m2|m²|sqm|ha|m|km|storeys|stories|units|lots)?$",
    re.IGNORECASE,
)
_TRUE = {"true", "yes", "y", "1"}
_FALSE = {"false", "no", "n", "0"}


def _parse_date(text: str) -> date | None:
    cleaned = re.sub(r"(\d)(st|nd|rd|th)\b", r"\1", text.strip())
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(cleaned, fmt).date()
        except ValueError:
            continue
    for fmt in _MONTH_YEAR_FORMATS:
        try:
            return datetime.strptime(cleaned, fmt).date().replace(day=1)
        except ValueError:
            continue
    return None


def coerce_value(raw: Any, field_type: FieldType) -> MetadataValue:
    """Convert a raw extracted value into the tagged value for *field_type*.

    Raw values that do not parse as the declared type fall back to
    :class:`TextValue` so nothing the model extracted is lost.
    """
    if field_type is FieldType.ARRAY:
        if isinstance(raw, (list, tuple)):
            items = [str(item).strip() for item in raw]
        else:
            items = [part.strip() for part in re.split(r"[;\n,]", str(raw))]
        return ArrayValue(value=[item for item in items if item])

    if isinstance(raw, (list, tuple)):
        raw = ", ".join(str(item) for item in raw)

    if field_type is FieldType.BOOLEAN:
        if isinstance(raw, bool):
            return BooleanValue(value=raw)
        lowered = str(raw).strip().lower()
        if lowered in _TRUE:
            return BooleanValue(value=True)
        if lowered in _FALSE:
            return BooleanValue(value=False)

    elif field_type is FieldType.NUMBER:
        if isinstance(raw, (int, float)) and not isinstance(raw, bool):
            return NumberValue(value=float(raw))
        match = _NUMBER_RE.match(str(raw).replace(",", "").strip())
        if match:
            unit = match.group(2)
            return NumberValue(value=float(match.group(1)), unit=unit.lower() if unit else None)

    elif field_type is FieldType.DATE:
        if isinstance(raw, date):
            return DateValue(value=raw)
        parsed = _parse_date(str(raw))
        if parsed is not None:
            return DateValue(value=parsed)

    return TextValue(value=str(raw).strip())


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class MetadataFieldDefinition(BaseModel):
    """A named, typed field in the shared registry.

    ``id`` is the normalized field name, which makes find-or-create an
    insert-if-absent on a single key.  Usage statistics are kept as counters
    and a running confidence total so all of them can be incremented
    atomically; the average is derived on read.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    display_name: str
    field_type: FieldType = FieldType.TEXT
    category: FieldCategory = FieldCategory.GENERAL
    description: str = ""
    extraction_patterns: list[str] = Field(default_factory=list)
    occurrence_count: int = Field(default=0, ge=0)
    confidence_total: float = Field(default=0.0, ge=0.0)
    confidence_samples: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def name(self) -> str:
        return self.id

    @computed_field  # type: ignore[prop-decorator]
    @property
    def average_confidence(self) -> float:
        if self.confidence_samples == 0:
            return 0.0
        return min(1.0, self.confidence_total / self.confidence_samples)


# ---------------------------------------------------------------------------
# Discovery output (validated model JSON)
# ---------------------------------------------------------------------------

class DiscoveredField(BaseModel):
    model_config = ConfigDict(frozen=True)

    raw_field_name: str
    standardized_field_name: str = ""
    matches_existing: bool = False
    existing_field_id: str | None = None
    value: Any = None
    confidence: float = 0.5
    extraction_context: str = ""
    page_number: int | None = None
    extraction_method: str = "llm"

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp(cls, v: Any) -> float:
        return clamp_confidence(v, default=0.5)

    @field_validator("page_number", mode="before")
    @classmethod
    def _page(cls, v: Any) -> int | None:
        try:
            page = int(v)
        except (TypeError, ValueError):
            return None
        return page if page >= 1 else None

    @field_validator("extraction_context", "standardized_field_name", mode="before")
    @classmethod
    def _none_to_empty(cls, v: Any) -> str:
        return "" if v is None else str(v)

    @property
    def proposed_name(self) -> str:
        return self.standardized_field_name or self.raw_field_name

    def value_text(self) -> str:
        if isinstance(self.value, (list, tuple)):
            return ", ".join(str(v) for v in self.value)
        return "" if self.value is None else str(self.value).strip()


class NewFieldSuggestion(BaseModel):
    model_config = ConfigDict(frozen=True)

    field_name: str
    field_type: FieldType = FieldType.TEXT
    field_category: FieldCategory = FieldCategory.GENERAL
    description: str = ""
    example_value: Any = None

    @field_validator("field_type", mode="before")
    @classmethod
    def _type(cls, v: Any) -> FieldType:
        try:
            return FieldType(str(v).lower())
        except ValueError:
            return FieldType.TEXT

    @field_validator("field_category", mode="before")
    @classmethod
    def _category(cls, v: Any) -> FieldCategory:
        try:
            return FieldCategory(str(v).lower())
        except ValueError:
            return FieldCategory.GENERAL

    @field_validator("description", mode="before")
    @classmethod
    def _description(cls, v: Any) -> str:
        return "" if v is None else str(v)


class DiscoveryResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    discovered_fields: list[DiscoveredField] = Field(default_factory=list)
    new_field_suggestions: list[NewFieldSuggestion] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Stored document metadata
# ---------------------------------------------------------------------------

class MetadataValueRecord(BaseModel):
    """One extracted value tied to a registry field."""

    model_config = ConfigDict(frozen=True)

    field_id: str
    raw_value: str
    value: MetadataValue
    confidence: float = Field(ge=0.0, le=1.0)
    source_page: int | None = None
    extraction_context: str = ""
    extraction_method: str = "llm"
    validated: bool = False
    validated_by: str | None = None


class DocumentMetadata(BaseModel):
    """All metadata extracted from one document (one record per document)."""

    model_config = ConfigDict(frozen=True)

    id: str
    document_id: str
    collection_id: str
    extraction_method: str = "llm"
    provider_name: str = ""
    overall_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    values: list[MetadataValueRecord] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    def summary(self) -> dict[str, str]:
        return {record.field_id: record.value.as_text() for record in self.values}

    def get(self, field_id: str) -> MetadataValueRecord | None:
        for record in self.values:
            if record.field_id == field_id:
                return record
        return None
