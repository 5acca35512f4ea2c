"""Heuristic + LLM metadata discovery with registry reconciliation.

The extraction flow for one document:

1. Take a registry snapshot (most common fields first).
2. **discover** -- send the first ``max_chars`` characters of the document
   and the known fields to the LLM, which returns
   ``{"discovered_fields": [...], "new_field_suggestions": [...]}``.
   The response is parsed (markdown fences and surrounding prose are
   tolerated) and validated; anything unparseable raises
   :class:`MalformedOutputError`.  Confidences are clamped to [0, 1].
3. **reconcile** -- map each discovered field onto a registry definition:
   the model's own ``existing_field_id`` if it is real, else a fuzzy or
   substring near-duplicate, else a new definition via find-or-create.
   Every matched definition gets one occurrence counted.
4. **pattern pass** -- registry ``extraction_patterns`` fill fields the
   model did not return.
5. Values are coerced into the tagged value model using the field type.

Failure of the generation call, after transient retries, fails the whole
extraction: metadata is never partially accepted.  A document with no
fields is valid.
"""

from __future__ import annotations

import json
import re
from typing import TYPE_CHECKING

import structlog
from pydantic import ValidationError

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
from townplanner.utils.concurrency import with_timeout
from townplanner.utils.confidence import ConfidenceScorer, ReportedConfidenceScorer, mean_confidence
from townplanner.utils.errors import MalformedOutputError
from townplanner.utils.retry import RetryPolicy
from townplanner.utils.text_normalizer import normalize_field_name

if TYPE_CHECKING:
    from townplanner.interfaces.llm_provider import ILLMProvider
    from townplanner.models.documents import ParsedDocument
    from townplanner.services.ingestion.schema_registry import MetadataSchemaRegistry

logger = structlog.get_logger(logger_name=__name__)

_MAX_PROMPT_FIELDS = 60
_MAX_CONTEXT_CHARS = 500
_PATTERN_CONFIDENCE = 0.6

_DISCOVERY_SYSTEM_PROMPT = (
    "You are a metadata extraction assistant for town-planning documents "
    "(development applications, heritage impact statements, planning reports). "
    "You respond with JSON only."
)

_DISCOVERY_USER_PROMPT = """\
Analyze this document and extract metadata fields.
Consider these existing fields we track:
{existing_fields}

For each metadata field found in the document:
1. Check if it matches an existing field (even with different naming)
2. Extract the exact value from the document
3. If it's a new field, suggest a standardized field name
4. Determine the confidence level (0-1) based on clarity

Document excerpt:
{text}

Return ONLY a valid JSON object with this structure:
{{
  "discovered_fields": [
    {{
      "raw_field_name": "string",
      "standardized_field_name": "string",
      "matches_existing": true,
      "existing_field_id": "id of the existing field or null",
      "value": "extracted value",
      "confidence": 0.95,
      "extraction_context": "surrounding text",
      "page_number": 1
    }}
  ],
  "new_field_suggestions": [
    {{
      "field_name": "string",
      "field_type": "text|date|number|boolean|array",
      "field_category": "general|client|project|location|regulatory|technical",
      "description": "string",
      "example_value": "string"
    }}
  ]
}}"""

_FENCE_RE = re.compile(r"```(?:json)?\s*\n?(.*?)```", re.DOTALL)


class MetadataExtractor:
    """Discovers document metadata and reconciles it against the registry.

    Parameters
    ----------
    llm:
        Provider used for the discovery prompt.
    registry:
        Shared field registry (find-or-create and occurrence counting).
    scorer:
        Confidence strategy; defaults to the clamped model-reported value.
    max_chars:
        Number of leading document characters sent to the model.
    timeout_seconds:
        Deadline for each generation call.
    retry_policy:
        Retries transient provider failures.
    """

    def __init__(
        self,
        llm: ILLMProvider,
        registry: MetadataSchemaRegistry,
        scorer: ConfidenceScorer | None = None,
        max_chars: int = 8000,
        timeout_seconds: float | None = 120.0,
        retry_policy: RetryPolicy | None = None,
        temperature: float = 0.1,
        max_tokens: int = 3000,
    ) -> None:
        self._llm = llm
        self._registry = registry
        self._scorer = scorer or ReportedConfidenceScorer()
        self._max_chars = max_chars
        self._timeout = timeout_seconds
        self._retry = retry_policy or RetryPolicy(max_attempts=1)
        self._temperature = temperature
        self._max_tokens = max_tokens

    @property
    def registry(self) -> MetadataSchemaRegistry:
        return self._registry

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def extract(
        self,
        document_id: str,
        collection_id: str,
        parsed: ParsedDocument,
    ) -> DocumentMetadata:
        """Run discovery, reconciliation and the pattern pass for one document."""
        existing = await self._registry.snapshot()
        discovery = await self.discover(parsed.text[: self._max_chars], existing)
        records = await self.reconcile(discovery, existing, parsed)

        llm_count = sum(1 for r in records if r.extraction_method != "pattern")
        pattern_count = len(records) - llm_count
        if pattern_count and llm_count:
            method = "hybrid"
        elif pattern_count:
            method = "pattern"
        else:
            method = "llm"

        metadata = DocumentMetadata(
            id=document_id,
            document_id=document_id,
            collection_id=collection_id,
            extraction_method=method,
            provider_name=self._llm.get_provider_name(),
            overall_confidence=mean_confidence([r.confidence for r in records]),
            values=records,
        )
        logger.info(
            "metadata_extracted",
            document_id=document_id,
            fields=len(records),
            llm_fields=llm_count,
            pattern_fields=pattern_count,
            overall_confidence=round(metadata.overall_confidence, 3),
        )
        return metadata

    async def discover(
        self,
        document_text: str,
        existing_fields: list[MetadataFieldDefinition],
    ) -> DiscoveryResult:
        """Ask the model which fields *document_text* carries.

        Raises
        ------
        MalformedOutputError
            If the response is not a JSON object of the expected shape.
        townplanner.utils.errors.TownPlannerError
            Provider failures, after transient retries are exhausted.
        """
        known = [
            {
                "id": f.id,
                "name": f.display_name,
                "type": f.field_type.value,
                "description": f.description,
            }
            for f in existing_fields[:_MAX_PROMPT_FIELDS]
        ]
        user_prompt = _DISCOVERY_USER_PROMPT.format(
            existing_fields=json.dumps(known, ensure_ascii=False),
            text=document_text,
        )

        async def _call() -> str:
            return await with_timeout(
                self._llm.complete(
                    system_prompt=_DISCOVERY_SYSTEM_PROMPT,
                    user_prompt=user_prompt,
                    temperature=self._temperature,
                    max_tokens=self._max_tokens,
                ),
                self._timeout,
                provider_name=self._llm.get_provider_name(),
                operation="metadata discovery",
            )

        response = await self._retry.run(_call, name="metadata_discovery")
        data = self._parse_response(response)
        try:
            return DiscoveryResult.model_validate(data)
        except ValidationError as exc:
            raise MalformedOutputError(
                message=f"Discovery response has unexpected shape: {exc.error_count()} errors",
                provider_name=self._llm.get_provider_name(),
            ) from exc

    async def reconcile(
        self,
        discovery: DiscoveryResult,
        existing_fields: list[MetadataFieldDefinition],
        parsed: ParsedDocument,
    ) -> list[MetadataValueRecord]:
        """Resolve discovered fields onto registry definitions.

        Each registry field is counted at most once per document.
        """
        definitions = {f.id: f for f in existing_fields}
        suggestions = {
            normalize_field_name(s.field_name): s for s in discovery.new_field_suggestions
        }
        records: dict[str, MetadataValueRecord] = {}
        counted: set[str] = set()
        handled_names: set[str] = set()

        for found in discovery.discovered_fields:
            value_text = found.value_text()
            handled_names.add(normalize_field_name(found.proposed_name))
            if not value_text:
                continue

            field_id = self._match_existing(found, list(definitions))
            if field_id is not None and field_id in counted:
                continue

            confidence = self._scorer.score(found.confidence, value_text, parsed.text)
            if field_id is not None:
                definition = await self._registry.record_occurrence(field_id, confidence)
            else:
                suggestion = suggestions.get(normalize_field_name(found.proposed_name))
                key = normalize_field_name(found.proposed_name)
                if not key or key in counted:
                    continue
                definition, _ = await self._registry.find_or_create(
                    found.proposed_name,
                    field_type=suggestion.field_type if suggestion else FieldType.TEXT,
                    category=suggestion.field_category if suggestion else FieldCategory.GENERAL,
                    description=suggestion.description if suggestion else "",
                    confidence=confidence,
                )
            definitions[definition.id] = definition
            counted.add(definition.id)
            records[definition.id] = self._build_record(definition, found, value_text, confidence, parsed)

        for key, suggestion in suggestions.items():
            if key in handled_names or not key:
                continue
            await self._register_suggestion(suggestion, definitions, counted)

        for found in self.detect_patterns(parsed.text, list(definitions.values()), set(records)):
            value_text = found.value_text()
            confidence = self._scorer.score(found.confidence, value_text, parsed.text)
            definition = await self._registry.record_occurrence(found.existing_field_id or "", confidence)
            counted.add(definition.id)
            records[definition.id] = self._build_record(definition, found, value_text, confidence, parsed)

        return list(records.values())

    def detect_patterns(
        self,
        text: str,
        fields: list[MetadataFieldDefinition],
        skip: set[str],
    ) -> list[DiscoveredField]:
        """Apply registry ``extraction_patterns`` to *text*.

        The first capture group (or the whole match) of the first matching
        pattern becomes the value.  Invalid patterns are logged and skipped.
        """
        found: list[DiscoveredField] = []
        for definition in fields:
            if definition.id in skip or not definition.extraction_patterns:
                continue
            for pattern in definition.extraction_patterns:
                try:
                    match = re.search(pattern, text, re.IGNORECASE | re.MULTILINE)
                except re.error as exc:
                    logger.warning("invalid_extraction_pattern", field=definition.id, error=str(exc))
                    continue
                if not match:
                    continue
                value = (match.group(1) if match.groups() else match.group(0)).strip()
                if not value:
                    continue
                start, end = match.span()
                found.append(
                    DiscoveredField(
                        raw_field_name=definition.display_name,
                        standardized_field_name=definition.id,
                        matches_existing=True,
                        existing_field_id=definition.id,
                        value=value[:200],
                        confidence=_PATTERN_CONFIDENCE,
                        extraction_context=text[max(0, start - 80) : end + 80].strip(),
                        extraction_method="pattern",
                    )
                )
                break
        return found

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _match_existing(self, found: DiscoveredField, existing_ids: list[str]) -> str | None:
        if found.matches_existing and found.existing_field_id:
            claimed = normalize_field_name(found.existing_field_id)
            if claimed in existing_ids:
                return claimed
        for name in (found.proposed_name, found.raw_field_name):
            duplicate = self._registry.find_near_duplicate(name, existing_ids)
            if duplicate is not None:
                return duplicate
        return None

    async def _register_suggestion(
        self,
        suggestion: NewFieldSuggestion,
        definitions: dict[str, MetadataFieldDefinition],
        counted: set[str],
    ) -> None:
        duplicate = self._registry.find_near_duplicate(suggestion.field_name, list(definitions))
        if duplicate is not None:
            if duplicate not in counted:
                definitions[duplicate] = await self._registry.record_occurrence(duplicate)
                counted.add(duplicate)
            return
        definition, _ = await self._registry.find_or_create(
            suggestion.field_name,
            field_type=suggestion.field_type,
            category=suggestion.field_category,
            description=suggestion.description,
        )
        definitions[definition.id] = definition
        counted.add(definition.id)

    @staticmethod
    def _build_record(
        definition: MetadataFieldDefinition,
        found: DiscoveredField,
        value_text: str,
        confidence: float,
        parsed: ParsedDocument,
    ) -> MetadataValueRecord:
        return MetadataValueRecord(
            field_id=definition.id,
            raw_value=value_text,
            value=coerce_value(found.value, definition.field_type),
            confidence=confidence,
            source_page=found.page_number or parsed.page_for(value_text),
            extraction_context=found.extraction_context[:_MAX_CONTEXT_CHARS],
            extraction_method=found.extraction_method,
        )

    @staticmethod
    def _parse_response(response: str) -> dict:
        """Parse the model's JSON answer.

        Handles clean JSON, markdown-fenced JSON and JSON embedded in prose.
        Raises :class:`MalformedOutputError` when no JSON object can be read.
        """
        cleaned = response.strip()

        fence = _FENCE_RE.search(cleaned)
        if fence:
            cleaned = fence.group(1).strip()

        start = cleaned.find("{")
        end = cleaned.rfind("}")
        if start == -1 or end <= start:
            raise MalformedOutputError(message="Discovery response contains no JSON object")

        try:
            data = json.loads(cleaned[start : end + 1])
        except json.JSONDecodeError as exc:
            raise MalformedOutputError(message=f"Discovery response is not valid JSON: {exc.msg}") from exc

        if not isinstance(data, dict):
            raise MalformedOutputError(message="Discovery response is not a JSON object")
        return data
