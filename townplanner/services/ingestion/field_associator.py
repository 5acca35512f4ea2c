"""Links chunks to the metadata fields they evidence."""

from __future__ import annotations

from townplanner.models.metadata import MetadataFieldDefinition, MetadataValueRecord
from townplanner.utils.text_normalizer import value_in_text

_MIN_VALUE_LENGTH = 4


class FieldAssociator:
    """Decides which metadata fields a chunk carries.

    A field is associated with a chunk when its extracted value occurs in
    the chunk (fuzzy, so line breaks and spacing differences still match) or
    when the field's display name appears verbatim, e.g. a "Prepared For:"
    label.
    """

    def __init__(self, value_threshold: float = 0.9) -> None:
        self._threshold = value_threshold

    def associate(
        self,
        content: str,
        values: list[MetadataValueRecord],
        definitions: dict[str, MetadataFieldDefinition] | None = None,
    ) -> list[str]:
        lowered = content.lower()
        found: list[str] = []
        for record in values:
            if record.field_id in found:
                continue
            text = record.value.as_text()
            if len(text) >= _MIN_VALUE_LENGTH and value_in_text(text, content, self._threshold):
                found.append(record.field_id)
                continue
            definition = (definitions or {}).get(record.field_id)
            label = definition.display_name.lower() if definition else record.field_id.replace("_", " ")
            if len(label) >= _MIN_VALUE_LENGTH and label in lowered:
                found.append(record.field_id)
        return found
