"""Abstract base class for record persistence.

The pipeline needs only transactional single-record writes and
query-by-filter; there are no joins.  Records are JSON-compatible dicts
keyed by their ``"id"`` value and grouped into named collections.

Filter semantics for :meth:`IStoreProvider.query` and
:meth:`IStoreProvider.delete`: every key must match; a list value matches
any of its members; ``None`` matches a missing or null field.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any


class Collection(str, Enum):  # noqa: UP042
    DOCUMENTS = "documents"
    METADATA_FIELDS = "metadata_fields"
    DOCUMENT_METADATA = "document_metadata"
    CHUNKS = "chunks"
    EMBEDDINGS = "embeddings"
    REPORTS = "report_generations"
    SECTIONS = "report_sections"
    OUTBOX = "outbox"


Record = dict[str, Any]


# Concrete implementations: SQLiteStoreProvider, MemoryStoreProvider
# Located in: townplanner/providers/store/
class IStoreProvider(ABC):
    """Contract for the persistence backend."""

    @abstractmethod
    async def initialize(self) -> None:
        """Create tables/indices if needed.  Safe to call repeatedly."""

    @abstractmethod
    async def upsert(self, collection: Collection, record: Record) -> Record:
        """Insert or fully replace the record with ``record["id"]``."""

    @abstractmethod
    async def upsert_many(self, collection: Collection, records: list[Record]) -> int:
        """Upsert *records* in a single transaction; all or none are written."""

    @abstractmethod
    async def get(self, collection: Collection, record_id: str) -> Record | None:
        """Return the record or ``None``."""

    @abstractmethod
    async def query(
        self,
        collection: Collection,
        filters: dict[str, Any] | None = None,
        order_by: str | None = None,
    ) -> list[Record]:
        """Return records matching *filters*, optionally sorted by a field."""

    @abstractmethod
    async def update(self, collection: Collection, record_id: str, fields: Record) -> Record:
        """Merge *fields* into an existing record atomically.

        Raises
        ------
        townplanner.utils.errors.RecordNotFoundError
            If no record has *record_id*.
        """

    @abstractmethod
    async def delete(self, collection: Collection, filters: dict[str, Any]) -> int:
        """Delete matching records and return how many were removed."""

    @abstractmethod
    async def insert_if_absent(self, collection: Collection, record: Record) -> tuple[Record, bool]:
        """Atomically find-or-create by ``record["id"]``.

        Returns the stored record and ``True`` when it was created by this
        call.  Concurrent callers with the same id observe exactly one insert.
        """

    @abstractmethod
    async def increment(
        self,
        collection: Collection,
        record_id: str,
        amounts: dict[str, float],
    ) -> Record:
        """Atomically add *amounts* to numeric fields and return the record."""

    @abstractmethod
    def get_provider_name(self) -> str:
        """Return a short identifier such as ``"sqlite"``."""
