"""In-process record store for development and tests.

Implements the same filter semantics as the SQLite store.  Each operation
completes without awaiting in between its read and its write, so within a
single event loop every call is atomic.  Records are deep-copied in and
out so callers never share mutable state with the store.
"""

from __future__ import annotations

import copy
from enum import Enum
from typing import Any

import structlog

from townplanner.interfaces.store_provider import Collection, IStoreProvider, Record
from townplanner.utils.errors import RecordNotFoundError, StoreError

logger = structlog.get_logger(logger_name=__name__)


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def matches(record: Record, filters: dict[str, Any] | None) -> bool:
    """Return ``True`` if *record* satisfies every filter."""
    for field, expected in (filters or {}).items():
        actual = record.get(field)
        if expected is None:
            if actual is not None:
                return False
        elif isinstance(expected, (list, tuple, set)):
            if actual not in {_plain(v) for v in expected}:
                return False
        elif actual != _plain(expected):
            return False
    return True


class MemoryStoreProvider(IStoreProvider):
    """Dict-backed store: ``{collection: {id: record}}``."""

    def __init__(self) -> None:
        self._data: dict[Collection, dict[str, Record]] = {}

    def _table(self, collection: Collection) -> dict[str, Record]:
        return self._data.setdefault(collection, {})

    @staticmethod
    def _id(record: Record) -> str:
        record_id = record.get("id")
        if not record_id:
            raise StoreError(message="Record has no 'id'", provider_name="memory")
        return str(record_id)

    async def initialize(self) -> None:
        logger.debug("memory_store_initialized")

    async def upsert(self, collection: Collection, record: Record) -> Record:
        self._table(collection)[self._id(record)] = copy.deepcopy(record)
        return copy.deepcopy(record)

    async def upsert_many(self, collection: Collection, records: list[Record]) -> int:
        staged = {self._id(r): copy.deepcopy(r) for r in records}
        self._table(collection).update(staged)
        return len(records)

    async def get(self, collection: Collection, record_id: str) -> Record | None:
        record = self._table(collection).get(record_id)
        return copy.deepcopy(record) if record is not None else None

    async def query(
        self,
        collection: Collection,
        filters: dict[str, Any] | None = None,
        order_by: str | None = None,
    ) -> list[Record]:
        rows = [r for r in self._table(collection).values() if matches(r, filters)]
        if order_by:
            rows.sort(key=lambda r: (r.get(order_by) is not None, r.get(order_by) or 0, r["id"]))
        else:
            rows.sort(key=lambda r: r["id"])
        return copy.deepcopy(rows)

    async def update(self, collection: Collection, record_id: str, fields: Record) -> Record:
        table = self._table(collection)
        if record_id not in table:
            raise RecordNotFoundError(message=f"{collection.value}/{record_id} not found", provider_name="memory")
        table[record_id] = {**table[record_id], **copy.deepcopy(fields), "id": record_id}
        return copy.deepcopy(table[record_id])

    async def delete(self, collection: Collection, filters: dict[str, Any]) -> int:
        table = self._table(collection)
        doomed = [rid for rid, r in table.items() if matches(r, filters)]
        for rid in doomed:
            del table[rid]
        return len(doomed)

    async def insert_if_absent(self, collection: Collection, record: Record) -> tuple[Record, bool]:
        table = self._table(collection)
        record_id = self._id(record)
        created = record_id not in table
        if created:
            table[record_id] = copy.deepcopy(record)
        return copy.deepcopy(table[record_id]), created

    async def increment(
        self,
        collection: Collection,
        record_id: str,
        amounts: dict[str, float],
    ) -> Record:
        table = self._table(collection)
        if record_id not in table:
            raise RecordNotFoundError(message=f"{collection.value}/{record_id} not found", provider_name="memory")
        record = table[record_id]
        for field, amount in amounts.items():
            record[field] = (record.get(field) or 0) + amount
        return copy.deepcopy(record)

    def get_provider_name(self) -> str:
        return "memory"
