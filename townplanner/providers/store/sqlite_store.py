"""SQLite-backed record store.

Every collection lives in one ``records`` table as JSON documents keyed by
``(collection, id)``.  Filters and ordering use SQLite's built-in
``json_extract``.  Read-modify-write operations (``update``, ``increment``,
``insert_if_absent``) run inside ``BEGIN IMMEDIATE`` so concurrent writers
serialize on the database lock instead of losing updates.

Uses ``aiosqlite`` for async I/O with one short-lived connection per call.
"""

from __future__ import annotations

import json
import re
from contextlib import asynccontextmanager
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator

import aiosqlite
import structlog

from townplanner.interfaces.store_provider import Collection, IStoreProvider, Record
from townplanner.utils.errors import RecordNotFoundError, StoreError

logger = structlog.get_logger(logger_name=__name__)

_DEFAULT_DB_PATH = Path("data/townplanner.db")
_FIELD_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_CREATE_TABLE_SQL = """\
CREATE TABLE IF NOT EXISTS records (
    collection  TEXT NOT NULL,
    id          TEXT NOT NULL,
    data        TEXT NOT NULL,
    updated_at  TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    PRIMARY KEY (collection, id)
);
"""

_CREATE_INDICES_SQL = [
    "CREATE INDEX IF NOT EXISTS idx_records_document "
    "ON records(collection, json_extract(data, '$.document_id'));",
    "CREATE INDEX IF NOT EXISTS idx_records_report "
    "ON records(collection, json_extract(data, '$.report_id'));",
    "CREATE INDEX IF NOT EXISTS idx_records_collection_id "
    "ON records(collection, json_extract(data, '$.collection_id'));",
]

_UPSERT_SQL = """\
INSERT INTO records (collection, id, data)
VALUES (?, ?, ?)
ON CONFLICT(collection, id)
DO UPDATE SET data       = excluded.data,
              updated_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now');
"""

_INSERT_IGNORE_SQL = "INSERT OR IGNORE INTO records (collection, id, data) VALUES (?, ?, ?);"
_SELECT_ONE_SQL = "SELECT data FROM records WHERE collection = ? AND id = ?;"
_UPDATE_DATA_SQL = (
    "UPDATE records SET data = ?, updated_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now') "
    "WHERE collection = ? AND id = ?;"
)


def _scalar(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, bool):
        # json_extract yields 1/0 for JSON true/false.
        return int(value)
    return value


def _json_path(field: str) -> str:
    if not _FIELD_NAME.match(field):
        raise StoreError(message=f"Invalid field name: {field!r}", provider_name="sqlite")
    return f"$.{field}"


def _where(collection: Collection, filters: dict[str, Any] | None) -> tuple[str, list[Any]]:
    clauses = ["collection = ?"]
    params: list[Any] = [collection.value]
    for field, value in (filters or {}).items():
        path = _json_path(field)
        if value is None:
            clauses.append("json_extract(data, ?) IS NULL")
            params.append(path)
        elif isinstance(value, (list, tuple, set)):
            members = [_scalar(v) for v in value if v is not None]
            if not members:
                clauses.append("0")
                continue
            placeholders = ", ".join("?" for _ in members)
            clauses.append(f"json_extract(data, ?) IN ({placeholders})")
            params.extend([path, *members])
        else:
            clauses.append("json_extract(data, ?) = ?")
            params.extend([path, _scalar(value)])
    return " AND ".join(clauses), params


def _record_id(record: Record) -> str:
    record_id = record.get("id")
    if not record_id:
        raise StoreError(message="Record has no 'id'", provider_name="sqlite")
    return str(record_id)


class SQLiteStoreProvider(IStoreProvider):
    """SQLite persistence for all pipeline collections."""

    def __init__(self, db_path: str | Path = _DEFAULT_DB_PATH, busy_timeout: float = 30.0) -> None:
        self._db_path = Path(db_path)
        self._busy_timeout = busy_timeout

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        try:
            async with aiosqlite.connect(
                str(self._db_path), timeout=self._busy_timeout, isolation_level=None
            ) as db:
                yield db
        except aiosqlite.Error as exc:
            raise StoreError(message=f"SQLite error: {exc}", provider_name="sqlite") from exc

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        async with self._connect() as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                yield db
            except BaseException:
                await db.execute("ROLLBACK")
                raise
            await db.execute("COMMIT")

    async def initialize(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        async with self._connect() as db:
            await db.execute("PRAGMA journal_mode=WAL;")
            await db.execute(_CREATE_TABLE_SQL)
            for idx_sql in _CREATE_INDICES_SQL:
                await db.execute(idx_sql)
        logger.info("store_initialized", path=str(self._db_path))

    async def upsert(self, collection: Collection, record: Record) -> Record:
        record_id = _record_id(record)
        async with self._connect() as db:
            await db.execute(_UPSERT_SQL, (collection.value, record_id, json.dumps(record)))
        return record

    async def upsert_many(self, collection: Collection, records: list[Record]) -> int:
        if not records:
            return 0
        rows = [(collection.value, _record_id(r), json.dumps(r)) for r in records]
        async with self._transaction() as db:
            await db.executemany(_UPSERT_SQL, rows)
        return len(rows)

    async def get(self, collection: Collection, record_id: str) -> Record | None:
        async with self._connect() as db:
            cursor = await db.execute(_SELECT_ONE_SQL, (collection.value, record_id))
            row = await cursor.fetchone()
        return json.loads(row[0]) if row else None

    async def query(
        self,
        collection: Collection,
        filters: dict[str, Any] | None = None,
        order_by: str | None = None,
    ) -> list[Record]:
        where, params = _where(collection, filters)
        sql = f"SELECT data FROM records WHERE {where}"
        if order_by:
            sql += " ORDER BY json_extract(data, ?), id"
            params.append(_json_path(order_by))
        else:
            sql += " ORDER BY id"
        async with self._connect() as db:
            cursor = await db.execute(sql, params)
            rows = await cursor.fetchall()
        return [json.loads(row[0]) for row in rows]

    async def update(self, collection: Collection, record_id: str, fields: Record) -> Record:
        async with self._transaction() as db:
            cursor = await db.execute(_SELECT_ONE_SQL, (collection.value, record_id))
            row = await cursor.fetchone()
            if row is None:
                raise RecordNotFoundError(
                    message=f"{collection.value}/{record_id} not found", provider_name="sqlite"
                )
            record = {**json.loads(row[0]), **fields, "id": record_id}
            await db.execute(_UPDATE_DATA_SQL, (json.dumps(record), collection.value, record_id))
        return record

    async def delete(self, collection: Collection, filters: dict[str, Any]) -> int:
        where, params = _where(collection, filters)
        async with self._connect() as db:
            cursor = await db.execute(f"DELETE FROM records WHERE {where}", params)
            deleted = cursor.rowcount
        return max(deleted, 0)

    async def insert_if_absent(self, collection: Collection, record: Record) -> tuple[Record, bool]:
        record_id = _record_id(record)
        async with self._transaction() as db:
            cursor = await db.execute(
                _INSERT_IGNORE_SQL, (collection.value, record_id, json.dumps(record))
            )
            created = cursor.rowcount == 1
            cursor = await db.execute(_SELECT_ONE_SQL, (collection.value, record_id))
            row = await cursor.fetchone()
        return json.loads(row[0]), created

    async def increment(
        self,
        collection: Collection,
        record_id: str,
        amounts: dict[str, float],
    ) -> Record:
        async with self._transaction() as db:
            cursor = await db.execute(_SELECT_ONE_SQL, (collection.value, record_id))
            row = await cursor.fetchone()
            if row is None:
                raise RecordNotFoundError(
                    message=f"{collection.value}/{record_id} not found", provider_name="sqlite"
                )
            record = json.loads(row[0])
            for field, amount in amounts.items():
                _json_path(field)
                record[field] = (record.get(field) or 0) + amount
            await db.execute(_UPDATE_DATA_SQL, (json.dumps(record), collection.value, record_id))
        return record

    def get_provider_name(self) -> str:
        return "sqlite"
