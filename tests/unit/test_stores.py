"""Contract tests run against both record store implementations."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
import pytest_asyncio

from townplanner.interfaces.store_provider import Collection, IStoreProvider
from townplanner.providers.store.memory_store import MemoryStoreProvider
from townplanner.providers.store.sqlite_store import SQLiteStoreProvider
from townplanner.utils.errors import RecordNotFoundError, StoreError


@pytest_asyncio.fixture(params=["memory", "sqlite"])
async def record_store(request: pytest.FixtureRequest, tmp_path: Path) -> IStoreProvider:
    if request.param == "memory":
        provider: IStoreProvider = MemoryStoreProvider()
    else:
        provider = SQLiteStoreProvider(db_path=tmp_path / "db" / "test.db")
    await provider.initialize()
    return provider


async def _seed(store: IStoreProvider) -> None:
    await store.upsert_many(
        Collection.SECTIONS,
        [
            {"id": "s3", "report_id": "r1", "section_order": 20, "status": "pending", "parent": None},
            {"id": "s1", "report_id": "r1", "section_order": 10, "status": "completed", "parent": None},
            {"id": "s2", "report_id": "r1", "section_order": 11, "status": "failed", "parent": "s1"},
            {"id": "s4", "report_id": "r2", "section_order": 10, "status": "pending", "parent": None},
        ],
    )


class TestRecordStore:
    @pytest.mark.asyncio
    async def test_upsert_and_get(self, record_store: IStoreProvider) -> None:
        await record_store.upsert(Collection.DOCUMENTS, {"id": "d1", "title": "First"})
        await record_store.upsert(Collection.DOCUMENTS, {"id": "d1", "title": "Replaced"})

        assert await record_store.get(Collection.DOCUMENTS, "d1") == {"id": "d1", "title": "Replaced"}
        assert await record_store.get(Collection.DOCUMENTS, "missing") is None
        assert await record_store.get(Collection.CHUNKS, "d1") is None

    @pytest.mark.asyncio
    async def test_record_without_id_is_rejected(self, record_store: IStoreProvider) -> None:
        with pytest.raises(StoreError):
            await record_store.upsert(Collection.DOCUMENTS, {"title": "no id"})

    @pytest.mark.asyncio
    async def test_query_filters_and_ordering(self, record_store: IStoreProvider) -> None:
        await _seed(record_store)

        ordered = await record_store.query(Collection.SECTIONS, {"report_id": "r1"}, order_by="section_order")
        assert [r["id"] for r in ordered] == ["s1", "s2", "s3"]

        by_status = await record_store.query(
            Collection.SECTIONS, {"report_id": "r1", "status": ["pending", "failed"]}
        )
        assert [r["id"] for r in by_status] == ["s2", "s3"]

        top_level = await record_store.query(Collection.SECTIONS, {"parent": None})
        assert [r["id"] for r in top_level] == ["s1", "s3", "s4"]

        assert await record_store.query(Collection.SECTIONS, {"status": []}) == []

    @pytest.mark.asyncio
    async def test_update_merges_fields(self, record_store: IStoreProvider) -> None:
        await _seed(record_store)

        updated = await record_store.update(Collection.SECTIONS, "s3", {"status": "completed", "word_count": 12})

        assert updated["status"] == "completed"
        assert updated["section_order"] == 20
        assert (await record_store.get(Collection.SECTIONS, "s3"))["word_count"] == 12

    @pytest.mark.asyncio
    async def test_update_missing_record_raises(self, record_store: IStoreProvider) -> None:
        with pytest.raises(RecordNotFoundError) as exc_info:
            await record_store.update(Collection.SECTIONS, "nope", {"status": "failed"})
        assert exc_info.value.code == "not_found"

    @pytest.mark.asyncio
    async def test_delete_returns_count(self, record_store: IStoreProvider) -> None:
        await _seed(record_store)

        assert await record_store.delete(Collection.SECTIONS, {"report_id": "r1"}) == 3
        assert await record_store.delete(Collection.SECTIONS, {"report_id": "r1"}) == 0
        assert [r["id"] for r in await record_store.query(Collection.SECTIONS)] == ["s4"]

    @pytest.mark.asyncio
    async def test_insert_if_absent(self, record_store: IStoreProvider) -> None:
        first, created = await record_store.insert_if_absent(
            Collection.METADATA_FIELDS, {"id": "zoning", "display_name": "Zoning"}
        )
        second, created_again = await record_store.insert_if_absent(
            Collection.METADATA_FIELDS, {"id": "zoning", "display_name": "Land Zoning"}
        )

        assert created is True
        assert created_again is False
        assert first == second == {"id": "zoning", "display_name": "Zoning"}

    @pytest.mark.asyncio
    async def test_concurrent_increments_are_not_lost(self, record_store: IStoreProvider) -> None:
        await record_store.upsert(Collection.METADATA_FIELDS, {"id": "zoning", "occurrence_count": 0})

        await asyncio.gather(
            *[
                record_store.increment(Collection.METADATA_FIELDS, "zoning", {"occurrence_count": 1})
                for _ in range(10)
            ]
        )

        record = await record_store.get(Collection.METADATA_FIELDS, "zoning")
        assert record["occurrence_count"] == 10

    @pytest.mark.asyncio
    async def test_increment_missing_record_raises(self, record_store: IStoreProvider) -> None:
        with pytest.raises(RecordNotFoundError):
            await record_store.increment(Collection.METADATA_FIELDS, "nope", {"occurrence_count": 1})

    @pytest.mark.asyncio
    async def test_stored_records_are_isolated_from_callers(self, record_store: IStoreProvider) -> None:
        record = {"id": "d1", "tags": ["a"]}
        await record_store.upsert(Collection.DOCUMENTS, record)
        record["tags"].append("b")

        fetched = await record_store.get(Collection.DOCUMENTS, "d1")
        assert fetched["tags"] == ["a"]


class TestSQLiteOnly:
    @pytest.mark.asyncio
    async def test_invalid_field_names_are_rejected(self, tmp_path: Path) -> None:
        store = SQLiteStoreProvider(db_path=tmp_path / "x.db")
        await store.initialize()
        with pytest.raises(StoreError):
            await store.query(Collection.DOCUMENTS, {"bad field'": 1})

    @pytest.mark.asyncio
    async def test_data_survives_a_new_provider_instance(self, tmp_path: Path) -> None:
        path = tmp_path / "persist.db"
        first = SQLiteStoreProvider(db_path=path)
        await first.initialize()
        await first.upsert(Collection.REPORTS, {"id": "r1", "status": "processing"})

        second = SQLiteStoreProvider(db_path=path)
        await second.initialize()
        assert await second.get(Collection.REPORTS, "r1") == {"id": "r1", "status": "processing"}
