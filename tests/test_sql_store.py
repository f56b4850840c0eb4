"""
Tests for the SQL counter store (SQLite via aiosqlite).
"""

import asyncio
from datetime import timedelta, timezone

import pytest
from sqlalchemy import select

from sitemetrics.models.counter import CounterDocument
from sitemetrics.services.counter_store import (
    SERVER_TIMESTAMP,
    CounterStoreError,
    Increment,
    TransactionConflict,
    doc_path,
    site_collection,
)
from sitemetrics.services.sql_store import SqlCounterStore, _columns_for

from helpers import NOW


class TestColumns:
    def test_datetime_goes_to_time_column(self):
        cols = _columns_for(NOW)
        assert cols["time_value"] == NOW.astimezone(timezone.utc)
        assert cols["int_value"] is None

    def test_int_and_other(self):
        assert _columns_for(3)["int_value"] == 3
        assert _columns_for("home")["json_value"] == "home"
        assert _columns_for(True)["json_value"] is True
        assert _columns_for(1.5)["json_value"] == 1.5

    def test_needs_url_or_engine(self):
        with pytest.raises(ValueError):
            SqlCounterStore()


class TestSqlUpsert:
    async def test_create_then_add(self, sql_store):
        path = doc_path("s1", "pagesDaily", "2026-01-15_home")
        await sql_store.upsert_increment(path, {"count": 1}, {"pageId": "home", "day": NOW})
        await sql_store.upsert_increment(path, {"count": 1}, {"pageId": "home", "day": NOW})

        doc = await sql_store.get(path)
        assert doc["count"] == 2
        assert doc["pageId"] == "home"
        assert doc["day"] == NOW

    async def test_concurrent_increments(self, sql_store):
        path = doc_path("s1", "pages", "home")
        await asyncio.gather(*(sql_store.upsert_increment(path, {"count": 1}) for _ in range(10)))
        assert (await sql_store.get(path))["count"] == 10

    async def test_server_timestamp_resolved(self, sql_store):
        path = doc_path("s1", "pages", "home")
        await sql_store.upsert_increment(path, {"count": 1}, {"updatedAt": SERVER_TIMESTAMP})
        updated = (await sql_store.get(path))["updatedAt"]
        assert updated.tzinfo is not None

    async def test_missing_document(self, sql_store):
        assert await sql_store.get(doc_path("s1", "pages", "nope")) is None


class TestSqlTransactions:
    async def test_create_and_update(self, sql_store):
        path = doc_path("s1", "visitorProfiles", "v1")

        async def create(tx):
            assert await tx.get(path) is None
            tx.set(path, {"lastCountedDate": "2026-01-15", "visits": 1})

        async def bump(tx):
            current = await tx.get(path)
            tx.update(path, {"lastCountedDate": "2026-01-16", "visits": Increment(1)})
            return current

        await sql_store.run_transaction(create)
        before = await sql_store.run_transaction(bump)
        assert before == {"lastCountedDate": "2026-01-15", "visits": 1}
        assert await sql_store.get(path) == {"lastCountedDate": "2026-01-16", "visits": 2}

    async def test_replace_drops_fields(self, sql_store):
        path = doc_path("s1", "visitorProfiles", "v1")
        await sql_store.upsert_increment(path, {"a": 1}, {"b": "x"})

        async def replace(tx):
            await tx.get(path)
            tx.set(path, {"c": 3})

        await sql_store.run_transaction(replace)
        assert await sql_store.get(path) == {"c": 3}

    async def test_stale_read_reruns(self, sql_store):
        path = doc_path("s1", "visitorProfiles", "v1")
        await sql_store.upsert_increment(path, {"n": 1})
        calls = []

        async def fn(tx):
            current = await tx.get(path)
            calls.append(current["n"])
            if len(calls) == 1:
                await sql_store.upsert_increment(path, {"n": 1})
            tx.set(path, {"n": Increment(10)}, merge=True)

        await sql_store.run_transaction(fn)
        assert calls == [1, 2]
        assert (await sql_store.get(path))["n"] == 12

    async def test_gives_up(self, tmp_path):
        from sitemetrics.database import make_engine

        engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'giveup.db'}")
        store = SqlCounterStore(engine=engine, max_attempts=2)
        await store.init()
        path = doc_path("s1", "visitorProfiles", "v1")
        await store.upsert_increment(path, {"n": 1})

        async def fn(tx):
            await tx.get(path)
            await store.upsert_increment(path, {"n": 1})
            tx.set(path, {"x": 1}, merge=True)

        try:
            with pytest.raises(TransactionConflict):
                await store.run_transaction(fn)
        finally:
            await engine.dispose()

    async def test_read_only_leaves_version(self, sql_store):
        path = doc_path("s1", "visitorProfiles", "v1")
        await sql_store.upsert_increment(path, {"n": 1})

        async def version():
            async with sql_store.session_factory() as session:
                return await session.scalar(
                    select(CounterDocument.version).where(CounterDocument.path == path)
                )

        before = await version()

        async def peek(tx):
            return await tx.get(path)

        assert await sql_store.run_transaction(peek) == {"n": 1}
        assert await version() == before

    async def test_update_of_absent_document(self, sql_store):
        path = doc_path("s1", "visitorProfiles", "ghost")

        async def fn(tx):
            await tx.get(path)
            tx.update(path, {"x": 1})

        with pytest.raises(CounterStoreError):
            await sql_store.run_transaction(fn)
        assert await sql_store.get(path) is None


class TestSqlQueries:
    async def test_query_range(self, sql_store):
        coll = site_collection("s1", "pagesDaily")
        for offset in range(4):
            await sql_store.upsert_increment(
                f"{coll}/d{offset}", {"count": offset + 1}, {"day": NOW + timedelta(days=offset)}
            )

        docs = await sql_store.query_range(coll, "day", NOW + timedelta(days=1), NOW + timedelta(days=2))
        assert sorted((d.id, d.get("count")) for d in docs) == [("d1", 2), ("d2", 3)]

    async def test_append_and_list(self, sql_store):
        coll = site_collection("s1", "hourlyLogs")
        await sql_store.append(coll, {"hour": 10, "accessedAt": NOW, "pageId": "home"})
        await sql_store.append(coll, {"hour": 11, "accessedAt": NOW, "pageId": "about"})

        docs = await sql_store.list_documents(coll)
        assert sorted(d.get("hour") for d in docs) == [10, 11]
        assert all(d.get("accessedAt") == NOW for d in docs)
