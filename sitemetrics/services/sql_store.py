"""
SiteMetrics — SQL counter store (async SQLAlchemy; SQLite or PostgreSQL).

Increments are one ``INSERT … ON CONFLICT DO UPDATE SET v = v + excluded.v``
statement, so concurrent writers never read-modify-write. Transactions are
optimistic: every document carries a ``version`` that a committing
transaction bumps with ``UPDATE … WHERE version = :seen``; zero rows updated
means another writer got there first and the transaction function re-runs.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from sitemetrics.database import close_db, init_db, make_engine, make_session_factory
from sitemetrics.models.counter import CounterDocument, CounterField
from sitemetrics.services.counter_store import (
    CounterStore,
    CounterStoreError,
    Document,
    Increment,
    Transaction,
    TransactionConflict,
    increment_payload,
    resolve_value,
    split_path,
)

logger = logging.getLogger(__name__)

RETRY_BACKOFF_S = 0.05


class _StaleRead(Exception):
    """A document read by the transaction changed before commit."""


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _columns_for(value: Any) -> dict:
    """Map a resolved Python value onto the typed value columns."""
    if isinstance(value, datetime):
        return {"int_value": None, "time_value": _to_utc(value), "json_value": None}
    if isinstance(value, int) and not isinstance(value, bool):
        return {"int_value": value, "time_value": None, "json_value": None}
    return {"int_value": None, "time_value": None, "json_value": value}


def _field_value(row: CounterField) -> Any:
    if row.int_value is not None:
        return row.int_value
    if row.time_value is not None:
        return _to_utc(row.time_value)
    return row.json_value


class _SqlTransaction(Transaction):
    def __init__(self, store: "SqlCounterStore", session: AsyncSession):
        self._store = store
        self._session = session
        self.seen: dict[str, Optional[int]] = {}  # path -> version read (None = absent)
        self.writes: list[tuple[str, dict, bool, bool]] = []

    async def get(self, path: str) -> Optional[dict]:
        if self.writes:
            raise CounterStoreError("transaction reads must happen before writes")
        version = (
            await self._session.execute(
                select(CounterDocument.version).where(CounterDocument.path == path)
            )
        ).scalar_one_or_none()
        self.seen[path] = version
        if version is None:
            return None
        return (await self._store._load_fields(self._session, [path])).get(path, {})

    def set(self, path: str, data: dict, merge: bool = False) -> None:
        self.writes.append((path, data, merge, False))

    def update(self, path: str, data: dict) -> None:
        self.writes.append((path, data, True, True))

    async def commit(self) -> bool:
        """Check read versions and apply buffered writes. False on conflict."""
        if not self.writes:
            return True
        created: set[str] = set()
        for path, version in self.seen.items():
            if version is None:
                continue
            result = await self._session.execute(
                update(CounterDocument)
                .where(CounterDocument.path == path, CounterDocument.version == version)
                .values(version=version + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                return False

        now = datetime.now(timezone.utc)
        for path, data, merge, must_exist in self.writes:
            if self.seen.get(path, 0) is None and path not in created:
                if must_exist:
                    raise CounterStoreError(f"update of missing document {path}")
                # Plain insert: a concurrent creator makes this raise IntegrityError.
                collection, doc_id = split_path(path)
                await self._session.execute(
                    insert(CounterDocument).values(
                        path=path, collection=collection, doc_id=doc_id, version=1
                    )
                )
                created.add(path)
            elif path not in self.seen:
                await self._store._upsert_document(self._session, path)
            await self._store._write_fields(self._session, path, data, merge, now)
        return True


class SqlCounterStore(CounterStore):
    backend = "sql"

    def __init__(self, database_url: str = "", engine: Optional[AsyncEngine] = None, max_attempts: int = 5):
        if engine is None and not database_url:
            raise ValueError("SqlCounterStore needs a database_url or an engine")
        self._owns_engine = engine is None
        self.engine = engine or make_engine(database_url)
        self.session_factory = make_session_factory(self.engine)
        self.max_attempts = max_attempts

    async def init(self) -> None:
        await init_db(self.engine)

    async def close(self) -> None:
        if self._owns_engine:
            await close_db(self.engine)

    # ── statement helpers ──

    def _insert(self):
        if self.engine.dialect.name == "postgresql":
            return postgresql.insert
        return sqlite.insert

    async def _upsert_document(self, session: AsyncSession, path: str) -> None:
        collection, doc_id = split_path(path)
        stmt = self._insert()(CounterDocument).values(
            path=path, collection=collection, doc_id=doc_id, version=1
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["path"], set_={"version": CounterDocument.version + 1}
        )
        await session.execute(stmt)

    async def _write_fields(
        self, session: AsyncSession, path: str, data: dict, merge: bool, now: datetime
    ) -> None:
        if not merge:
            await session.execute(
                delete(CounterField)
                .where(CounterField.path == path)
                .execution_options(synchronize_session=False)
            )
        ins = self._insert()
        for name, value in data.items():
            if isinstance(value, Increment):
                stmt = ins(CounterField).values(path=path, name=name, int_value=int(value.value))
                stmt = stmt.on_conflict_do_update(
                    index_elements=["path", "name"],
                    set_={
                        "int_value": func.coalesce(CounterField.int_value, 0) + stmt.excluded.int_value,
                        "time_value": None,
                        "json_value": None,
                    },
                )
            else:
                columns = _columns_for(resolve_value(None, value, now))
                stmt = ins(CounterField).values(path=path, name=name, **columns)
                stmt = stmt.on_conflict_do_update(index_elements=["path", "name"], set_=columns)
            await session.execute(stmt)

    async def _load_fields(self, session: AsyncSession, paths: list[str]) -> dict[str, dict]:
        if not paths:
            return {}
        rows = (
            await session.execute(select(CounterField).where(CounterField.path.in_(paths)))
        ).scalars().all()
        out: dict[str, dict] = {p: {} for p in paths}
        for row in rows:
            out[row.path][row.name] = _field_value(row)
        return out

    async def _documents(self, session: AsyncSession, paths: list[str]) -> list[Document]:
        fields = await self._load_fields(session, paths)
        return [Document(id=split_path(p)[1], path=p, data=fields[p]) for p in paths]

    # ── contract ──

    async def upsert_increment(self, path, fields, extra=None) -> None:
        now = datetime.now(timezone.utc)
        async with self.session_factory() as session:
            async with session.begin():
                await self._upsert_document(session, path)
                await self._write_fields(session, path, increment_payload(fields, extra), True, now)

    async def run_transaction(self, fn):
        for attempt in range(1, self.max_attempts + 1):
            try:
                async with self.session_factory() as session:
                    async with session.begin():
                        tx = _SqlTransaction(self, session)
                        result = await fn(tx)
                        if not await tx.commit():
                            raise _StaleRead()
                return result
            except _StaleRead:
                logger.debug(f"Transaction conflict (attempt {attempt}/{self.max_attempts})")
            except (IntegrityError, OperationalError) as e:
                logger.warning(f"Transaction write race (attempt {attempt}/{self.max_attempts}): {e}")
            await asyncio.sleep(RETRY_BACKOFF_S * attempt)
        raise TransactionConflict(f"transaction gave up after {self.max_attempts} attempts")

    async def query_range(self, collection, field, start, end):
        stmt = (
            select(CounterField.path)
            .join(CounterDocument, CounterDocument.path == CounterField.path)
            .where(
                CounterDocument.collection == collection,
                CounterField.name == field,
                CounterField.time_value >= _to_utc(start),
                CounterField.time_value <= _to_utc(end),
            )
        )
        async with self.session_factory() as session:
            paths = list((await session.execute(stmt)).scalars().all())
            return await self._documents(session, paths)

    async def append(self, collection, data):
        doc_id = uuid.uuid4().hex[:20]
        path = f"{collection}/{doc_id}"
        now = datetime.now(timezone.utc)
        async with self.session_factory() as session:
            async with session.begin():
                await self._upsert_document(session, path)
                await self._write_fields(session, path, data, False, now)
        return doc_id

    async def list_documents(self, collection):
        async with self.session_factory() as session:
            paths = list(
                (
                    await session.execute(
                        select(CounterDocument.path).where(CounterDocument.collection == collection)
                    )
                ).scalars().all()
            )
            return await self._documents(session, paths)

    async def get(self, path: str) -> Optional[dict]:
        """Read one document outside a transaction (tests and admin tooling)."""
        async with self.session_factory() as session:
            exists = (
                await session.execute(select(CounterDocument.path).where(CounterDocument.path == path))
            ).scalar_one_or_none()
            if exists is None:
                return None
            return (await self._load_fields(session, [path]))[path]
