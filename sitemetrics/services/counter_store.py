"""
SiteMetrics — Counter Store contract and the in-process backend.

The store is the only shared mutable resource. Ingestion relies on two of
its guarantees and implements neither itself:

- ``upsert_increment`` is a single atomic server-side add, so N concurrent
  writers always net +N;
- ``run_transaction`` re-runs a read-check-write function until it commits
  without a conflicting write in between.

Paths follow the Firestore layout ``analytics/{siteKey}/{collection}/{docId}``.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ── sentinels ──


class Increment:
    """Atomic add marker for a numeric field (created at ``value`` when absent)."""

    __slots__ = ("value",)

    def __init__(self, value: int | float = 1):
        self.value = value

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Increment) and other.value == self.value

    def __repr__(self) -> str:
        return f"Increment({self.value!r})"


class _ServerTimestamp:
    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


# ── errors ──


class CounterStoreError(Exception):
    """A store read or write failed."""


class TransactionConflict(CounterStoreError):
    """A transaction kept losing write races and gave up."""


# ── paths / documents ──


def site_collection(site_key: str, name: str) -> str:
    return f"analytics/{site_key}/{name}"


def doc_path(site_key: str, name: str, doc_id: str) -> str:
    return f"{site_collection(site_key, name)}/{doc_id}"


def split_path(path: str) -> tuple[str, str]:
    """``a/b/c/d`` → ``("a/b/c", "d")``."""
    collection, _, doc_id = path.rpartition("/")
    if not collection or not doc_id:
        raise ValueError(f"not a document path: {path!r}")
    return collection, doc_id


@dataclass
class Document:
    id: str
    path: str
    data: dict[str, Any] = field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)


def resolve_value(current: Any, value: Any, now: datetime) -> Any:
    """Apply one written value to the current field value."""
    if isinstance(value, Increment):
        base = current if isinstance(current, (int, float)) and not isinstance(current, bool) else 0
        return base + value.value
    if value is SERVER_TIMESTAMP:
        return now
    return value


def merge_fields(current: Optional[dict], data: dict, now: datetime, merge: bool = True) -> dict:
    """Firestore ``set`` semantics: merge keeps unnamed fields, replace drops them."""
    result = dict(current or {}) if merge else {}
    for key, value in data.items():
        result[key] = resolve_value((current or {}).get(key), value, now)
    return result


# ── contract ──


class Transaction(ABC):
    """Read/write handle passed to a transaction function. Writes are buffered."""

    @abstractmethod
    async def get(self, path: str) -> Optional[dict]:
        """Return the document's data, or None when it does not exist."""

    @abstractmethod
    def set(self, path: str, data: dict, merge: bool = False) -> None:
        ...

    @abstractmethod
    def update(self, path: str, data: dict) -> None:
        ...


class CounterStore(ABC):
    """Async counter store. Every backend honours the same document semantics."""

    backend = "abstract"

    @abstractmethod
    async def upsert_increment(
        self, path: str, fields: dict[str, int | float], extra: Optional[dict] = None
    ) -> None:
        """Create the document if absent, else atomically add each of *fields*.

        *extra* values are merged (set), never incremented.
        """

    @abstractmethod
    async def run_transaction(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        """Run *fn* in a transaction, retrying it on write conflict."""

    @abstractmethod
    async def query_range(
        self, collection: str, field: str, start: datetime, end: datetime
    ) -> list[Document]:
        """Documents whose timestamp *field* lies within ``[start, end]``."""

    @abstractmethod
    async def append(self, collection: str, data: dict) -> str:
        """Add a document with a store-generated id; return the id."""

    @abstractmethod
    async def list_documents(self, collection: str) -> list[Document]:
        ...

    async def close(self) -> None:
        return None


def increment_payload(fields: dict[str, int | float], extra: Optional[dict] = None) -> dict:
    payload = dict(extra or {})
    payload.update({k: Increment(v) for k, v in fields.items()})
    return payload


# ── in-process backend ──


class _MemoryTransaction(Transaction):
    def __init__(self, store: "MemoryCounterStore"):
        self._store = store
        self.reads: dict[str, int] = {}
        self.writes: list[tuple[str, dict, bool, bool]] = []

    async def get(self, path: str) -> Optional[dict]:
        if self.writes:
            raise CounterStoreError("transaction reads must happen before writes")
        data = self._store._docs.get(path)
        self.reads[path] = self._store._versions.get(path, 0)
        # Yield so concurrent transactions interleave between read and commit.
        await asyncio.sleep(0)
        return copy.deepcopy(data) if data is not None else None

    def set(self, path: str, data: dict, merge: bool = False) -> None:
        self.writes.append((path, data, merge, False))

    def update(self, path: str, data: dict) -> None:
        self.writes.append((path, data, True, True))


class MemoryCounterStore(CounterStore):
    """
    Dict-backed store with optimistic transactions.

    Each document carries a version; a transaction commits only if every
    document it read is still at the version it saw, otherwise the whole
    function runs again (the same contract Firestore gives its clients).
    """

    backend = "memory"

    def __init__(self, max_attempts: int = 5):
        self._docs: dict[str, dict] = {}
        self._versions: dict[str, int] = {}
        self._lock = asyncio.Lock()
        self.max_attempts = max_attempts
        self.conflicts = 0  # number of retried transactions (for testing)

    def _write(self, path: str, data: dict, merge: bool, now: datetime) -> None:
        split_path(path)
        self._docs[path] = merge_fields(self._docs.get(path), data, now, merge=merge)
        self._versions[path] = self._versions.get(path, 0) + 1

    async def upsert_increment(self, path, fields, extra=None) -> None:
        async with self._lock:
            self._write(path, increment_payload(fields, extra), True, datetime.now(timezone.utc))

    async def run_transaction(self, fn):
        for attempt in range(1, self.max_attempts + 1):
            tx = _MemoryTransaction(self)
            result = await fn(tx)
            async with self._lock:
                stale = [p for p, v in tx.reads.items() if self._versions.get(p, 0) != v]
                if not stale:
                    now = datetime.now(timezone.utc)
                    for path, data, merge, must_exist in tx.writes:
                        if must_exist and path not in self._docs:
                            raise CounterStoreError(f"update of missing document {path}")
                        self._write(path, data, merge, now)
                    return result
            self.conflicts += 1
            logger.debug(f"Transaction conflict on {stale} (attempt {attempt}/{self.max_attempts})")
        raise TransactionConflict(f"transaction gave up after {self.max_attempts} attempts")

    async def query_range(self, collection, field, start, end):
        docs = []
        for path, data in list(self._docs.items()):
            coll, doc_id = split_path(path)
            value = data.get(field)
            if coll == collection and isinstance(value, datetime) and start <= value <= end:
                docs.append(Document(id=doc_id, path=path, data=copy.deepcopy(data)))
        return docs

    async def append(self, collection, data):
        doc_id = uuid.uuid4().hex[:20]
        async with self._lock:
            self._write(f"{collection}/{doc_id}", data, False, datetime.now(timezone.utc))
        return doc_id

    async def list_documents(self, collection):
        return [
            Document(id=split_path(p)[1], path=p, data=copy.deepcopy(d))
            for p, d in list(self._docs.items())
            if split_path(p)[0] == collection
        ]

    def snapshot(self, path: str) -> Optional[dict]:
        """Synchronous peek at a document (tests and debugging)."""
        data = self._docs.get(path)
        return copy.deepcopy(data) if data is not None else None
