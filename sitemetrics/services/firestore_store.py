"""
SiteMetrics — Firestore counter store.

Production backend. Uses the async Firestore client that ships with
firebase-admin and keeps the original document layout
(``analytics/{siteKey}/{collection}/{docId}``), so buckets written by the
browser SDK and by this service land in the same documents.
"""

import logging
from typing import Optional

import firebase_admin
from firebase_admin import credentials, firestore_async
from google.cloud import firestore
from google.cloud.firestore_v1.base_query import FieldFilter

from sitemetrics.services.counter_store import (
    SERVER_TIMESTAMP,
    CounterStore,
    Document,
    Increment,
    Transaction,
    increment_payload,
)

logger = logging.getLogger(__name__)

_initialized = False


def init_firebase(cred_path: str = "", project_id: str = "") -> bool:
    """
    Initialize Firebase Admin SDK.

    Args:
        cred_path: Path to the service account JSON key file.
        project_id: Optional project id override.

    Returns True if init succeeded, False otherwise.
    """
    global _initialized

    if _initialized:
        return True

    if not cred_path:
        logger.warning("FIREBASE_CRED_PATH not set — Firestore store disabled")
        return False

    try:
        cred = credentials.Certificate(cred_path)
        options = {"projectId": project_id} if project_id else None
        firebase_admin.initialize_app(cred, options)
        _initialized = True
        logger.info("✅ Firebase Admin SDK initialized")
        return True
    except Exception as e:
        logger.error(f"Firebase init failed: {e}")
        return False


def is_initialized() -> bool:
    """Check if Firebase Admin SDK is initialized."""
    return _initialized


def to_firestore(data: dict) -> dict:
    """Swap store-neutral sentinels for their Firestore transforms."""
    out = {}
    for key, value in data.items():
        if isinstance(value, Increment):
            out[key] = firestore.Increment(value.value)
        elif value is SERVER_TIMESTAMP:
            out[key] = firestore.SERVER_TIMESTAMP
        else:
            out[key] = value
    return out


class _FirestoreTransaction(Transaction):
    def __init__(self, client, transaction):
        self._client = client
        self._transaction = transaction

    async def get(self, path: str) -> Optional[dict]:
        snap = await self._client.document(path).get(transaction=self._transaction)
        return snap.to_dict() if snap.exists else None

    def set(self, path: str, data: dict, merge: bool = False) -> None:
        self._transaction.set(self._client.document(path), to_firestore(data), merge=merge)

    def update(self, path: str, data: dict) -> None:
        self._transaction.update(self._client.document(path), to_firestore(data))


class FirestoreCounterStore(CounterStore):
    backend = "firestore"

    def __init__(self, client=None, max_attempts: int = 5):
        self._client = client
        self.max_attempts = max_attempts

    @property
    def client(self):
        if self._client is None:
            self._client = firestore_async.client()
        return self._client

    async def upsert_increment(self, path, fields, extra=None) -> None:
        await self.client.document(path).set(to_firestore(increment_payload(fields, extra)), merge=True)

    async def run_transaction(self, fn):
        transaction = self.client.transaction(max_attempts=self.max_attempts)

        @firestore.async_transactional
        async def _run(tx):
            return await fn(_FirestoreTransaction(self.client, tx))

        return await _run(transaction)

    async def query_range(self, collection, field, start, end):
        query = (
            self.client.collection(collection)
            .where(filter=FieldFilter(field, ">=", start))
            .where(filter=FieldFilter(field, "<=", end))
        )
        return [
            Document(id=snap.id, path=snap.reference.path, data=snap.to_dict() or {})
            async for snap in query.stream()
        ]

    async def append(self, collection, data):
        _, ref = await self.client.collection(collection).add(to_firestore(data))
        return ref.id

    async def list_documents(self, collection):
        return [
            Document(id=snap.id, path=snap.reference.path, data=snap.to_dict() or {})
            async for snap in self.client.collection(collection).stream()
        ]

    async def close(self) -> None:
        self._client = None
