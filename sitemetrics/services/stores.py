"""
SiteMetrics — Counter store selection.
"""

import logging

from fastapi import HTTPException, Request

from sitemetrics.config import Settings, settings
from sitemetrics.services.counter_store import CounterStore, CounterStoreError, MemoryCounterStore
from sitemetrics.services.sql_store import SqlCounterStore

logger = logging.getLogger(__name__)


def build_store(cfg: Settings | None = None) -> CounterStore:
    """Instantiate the backend named by ``store_backend``."""
    cfg = cfg or settings
    backend = cfg.store_backend.lower()

    if backend == "memory":
        return MemoryCounterStore(max_attempts=cfg.transaction_max_attempts)

    if backend == "sql":
        return SqlCounterStore(cfg.database_url, max_attempts=cfg.transaction_max_attempts)

    if backend == "firestore":
        from sitemetrics.services.firestore_store import FirestoreCounterStore, init_firebase

        if not init_firebase(cfg.firebase_cred_path, cfg.firebase_project_id):
            raise CounterStoreError("Firestore backend selected but Firebase could not be initialized")
        return FirestoreCounterStore(max_attempts=cfg.transaction_max_attempts)

    raise ValueError(f"unknown store backend {cfg.store_backend!r}")


def get_store(request: Request) -> CounterStore:
    """FastAPI dependency — the counter store opened in the app lifespan."""
    store = getattr(request.app.state, "store", None)
    if store is None:
        raise HTTPException(503, "Counter store not ready")
    return store


async def open_store(cfg: Settings | None = None) -> CounterStore:
    """Build the store and prepare it (tables for sql)."""
    store = build_store(cfg)
    if isinstance(store, SqlCounterStore):
        await store.init()
        logger.info("✅ SQL counter store ready")
    else:
        logger.info(f"✅ {store.backend} counter store ready")
    return store
