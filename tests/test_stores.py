"""
Tests for store selection and settings.
"""

from unittest.mock import MagicMock, patch

import pytest
from fastapi import HTTPException

from sitemetrics.config import Settings
from sitemetrics.services.counter_store import CounterStoreError, MemoryCounterStore
from sitemetrics.services.sql_store import SqlCounterStore
from sitemetrics.services.stores import build_store, get_store, open_store


class TestSettings:
    def test_defaults(self):
        s = Settings(_env_file=None)
        assert s.store_backend == "sql"
        assert s.stay_max_seconds == 60
        assert "login" in s.excluded_pages

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("STORE_BACKEND", "memory")
        monkeypatch.setenv("STAY_MAX_SECONDS", "120")
        s = Settings(_env_file=None)
        assert s.store_backend == "memory"
        assert s.stay_max_seconds == 120


class TestBuildStore:
    def test_memory(self):
        store = build_store(Settings(_env_file=None, store_backend="memory", transaction_max_attempts=9))
        assert isinstance(store, MemoryCounterStore)
        assert store.max_attempts == 9

    async def test_sql(self, tmp_path):
        cfg = Settings(
            _env_file=None,
            store_backend="sql",
            database_url=f"sqlite+aiosqlite:///{tmp_path / 'x.db'}",
        )
        store = await open_store(cfg)
        assert isinstance(store, SqlCounterStore)
        await store.upsert_increment("analytics/s1/pages/home", {"count": 1})
        await store.close()

    def test_firestore_without_credentials(self):
        cfg = Settings(_env_file=None, store_backend="firestore", firebase_cred_path="")
        with patch("sitemetrics.services.firestore_store._initialized", False):
            with pytest.raises(CounterStoreError):
                build_store(cfg)

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            build_store(Settings(_env_file=None, store_backend="redis"))


class TestGetStore:
    def test_store_not_ready(self):
        request = MagicMock()
        request.app.state.store = None
        with pytest.raises(HTTPException) as exc:
            get_store(request)
        assert exc.value.status_code == 503

    def test_returns_store(self):
        request = MagicMock()
        request.app.state.store = MemoryCounterStore()
        assert get_store(request) is request.app.state.store
