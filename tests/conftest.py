"""
Shared test fixtures — counter stores, fixed clocks, FastAPI test client.
"""

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from sitemetrics.database import make_engine
from sitemetrics.main import app
from sitemetrics.services.counter_store import MemoryCounterStore
from sitemetrics.services.sql_store import SqlCounterStore
from sitemetrics.services.stores import get_store

from helpers import FakeClock


# ── Counter stores ──────────────────────────────────────

@pytest.fixture()
def store():
    return MemoryCounterStore()


@pytest.fixture()
def clock():
    return FakeClock()


@pytest_asyncio.fixture()
async def sql_store(tmp_path):
    """SQLite file database: concurrent sessions must see each other's commits."""
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'counters.db'}")
    s = SqlCounterStore(engine=engine)
    await s.init()
    yield s
    await s.close()
    await engine.dispose()


# ── FastAPI client ──────────────────────────────────────

@pytest_asyncio.fixture()
async def client(store):
    """FastAPI test client with the memory store injected (lifespan is not run)."""
    app.dependency_overrides[get_store] = lambda: store

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
