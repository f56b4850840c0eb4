"""
SiteMetrics — Async SQLAlchemy database setup (sql counter store backend).
"""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


def make_engine(database_url: str) -> AsyncEngine:
    return create_async_engine(
        database_url,
        echo=False,
        # pool settings only for postgres
        **(
            {}
            if "sqlite" in database_url
            else {
                "pool_size": 5,
                "max_overflow": 10,
                "pool_pre_ping": True,       # test connections before use (survives sleep/wake)
                "pool_recycle": 300,          # recycle connections every 5 min to avoid stale FDs
            }
        ),
    )


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db(engine: AsyncEngine) -> None:
    """Create all tables (used in lifespan and tests)."""
    import sitemetrics.models  # noqa: F401  (register tables)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db(engine: AsyncEngine) -> None:
    await engine.dispose()
