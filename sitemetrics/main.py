"""
FastAPI Application — entry point.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from sitemetrics import __version__
from sitemetrics.config import settings
from sitemetrics.routes import router
from sitemetrics.services.stores import open_store

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown hook."""
    logger.info(f"🚀 Starting SiteMetrics v{__version__} (store={settings.store_backend})")
    app.state.store = await open_store(settings)

    yield

    # Shutdown
    await app.state.store.close()
    app.state.store = None
    logger.info("👋 Shutdown complete")


app = FastAPI(
    title="SiteMetrics",
    description=(
        "Multi-tenant site analytics — beacons in, daily buckets and "
        "period reports out."
    ),
    version=__version__,
    lifespan=lifespan,
)

# CORS — beacons are sent from every tracked site
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router, prefix="/api/v1")


@app.get("/", include_in_schema=False)
async def root():
    return {
        "service": "SiteMetrics",
        "version": __version__,
        "docs": "/docs",
    }
