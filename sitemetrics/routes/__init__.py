"""
API Routes — health, beacons, reports.
"""

from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from sitemetrics import __version__
from sitemetrics.routes.beacons import beacon_router
from sitemetrics.routes.reports import report_router
from sitemetrics.schemas import HealthResponse
from sitemetrics.services.counter_store import CounterStore
from sitemetrics.services.stores import get_store

router = APIRouter()


# ── Health ──────────────────────────────────────────────

@router.get("/health", response_model=HealthResponse, tags=["system"])
async def health(store: CounterStore = Depends(get_store)):
    return HealthResponse(
        status="ok",
        timestamp=datetime.now(timezone.utc).isoformat(),
        version=__version__,
        store=store.backend,
    )


router.include_router(beacon_router)
router.include_router(report_router)
