"""
SiteMetrics — Beacon routes (browser → collector).

The browser keeps its own session state (page count, landing page, entry
time) and reports it here. Every handler answers 202 straight away and
leaves the store writes to ``BackgroundTasks``; analytics must never hold
up a page.
"""

import logging
import uuid
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Request, Response

from sitemetrics.config import settings
from sitemetrics.schemas import BeaconAccepted, EventBeacon, LeaveBeacon, NavigateBeacon
from sitemetrics.services.counter_store import CounterStore
from sitemetrics.services.day_keys import as_local, local_now
from sitemetrics.services.ingest import log_event
from sitemetrics.services.page_ids import normalize_page_id
from sitemetrics.services.stores import get_store
from sitemetrics.services.tracker import record_geo, record_leave, record_navigation

logger = logging.getLogger(__name__)
beacon_router = APIRouter(prefix="/sites/{site_key}/beacon", tags=["beacons"])

VISITOR_COOKIE_MAX_AGE = 60 * 60 * 24 * 365 * 2


def _beacon_time(client_time: Optional[datetime]) -> datetime:
    """The visitor's clock when it was sent (keeps their local day/hour), else the site zone."""
    if client_time is None:
        return local_now()
    return as_local(client_time)


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


@beacon_router.post("/navigate", response_model=BeaconAccepted, status_code=202)
async def navigate_beacon(
    site_key: str,
    beacon: NavigateBeacon,
    request: Request,
    response: Response,
    background_tasks: BackgroundTasks,
    store: CounterStore = Depends(get_store),
):
    cookie_name = settings.visitor_cookie_name
    visitor_id = beacon.visitor_id or request.cookies.get(cookie_name) or str(uuid.uuid4())
    response.set_cookie(
        cookie_name, visitor_id, max_age=VISITOR_COOKIE_MAX_AGE, samesite="lax"
    )

    now = _beacon_time(beacon.client_time)
    previous_page_id = normalize_page_id(beacon.previous_path) if beacon.previous_path else None

    background_tasks.add_task(
        record_navigation,
        store,
        site_key,
        path=beacon.path,
        visitor_id=visitor_id,
        now=now,
        landing=beacon.landing,
        previous_page_id=previous_page_id,
        stay_seconds=beacon.stay_seconds,
        referrer=(beacon.referrer or "") if beacon.landing else None,
    )
    if beacon.landing:
        background_tasks.add_task(record_geo, store, site_key, _client_ip(request), now)

    return BeaconAccepted(visitor_id=visitor_id)


@beacon_router.post("/leave", response_model=BeaconAccepted, status_code=202)
async def leave_beacon(
    site_key: str,
    beacon: LeaveBeacon,
    background_tasks: BackgroundTasks,
    store: CounterStore = Depends(get_store),
):
    background_tasks.add_task(
        record_leave,
        store,
        site_key,
        page_id=beacon.path,
        page_count=beacon.page_count,
        now=_beacon_time(beacon.client_time),
        stay_seconds=beacon.stay_seconds,
        landing_page_id=normalize_page_id(beacon.landing_path) if beacon.landing_path else None,
    )
    return BeaconAccepted()


@beacon_router.post("/event", response_model=BeaconAccepted, status_code=202)
async def event_beacon(
    site_key: str,
    beacon: EventBeacon,
    background_tasks: BackgroundTasks,
    store: CounterStore = Depends(get_store),
):
    background_tasks.add_task(
        log_event, store, site_key, beacon.name, beacon.label, _beacon_time(beacon.client_time)
    )
    return BeaconAccepted()
