"""
SiteMetrics — Report routes (period reducers over daily buckets).

A store failure answers 503 so the dashboard can show an error state
instead of partial numbers.
"""

import logging
from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query

from sitemetrics.schemas import ReportFamily, ReportResponse
from sitemetrics.services.counter_store import CounterStore
from sitemetrics.services.reducers import (
    ReportQueryError,
    fetch_bounce_by_period,
    fetch_cumulative,
    fetch_daily_by_period,
    fetch_events_by_period,
    fetch_geo_by_period,
    fetch_hourly_by_period,
    fetch_pages_by_period,
    fetch_period_report,
    fetch_referrers_by_period,
    fetch_visitors_by_period,
    fetch_weekday_by_period,
)
from sitemetrics.services.stores import get_store

logger = logging.getLogger(__name__)
report_router = APIRouter(prefix="/sites/{site_key}", tags=["reports"])

REDUCERS = {
    ReportFamily.PAGES: fetch_pages_by_period,
    ReportFamily.EVENTS: fetch_events_by_period,
    ReportFamily.REFERRERS: fetch_referrers_by_period,
    ReportFamily.VISITORS: fetch_visitors_by_period,
    ReportFamily.BOUNCE: fetch_bounce_by_period,
    ReportFamily.GEO: fetch_geo_by_period,
    ReportFamily.HOURLY: fetch_hourly_by_period,
    ReportFamily.DAILY: fetch_daily_by_period,
    ReportFamily.WEEKDAY: fetch_weekday_by_period,
}


def _check_period(start: date, end: date) -> None:
    if start > end:
        raise HTTPException(422, f"start {start} is after end {end}")


@report_router.get("/reports")
async def period_report(
    site_key: str,
    start: date = Query(..., description="First day, YYYY-MM-DD"),
    end: date = Query(..., description="Last day (inclusive), YYYY-MM-DD"),
    store: CounterStore = Depends(get_store),
):
    """All families for one period — what the insight summariser receives."""
    _check_period(start, end)
    try:
        return await fetch_period_report(store, site_key, start, end)
    except ReportQueryError as e:
        raise HTTPException(503, str(e))


@report_router.get("/reports/{family}", response_model=ReportResponse)
async def family_report(
    site_key: str,
    family: str,
    start: date = Query(..., description="First day, YYYY-MM-DD"),
    end: date = Query(..., description="Last day (inclusive), YYYY-MM-DD"),
    store: CounterStore = Depends(get_store),
):
    try:
        key = ReportFamily(family)
    except ValueError:
        raise HTTPException(404, f"Unknown report family {family!r}")
    _check_period(start, end)

    try:
        data = await REDUCERS[key](store, site_key, start, end)
    except ReportQueryError as e:
        raise HTTPException(503, str(e))

    return ReportResponse(
        site_key=site_key, family=key, start=start.isoformat(), end=end.isoformat(), data=data
    )


@report_router.get("/totals/{collection}")
async def all_time_totals(
    site_key: str,
    collection: str,
    store: CounterStore = Depends(get_store),
):
    """All-time cumulative aggregates (no range scan)."""
    try:
        totals = await fetch_cumulative(store, site_key, collection)
    except ValueError:
        raise HTTPException(404, f"Unknown collection {collection!r}")
    except ReportQueryError as e:
        raise HTTPException(503, str(e))
    return {"siteKey": site_key, "collection": collection, "totals": totals}
