"""
Period reducers — daily buckets folded into report totals.

Each ``fetch_*_by_period`` normalises ``[start, end]`` (end of day inclusive),
range-scans one collection on its timestamp field and sums client-side.
Buckets are append-only and increment-only, so the fold is pure: querying
the same committed data twice gives the same totals, and any split of a
range sums to the whole.

A failed read raises ``ReportQueryError``; no partial numbers are returned.
"""

import asyncio
import logging
from datetime import date, datetime
from typing import Any

from sitemetrics.services.classifier import bounce_rate
from sitemetrics.services.counter_store import CounterStore, Document, site_collection
from sitemetrics.services.day_keys import WEEKDAY_LABELS, as_local, normalize_period
from sitemetrics.services.page_ids import classify_referrer

logger = logging.getLogger("sitemetrics.reducers")

DateLike = date | datetime

CUMULATIVE_COLLECTIONS = ("pages", "events", "referrers", "weekdayLogs", "geoStats")


class ReportQueryError(Exception):
    """A report could not be computed because the store read failed."""


def _num(value: Any) -> int | float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return value


async def _scan(
    store: CounterStore, site_key: str, collection: str, start: DateLike, end: DateLike, field: str = "day"
) -> list[Document]:
    s, e = normalize_period(start, end)
    try:
        return await store.query_range(site_collection(site_key, collection), field, s, e)
    except Exception as exc:
        logger.error(f"Range scan of {site_key}/{collection} failed: {exc}")
        raise ReportQueryError(f"could not read {collection} for {site_key}: {exc}") from exc


def _sum_by(docs: list[Document], key_field: str, count_field: str = "count") -> dict[str, int]:
    totals: dict[str, int] = {}
    for doc in docs:
        key = doc.get(key_field)
        if key is None:
            continue
        totals[key] = totals.get(key, 0) + _num(doc.get(count_field))
    return totals


async def fetch_pages_by_period(store, site_key: str, start: DateLike, end: DateLike) -> dict[str, int]:
    """``{pageId: count}``"""
    return _sum_by(await _scan(store, site_key, "pagesDaily", start, end), "pageId")


async def fetch_events_by_period(store, site_key: str, start: DateLike, end: DateLike) -> dict[str, dict]:
    """``{eventId: {"totalSeconds", "count"}}``; averages are the reader's business."""
    totals: dict[str, dict] = {}
    for doc in await _scan(store, site_key, "eventsDaily", start, end):
        event_id = doc.get("eventId")
        if event_id is None:
            continue
        cur = totals.setdefault(event_id, {"totalSeconds": 0, "count": 0})
        cur["totalSeconds"] += _num(doc.get("totalSeconds"))
        cur["count"] += _num(doc.get("count"))
    return totals


async def fetch_referrers_by_period(store, site_key: str, start: DateLike, end: DateLike) -> dict:
    """``{"byHost": {host: n}, "buckets": {"sns", "search", "direct"}}``"""
    by_host = _sum_by(await _scan(store, site_key, "referrersDaily", start, end), "host")
    buckets = {"sns": 0, "search": 0, "direct": 0}
    for host, count in by_host.items():
        buckets[classify_referrer(host)] += count
    return {"byHost": by_host, "buckets": buckets}


async def fetch_visitors_by_period(store, site_key: str, start: DateLike, end: DateLike) -> dict[str, int]:
    """``{"new": n, "returning": n}``"""
    totals = {"new": 0, "returning": 0}
    for doc in await _scan(store, site_key, "visitorDaily", start, end):
        totals["new"] += _num(doc.get("new"))
        totals["returning"] += _num(doc.get("returning"))
    return totals


async def fetch_bounce_by_period(store, site_key: str, start: DateLike, end: DateLike) -> dict[str, dict]:
    """``{pageId: {"bounces", "views", "rate"}}`` with rate in percent."""
    per_page: dict[str, dict] = {}
    for doc in await _scan(store, site_key, "bounceDaily", start, end):
        page_id = doc.get("pageId")
        if page_id is None:
            continue
        cur = per_page.setdefault(page_id, {"bounces": 0, "views": 0, "rate": 0.0})
        cur["bounces"] += _num(doc.get("bounces"))
        cur["views"] += _num(doc.get("views"))
    for cur in per_page.values():
        cur["rate"] = bounce_rate(cur["bounces"], cur["views"])
    return per_page


async def fetch_geo_by_period(store, site_key: str, start: DateLike, end: DateLike) -> dict[str, int]:
    """``{region: count}``"""
    return _sum_by(await _scan(store, site_key, "geoDaily", start, end), "region")


async def fetch_hourly_by_period(store, site_key: str, start: DateLike, end: DateLike) -> list[int]:
    """24 counts indexed by local hour, across every day in the range."""
    counts = [0] * 24
    for doc in await _scan(store, site_key, "hourlyLogs", start, end, field="accessedAt"):
        hour = doc.get("hour")
        if not isinstance(hour, int) or isinstance(hour, bool):
            hour = 0
        if 0 <= hour < 24:
            counts[hour] += 1
    return counts


async def fetch_daily_by_period(store, site_key: str, start: DateLike, end: DateLike) -> list[dict]:
    """``[{"id": "YYYY-MM-DD", "count", "day"}]`` sorted by day id."""
    rows = []
    for doc in await _scan(store, site_key, "dailyLogs", start, end):
        rows.append({"id": doc.id, "count": _num(doc.get("count")), "day": doc.get("day")})
    rows.sort(key=lambda r: r["id"])
    return rows


async def fetch_weekday_by_period(store, site_key: str, start: DateLike, end: DateLike) -> list[int]:
    """Seven counts, Sunday first."""
    index = {label: i for i, label in enumerate(WEEKDAY_LABELS)}
    counts = [0] * 7
    for doc in await _scan(store, site_key, "weekdayDaily", start, end):
        i = index.get(doc.get("weekday"))
        if i is not None:
            counts[i] += _num(doc.get("count"))
    return counts


# ── all-time totals ──


async def fetch_cumulative(store, site_key: str, collection: str) -> dict[str, Any]:
    """
    All-time totals from the cumulative aggregate documents, no range scan.

    Counter families give ``{id: count}``; stay-time events give
    ``{id: {"totalSeconds", "count"}}``.
    """
    if collection not in CUMULATIVE_COLLECTIONS:
        raise ValueError(f"unknown cumulative collection {collection!r}")
    try:
        docs = await store.list_documents(site_collection(site_key, collection))
    except Exception as exc:
        logger.error(f"Read of {site_key}/{collection} failed: {exc}")
        raise ReportQueryError(f"could not read {collection} for {site_key}: {exc}") from exc

    totals: dict[str, Any] = {}
    for doc in docs:
        if "totalSeconds" in doc.data:
            totals[doc.id] = {"totalSeconds": _num(doc.get("totalSeconds")), "count": _num(doc.get("count"))}
        else:
            totals[doc.id] = _num(doc.get("count"))
    return totals


async def fetch_geo_agg(store, site_key: str) -> dict[str, int]:
    """``{region: count}`` over all time."""
    return await fetch_cumulative(store, site_key, "geoStats")


# ── combined report ──


def average_stay(events: dict[str, dict]) -> list[dict]:
    """Per event ``{id, total, count, average}``, largest total first."""
    rows = []
    for event_id, v in events.items():
        total = v.get("totalSeconds", 0) or 0
        count = v.get("count", 0) or 0
        rows.append({
            "id": event_id,
            "total": total,
            "count": count,
            "average": round(total / count) if count else 0,
        })
    rows.sort(key=lambda r: r["total"], reverse=True)
    return rows


async def fetch_period_report(store, site_key: str, start: DateLike, end: DateLike) -> dict:
    """Every family for one period, gathered concurrently."""
    s, e = normalize_period(start, end)
    (
        pages, events, referrers, visitors, bounce, geo, hourly, daily, weekday,
    ) = await asyncio.gather(
        fetch_pages_by_period(store, site_key, s, e),
        fetch_events_by_period(store, site_key, s, e),
        fetch_referrers_by_period(store, site_key, s, e),
        fetch_visitors_by_period(store, site_key, s, e),
        fetch_bounce_by_period(store, site_key, s, e),
        fetch_geo_by_period(store, site_key, s, e),
        fetch_hourly_by_period(store, site_key, s, e),
        fetch_daily_by_period(store, site_key, s, e),
        fetch_weekday_by_period(store, site_key, s, e),
    )
    return {
        "siteKey": site_key,
        "period": {
            "start": as_local(s).date().isoformat(),
            "end": as_local(e).date().isoformat(),
        },
        "pages": pages,
        "events": events,
        "stay": average_stay(events),
        "referrers": referrers,
        "visitors": visitors,
        "bounce": bounce,
        "geo": geo,
        "hourly": hourly,
        "daily": daily,
        "weekday": weekday,
    }
