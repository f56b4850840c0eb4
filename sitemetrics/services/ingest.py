"""
Ingestion — per-visit events into daily buckets and cumulative aggregates.

Every writer here is fire-and-forget: it never raises, never retries, and
never reads before it writes. A failed write is logged and dropped; the
event that caused it ("page X was viewed for 12 s") cannot be rebuilt later.

Each family writes two documents per event:

- a cumulative aggregate   ``analytics/{site}/{family}/{dimension}``
- a daily bucket           ``analytics/{site}/{family}Daily/{dayId}_{dimension}``
"""

import asyncio
import logging
import math
from datetime import datetime
from typing import Optional

from sitemetrics.config import settings
from sitemetrics.services.counter_store import SERVER_TIMESTAMP, CounterStore, doc_path, site_collection
from sitemetrics.services.day_keys import as_local, local_now, today_key_and_day, weekday_label
from sitemetrics.services.page_ids import (
    is_excluded,
    normalize_page_id,
    referrer_host,
    stay_event_id,
)

logger = logging.getLogger("sitemetrics.ingest")


def safe_doc_id(value: str) -> str:
    """Document ids cannot contain '/'."""
    return (value or "unknown").replace("/", "_")


async def _bump(
    store: CounterStore,
    aggregate_path: str,
    daily_path: str,
    fields: dict,
    aggregate_extra: dict,
    daily_extra: dict,
) -> None:
    await asyncio.gather(
        store.upsert_increment(aggregate_path, fields, aggregate_extra),
        store.upsert_increment(daily_path, fields, daily_extra),
    )


async def log_page_view(
    store: CounterStore, site_key: str, path: str, now: Optional[datetime] = None
) -> Optional[str]:
    """PV: cumulative ``pages`` + daily ``pagesDaily``. Returns the page id, or None if dropped."""
    page_id = normalize_page_id(path)
    if is_excluded(page_id):
        return None

    day, day_id = today_key_and_day(now)
    try:
        await _bump(
            store,
            doc_path(site_key, "pages", safe_doc_id(page_id)),
            doc_path(site_key, "pagesDaily", safe_doc_id(f"{day_id}_{page_id}")),
            {"count": 1},
            {"updatedAt": SERVER_TIMESTAMP},
            {"day": day, "pageId": page_id},
        )
    except Exception as e:
        logger.error(f"Page view write failed ({site_key}/{page_id}): {e}")
        return None
    return page_id


async def log_event(
    store: CounterStore,
    site_key: str,
    event_name: str,
    label: Optional[str] = None,
    now: Optional[datetime] = None,
) -> bool:
    """Arbitrary named event (map clicks, mail links): ``events`` + ``eventsDaily``."""
    day, day_id = today_key_and_day(now)
    aggregate_extra: dict = {"updatedAt": SERVER_TIMESTAMP}
    if label is not None:
        aggregate_extra["label"] = label
    try:
        await _bump(
            store,
            doc_path(site_key, "events", safe_doc_id(event_name)),
            doc_path(site_key, "eventsDaily", safe_doc_id(f"{day_id}_{event_name}")),
            {"count": 1},
            aggregate_extra,
            {"day": day, "eventId": event_name},
        )
    except Exception as e:
        logger.error(f"Event write failed ({site_key}/{event_name}): {e}")
        return False
    return True


async def log_stay_time(
    store: CounterStore,
    site_key: str,
    seconds: float,
    page_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> bool:
    """
    Stay time on one page. Durations <= 0 or above ``stay_max_seconds``
    (clock skew, backgrounded tabs) are dropped before anything is written.
    Averages are left to the reader: ``totalSeconds / count``.
    """
    seconds = math.floor(seconds)
    if seconds <= 0 or seconds > settings.stay_max_seconds:
        return False

    clean_id = normalize_page_id(page_id or "home")
    if is_excluded(clean_id):
        return False

    event_id = stay_event_id(clean_id)
    day, day_id = today_key_and_day(now)
    fields = {"totalSeconds": seconds, "count": 1}
    try:
        await _bump(
            store,
            doc_path(site_key, "events", safe_doc_id(event_id)),
            doc_path(site_key, "eventsDaily", safe_doc_id(f"{day_id}_{event_id}")),
            fields,
            {"updatedAt": SERVER_TIMESTAMP},
            {"day": day, "eventId": event_id},
        )
    except Exception as e:
        logger.error(f"Stay time write failed ({site_key}/{event_id}): {e}")
        return False
    return True


async def log_hourly_access(
    store: CounterStore,
    site_key: str,
    page_id: str,
    now: Optional[datetime] = None,
    accessed_at: Optional[datetime] = None,
) -> bool:
    """
    One raw ``hourlyLogs`` row per access, tagged with the local hour.

    ``hour`` comes from ``now`` (the visitor clock). ``accessedAt`` is the
    store's server timestamp; ``accessed_at`` pins it for tests.
    """
    current = as_local(now) if now else local_now()
    row = {
        "siteKey": site_key,
        "pageId": page_id,
        "hour": current.hour,
        "accessedAt": accessed_at if accessed_at is not None else SERVER_TIMESTAMP,
    }
    try:
        await store.append(site_collection(site_key, "hourlyLogs"), row)
    except Exception as e:
        logger.error(f"Hourly access write failed ({site_key}): {e}")
        return False
    return True


async def log_daily_access(store: CounterStore, site_key: str, now: Optional[datetime] = None) -> bool:
    """Whole-site total for the day, regardless of page."""
    day, day_id = today_key_and_day(now)
    try:
        await store.upsert_increment(
            doc_path(site_key, "dailyLogs", day_id),
            {"count": 1},
            {"day": day, "updatedAt": SERVER_TIMESTAMP, "accessedAt": SERVER_TIMESTAMP},
        )
    except Exception as e:
        logger.error(f"Daily access write failed ({site_key}): {e}")
        return False
    return True


async def log_weekday_access(store: CounterStore, site_key: str, now: Optional[datetime] = None) -> bool:
    weekday = weekday_label(now)
    day, day_id = today_key_and_day(now)
    try:
        await _bump(
            store,
            doc_path(site_key, "weekdayLogs", weekday),
            doc_path(site_key, "weekdayDaily", f"{day_id}_{weekday}"),
            {"count": 1},
            {"updatedAt": SERVER_TIMESTAMP},
            {"day": day, "weekday": weekday},
        )
    except Exception as e:
        logger.error(f"Weekday access write failed ({site_key}): {e}")
        return False
    return True


async def log_referrer(
    store: CounterStore, site_key: str, referrer: Optional[str], now: Optional[datetime] = None
) -> Optional[str]:
    """Referrer host (or ``direct``). Session-level: callers send it once per session."""
    host = referrer_host(referrer)
    day, day_id = today_key_and_day(now)
    try:
        await _bump(
            store,
            doc_path(site_key, "referrers", safe_doc_id(host)),
            doc_path(site_key, "referrersDaily", safe_doc_id(f"{day_id}_{host}")),
            {"count": 1},
            {},
            {"day": day, "host": host},
        )
    except Exception as e:
        logger.error(f"Referrer write failed ({site_key}/{host}): {e}")
        return None
    return host


async def log_geo(store: CounterStore, site_key: str, region: str, now: Optional[datetime] = None) -> bool:
    day, day_id = today_key_and_day(now)
    try:
        await _bump(
            store,
            doc_path(site_key, "geoStats", safe_doc_id(region)),
            doc_path(site_key, "geoDaily", safe_doc_id(f"{day_id}_{region}")),
            {"count": 1},
            {},
            {"day": day, "region": region},
        )
    except Exception as e:
        logger.error(f"Geo write failed ({site_key}/{region}): {e}")
        return False
    return True
