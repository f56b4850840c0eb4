"""
SiteMetrics — Per-tab visit tracker.

``VisitSession`` is what runs once per browser tab: it turns navigation and
teardown into ingestion writes without ever making the caller wait on them.
Writes are scheduled as tasks and tracked only so tests (and a graceful
shutdown) can ``drain()`` them.

``record_navigation`` / ``record_leave`` are the stateless halves used by the
HTTP beacons, where the browser keeps the session state and reports it.
"""

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional

from sitemetrics.services.classifier import (
    SessionState,
    log_bounce,
    log_landing_view,
    log_visitor_type,
)
from sitemetrics.services.counter_store import CounterStore
from sitemetrics.services.day_keys import local_now
from sitemetrics.services.geo import lookup_region
from sitemetrics.services.ingest import (
    log_daily_access,
    log_geo,
    log_hourly_access,
    log_page_view,
    log_referrer,
    log_stay_time,
    log_weekday_access,
)
from sitemetrics.services.page_ids import normalize_page_id

logger = logging.getLogger(__name__)


async def record_navigation(
    store: CounterStore,
    site_key: str,
    *,
    path: str,
    visitor_id: str,
    now: datetime,
    landing: bool = False,
    previous_page_id: Optional[str] = None,
    stay_seconds: Optional[float] = None,
    referrer: Optional[str] = None,
) -> str:
    """
    Everything one page load writes. ``referrer`` is only passed on the
    session's first page (None means "already recorded this session").
    """
    page_id = normalize_page_id(path)
    writes = []

    if previous_page_id is not None and stay_seconds is not None:
        writes.append(log_stay_time(store, site_key, stay_seconds, previous_page_id, now=now))

    writes += [
        log_page_view(store, site_key, path, now=now),
        log_hourly_access(store, site_key, page_id, now=now),
        log_daily_access(store, site_key, now=now),
        log_weekday_access(store, site_key, now=now),
        log_visitor_type(store, site_key, visitor_id, now=now),
    ]
    if landing:
        writes.append(log_landing_view(store, site_key, page_id, now=now))
    if referrer is not None:
        writes.append(log_referrer(store, site_key, referrer, now=now))

    await asyncio.gather(*writes)
    return page_id


async def record_leave(
    store: CounterStore,
    site_key: str,
    *,
    page_id: str,
    page_count: int,
    now: datetime,
    stay_seconds: Optional[float] = None,
    landing_page_id: Optional[str] = None,
) -> bool:
    """Teardown: flush the last stay time; bounce if the session saw one page. Returns bounced."""
    clean_id = normalize_page_id(page_id)
    if stay_seconds is not None:
        await log_stay_time(store, site_key, stay_seconds, clean_id, now=now)
    state = SessionState(page_count=page_count, landing_page_id=landing_page_id or clean_id)
    if state.should_bounce():
        await log_bounce(store, site_key, state.landing_page_id, now=now)
        return True
    return False


async def record_geo(
    store: CounterStore,
    site_key: str,
    client_ip: Optional[str],
    now: datetime,
    lookup: Callable[[Optional[str]], Awaitable[Optional[str]]] = lookup_region,
) -> Optional[str]:
    region = await lookup(client_ip)
    if region is None:
        return None
    await log_geo(store, site_key, region, now=now)
    return region


class VisitSession:
    """One browsing session in one tab."""

    def __init__(
        self,
        store: CounterStore,
        site_key: str,
        visitor_id: str,
        referrer: str = "",
        client_ip: Optional[str] = None,
        clock: Callable[[], datetime] = local_now,
        geo_lookup: Callable[[Optional[str]], Awaitable[Optional[str]]] = lookup_region,
    ):
        self.store = store
        self.site_key = site_key
        self.visitor_id = visitor_id
        self.referrer = referrer
        self.client_ip = client_ip
        self.state = SessionState()
        self._clock = clock
        self._geo_lookup = geo_lookup
        self._pending: set[asyncio.Task] = set()

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def navigate(self, path: str) -> str:
        """Page load / route change. Schedules the writes and returns immediately."""
        if self.state.closed:
            raise RuntimeError("visit session is closed")

        now = self._clock()
        page_id = normalize_page_id(path)
        previous, stay = self.state.enter(page_id, now)

        referrer = None
        if not self.state.referrer_logged:
            self.state.referrer_logged = True
            referrer = self.referrer

        self._spawn(record_navigation(
            self.store,
            self.site_key,
            path=path,
            visitor_id=self.visitor_id,
            now=now,
            landing=self.state.is_landing,
            previous_page_id=previous,
            stay_seconds=stay,
            referrer=referrer,
        ))

        if not self.state.geo_logged:
            self.state.geo_logged = True
            self._spawn(record_geo(self.store, self.site_key, self.client_ip, now, self._geo_lookup))

        return page_id

    def close(self) -> None:
        """Tab close / navigate away. Safe to call more than once."""
        if self.state.closed or self.state.current_page_id is None:
            self.state.closed = True
            return
        self.state.closed = True

        now = self._clock()
        self._spawn(record_leave(
            self.store,
            self.site_key,
            page_id=self.state.current_page_id,
            page_count=self.state.page_count,
            now=now,
            stay_seconds=self.state.stay_seconds(now),
            landing_page_id=self.state.landing_page_id,
        ))

    @property
    def pending(self) -> int:
        """Number of writes still in flight."""
        return len(self._pending)

    async def drain(self) -> None:
        """Wait for all in-flight writes. Useful for testing."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
