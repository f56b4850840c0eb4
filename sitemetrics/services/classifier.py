"""
Visitor classification and landing/bounce accounting.

New vs. returning is the one family that cannot be a blind increment: the
write depends on a prior read of the visitor's profile, and two tabs of the
same visitor race on it. It therefore runs as a single store transaction,
and the store's conflict retry guarantees one winner per visitor per day.

Bounce rate is two-phase. The first page of a session adds to ``views``
(the denominator) exactly once; teardown adds to ``bounces`` only when the
session saw exactly one page. Teardown is best effort, so a missed bounce
is an accepted under-count.
"""

import logging
import math
import uuid
from collections.abc import MutableMapping
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sitemetrics.services.counter_store import (
    SERVER_TIMESTAMP,
    CounterStore,
    Increment,
    Transaction,
    doc_path,
)
from sitemetrics.services.day_keys import today_key_and_day
from sitemetrics.services.ingest import safe_doc_id

logger = logging.getLogger("sitemetrics.classifier")

NEW = "new"
RETURNING = "returning"


# ── visitor identity ──


def visitor_storage_key(site_key: str) -> str:
    return f"visitorId_{site_key}"


def ensure_visitor_id(storage: MutableMapping, site_key: str) -> str:
    """Return the persisted visitor id for *site_key*, creating one on first visit."""
    key = visitor_storage_key(site_key)
    visitor_id = storage.get(key)
    if not visitor_id:
        visitor_id = str(uuid.uuid4())
        storage[key] = visitor_id
    return visitor_id


# ── new / returning ──


async def log_visitor_type(
    store: CounterStore, site_key: str, visitor_id: str, now: Optional[datetime] = None
) -> Optional[str]:
    """
    Count *visitor_id* once for today as ``new`` or ``returning``.

    Returns the classification that was counted, or None when the visitor
    was already counted today (or the write failed).
    """
    day, day_id = today_key_and_day(now)
    profile_path = doc_path(site_key, "visitorProfiles", safe_doc_id(visitor_id))
    stats_path = doc_path(site_key, "visitorStats", safe_doc_id(visitor_id))
    daily_path = doc_path(site_key, "visitorDaily", day_id)

    async def _classify(tx: Transaction) -> Optional[str]:
        profile = await tx.get(profile_path)

        if profile is None:
            tx.set(profile_path, {
                "firstVisit": SERVER_TIMESTAMP,
                "lastVisit": SERVER_TIMESTAMP,
                "lastCountedDate": day_id,
            })
            tx.set(daily_path, {"day": day, "new": Increment(1), "returning": Increment(0)}, merge=True)
            tx.set(stats_path, {
                "new": 1,
                "returning": 0,
                "lastVisit": SERVER_TIMESTAMP,
                "lastCountedDate": day_id,
            }, merge=True)
            return NEW

        if profile.get("lastCountedDate") != day_id:
            tx.update(profile_path, {"lastVisit": SERVER_TIMESTAMP, "lastCountedDate": day_id})
            tx.set(daily_path, {"day": day, "returning": Increment(1)}, merge=True)
            tx.set(stats_path, {
                "returning": Increment(1),
                "lastVisit": SERVER_TIMESTAMP,
                "lastCountedDate": day_id,
            }, merge=True)
            return RETURNING

        return None  # already counted today

    try:
        return await store.run_transaction(_classify)
    except Exception as e:
        logger.error(f"Visitor type write failed ({site_key}/{visitor_id}): {e}")
        return None


# ── landing / bounce ──


async def log_landing_view(
    store: CounterStore, site_key: str, page_id: str, now: Optional[datetime] = None
) -> bool:
    """Bounce-rate denominator: once per session, for the session's first page."""
    day, day_id = today_key_and_day(now)
    try:
        await store.upsert_increment(
            doc_path(site_key, "bounceDaily", safe_doc_id(f"{day_id}_{page_id}")),
            {"views": 1},
            {"day": day, "pageId": page_id},
        )
        await store.upsert_increment(
            doc_path(site_key, "bounceStats", safe_doc_id(page_id)), {"totalViews": 1}
        )
    except Exception as e:
        logger.error(f"Landing view write failed ({site_key}/{page_id}): {e}")
        return False
    return True


async def log_bounce(
    store: CounterStore, site_key: str, page_id: str, now: Optional[datetime] = None
) -> bool:
    """Bounce numerator only; ``views`` is never touched here."""
    day, day_id = today_key_and_day(now)
    try:
        await store.upsert_increment(
            doc_path(site_key, "bounceDaily", safe_doc_id(f"{day_id}_{page_id}")),
            {"bounces": 1},
            {"day": day, "pageId": page_id},
        )
        await store.upsert_increment(
            doc_path(site_key, "bounceStats", safe_doc_id(page_id)), {"count": 1}
        )
    except Exception as e:
        logger.error(f"Bounce write failed ({site_key}/{page_id}): {e}")
        return False
    return True


def bounce_rate(bounces: int, views: int) -> float:
    """Percentage in ``[0, 100]``; 0 when there were no views."""
    if views <= 0:
        return 0.0
    return min(100.0, max(0.0, bounces / views * 100))


# ── per-tab session state ──


@dataclass
class SessionState:
    """Client-local state of one browsing session (one tab). Never persisted."""

    page_count: int = 0
    landing_page_id: Optional[str] = None
    current_page_id: Optional[str] = None
    entered_at: Optional[datetime] = None
    referrer_logged: bool = False
    geo_logged: bool = False
    closed: bool = False

    def stay_seconds(self, now: datetime) -> Optional[int]:
        if self.entered_at is None:
            return None
        return math.floor((now - self.entered_at).total_seconds())

    def enter(self, page_id: str, now: datetime) -> tuple[Optional[str], Optional[int]]:
        """Move to *page_id*; return the page being left and the seconds spent on it."""
        previous, stay = self.current_page_id, self.stay_seconds(now)
        self.page_count += 1
        if self.landing_page_id is None:
            self.landing_page_id = page_id
        self.current_page_id = page_id
        self.entered_at = now
        return previous, stay

    @property
    def is_landing(self) -> bool:
        return self.page_count == 1

    def should_bounce(self) -> bool:
        return self.page_count == 1 and self.landing_page_id is not None
