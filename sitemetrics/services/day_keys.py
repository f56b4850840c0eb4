"""
Day keys — local-midnight buckets and inclusive report periods.

Every daily bucket is keyed by ``YYYY-MM-DD`` of the visitor's local day and
carries ``day`` (local midnight, tz-aware) so range queries can run on it.
"""

from __future__ import annotations

from datetime import date, datetime, time
from zoneinfo import ZoneInfo

from sitemetrics.config import settings

WEEKDAY_LABELS = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")
DAY_ID_FORMAT = "%Y-%m-%d"


def site_zone() -> ZoneInfo:
    return ZoneInfo(settings.site_timezone)


def local_now() -> datetime:
    """Current time in the configured site time zone."""
    return datetime.now(site_zone())


def as_local(value: datetime) -> datetime:
    """Attach the site zone to naive datetimes; aware ones are kept as-is."""
    if value.tzinfo is None:
        return value.replace(tzinfo=site_zone())
    return value


def today_key_and_day(now: datetime | None = None) -> tuple[datetime, str]:
    """Return ``(local midnight, "YYYY-MM-DD")`` for *now*."""
    current = as_local(now or local_now())
    day = current.replace(hour=0, minute=0, second=0, microsecond=0)
    return day, day.strftime(DAY_ID_FORMAT)


def weekday_index(now: datetime | None = None) -> int:
    """0 = Sunday .. 6 = Saturday."""
    return as_local(now or local_now()).isoweekday() % 7


def weekday_label(now: datetime | None = None) -> str:
    return WEEKDAY_LABELS[weekday_index(now)]


def _at_midnight(value: date | datetime) -> datetime:
    if isinstance(value, datetime):
        return as_local(value)
    return datetime.combine(value, time.min, tzinfo=site_zone())


def normalize_period(start: date | datetime, end: date | datetime) -> tuple[datetime, datetime]:
    """
    Make ``[start, end]`` inclusive of the whole end day.

    Bare dates start at local midnight; ``end`` is always pushed to
    23:59:59.999 local so a single-day range covers that full day.
    """
    s = _at_midnight(start)
    e = _at_midnight(end).replace(hour=23, minute=59, second=59, microsecond=999000)
    if s > e:
        raise ValueError(f"period start {s.isoformat()} is after end {e.isoformat()}")
    return s, e
