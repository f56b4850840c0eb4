"""
Shared test constants and a deterministic clock.
"""

from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

TOKYO = ZoneInfo("Asia/Tokyo")

# Thursday 2026-01-15, 10:30 local
NOW = datetime(2026, 1, 15, 10, 30, tzinfo=TOKYO)
SITE = "site1"


class FakeClock:
    """Deterministic clock for VisitSession; advance() moves it forward."""

    def __init__(self, start: datetime = NOW):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, days: int = 0) -> datetime:
        self.now = self.now + timedelta(seconds=seconds, days=days)
        return self.now
