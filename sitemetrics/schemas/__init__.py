"""
SiteMetrics — Pydantic request/response schemas.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class ReportFamily(str, Enum):
    PAGES = "pages"
    EVENTS = "events"
    REFERRERS = "referrers"
    VISITORS = "visitors"
    BOUNCE = "bounce"
    GEO = "geo"
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKDAY = "weekday"


class NavigateBeacon(BaseModel):
    """Sent by the browser on every page load / route change."""

    path: str = Field(..., min_length=1, max_length=2048)
    visitor_id: str | None = Field(None, alias="visitorId", max_length=64)
    # Page being left and how long it was shown (omitted on the first page)
    previous_path: str | None = Field(None, alias="previousPath", max_length=2048)
    stay_seconds: float | None = Field(None, alias="staySeconds")
    # First page of the session: counts the bounce denominator, referrer and geo
    landing: bool = False
    referrer: str | None = Field(None, max_length=2048)
    client_time: datetime | None = Field(None, alias="clientTime")

    model_config = {"populate_by_name": True}


class LeaveBeacon(BaseModel):
    """Sent (best effort) from pagehide / beforeunload."""

    path: str = Field(..., min_length=1, max_length=2048)
    page_count: int = Field(..., alias="pageCount", ge=0)
    stay_seconds: float | None = Field(None, alias="staySeconds")
    landing_path: str | None = Field(None, alias="landingPath", max_length=2048)
    client_time: datetime | None = Field(None, alias="clientTime")

    model_config = {"populate_by_name": True}


class EventBeacon(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    label: str | None = Field(None, max_length=500)
    client_time: datetime | None = Field(None, alias="clientTime")

    model_config = {"populate_by_name": True}


class BeaconAccepted(BaseModel):
    accepted: bool = True
    visitor_id: str | None = Field(None, alias="visitorId")

    model_config = {"populate_by_name": True}


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    version: str
    store: str


class ReportResponse(BaseModel):
    site_key: str = Field(..., alias="siteKey")
    family: ReportFamily
    start: str
    end: str
    data: dict | list

    model_config = {"populate_by_name": True}
