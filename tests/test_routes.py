"""
Tests for API routes — health, beacons, reports.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

from sitemetrics.routes.reports import REDUCERS
from sitemetrics.schemas import ReportFamily
from sitemetrics.services.counter_store import doc_path, site_collection
from sitemetrics.services.ingest import log_daily_access, log_page_view
from sitemetrics.services.reducers import ReportQueryError

from helpers import NOW, SITE

CLIENT_TIME = NOW.isoformat()


def p(collection: str, doc_id: str) -> str:
    return doc_path(SITE, collection, doc_id)


class TestHealthEndpoint:
    async def test_health(self, client):
        resp = await client.get("/api/v1/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert data["store"] == "memory"
        assert "version" in data
        assert "timestamp" in data


class TestRootEndpoint:
    async def test_root(self, client):
        resp = await client.get("/")
        assert resp.status_code == 200
        assert resp.json()["service"] == "SiteMetrics"


class TestNavigateBeacon:
    async def test_landing_beacon(self, client, store):
        with patch("sitemetrics.routes.beacons.record_geo", new_callable=AsyncMock) as geo:
            resp = await client.post(
                f"/api/v1/sites/{SITE}/beacon/navigate",
                json={
                    "path": "/",
                    "visitorId": "v1",
                    "landing": True,
                    "referrer": "https://www.google.com/",
                    "clientTime": CLIENT_TIME,
                },
                headers={"X-Forwarded-For": "203.0.113.7, 10.0.0.1"},
            )

        assert resp.status_code == 202
        assert resp.json() == {"accepted": True, "visitorId": "v1"}
        assert "sm_vid=v1" in resp.headers["set-cookie"]

        assert store.snapshot(p("pagesDaily", "2026-01-15_home"))["count"] == 1
        assert store.snapshot(p("bounceDaily", "2026-01-15_home"))["views"] == 1
        assert store.snapshot(p("referrers", "google.com"))["count"] == 1
        assert store.snapshot(p("visitorDaily", "2026-01-15"))["new"] == 1
        geo.assert_awaited_once()
        assert geo.call_args.args[2] == "203.0.113.7"

    async def test_follow_up_beacon(self, client, store):
        with patch("sitemetrics.routes.beacons.record_geo", new_callable=AsyncMock) as geo:
            resp = await client.post(
                f"/api/v1/sites/{SITE}/beacon/navigate",
                json={
                    "path": "/about",
                    "visitorId": "v1",
                    "previousPath": "/",
                    "staySeconds": 14.2,
                    "referrer": "https://t.co/x",
                    "clientTime": CLIENT_TIME,
                },
            )

        assert resp.status_code == 202
        geo.assert_not_awaited()
        assert store.snapshot(p("events", "home_stay_seconds_home"))["totalSeconds"] == 14
        # Referrer is session-level: only the landing beacon records it
        assert store.snapshot(p("referrers", "t.co")) is None
        assert store.snapshot(p("bounceDaily", "2026-01-15_about")) is None

    async def test_hourly_row_ignores_client_clock(self, client, store):
        before = datetime.now(timezone.utc)
        skewed = NOW.replace(year=2020).isoformat()
        resp = await client.post(
            f"/api/v1/sites/{SITE}/beacon/navigate",
            json={"path": "/", "visitorId": "v1", "clientTime": skewed},
        )
        assert resp.status_code == 202

        (row,) = await store.list_documents(site_collection(SITE, "hourlyLogs"))
        assert row.data["hour"] == 10
        assert row.data["accessedAt"] >= before

    async def test_visitor_id_assigned(self, client):
        resp = await client.post(
            f"/api/v1/sites/{SITE}/beacon/navigate",
            json={"path": "/", "clientTime": CLIENT_TIME},
        )
        assert resp.status_code == 202
        visitor_id = resp.json()["visitorId"]
        assert len(visitor_id) == 36
        assert f"sm_vid={visitor_id}" in resp.headers["set-cookie"]

    async def test_visitor_id_from_cookie(self, client):
        resp = await client.post(
            f"/api/v1/sites/{SITE}/beacon/navigate",
            json={"path": "/", "clientTime": CLIENT_TIME},
            headers={"Cookie": "sm_vid=cookie-visitor"},
        )
        assert resp.json()["visitorId"] == "cookie-visitor"

    async def test_validation(self, client):
        resp = await client.post(f"/api/v1/sites/{SITE}/beacon/navigate", json={"visitorId": "v1"})
        assert resp.status_code == 422


class TestLeaveAndEventBeacons:
    async def test_single_page_leave_bounces(self, client, store):
        resp = await client.post(
            f"/api/v1/sites/{SITE}/beacon/leave",
            json={"path": "/", "pageCount": 1, "staySeconds": 9, "clientTime": CLIENT_TIME},
        )
        assert resp.status_code == 202
        assert store.snapshot(p("bounceDaily", "2026-01-15_home"))["bounces"] == 1
        assert store.snapshot(p("events", "home_stay_seconds_home"))["totalSeconds"] == 9

    async def test_multi_page_leave_does_not_bounce(self, client, store):
        resp = await client.post(
            f"/api/v1/sites/{SITE}/beacon/leave",
            json={"path": "/about", "pageCount": 3, "landingPath": "/", "clientTime": CLIENT_TIME},
        )
        assert resp.status_code == 202
        assert store.snapshot(p("bounceDaily", "2026-01-15_home")) is None

    async def test_negative_page_count_rejected(self, client):
        resp = await client.post(
            f"/api/v1/sites/{SITE}/beacon/leave", json={"path": "/", "pageCount": -1}
        )
        assert resp.status_code == 422

    async def test_event(self, client, store):
        resp = await client.post(
            f"/api/v1/sites/{SITE}/beacon/event",
            json={"name": "map_click", "label": "Access", "clientTime": CLIENT_TIME},
        )
        assert resp.status_code == 202
        assert store.snapshot(p("eventsDaily", "2026-01-15_map_click"))["count"] == 1


class TestReports:
    async def test_family_report(self, client, store):
        await log_page_view(store, SITE, "/", now=NOW)
        await log_page_view(store, SITE, "/", now=NOW + timedelta(days=1))

        resp = await client.get(
            f"/api/v1/sites/{SITE}/reports/pages", params={"start": "2026-01-15", "end": "2026-01-16"}
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["siteKey"] == SITE
        assert data["family"] == "pages"
        assert data["data"] == {"home": 2}

    async def test_daily_report_shape(self, client, store):
        await log_daily_access(store, SITE, now=NOW)
        resp = await client.get(
            f"/api/v1/sites/{SITE}/reports/daily", params={"start": "2026-01-15", "end": "2026-01-15"}
        )
        assert resp.status_code == 200
        rows = resp.json()["data"]
        assert rows[0]["id"] == "2026-01-15"
        assert rows[0]["count"] == 1

    async def test_unknown_family(self, client):
        resp = await client.get(
            f"/api/v1/sites/{SITE}/reports/nope", params={"start": "2026-01-15", "end": "2026-01-15"}
        )
        assert resp.status_code == 404

    async def test_reversed_period(self, client):
        resp = await client.get(
            f"/api/v1/sites/{SITE}/reports/pages", params={"start": "2026-01-16", "end": "2026-01-15"}
        )
        assert resp.status_code == 422

    async def test_missing_dates(self, client):
        resp = await client.get(f"/api/v1/sites/{SITE}/reports/pages")
        assert resp.status_code == 422

    async def test_store_failure_is_503(self, client):
        failing = AsyncMock(side_effect=ReportQueryError("down"))
        with patch.dict(REDUCERS, {ReportFamily.PAGES: failing}):
            resp = await client.get(
                f"/api/v1/sites/{SITE}/reports/pages",
                params={"start": "2026-01-15", "end": "2026-01-15"},
            )
        assert resp.status_code == 503

    async def test_combined_report(self, client, store):
        await log_page_view(store, SITE, "/", now=NOW)
        resp = await client.get(
            f"/api/v1/sites/{SITE}/reports", params={"start": "2026-01-15", "end": "2026-01-15"}
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["pages"] == {"home": 1}
        assert len(data["hourly"]) == 24
        assert len(data["weekday"]) == 7

    async def test_totals(self, client, store):
        await log_page_view(store, SITE, "/", now=NOW)
        resp = await client.get(f"/api/v1/sites/{SITE}/totals/pages")
        assert resp.status_code == 200
        assert resp.json()["totals"] == {"home": 1}

    async def test_totals_unknown_collection(self, client):
        resp = await client.get(f"/api/v1/sites/{SITE}/totals/visitorProfiles")
        assert resp.status_code == 404
