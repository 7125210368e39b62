"""Shared fixtures: an API app over an in-memory SQLite store."""

import asyncio
from datetime import datetime, timezone

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from mapmyvisitors.config import GlobeConfig
from mapmyvisitors.core.models import Location, VisitorEvent
from mapmyvisitors.core.store import SQLiteVisitorStore, month_start
from mapmyvisitors.geoip import GeoIPResolver
from mapmyvisitors.routes import create_api_router

NOW = datetime(2026, 3, 15, 12, 0, 0, tzinfo=timezone.utc)
WIDGET_ID = "abcdEFGH1234"

GEO_PAYLOAD = {
    "country_name": "Japan",
    "country_code": "JP",
    "city": "Tokyo",
    "latitude": 35.68,
    "longitude": 139.69,
}


class ApiHarness:
    """A router wired to a real SQLite store, fake geolocation and a fixed clock."""

    def __init__(self, config: GlobeConfig | None = None, store: SQLiteVisitorStore | None = None):
        self.config = config or GlobeConfig(sqlite_path=":memory:")
        self.store = store or SQLiteVisitorStore(":memory:")
        asyncio.run(self.store.init_schema())
        self.geo_requests: list[httpx.Request] = []
        self.geoip = GeoIPResolver(transport=httpx.MockTransport(self._geo_handler))
        self.now = NOW

        self.app = FastAPI()
        self.app.include_router(
            create_api_router(self.config, self.store, self.geoip, clock=lambda: self.now)
        )
        self.client = TestClient(self.app)

    def _geo_handler(self, request: httpx.Request) -> httpx.Response:
        self.geo_requests.append(request)
        return httpx.Response(200, json=GEO_PAYLOAD)

    def run(self, coro):
        return asyncio.run(coro)

    def sql(self, statement: str, params: list | None = None) -> list[dict]:
        return self.run(self.store._query(statement, params))

    def add_account(self, widget_id: str = WIDGET_ID, paid: bool = True, watermark_removed: bool = False) -> int:
        self.sql(
            "INSERT INTO users (widget_id, paid, watermark_removed) VALUES (?, ?, ?)",
            [widget_id, int(paid), int(watermark_removed)],
        )
        return self.sql("SELECT id FROM users WHERE widget_id = ?", [widget_id])[0]["id"]

    def set_paid(self, widget_id: str = WIDGET_ID, paid: bool = True) -> None:
        self.sql("UPDATE users SET paid = ? WHERE widget_id = ?", [int(paid), widget_id])

    def set_monthly_count(self, user_id: int, count: int) -> None:
        self.sql(
            "INSERT INTO monthly_pageviews (user_id, month, pageview_count) VALUES (?, ?, ?)",
            [user_id, month_start(self.now).isoformat(), count],
        )

    def monthly_count(self, user_id: int) -> int:
        return self.run(self.store.get_monthly_pageviews(user_id, month_start(self.now)))

    def visitor_rows(self, user_id: int) -> list[dict]:
        return self.sql("SELECT * FROM visitors WHERE user_id = ? ORDER BY id", [user_id])

    def add_visitor(self, user_id: int, created_at: datetime, lat=35.0, lng=139.0, city="Tokyo") -> None:
        self.run(self.store.insert_visitor(VisitorEvent(
            user_id=user_id,
            location=Location(country="Japan", country_code="JP", city=city, latitude=lat, longitude=lng),
            page_url="https://customer.example/",
            created_at=created_at,
        )))


@pytest.fixture
def api():
    harness = ApiHarness()
    yield harness
    harness.store.close()


@pytest.fixture
def make_api():
    """Factory for harnesses with a custom config or store."""
    created = []

    def factory(**kwargs) -> ApiHarness:
        harness = ApiHarness(**kwargs)
        created.append(harness)
        return harness

    yield factory
    for harness in created:
        harness.store.close()
