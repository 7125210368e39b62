"""
Storage for accounts, visitor events and monthly pageview counters.

The default backend is Cloudflare D1 over its HTTP API. D1 speaks SQLite,
so the same SQL also runs against a local sqlite3 database for development
and tests.
"""
import logging
import sqlite3
from datetime import date, datetime, timezone
from threading import Lock
from typing import Optional

import httpx

from ..config import GlobeConfig
from .models import Account, VisitorEvent

logger = logging.getLogger(__name__)


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        widget_id TEXT NOT NULL UNIQUE,
        email TEXT,
        paid INTEGER NOT NULL DEFAULT 0,
        watermark_removed INTEGER NOT NULL DEFAULT 0,
        created_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS visitors (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        country TEXT,
        country_code TEXT,
        city TEXT,
        latitude REAL,
        longitude REAL,
        page_url TEXT NOT NULL,
        referrer TEXT,
        user_agent TEXT,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_visitors_user_created ON visitors (user_id, created_at)",
    """
    CREATE TABLE IF NOT EXISTS monthly_pageviews (
        user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        month TEXT NOT NULL,
        pageview_count INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (user_id, month)
    )
    """,
]


class StoreError(Exception):
    """Raised when the storage backend fails."""
    pass


def format_timestamp(value: datetime) -> str:
    """UTC ISO-8601 with fixed millisecond precision, so text order is time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds")


def month_start(now: datetime) -> date:
    """First day of the UTC calendar month containing ``now``."""
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    return date(now.year, now.month, 1)


class VisitorStore:
    """Visitor storage backed by Cloudflare D1."""

    def __init__(
        self,
        d1_database_id: str,
        cf_account_id: str,
        cf_api_token: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.database_id = d1_database_id
        self.account_id = cf_account_id
        self.api_token = cf_api_token
        self.timeout = timeout
        self.transport = transport
        self.base_url = f"https://api.cloudflare.com/client/v4/accounts/{cf_account_id}/d1/database/{d1_database_id}"

    async def _query(self, sql: str, params: Optional[list] = None) -> list[dict]:
        """Execute a SQL query against D1."""
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    f"{self.base_url}/query",
                    headers={
                        "Authorization": f"Bearer {self.api_token}",
                        "Content-Type": "application/json",
                    },
                    json={"sql": sql, "params": params or []},
                )
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise StoreError(f"D1 request failed: {e}") from e

        if not isinstance(data, dict):
            raise StoreError("D1 returned a non-object response")
        if not data.get("success"):
            raise StoreError(f"D1 query failed: {data.get('errors')}")

        results = data.get("result", [])
        if results and len(results) > 0:
            return results[0].get("results", []) or []
        return []

    async def _execute(self, sql: str, params: Optional[list] = None) -> None:
        """Execute a SQL statement without returning results."""
        await self._query(sql, params)

    async def init_schema(self) -> None:
        """Create tables and indexes if they do not exist."""
        for statement in SCHEMA:
            await self._execute(statement)

    # =========================================================================
    # ACCOUNTS
    # =========================================================================

    async def get_account(self, widget_id: str) -> Account | None:
        """Look up the account owning ``widget_id``."""
        rows = await self._query(
            "SELECT id, widget_id, paid, watermark_removed FROM users WHERE widget_id = ? LIMIT 1",
            [widget_id],
        )
        if not rows:
            return None
        return Account(**rows[0])

    # =========================================================================
    # MONTHLY PAGEVIEWS
    # =========================================================================

    async def get_monthly_pageviews(self, user_id: int, month: date) -> int:
        """Pageviews counted for ``user_id`` in the month starting ``month``."""
        rows = await self._query(
            "SELECT pageview_count FROM monthly_pageviews WHERE user_id = ? AND month = ?",
            [user_id, month.isoformat()],
        )
        if not rows:
            return 0
        return rows[0].get("pageview_count") or 0

    async def reserve_monthly_pageview(self, user_id: int, month: date, limit: int) -> bool:
        """Count one pageview unless the month already holds ``limit``.

        Check and increment are one conditional upsert, so concurrent
        requests can neither lose an increment nor push the count past
        ``limit``. The row is created on the first event of the month.
        Returns False when the cap is reached.
        """
        rows = await self._query(
            """
            INSERT INTO monthly_pageviews (user_id, month, pageview_count)
            VALUES (?, ?, 1)
            ON CONFLICT (user_id, month)
            DO UPDATE SET pageview_count = pageview_count + 1
            WHERE pageview_count < ?
            RETURNING pageview_count
            """,
            [user_id, month.isoformat(), limit],
        )
        return bool(rows)

    async def release_monthly_pageview(self, user_id: int, month: date) -> None:
        """Give back a reservation whose event could not be stored."""
        await self._execute(
            """
            UPDATE monthly_pageviews
            SET pageview_count = pageview_count - 1
            WHERE user_id = ? AND month = ? AND pageview_count > 0
            """,
            [user_id, month.isoformat()],
        )

    # =========================================================================
    # VISITORS
    # =========================================================================

    async def insert_visitor(self, event: VisitorEvent) -> None:
        """Record one visitor event."""
        loc = event.location
        await self._execute(
            """
            INSERT INTO visitors (
                user_id, country, country_code, city, latitude, longitude,
                page_url, referrer, user_agent, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                event.user_id,
                loc.country,
                loc.country_code,
                loc.city,
                loc.latitude,
                loc.longitude,
                event.page_url,
                event.referrer,
                event.user_agent,
                format_timestamp(event.created_at),
            ],
        )

    async def get_recent_visitors(self, user_id: int, limit: int) -> list[dict]:
        """Newest ``limit`` visitor rows for ``user_id``."""
        return await self._query(
            """
            SELECT id, latitude, longitude, city, country, created_at
            FROM visitors
            WHERE user_id = ?
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            [user_id, limit],
        )

    async def count_visitors_since(self, user_id: int, since: datetime) -> int:
        """Exact number of visitor rows for ``user_id`` at or after ``since``."""
        rows = await self._query(
            "SELECT COUNT(*) AS count FROM visitors WHERE user_id = ? AND created_at >= ?",
            [user_id, format_timestamp(since)],
        )
        return rows[0]["count"] if rows else 0


class SQLiteVisitorStore(VisitorStore):
    """Visitor storage in a local SQLite database.

    Runs the same SQL as the D1 store. Statements are serialized with a
    lock so one connection can be shared across threads.
    """

    def __init__(self, path: str = ":memory:"):
        self.path = path
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._lock = Lock()

    async def _query(self, sql: str, params: Optional[list] = None) -> list[dict]:
        try:
            with self._lock:
                cursor = self._conn.execute(sql, params or [])
                rows = [dict(row) for row in cursor.fetchall()]
                self._conn.commit()
        except sqlite3.Error as e:
            raise StoreError(f"SQLite query failed: {e}") from e
        return rows

    def close(self) -> None:
        with self._lock:
            self._conn.close()


def create_store(config: GlobeConfig) -> VisitorStore:
    """Pick the D1 store when credentials are configured, else local SQLite."""
    if config.has_d1:
        return VisitorStore(
            d1_database_id=config.d1_database_id,
            cf_account_id=config.cf_account_id,
            cf_api_token=config.cf_api_token,
        )
    logger.info(f"D1 not configured; using SQLite store at {config.sqlite_path}")
    return SQLiteVisitorStore(config.sqlite_path)
