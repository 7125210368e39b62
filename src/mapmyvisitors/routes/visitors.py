"""
Visitor query: GET /api/visitors/{widget_id}.

Polled by the widget every few seconds to draw the globe.
"""

import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Callable

from fastapi import APIRouter, Request

from ..config import GlobeConfig
from ..core.store import StoreError, VisitorStore
from ..models import VisitorRecord, VisitorsResponse
from ..rate_limit import FixedWindowRateLimiter
from ._common import cors_headers, error_response, is_valid_widget_id, json_response, preflight_response

logger = logging.getLogger(__name__)

VISITORS_HEADERS = cors_headers("GET, OPTIONS")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_created_at(value) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    token = value.strip()
    if token.endswith("Z"):
        token = token[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(token)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _to_coordinate(value) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def to_visitor_record(row: dict, recent_cutoff: datetime) -> VisitorRecord | None:
    """Convert a visitor row; None when its coordinates are unusable."""
    lat = _to_coordinate(row.get("latitude"))
    lng = _to_coordinate(row.get("longitude"))
    if lat is None or lng is None:
        return None

    created_at = _parse_created_at(row.get("created_at"))
    return VisitorRecord(
        id=row["id"],
        lat=lat,
        lng=lng,
        city=row.get("city"),
        country=row.get("country"),
        timestamp=row.get("created_at") or "",
        is_recent=created_at is not None and created_at >= recent_cutoff,
    )


def parse_limit(raw: str | None, default: int, maximum: int) -> int | None:
    """Clamp ``raw`` into [1, maximum]; None when it is not an integer."""
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        return None
    return max(1, min(value, maximum))


def local_midnight(now: datetime, zone) -> datetime:
    """Start of ``now``'s calendar day in ``zone``."""
    local = now.astimezone(zone)
    return local.replace(hour=0, minute=0, second=0, microsecond=0)


def create_visitors_router(
    config: GlobeConfig,
    store: VisitorStore,
    limiter: FixedWindowRateLimiter,
    clock: Callable[[], datetime] = _utcnow,
) -> APIRouter:
    router = APIRouter()
    success_headers = {
        **VISITORS_HEADERS,
        "Cache-Control": f"public, max-age={config.cache_max_age_seconds}",
    }

    @router.options("/api/visitors/{widget_id}")
    async def visitors_preflight(widget_id: str):
        return preflight_response(VISITORS_HEADERS)

    @router.get("/api/visitors/{widget_id}")
    async def get_visitors(widget_id: str, request: Request):
        """Recent visitors plus today/active-now counts for a paid widget."""
        try:
            return await _get_visitors(widget_id, request)
        except Exception:
            logger.exception("[Visitors] Unhandled error")
            return error_response(500, "Internal server error", VISITORS_HEADERS)

    async def _get_visitors(widget_id: str, request: Request):
        if not limiter.allow(widget_id):
            return error_response(429, "Too many requests", VISITORS_HEADERS)

        if not is_valid_widget_id(widget_id):
            return error_response(400, "Invalid widget ID", VISITORS_HEADERS)

        limit = parse_limit(
            request.query_params.get("limit"),
            default=config.visitors_default_limit,
            maximum=config.visitors_max_limit,
        )
        if limit is None:
            return error_response(400, "Invalid limit", VISITORS_HEADERS)

        try:
            account = await store.get_account(widget_id)
        except StoreError as e:
            logger.error(f"[Visitors] Database error looking up widget {widget_id}: {e}")
            return error_response(500, "Database error", VISITORS_HEADERS)

        if account is None:
            return error_response(404, "Widget ID not found", VISITORS_HEADERS)
        if not account.paid:
            return error_response(402, "Payment required", VISITORS_HEADERS)

        now = clock()
        recent_cutoff = now - timedelta(minutes=config.recent_window_minutes)
        today_start = local_midnight(now, config.zone)

        # The counts are separate queries so the display cap never skews them.
        try:
            rows = await store.get_recent_visitors(account.id, limit)
            total_today = await store.count_visitors_since(account.id, today_start)
            active_now = await store.count_visitors_since(account.id, recent_cutoff)
        except StoreError as e:
            logger.error(f"[Visitors] Error fetching visitors for user {account.id}: {e}")
            return error_response(500, "Failed to fetch visitors", VISITORS_HEADERS)

        visitors = []
        for row in rows:
            record = to_visitor_record(row, recent_cutoff)
            if record is not None:
                visitors.append(record)

        body = VisitorsResponse(
            paid=True,
            show_watermark=account.show_watermark,
            visitors=visitors,
            total_today=total_today,
            active_now=active_now,
        )
        return json_response(body, success_headers)

    return router
