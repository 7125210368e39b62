"""
Pageview ingestion: POST /api/track.

Called by the embedded widget from arbitrary origins, once per page load.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Callable

from fastapi import APIRouter, Request

from ..config import GlobeConfig
from ..core.models import VisitorEvent
from ..core.store import StoreError, VisitorStore, month_start
from ..geoip import GeoIPResolver
from ..models import TrackResponse
from ..rate_limit import FixedWindowRateLimiter
from ._common import (
    client_ip,
    cors_headers,
    error_response,
    is_valid_page_url,
    is_valid_widget_id,
    json_response,
    preflight_response,
)

logger = logging.getLogger(__name__)

TRACK_HEADERS = cors_headers("POST, OPTIONS")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def _read_body(request: Request) -> dict:
    """The JSON body as a dict; anything else reads as empty."""
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return {}
    return body if isinstance(body, dict) else {}


def create_track_router(
    config: GlobeConfig,
    store: VisitorStore,
    geoip: GeoIPResolver,
    limiter: FixedWindowRateLimiter,
    clock: Callable[[], datetime] = _utcnow,
) -> APIRouter:
    router = APIRouter()
    monthly_limit_message = f"Monthly limit reached ({config.monthly_pageview_limit:,} pageviews)"

    @router.options("/api/track")
    async def track_preflight():
        return preflight_response(TRACK_HEADERS)

    @router.post("/api/track")
    async def track(request: Request):
        """Record one pageview for a paid widget."""
        try:
            return await _track(request)
        except Exception:
            logger.exception("[Track] Unhandled error")
            return error_response(500, "Internal server error", TRACK_HEADERS)

    async def _track(request: Request):
        ip = client_ip(request)

        if not limiter.allow(ip):
            return error_response(429, "Too many requests", TRACK_HEADERS)

        # Shape checks happen before any database access.
        body = await _read_body(request)
        widget_id = body.get("widgetId")
        page_url = body.get("pageUrl")
        referrer = body.get("referrer")

        if not is_valid_widget_id(widget_id):
            return error_response(400, "Invalid widget ID", TRACK_HEADERS)
        if not is_valid_page_url(page_url):
            return error_response(400, "Invalid page URL", TRACK_HEADERS)
        if not isinstance(referrer, str) or not referrer:
            referrer = None

        try:
            account = await store.get_account(widget_id)
        except StoreError as e:
            logger.error(f"[Track] Database error looking up widget {widget_id}: {e}")
            return error_response(500, "Database error", TRACK_HEADERS)

        if account is None:
            return error_response(404, "Widget ID not found", TRACK_HEADERS)
        if not account.paid:
            return error_response(402, "Payment required", TRACK_HEADERS)

        now = clock()
        month = month_start(now)

        try:
            reserved = await store.reserve_monthly_pageview(
                account.id, month, config.monthly_pageview_limit
            )
        except StoreError as e:
            logger.error(f"[Track] Error checking monthly limit for user {account.id}: {e}")
            return error_response(500, "Database error", TRACK_HEADERS)

        if not reserved:
            logger.info(f"[Track] Monthly limit reached for user {account.id}")
            return error_response(429, monthly_limit_message, TRACK_HEADERS)

        location = await geoip.resolve(ip)

        event = VisitorEvent(
            user_id=account.id,
            location=location,
            page_url=page_url,
            referrer=referrer,
            user_agent=request.headers.get("user-agent") or None,
            created_at=now,
        )

        try:
            await store.insert_visitor(event)
        except StoreError as e:
            logger.error(f"[Track] Error inserting visitor for user {account.id}: {e}")
            # The slot was counted up front; hand it back.
            try:
                await store.release_monthly_pageview(account.id, month)
            except StoreError as release_error:
                logger.warning(f"[Track] Error releasing pageview for user {account.id}: {release_error}")
            return error_response(500, "Failed to track visitor", TRACK_HEADERS)

        return json_response(TrackResponse(), TRACK_HEADERS)

    return router
