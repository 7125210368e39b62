"""
Widget API routes.

Ingestion and query endpoints consumed by the embeddable widget.
"""

from datetime import datetime
from typing import Callable

from fastapi import APIRouter

from ..config import GlobeConfig
from ..core.store import VisitorStore
from ..geoip import GeoIPResolver
from ..rate_limit import FixedWindowRateLimiter
from .track import create_track_router
from .visitors import create_visitors_router

__all__ = ["create_api_router"]


def create_api_router(
    config: GlobeConfig,
    store: VisitorStore,
    geoip: GeoIPResolver,
    *,
    track_limiter: FixedWindowRateLimiter | None = None,
    visitors_limiter: FixedWindowRateLimiter | None = None,
    clock: Callable[[], datetime] | None = None,
) -> APIRouter:
    """Build the router serving /api/track and /api/visitors/{widget_id}.

    Rate limiters are created from ``config`` unless provided. Pass the same
    limiter instances when building several routers that should share counters.
    """
    if track_limiter is None:
        track_limiter = FixedWindowRateLimiter(
            max_requests=config.track_rate_limit,
            window_sec=config.rate_limit_window_seconds,
            max_entries=config.rate_limit_max_entries,
        )
    if visitors_limiter is None:
        visitors_limiter = FixedWindowRateLimiter(
            max_requests=config.visitors_rate_limit,
            window_sec=config.rate_limit_window_seconds,
            max_entries=config.rate_limit_max_entries,
        )

    clock_kwargs = {"clock": clock} if clock is not None else {}

    router = APIRouter()
    router.include_router(create_track_router(config, store, geoip, track_limiter, **clock_kwargs))
    router.include_router(create_visitors_router(config, store, visitors_limiter, **clock_kwargs))
    return router
