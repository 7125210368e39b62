"""
Embeddable visitor globe for any website.

Usage:
    from mapmyvisitors import setup_visitor_globe

    globe = setup_visitor_globe(
        app_url="https://mapmyvisitors.com",
        d1_database_id="your-d1-id",
        cf_account_id="your-account-id",
        cf_api_token="your-api-token",
    )

    # Serve /api/track and /api/visitors/{widget_id}
    app.include_router(globe.router)

    # For the customer's page: {{ globe.embed_snippet(widget_id) }}
"""

from .config import GlobeConfig
from .core.store import VisitorStore, create_store
from .geoip import GeoIPResolver
from .models import VisitorRecord, VisitorsResponse
from .routes import create_api_router
from .widget.build import WidgetBuild

__version__ = "0.1.0"
__all__ = [
    "setup_visitor_globe", "VisitorGlobe", "GlobeConfig",
    "VisitorStore", "GeoIPResolver", "VisitorRecord", "VisitorsResponse",
]


class VisitorGlobe:
    """Server-side wiring for one deployment."""

    def __init__(
        self,
        config: GlobeConfig,
        store: VisitorStore | None = None,
        geoip: GeoIPResolver | None = None,
    ):
        self.config = config
        self.store = store or create_store(config)
        self.geoip = geoip or GeoIPResolver(
            url_template=config.geoip_url,
            timeout=config.geoip_timeout_seconds,
            cache_ttl=config.geoip_cache_ttl_seconds,
        )
        self.build = WidgetBuild(api_base=config.app_url)
        self.router = create_api_router(config, self.store, self.geoip)

    def embed_snippet(self, widget_id: str) -> str:
        """The <script> tag a customer pastes into their site."""
        return self.build.embed_snippet(widget_id)


def setup_visitor_globe(
    config: GlobeConfig | None = None,
    *,
    store: VisitorStore | None = None,
    geoip: GeoIPResolver | None = None,
    **config_kwargs,
) -> VisitorGlobe:
    """
    Set up the widget API for a deployment.

    Args:
        config: A ready GlobeConfig. When omitted, one is built from
                ``config_kwargs`` (e.g. app_url, d1_database_id, timezone).
        store: Storage override; defaults to D1 when configured, else SQLite.
        geoip: Geolocation override.

    Returns:
        VisitorGlobe with router and embed_snippet()
    """
    if config is None:
        config = GlobeConfig(**config_kwargs)
    elif config_kwargs:
        raise TypeError("Pass either config or config keyword arguments, not both")
    return VisitorGlobe(config, store=store, geoip=geoip)
