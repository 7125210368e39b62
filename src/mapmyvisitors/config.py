"""
Configuration for MapMyVisitors.
"""
import logging
import os
from dataclasses import dataclass
from urllib.parse import urlparse
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_APP_URL = "https://mapmyvisitors.com"
DEFAULT_GEOIP_URL = "https://ipapi.co/{ip}/json/"

ENV_PREFIX = "MAPMYVISITORS_"


class ConfigError(ValueError):
    """Raised when a configuration value is invalid."""
    pass


@dataclass
class GlobeConfig:
    """Configuration for a MapMyVisitors deployment."""

    # Public base URL baked into widget builds
    app_url: str = DEFAULT_APP_URL

    # Cloudflare D1 (all three required to use D1)
    d1_database_id: str | None = None
    cf_account_id: str | None = None
    cf_api_token: str | None = None

    # Local SQLite fallback
    sqlite_path: str = "mapmyvisitors.sqlite3"

    # Zone whose local midnight starts "today"
    timezone: str = "UTC"

    # Billing plan
    monthly_pageview_limit: int = 10_000

    # Abuse damping (fixed window, per process)
    track_rate_limit: int = 10  # per IP
    visitors_rate_limit: int = 100  # per widget
    rate_limit_window_seconds: int = 60
    rate_limit_max_entries: int = 10_000

    # Geolocation
    geoip_url: str = DEFAULT_GEOIP_URL
    geoip_timeout_seconds: float = 5.0
    geoip_cache_ttl_seconds: int = 60 * 60

    # Query endpoint
    visitors_default_limit: int = 50
    visitors_max_limit: int = 100
    recent_window_minutes: int = 5
    cache_max_age_seconds: int = 10

    @property
    def has_d1(self) -> bool:
        """Check if D1 credentials are fully configured."""
        return bool(self.d1_database_id and self.cf_account_id and self.cf_api_token)

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def __post_init__(self):
        """Validate configuration after initialization."""
        self.app_url = self.app_url.rstrip("/")
        self._validate_app_url()
        self._validate_timezone()
        self._validate_limits()

        if not self.has_d1 and any((self.d1_database_id, self.cf_account_id, self.cf_api_token)):
            logger.warning(
                "Partial D1 credentials configured; falling back to SQLite at "
                f"{self.sqlite_path}"
            )

    def _validate_app_url(self) -> None:
        parsed = urlparse(self.app_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ConfigError(f"app_url must be an absolute http(s) URL, got {self.app_url!r}")

    def _validate_timezone(self) -> None:
        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ConfigError(f"Unknown timezone {self.timezone!r}") from e

    def _validate_limits(self) -> None:
        positive = (
            "monthly_pageview_limit",
            "track_rate_limit",
            "visitors_rate_limit",
            "rate_limit_window_seconds",
            "rate_limit_max_entries",
            "geoip_cache_ttl_seconds",
            "visitors_default_limit",
            "visitors_max_limit",
            "recent_window_minutes",
        )
        for name in positive:
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive, got {getattr(self, name)}")

        if self.geoip_timeout_seconds <= 0:
            raise ConfigError("geoip_timeout_seconds must be positive")
        if self.cache_max_age_seconds < 0:
            raise ConfigError("cache_max_age_seconds must not be negative")
        if self.visitors_default_limit > self.visitors_max_limit:
            raise ConfigError(
                f"visitors_default_limit ({self.visitors_default_limit}) exceeds "
                f"visitors_max_limit ({self.visitors_max_limit})"
            )

    @classmethod
    def from_env(cls, environ: dict | None = None, **overrides) -> "GlobeConfig":
        """Build a config from ``MAPMYVISITORS_*`` environment variables.

        Explicit keyword overrides win over the environment.
        """
        env = os.environ if environ is None else environ

        def read(name: str) -> str | None:
            value = env.get(ENV_PREFIX + name)
            return value.strip() if value and value.strip() else None

        values = {
            "app_url": read("APP_URL"),
            "d1_database_id": read("D1_DATABASE_ID"),
            "cf_account_id": read("CF_ACCOUNT_ID"),
            "cf_api_token": read("CF_API_TOKEN"),
            "sqlite_path": read("SQLITE_PATH"),
            "timezone": read("TIMEZONE"),
        }
        kwargs = {k: v for k, v in values.items() if v is not None}
        kwargs.update(overrides)
        return cls(**kwargs)
