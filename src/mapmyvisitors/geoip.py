"""
IP geolocation with an in-process TTL cache.

Geolocation is enrichment, not a gate: every failure resolves to the
"Unknown" location at (0, 0) instead of raising.
"""
import ipaddress
import logging
import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable

import httpx

from .config import DEFAULT_GEOIP_URL
from .core.models import Location

logger = logging.getLogger(__name__)


def is_private_ip(ip: str) -> bool:
    """True for loopback, private and otherwise non-routable addresses.

    Unparseable strings count as private so they never reach the network.
    """
    try:
        addr = ipaddress.ip_address(ip.strip())
    except ValueError:
        return True
    return addr.is_private or addr.is_loopback or addr.is_link_local or addr.is_unspecified


@dataclass
class GeoCacheEntry:
    location: Location
    expires_at: float


class GeoIPResolver:
    """Resolve caller IPs to locations via an HTTP lookup service."""

    def __init__(
        self,
        url_template: str = DEFAULT_GEOIP_URL,
        timeout: float = 5.0,
        cache_ttl: float = 60 * 60,
        max_entries: int = 10_000,
        clock: Callable[[], float] = time.time,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url_template = url_template
        self.timeout = timeout
        self.cache_ttl = cache_ttl
        self.max_entries = max_entries
        self._clock = clock
        self._transport = transport
        self._cache: dict[str, GeoCacheEntry] = {}
        self._lock = Lock()

    async def resolve(self, ip: str) -> Location:
        if is_private_ip(ip):
            return Location.unknown()

        cached = self._get_cached(ip)
        if cached is not None:
            return cached

        try:
            location = await self._lookup(ip)
        except (httpx.HTTPError, ValueError, TypeError) as e:
            logger.error(f"[GeoIP] Lookup failed for {ip}: {e}")
            return Location.unknown()

        self._set_cached(ip, location)
        return location

    async def _lookup(self, ip: str) -> Location:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.get(self.url_template.format(ip=ip))
            response.raise_for_status()
            data = response.json()

        if not isinstance(data, dict):
            raise ValueError("lookup returned a non-object body")
        if data.get("error"):
            raise ValueError(f"lookup error: {data.get('reason', 'unknown')}")

        return Location(
            country=data.get("country_name") or "Unknown",
            country_code=data.get("country_code") or "XX",
            city=data.get("city") or None,
            latitude=float(data.get("latitude") or 0),
            longitude=float(data.get("longitude") or 0),
        )

    def _get_cached(self, ip: str) -> Location | None:
        with self._lock:
            entry = self._cache.get(ip)
            if entry is None:
                return None
            if self._clock() >= entry.expires_at:
                del self._cache[ip]
                return None
            return entry.location

    def _set_cached(self, ip: str, location: Location) -> None:
        now = self._clock()
        with self._lock:
            self._cache[ip] = GeoCacheEntry(location=location, expires_at=now + self.cache_ttl)
            if len(self._cache) > self.max_entries:
                for key in [k for k, e in self._cache.items() if now >= e.expires_at]:
                    del self._cache[key]
                overflow = len(self._cache) - self.max_entries
                for key in list(self._cache)[:max(overflow, 0)]:
                    del self._cache[key]
