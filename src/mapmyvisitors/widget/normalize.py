"""
Normalize visitor records from the query API into globe points.

The widget accepts whatever the server sends: fields may be missing,
renamed, numeric or numeric strings. Each logical field is read from an
ordered list of aliases; records without usable coordinates are dropped.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Iterable

RECENT_WINDOW_MS = 5 * 60 * 1000

# Numbers below this are epoch seconds, at or above it epoch milliseconds.
SECONDS_CUTOFF = 2_000_000_000

LAT_KEYS = ("lat", "latitude")
LNG_KEYS = ("lng", "lon", "longitude")
TIMESTAMP_KEYS = ("timestamp", "ts", "created_at", "seen_at")
CITY_KEYS = ("city", "region", "location")
COUNTRY_KEYS = ("country", "country_name")


@dataclass(frozen=True)
class VisitorPoint:
    """A visitor ready to draw."""

    lat: float
    lng: float
    city: str = ""
    country: str = ""
    ts: float | None = None  # epoch milliseconds
    recent: bool = False

    @property
    def label(self) -> str:
        return ", ".join(part for part in (self.city, self.country) if part)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _finite(value: Any) -> float | None:
    # float() of a huge JSON integer raises OverflowError.
    try:
        number = float(value)
    except (ValueError, OverflowError):
        return None
    return number if math.isfinite(number) else None


def _to_float(text: str) -> float | None:
    return _finite(text.strip())


def _epoch_ms(number: float) -> float:
    if 0 < number < SECONDS_CUTOFF:
        return number * 1000
    return number


def pick_number(record: dict, keys: Iterable[str]) -> float | None:
    """First finite number (or numeric string) under ``keys``."""
    for key in keys:
        if key not in record:
            continue
        value = record[key]
        if _is_number(value):
            number = _finite(value)
            if number is not None:
                return number
            continue
        if isinstance(value, str):
            number = _to_float(value)
            if number is not None:
                return number
    return None


def pick_string(record: dict, keys: Iterable[str]) -> str:
    """First non-blank string under ``keys``, stripped; "" if none."""
    for key in keys:
        value = record.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def parse_date_string(text: str) -> float | None:
    """Epoch milliseconds for an ISO-8601 or RFC 2822 date string."""
    token = text.strip()
    if token.endswith("Z"):
        token = token[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(token)
    except ValueError:
        try:
            parsed = parsedate_to_datetime(token)
        except (TypeError, ValueError, IndexError):
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp() * 1000


def pick_timestamp(record: dict, keys: Iterable[str] = TIMESTAMP_KEYS) -> float | None:
    """First usable timestamp under ``keys`` as epoch milliseconds.

    Numbers are epoch seconds or milliseconds, told apart by magnitude.
    Strings are parsed as dates first, then as numbers.
    """
    for key in keys:
        if key not in record:
            continue
        value = record[key]
        if _is_number(value):
            number = _finite(value)
            if number is not None:
                return _epoch_ms(number)
            continue
        if isinstance(value, str) and value.strip():
            parsed = parse_date_string(value)
            if parsed is not None:
                return parsed
            number = _to_float(value)
            if number is not None:
                return _epoch_ms(number)
    return None


def normalize_visitor(record: Any, now_ms: float) -> VisitorPoint | None:
    """One raw record to a point, or None if it cannot be placed on the globe."""
    if not isinstance(record, dict):
        return None

    lat = pick_number(record, LAT_KEYS)
    lng = pick_number(record, LNG_KEYS)
    if lat is None or lng is None:
        return None
    if not (-90 <= lat <= 90 and -180 <= lng <= 180):
        return None

    ts = pick_timestamp(record)
    # Undated points never pulse.
    recent = ts is not None and now_ms - ts < RECENT_WINDOW_MS

    return VisitorPoint(
        lat=lat,
        lng=lng,
        city=pick_string(record, CITY_KEYS),
        country=pick_string(record, COUNTRY_KEYS),
        ts=ts,
        recent=recent,
    )


def normalize_visitors(records: Iterable[Any], now_ms: float, max_points: int) -> list[VisitorPoint]:
    """Normalize in server order (newest first), stopping at ``max_points``."""
    points: list[VisitorPoint] = []
    for record in records:
        point = normalize_visitor(record, now_ms)
        if point is None:
            continue
        points.append(point)
        if len(points) >= max_points:
            break
    return points


def hash_points(points: Iterable[VisitorPoint]) -> str:
    """Order-preserving fingerprint: rounded coordinates plus recency."""
    return "|".join(
        f"{round(p.lat, 3)},{round(p.lng, 3)},{1 if p.recent else 0}" for p in points
    )
