"""
Data models for MapMyVisitors storage rows.
"""

import re
from datetime import datetime

from pydantic import BaseModel

# Public widget token: exactly 12 of [A-Za-z0-9_-].
WIDGET_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{12}$")


def is_valid_widget_id(value) -> bool:
    return isinstance(value, str) and bool(WIDGET_ID_PATTERN.fullmatch(value))


class Account(BaseModel):
    """The slice of a customer account the widget API gates on.

    Accounts are created and updated by the signup and billing flows;
    nothing here writes them.
    """
    id: int
    widget_id: str
    paid: bool = False
    watermark_removed: bool = False

    @property
    def show_watermark(self) -> bool:
        return not self.watermark_removed


class Location(BaseModel):
    """Result of an IP geolocation lookup."""
    country: str = "Unknown"
    country_code: str = "XX"
    city: str | None = None
    latitude: float = 0.0
    longitude: float = 0.0

    @classmethod
    def unknown(cls) -> "Location":
        return cls()


class VisitorEvent(BaseModel):
    """One accepted pageview. Written once, never updated."""
    user_id: int
    location: Location
    page_url: str
    referrer: str | None = None
    user_agent: str | None = None
    created_at: datetime
