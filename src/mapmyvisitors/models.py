"""Pydantic models for the widget API wire format."""

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Snake-case fields, camelCase JSON."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> dict:
        return self.model_dump(by_alias=True)


class ErrorResponse(WireModel):
    """Error envelope shared by every endpoint."""

    success: bool = False
    error: str


class TrackResponse(WireModel):
    success: bool = True
    message: str = "Tracked"


class VisitorRecord(WireModel):
    """A visitor as the widget sees it."""

    id: int | str
    lat: float
    lng: float
    city: str | None = None
    country: str | None = None
    timestamp: str
    is_recent: bool = False


class VisitorsResponse(WireModel):
    """Response of the visitors query.

    ``show_watermark`` is the only watermark signal the widget needs; the
    server owns that decision.
    """

    success: bool = True
    paid: bool = True
    show_watermark: bool = True
    visitors: list[VisitorRecord] = []
    total_today: int = 0
    active_now: int = 0
