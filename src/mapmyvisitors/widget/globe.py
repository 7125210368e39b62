"""
Globe appearance and point encodings handed to the renderer.
"""
import html
from dataclasses import dataclass, field
from typing import Callable

from .normalize import VisitorPoint

GLOBE_LIBRARY_URL = "https://unpkg.com/globe.gl@2.27.2"
GLOBE_GLOBAL = "Globe"
GLOBE_SCRIPT_MARKER = "data-mmv-globe"

EARTH_TEXTURE = "https://unpkg.com/three-globe@2.27.5/example/img/earth-blue-marble.jpg"
BUMP_TEXTURE = "https://unpkg.com/three-globe@2.27.5/example/img/earth-topology.png"
BACKGROUND_TEXTURE = "https://unpkg.com/three-globe@2.27.5/example/img/night-sky.png"

ACCENT_COLOR = "#3b82f6"
MUTED_COLOR = "#6b7280"

# GPU load caps
TOUCH_PIXEL_RATIO_CAP = 2.0
DESKTOP_PIXEL_RATIO_CAP = 2.5


def point_radius(point: VisitorPoint) -> float:
    return 0.4 if point.recent else 0.2


def point_altitude(point: VisitorPoint) -> float:
    return 0.02 if point.recent else 0.01


def point_color(point: VisitorPoint) -> str:
    return ACCENT_COLOR if point.recent else MUTED_COLOR


def ring_color(t: float) -> str:
    """Ring colour at propagation progress ``t`` in [0, 1]; fades out as it grows."""
    alpha = max(0.0, 1.0 - t)
    return f"rgba(59,130,246,{0.65 * alpha:.3f})"


def point_label(point: VisitorPoint) -> str:
    """Tooltip HTML; city and country come from the server and are escaped."""
    label = point.label
    if not label:
        return ""
    return (
        '<div style="font-family:-apple-system,BlinkMacSystemFont,Segoe UI,Roboto,'
        'Helvetica,Arial,sans-serif;font-size:12px;padding:4px 6px">'
        f"{html.escape(label, quote=True)}</div>"
    )


def pixel_ratio(is_touch: bool, device_pixel_ratio: float | None) -> float:
    cap = TOUCH_PIXEL_RATIO_CAP if is_touch else DESKTOP_PIXEL_RATIO_CAP
    return min(cap, device_pixel_ratio or 1.0)


@dataclass(frozen=True)
class GlobeOptions:
    """Everything a renderer needs to draw the visitor globe."""

    pixel_ratio: float = 1.0

    globe_image_url: str = EARTH_TEXTURE
    bump_image_url: str = BUMP_TEXTURE
    background_image_url: str = BACKGROUND_TEXTURE
    atmosphere_color: str = ACCENT_COLOR
    atmosphere_altitude: float = 0.25
    show_atmosphere: bool = True

    # Camera
    auto_rotate: bool = True
    auto_rotate_speed: float = 0.5
    enable_damping: bool = True
    damping_factor: float = 0.08

    # Points
    points_merge: bool = True
    points_transition_ms: int = 600
    point_radius: Callable[[VisitorPoint], float] = field(default=point_radius)
    point_altitude: Callable[[VisitorPoint], float] = field(default=point_altitude)
    point_color: Callable[[VisitorPoint], str] = field(default=point_color)
    point_label: Callable[[VisitorPoint], str] = field(default=point_label)

    # Rings (recent points only)
    ring_color: Callable[[float], str] = field(default=ring_color)
    ring_max_radius: float = 2.0
    ring_propagation_speed: float = 1.2
    ring_repeat_period_ms: int = 1800


def build_globe_options(is_touch: bool, device_pixel_ratio: float | None) -> GlobeOptions:
    return GlobeOptions(pixel_ratio=pixel_ratio(is_touch, device_pixel_ratio))
