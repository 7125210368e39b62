"""
Embeddable visitor-globe widget.

Usage:
    from mapmyvisitors.widget import HeadlessHost, install

    host = HeadlessHost("https://example.com/", renderer_factory=my_factory)
    host.add_script("https://mapmyvisitors.com/widget.js?id=abcdEFGH1234")
    runtime = install(host)  # inside a running event loop
"""

from .build import WidgetBuild
from .host import HeadlessHost, Host, Renderer, RendererFactory
from .normalize import VisitorPoint, hash_points, normalize_visitors
from .runtime import WidgetRuntime, WidgetState, install

__all__ = [
    "install", "WidgetRuntime", "WidgetState", "WidgetBuild",
    "Host", "HeadlessHost", "Renderer", "RendererFactory",
    "VisitorPoint", "normalize_visitors", "hash_points",
]
