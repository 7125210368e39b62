"""
Interfaces between the widget runtime and the page it is embedded in.

The runtime never touches a browser directly. It talks to a ``Host`` for
document access, capabilities and events, and to a ``Renderer`` built by a
``RendererFactory`` for drawing. ``HeadlessHost`` implements the host
in-process for tests and server-side previews.
"""
from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Any, Callable, Protocol, runtime_checkable

from .dom import Document, Element
from .globe import GLOBE_GLOBAL, GlobeOptions
from .normalize import VisitorPoint


@runtime_checkable
class Renderer(Protocol):
    """A constructed globe. ``render()`` and ``dispose()`` are optional."""

    def set_points(self, points: list[VisitorPoint]) -> None: ...

    def set_rings(self, points: list[VisitorPoint]) -> None: ...


RendererFactory = Callable[[Element, GlobeOptions], Renderer]


class VisibilityObserver(Protocol):
    def disconnect(self) -> None: ...


class Host(Protocol):
    document: Document
    location_href: str
    referrer: str
    viewport_width: int
    device_pixel_ratio: float
    is_touch: bool

    def supports_webgl(self) -> bool: ...

    def observe_visibility(
        self, element: Element, callback: Callable[[bool], None], threshold: float
    ) -> VisibilityObserver | None:
        """Watch ``element`` entering the viewport; None when unsupported."""

    def is_page_visible(self) -> bool: ...

    def add_event_listener(self, event: str, handler: Callable[[], None]) -> None: ...

    def remove_event_listener(self, event: str, handler: Callable[[], None]) -> None: ...

    def send_beacon(self, url: str, body: str) -> bool:
        """Queue a best-effort POST that survives unload; False if unavailable."""

    def get_global(self, name: str) -> Any: ...

    async def load_script(self, script: Element) -> bool:
        """Wait for ``script`` to load; False on load error."""


class HeadlessObserver:
    def __init__(self, element: Element, callback: Callable[[bool], None], threshold: float):
        self.element = element
        self.callback = callback
        self.threshold = threshold
        self.connected = True

    def disconnect(self) -> None:
        self.connected = False


class HeadlessHost:
    """In-process page used to drive the widget without a browser.

    ``renderer_factory`` is what the globe library "defines" once its script
    loads; set ``script_loads=False`` to simulate a CDN failure.
    """

    def __init__(
        self,
        location_href: str = "https://example.com/",
        *,
        referrer: str = "",
        document: Document | None = None,
        viewport_width: int = 1280,
        device_pixel_ratio: float = 1.0,
        is_touch: bool = False,
        webgl: bool = True,
        intersection_observer: bool = True,
        beacon: bool = False,
        renderer_factory: RendererFactory | None = None,
        script_loads: bool = True,
    ):
        self.document = document or Document()
        self.location_href = location_href
        self.referrer = referrer
        self.viewport_width = viewport_width
        self.device_pixel_ratio = device_pixel_ratio
        self.is_touch = is_touch
        self.webgl = webgl
        self.intersection_observer = intersection_observer
        self.beacon = beacon
        self.renderer_factory = renderer_factory
        self.script_loads = script_loads

        self.page_visible = True
        self.globals: dict[str, Any] = {}
        self.listeners: dict[str, list[Callable[[], None]]] = defaultdict(list)
        self.observers: list[HeadlessObserver] = []
        self.sent_beacons: list[tuple[str, str]] = []
        self.loaded_scripts: list[Element] = []

    # -- page setup ---------------------------------------------------------

    def add_script(self, src: str | None, attributes: dict[str, str] | None = None, current: bool = True) -> Element:
        """Insert a <script> into the body, optionally as the executing script."""
        attrs = dict(attributes or {})
        if src is not None:
            attrs["src"] = src
        script = Element("script", attrs)
        parent = self.document.body or self.document.document_element
        parent.append_child(script)
        if current:
            self.document.current_script = script
        return script

    # -- Host ---------------------------------------------------------------

    def supports_webgl(self) -> bool:
        return self.webgl

    def observe_visibility(self, element, callback, threshold):
        if not self.intersection_observer:
            return None
        observer = HeadlessObserver(element, callback, threshold)
        self.observers.append(observer)
        return observer

    def is_page_visible(self) -> bool:
        return self.page_visible

    def add_event_listener(self, event, handler) -> None:
        self.listeners[event].append(handler)

    def remove_event_listener(self, event, handler) -> None:
        if handler in self.listeners[event]:
            self.listeners[event].remove(handler)

    def send_beacon(self, url: str, body: str) -> bool:
        if not self.beacon:
            return False
        self.sent_beacons.append((url, body))
        return True

    def get_global(self, name: str) -> Any:
        return self.globals.get(name)

    async def load_script(self, script: Element) -> bool:
        if script not in self.loaded_scripts:
            self.loaded_scripts.append(script)
        await asyncio.sleep(0)
        if not self.script_loads or self.renderer_factory is None:
            return False
        self.globals[GLOBE_GLOBAL] = self.renderer_factory
        return True

    # -- simulated browser events -------------------------------------------

    def set_intersecting(self, visible: bool = True) -> None:
        for observer in list(self.observers):
            if observer.connected:
                observer.callback(visible)

    def dispatch(self, event: str) -> None:
        for handler in list(self.listeners[event]):
            handler()

    def set_page_visible(self, visible: bool) -> None:
        self.page_visible = visible
        self.dispatch("visibilitychange")
