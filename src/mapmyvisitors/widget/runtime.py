"""
The embeddable visitor-globe widget runtime.

One ``WidgetRuntime`` per page load. It configures itself from its own
<script> tag, reports the pageview, builds its container, waits until the
container is on screen, loads the globe library, then polls the visitors
API and redraws when the data changes.

Cardinal rule: nothing escapes into the host page. Every failure becomes a
status or error overlay, or a logged no-op.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable
from urllib.parse import parse_qs, quote, urljoin, urlsplit

import httpx

from ..core.models import is_valid_widget_id
from .build import SCRIPT_FILENAMES, WidgetBuild
from .dom import Document, Element
from .globe import GLOBE_GLOBAL, GLOBE_LIBRARY_URL, GLOBE_SCRIPT_MARKER, build_globe_options
from .host import Host, RendererFactory
from .normalize import VisitorPoint, hash_points, normalize_visitors

logger = logging.getLogger(__name__)

CONTAINER_ID = "mapmyvisitors-widget"
WIDGET_ID_ATTR = "data-mapmyvisitors-id"
MOUNT_ATTR = "data-mmv-mount"
STATUS_ATTR = "data-mmv-status"
ERROR_ATTR = "data-mmv-error"
WATERMARK_ATTR = "data-mmv-watermark"

POLL_INTERVAL_SECONDS = 10.0
TRACK_RETRY_DELAY_SECONDS = 2.0
RESIZE_DEBOUNCE_SECONDS = 0.2
VISIBILITY_THRESHOLD = 0.1
MAX_POINTS_DESKTOP = 50
MAX_POINTS_TOUCH = 30

UNLOAD_EVENTS = ("beforeunload", "pagehide")

WEBGL_UNSUPPORTED_MESSAGE = "Your browser doesn't support 3D (WebGL required)."
LIBRARY_FAILED_MESSAGE = "Failed to load 3D library."

FONT_STACK = "-apple-system, BlinkMacSystemFont, Segoe UI, Roboto, Helvetica, Arial, sans-serif"

WATERMARK_HTML = (
    'Powered by <a href="https://mapmyvisitors.com" target="_blank" '
    'rel="noopener noreferrer" style="color:#3b82f6;text-decoration:none">MapMyVisitors</a>'
)

CONTAINER_STYLE = {
    "width": "100%",
    "max-width": "600px",
    "height": "600px",
    "position": "relative",
    "margin": "20px auto",
    "border-radius": "16px",
    "overflow": "hidden",
    "background": "radial-gradient(ellipse at 30% 20%, rgba(59,130,246,0.18), rgba(0,0,0,0.0) 55%), #0b1220",
    "box-shadow": "0 18px 50px rgba(0,0,0,0.25)",
}

STATUS_STYLE = {
    "position": "absolute",
    "left": "12px",
    "top": "12px",
    "padding": "8px 10px",
    "font-size": "12px",
    "font-family": FONT_STACK,
    "color": "rgba(255,255,255,0.92)",
    "background": "rgba(0,0,0,0.35)",
    "border": "1px solid rgba(255,255,255,0.10)",
    "border-radius": "10px",
    "z-index": "50",
    "pointer-events": "none",
}

ERROR_STYLE = {
    "position": "absolute",
    "inset": "0",
    "display": "flex",
    "align-items": "center",
    "justify-content": "center",
    "padding": "24px",
    "text-align": "center",
    "font-size": "13px",
    "font-family": FONT_STACK,
    "color": "rgba(255,255,255,0.9)",
    "background": "rgba(11,18,32,0.96)",
    "z-index": "60",
}

WATERMARK_STYLE = {
    "position": "absolute",
    "bottom": "10px",
    "right": "10px",
    "font-size": "11px",
    "font-family": FONT_STACK,
    "color": "rgba(255,255,255,0.65)",
    "z-index": "100",
    "background": "rgba(0,0,0,0.25)",
    "border": "1px solid rgba(255,255,255,0.10)",
    "padding": "6px 8px",
    "border-radius": "999px",
}


class WidgetState(str, Enum):
    """Lifecycle of a widget instance."""

    UNCONFIGURED = "unconfigured"
    CONFIGURED = "configured"
    AWAITING_VISIBILITY = "awaiting_visibility"
    INITIALIZING = "initializing"
    ACTIVE = "active"
    DESTROYED = "destroyed"


class WidgetFetchError(Exception):
    """Non-2xx or unparseable response from the widget API."""
    pass


@dataclass
class ScriptInfo:
    script: Element
    script_src: str
    widget_id: str


# =============================================================================
# Self-configuration
# =============================================================================

def find_widget_script(document: Document) -> Element | None:
    """The executing <script>, else the last one whose src names the widget."""
    current = document.current_script
    if current is not None and current.tag == "script":
        return current

    for script in reversed(document.get_elements_by_tag_name("script")):
        src = script.get_attribute("src")
        if src and any(name in src for name in SCRIPT_FILENAMES):
            return script
    return None


def read_widget_id(script: Element) -> str | None:
    """``?id=`` from the script src, falling back to the data attribute."""
    src = script.get_attribute("src") or ""
    widget_id = None
    try:
        values = parse_qs(urlsplit(src).query).get("id")
    except ValueError:
        values = None
    if values:
        widget_id = values[0]
    if not widget_id:
        widget_id = script.get_attribute(WIDGET_ID_ATTR)
    return widget_id


def resolve_script_info(document: Document) -> ScriptInfo | None:
    script = find_widget_script(document)
    if script is None:
        logger.error("[MapMyVisitors] Script tag not found")
        return None

    widget_id = read_widget_id(script)
    if not is_valid_widget_id(widget_id):
        logger.error("[MapMyVisitors] Invalid widget ID")
        return None

    return ScriptInfo(script=script, script_src=script.get_attribute("src") or "", widget_id=widget_id)


_DEFAULT_PORTS = {"http": 80, "https": 443}


def _origin(url: str) -> tuple[str, str, int | None] | None:
    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError:
        return None
    scheme = parts.scheme.lower()
    if scheme not in _DEFAULT_PORTS or not parts.hostname:
        return None
    return scheme, parts.hostname.lower(), port or _DEFAULT_PORTS[scheme]


def resolve_api_base(script_src: str, page_href: str, default: str) -> str:
    """API base for this page load.

    A widget served from the page's own origin talks to that origin, which
    makes dev and staging deployments work. Every cross-origin embed uses
    the baked-in ``default``: a host page cannot redirect widget traffic.
    """
    if not script_src:
        return default
    try:
        resolved = urljoin(page_href, script_src)
    except ValueError:
        return default

    script_origin = _origin(resolved)
    if script_origin is None or script_origin != _origin(page_href):
        return default

    scheme, hostname, port = script_origin
    if ":" in hostname:
        hostname = f"[{hostname}]"
    if port == _DEFAULT_PORTS[scheme]:
        return f"{scheme}://{hostname}"
    return f"{scheme}://{hostname}:{port}"


# =============================================================================
# Presentation helpers
# =============================================================================

def apply_responsive_sizing(container: Element, viewport_width: int) -> None:
    """Shorter, tighter box on narrow viewports."""
    width = viewport_width or 0
    if container.client_width:
        width = min(width, container.client_width)
    width = max(0, width)
    if not width:
        return

    if width < 420:
        container.set_style(height="420px", max_width="100%", margin="12px auto", border_radius="14px")
    elif width < 520:
        container.set_style(height="520px", max_width="100%", margin="16px auto", border_radius="16px")


def should_show_watermark(data: Any) -> bool:
    """The server's ``showWatermark`` flag; shown whenever it is missing."""
    if isinstance(data, dict) and isinstance(data.get("showWatermark"), bool):
        return data["showWatermark"]
    return True


# =============================================================================
# Runtime
# =============================================================================

class WidgetRuntime:
    """A single widget instance bound to one host page."""

    def __init__(
        self,
        host: Host,
        build: WidgetBuild | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.time,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        retry_delay: float = TRACK_RETRY_DELAY_SECONDS,
    ):
        self.host = host
        self.build = build or WidgetBuild.from_env()
        self.api_base = self.build.api_base
        self.state = WidgetState.UNCONFIGURED
        self.widget_id: str | None = None
        self.container: Element | None = None
        self.renderer = None

        self._transport = transport
        self._clock = clock
        self.poll_interval = poll_interval
        self.retry_delay = retry_delay

        self._initialized = False
        self._init_task: asyncio.Task | None = None
        self._poll_task: asyncio.Task | None = None
        self._in_flight: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()
        self._observer = None
        self._last_hash: str | None = None
        self._status_el: Element | None = None
        self._watermark_el: Element | None = None
        self._resize_handle: asyncio.TimerHandle | None = None
        self._resize_handler: Callable[[], None] | None = None
        self._visibility_handler: Callable[[], None] | None = None
        self._unload_handler: Callable[[], None] | None = None

    @property
    def destroyed(self) -> bool:
        return self.state is WidgetState.DESTROYED

    @property
    def max_points(self) -> int:
        return MAX_POINTS_TOUCH if self.host.is_touch else MAX_POINTS_DESKTOP

    @property
    def ready(self) -> asyncio.Task | None:
        """The initialization task, once visibility has triggered it."""
        return self._init_task

    # -- installation ---------------------------------------------------------

    def install(self) -> bool:
        """Configure and start the widget. Never raises; False if it gave up."""
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.error("[MapMyVisitors] install() needs a running event loop")
            return False

        try:
            info = resolve_script_info(self.host.document)
            if info is None:
                return False

            self.widget_id = info.widget_id
            self.api_base = resolve_api_base(info.script_src, self.host.location_href, self.build.api_base)
            self.state = WidgetState.CONFIGURED

            self.track_pageview()

            self.container = self._setup_container()
            if self.container is None:
                logger.error("[MapMyVisitors] Failed to setup container")
                return False

            self._set_status("Loading globe…")
            self.state = WidgetState.AWAITING_VISIBILITY
            self._init_when_visible()
            self._attach_lifecycle_handlers()
            return True
        except Exception as e:
            logger.error(f"[MapMyVisitors] Widget error: {e}")
            return False

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # -- pageview -------------------------------------------------------------

    def track_pageview(self) -> asyncio.Task | None:
        """Report this page load without blocking anything else.

        A beacon is preferred because it survives unload. Without one, a
        POST is sent in the background and retried once.
        """
        payload = {
            "widgetId": self.widget_id,
            "pageUrl": self.host.location_href,
            "referrer": self.host.referrer or None,
        }
        url = f"{self.api_base}/api/track"

        try:
            if self.host.send_beacon(url, json.dumps(payload)):
                return None
        except Exception as e:
            logger.debug(f"[MapMyVisitors] Beacon unavailable: {e}")

        return self._spawn(self._send_pageview(url, payload))

    async def _send_pageview(self, url: str, payload: dict) -> None:
        try:
            await self._fetch_json("POST", url, json=payload)
            return
        except (httpx.HTTPError, WidgetFetchError) as e:
            logger.warning(f"[MapMyVisitors] Track failed: {e}")

        await asyncio.sleep(self.retry_delay)
        try:
            await self._fetch_json("POST", url, json=payload)
        except (httpx.HTTPError, WidgetFetchError) as e:
            logger.debug(f"[MapMyVisitors] Track retry failed: {e}")

    async def _fetch_json(self, method: str, url: str, **kwargs) -> Any:
        async with httpx.AsyncClient(transport=self._transport) as client:
            response = await client.request(method, url, **kwargs)

        if not response.is_success:
            raise WidgetFetchError(f"http_{response.status_code}")
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise WidgetFetchError("json_parse_error") from e

    # -- container and overlays -------------------------------------------------

    def _setup_container(self) -> Element | None:
        try:
            document = self.host.document
            container = document.get_element_by_id(CONTAINER_ID)
            if container is None:
                container = document.create_element("div")
                container.id = CONTAINER_ID
                container.set_style(**CONTAINER_STYLE)
                parent = document.body or document.document_element
                if parent is None:
                    return None
                parent.append_child(container)

            # The renderer only ever touches this inner element.
            if container.query(MOUNT_ATTR) is None:
                mount = document.create_element("div")
                mount.set_attribute(MOUNT_ATTR, "1")
                mount.set_style(position="absolute", inset="0")
                container.append_child(mount)

            apply_responsive_sizing(container, self.host.viewport_width)
            return container
        except Exception as e:
            logger.error(f"[MapMyVisitors] Container setup failed: {e}")
            return None

    def _set_status(self, text: str) -> None:
        try:
            if self.container is None:
                return
            el = self.container.query(STATUS_ATTR)
            if el is None:
                el = self.host.document.create_element("div")
                el.set_attribute(STATUS_ATTR, "1")
                el.set_style(**STATUS_STYLE)
                self.container.append_child(el)
            el.text = text
            self._status_el = el
        except Exception as e:
            logger.debug(f"[MapMyVisitors] Status overlay failed: {e}")

    def _clear_status(self) -> None:
        try:
            if self._status_el is not None:
                self._status_el.remove()
        except Exception as e:
            logger.debug(f"[MapMyVisitors] Clearing status failed: {e}")
        finally:
            self._status_el = None

    def _show_error(self, message: str) -> None:
        try:
            self._clear_status()
            if self.container is None:
                return
            el = self.container.query(ERROR_ATTR)
            if el is None:
                el = self.host.document.create_element("div")
                el.set_attribute(ERROR_ATTR, "1")
                el.set_style(**ERROR_STYLE)
                self.container.append_child(el)
            el.text = message
        except Exception as e:
            logger.debug(f"[MapMyVisitors] Error overlay failed: {e}")

    def _apply_watermark(self, show: bool) -> None:
        try:
            if not show:
                if self._watermark_el is not None:
                    self._watermark_el.remove()
                self._watermark_el = None
                return

            if self._watermark_el is not None and self._watermark_el.parent is not None:
                return
            if self.container is None:
                return

            badge = self.host.document.create_element("div")
            badge.set_attribute(WATERMARK_ATTR, "1")
            badge.set_style(**WATERMARK_STYLE)
            badge.inner_html = WATERMARK_HTML
            self.container.append_child(badge)
            self._watermark_el = badge
        except Exception as e:
            logger.debug(f"[MapMyVisitors] Watermark update failed: {e}")

    # -- deferred initialization ---------------------------------------------------

    def _init_when_visible(self) -> None:
        observer = None
        try:
            observer = self.host.observe_visibility(self.container, self._on_intersection, VISIBILITY_THRESHOLD)
        except Exception as e:
            logger.debug(f"[MapMyVisitors] Visibility observer unavailable: {e}")

        if observer is not None:
            self._observer = observer
            return

        # No observer: start on the next loop iteration instead of inline.
        asyncio.get_running_loop().call_soon(self._start_init)

    def _on_intersection(self, is_intersecting: bool) -> None:
        if not is_intersecting:
            return
        self._disconnect_observer()
        self._start_init()

    def _disconnect_observer(self) -> None:
        if self._observer is None:
            return
        try:
            self._observer.disconnect()
        except Exception as e:
            logger.debug(f"[MapMyVisitors] Observer disconnect failed: {e}")
        self._observer = None

    def _start_init(self) -> None:
        if self.destroyed or self._initialized:
            return
        self._initialized = True
        self.state = WidgetState.INITIALIZING
        self._init_task = self._spawn(self._initialize())

    async def _initialize(self) -> None:
        try:
            if not self.host.supports_webgl():
                self._show_error(WEBGL_UNSUPPORTED_MESSAGE)
                return

            self._set_status("Loading 3D…")
            factory = await self._acquire_renderer()
            if self.destroyed:
                return
            if factory is None:
                self._show_error(LIBRARY_FAILED_MESSAGE)
                return

            if not self._create_globe(factory):
                return

            self.state = WidgetState.ACTIVE
            self.refresh(initial=True)
            self._start_polling()
        except Exception as e:
            logger.error(f"[MapMyVisitors] Init failed: {e}")
            self._show_error("Failed to initialize widget.")

    async def _acquire_renderer(self) -> RendererFactory | None:
        """The globe library's factory, injecting its script tag at most once."""
        factory = self.host.get_global(GLOBE_GLOBAL)
        if factory is not None:
            return factory

        document = self.host.document
        script = document.head.query(GLOBE_SCRIPT_MARKER)
        if script is None:
            script = document.create_element("script")
            script.set_attribute(GLOBE_SCRIPT_MARKER, "1")
            script.set_attribute("async", "")
            script.set_attribute("src", GLOBE_LIBRARY_URL)
            document.head.append_child(script)

        if not await self.host.load_script(script):
            logger.error("[MapMyVisitors] Failed to load globe.gl")
            return None
        return self.host.get_global(GLOBE_GLOBAL)

    def _create_globe(self, factory: RendererFactory) -> bool:
        if self.container is None:
            return False
        mount = self.container.query(MOUNT_ATTR)
        if mount is None:
            self._show_error("Widget mount not found.")
            return False
        mount.clear_children()

        try:
            options = build_globe_options(self.host.is_touch, self.host.device_pixel_ratio)
            self.renderer = factory(mount, options)
        except Exception as e:
            logger.error(f"[MapMyVisitors] createGlobe failed: {e}")
            self._show_error("Failed to render globe.")
            return False

        self._clear_status()
        self._attach_resize_handler()
        return True

    # -- polling --------------------------------------------------------------

    def refresh(self, initial: bool = False) -> asyncio.Task | None:
        """Fetch visitors now, cancelling any fetch still in flight."""
        if self.destroyed or self.widget_id is None:
            return None

        self._abort_in_flight()
        if initial:
            self._set_status("Loading visitors…")

        task = self._spawn(self._fetch_and_render(initial))
        self._in_flight = task
        return task

    def _abort_in_flight(self) -> None:
        task, self._in_flight = self._in_flight, None
        if task is not None and not task.done():
            task.cancel()

    async def _fetch_and_render(self, initial: bool) -> None:
        url = f"{self.api_base}/api/visitors/{quote(self.widget_id, safe='')}"
        try:
            data = await self._fetch_json(
                "GET",
                url,
                params={"limit": str(self.max_points)},
                headers={"Accept": "application/json", "Cache-Control": "no-store"},
            )
        except (httpx.HTTPError, WidgetFetchError) as e:
            if self.destroyed:
                return
            logger.warning(f"[MapMyVisitors] Fetch visitors failed: {e}")
            if initial:
                self._set_status("Loading… (retrying)")
            return
        finally:
            if self._in_flight is asyncio.current_task():
                self._in_flight = None

        if self.destroyed:
            return

        self._clear_status()
        self._apply_watermark(should_show_watermark(data))

        raw = data.get("visitors") if isinstance(data, dict) else None
        points = normalize_visitors(
            raw if isinstance(raw, list) else [],
            now_ms=self._clock() * 1000,
            max_points=self.max_points,
        )

        digest = hash_points(points)
        if digest == self._last_hash:
            return
        self._last_hash = digest
        self._update_globe(points)

    def _update_globe(self, points: list[VisitorPoint]) -> None:
        try:
            if self.renderer is None:
                return
            self.renderer.set_points(points)
            self.renderer.set_rings([p for p in points if p.recent])
            self._clear_status()
        except Exception as e:
            logger.warning(f"[MapMyVisitors] Render failed: {e}")

    def _start_polling(self) -> None:
        if self.destroyed:
            return
        self._stop_polling()

        self._poll_task = self._spawn(self._poll_loop())
        self._visibility_handler = self._on_visibility_change
        self.host.add_event_listener("visibilitychange", self._visibility_handler)

    async def _poll_loop(self) -> None:
        while not self.destroyed:
            await asyncio.sleep(self.poll_interval)
            if self.destroyed:
                return
            self.refresh()

    def _stop_polling(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None

        if self._visibility_handler is not None:
            try:
                self.host.remove_event_listener("visibilitychange", self._visibility_handler)
            except Exception as e:
                logger.debug(f"[MapMyVisitors] Removing visibility listener failed: {e}")
            self._visibility_handler = None

    def _on_visibility_change(self) -> None:
        try:
            if self.host.is_page_visible():
                self.refresh()
        except Exception as e:
            logger.debug(f"[MapMyVisitors] Visibility refresh failed: {e}")

    # -- resize ---------------------------------------------------------------

    def _attach_resize_handler(self) -> None:
        self._resize_handler = self._on_resize
        try:
            self.host.add_event_listener("resize", self._resize_handler)
        except Exception as e:
            logger.debug(f"[MapMyVisitors] Resize listener failed: {e}")

    def _on_resize(self) -> None:
        try:
            if self._resize_handle is not None:
                self._resize_handle.cancel()
            self._resize_handle = asyncio.get_running_loop().call_later(
                RESIZE_DEBOUNCE_SECONDS, self._apply_resize
            )
        except Exception as e:
            logger.debug(f"[MapMyVisitors] Resize scheduling failed: {e}")

    def _apply_resize(self) -> None:
        self._resize_handle = None
        try:
            if self.container is None:
                return
            apply_responsive_sizing(self.container, self.host.viewport_width)
            render = getattr(self.renderer, "render", None)
            if callable(render):
                render()
        except Exception as e:
            logger.debug(f"[MapMyVisitors] Resize failed: {e}")

    # -- teardown -------------------------------------------------------------

    def _attach_lifecycle_handlers(self) -> None:
        self._unload_handler = self.destroy
        for event in UNLOAD_EVENTS:
            try:
                self.host.add_event_listener(event, self._unload_handler)
            except Exception as e:
                logger.debug(f"[MapMyVisitors] {event} listener failed: {e}")

    def destroy(self) -> None:
        """Release everything. Safe to call any number of times."""
        if self.destroyed:
            return
        self.state = WidgetState.DESTROYED

        try:
            self._stop_polling()
            self._abort_in_flight()

            if self._init_task is not None and not self._init_task.done():
                self._init_task.cancel()

            self._disconnect_observer()

            if self._resize_handle is not None:
                self._resize_handle.cancel()
                self._resize_handle = None
            if self._resize_handler is not None:
                self.host.remove_event_listener("resize", self._resize_handler)
                self._resize_handler = None

            if self._unload_handler is not None:
                for event in UNLOAD_EVENTS:
                    self.host.remove_event_listener(event, self._unload_handler)
                self._unload_handler = None

            dispose = getattr(self.renderer, "dispose", None)
            if callable(dispose):
                dispose()
        except Exception as e:
            logger.debug(f"[MapMyVisitors] Teardown error: {e}")
        finally:
            self.renderer = None
            self.container = None
            self.widget_id = None
            self._status_el = None
            self._watermark_el = None
            self._observer = None


def install(host: Host, build: WidgetBuild | None = None, **kwargs) -> WidgetRuntime | None:
    """Install the widget on ``host``. Must run inside an event loop; never raises."""
    try:
        runtime = WidgetRuntime(host, build, **kwargs)
    except Exception as e:
        logger.error(f"[MapMyVisitors] Widget error: {e}")
        return None
    return runtime if runtime.install() else None
