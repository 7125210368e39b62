"""Tests for the embeddable widget runtime, driven through a headless host."""

import asyncio
import json
from datetime import datetime, timezone

import httpx

from mapmyvisitors.widget import HeadlessHost, WidgetBuild, WidgetState, install
from mapmyvisitors.widget.dom import Element
from mapmyvisitors.widget.globe import GLOBE_GLOBAL, GLOBE_SCRIPT_MARKER
from mapmyvisitors.widget.runtime import (
    CONTAINER_ID,
    ERROR_ATTR,
    LIBRARY_FAILED_MESSAGE,
    MOUNT_ATTR,
    STATUS_ATTR,
    WATERMARK_ATTR,
    WEBGL_UNSUPPORTED_MESSAGE,
    WIDGET_ID_ATTR,
    WidgetRuntime,
    resolve_api_base,
)

WIDGET_ID = "abcdEFGH1234"
SCRIPT_SRC = f"https://mapmyvisitors.com/widget.js?id={WIDGET_ID}"
PAGE = "https://customer.example/blog/post"
NOW_TS = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc).timestamp()


def run_async(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def visitors_payload(**overrides) -> dict:
    body = {
        "success": True,
        "paid": True,
        "showWatermark": True,
        "visitors": [
            {"id": 2, "lat": 35.68, "lng": 139.69, "city": "Tokyo", "country": "Japan",
             "timestamp": "2026-03-15T11:58:00.000+00:00", "isRecent": True},
            {"id": 1, "lat": 48.85, "lng": 2.35, "city": "Paris", "country": "France",
             "timestamp": "2026-03-15T11:00:00.000+00:00", "isRecent": False},
        ],
        "totalToday": 2,
        "activeNow": 1,
    }
    body.update(overrides)
    return body


class FakeApi:
    """Stand-in for /api/track and /api/visitors/{id}."""

    def __init__(self, payload: dict | None = None):
        self.payload = payload if payload is not None else visitors_payload()
        self.track_statuses: list[int] = []
        self.visitors_status = 200
        self.delay = 0.0
        self.requests: list[httpx.Request] = []

    @property
    def posts(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == "POST"]

    @property
    def gets(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == "GET"]

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/api/track":
            status = self.track_statuses.pop(0) if self.track_statuses else 200
            return httpx.Response(status, json={"success": status == 200})
        if request.url.path.startswith("/api/visitors/"):
            if self.delay:
                await asyncio.sleep(self.delay)
            return httpx.Response(self.visitors_status, json=self.payload)
        return httpx.Response(404)


class RecordingRenderer:

    def __init__(self, mount: Element, options):
        self.mount = mount
        self.options = options
        self.point_calls: list[list] = []
        self.ring_calls: list[list] = []
        self.renders = 0
        self.disposed = False

    def set_points(self, points):
        self.point_calls.append(list(points))

    def set_rings(self, points):
        self.ring_calls.append(list(points))

    def render(self):
        self.renders += 1

    def dispose(self):
        self.disposed = True


class RendererSpy:
    """Renderer factory that keeps every renderer it builds."""

    def __init__(self):
        self.created: list[RecordingRenderer] = []

    def __call__(self, mount, options):
        renderer = RecordingRenderer(mount, options)
        self.created.append(renderer)
        return renderer

    @property
    def renderer(self) -> RecordingRenderer:
        return self.created[-1]


def make_host(src: str | None = SCRIPT_SRC, page: str = PAGE, attributes=None, **kwargs):
    kwargs.setdefault("renderer_factory", RendererSpy())
    host = HeadlessHost(page, **kwargs)
    host.add_script(src, attributes)
    return host


def start(host: HeadlessHost, api: FakeApi, **kwargs) -> WidgetRuntime | None:
    kwargs.setdefault("poll_interval", 3600)
    kwargs.setdefault("retry_delay", 0)
    kwargs.setdefault("clock", lambda: NOW_TS)
    return install(host, WidgetBuild(), transport=httpx.MockTransport(api), **kwargs)


async def settle(runtime: WidgetRuntime) -> None:
    """Wait for everything the runtime started except the poll timer."""
    for _ in range(20):
        pending = [t for t in runtime._tasks if t is not runtime._poll_task and not t.done()]
        if not pending:
            return
        await asyncio.wait(pending)


async def activate(host: HeadlessHost, runtime: WidgetRuntime) -> None:
    host.set_intersecting(True)
    await runtime.ready
    await settle(runtime)


def container_of(host: HeadlessHost) -> Element:
    return host.document.get_element_by_id(CONTAINER_ID)


class TestSelfConfiguration:

    def test_widget_id_from_query_string(self):
        async def scenario():
            host = make_host()
            runtime = start(host, FakeApi())

            assert runtime is not None
            assert runtime.widget_id == WIDGET_ID
            assert runtime.state is WidgetState.AWAITING_VISIBILITY
            container = container_of(host)
            assert container.parent is host.document.body
            assert container.query(MOUNT_ATTR) is not None
            assert container.query(STATUS_ATTR).text == "Loading globe…"

        run_async(scenario())

    def test_widget_id_from_data_attribute(self):
        async def scenario():
            host = make_host("https://mapmyvisitors.com/widget.js", attributes={WIDGET_ID_ATTR: WIDGET_ID})
            runtime = start(host, FakeApi())
            assert runtime is not None
            assert runtime.widget_id == WIDGET_ID

        run_async(scenario())

    def test_finds_script_without_current_script(self):
        async def scenario():
            host = HeadlessHost(PAGE, renderer_factory=RendererSpy())
            host.add_script("https://cdn.example/jquery.js", current=False)
            host.add_script(SCRIPT_SRC, current=False)
            runtime = start(host, FakeApi())
            assert runtime.widget_id == WIDGET_ID

        run_async(scenario())

    def test_invalid_widget_id_aborts_silently(self):
        async def scenario():
            api = FakeApi()
            host = make_host("https://mapmyvisitors.com/widget.js?id=tooShort", beacon=True)

            assert start(host, api) is None
            await asyncio.sleep(0)
            assert container_of(host) is None
            assert host.sent_beacons == []
            assert api.requests == []

        run_async(scenario())

    def test_missing_script_aborts(self):
        async def scenario():
            host = HeadlessHost(PAGE)
            assert start(host, FakeApi()) is None

        run_async(scenario())

    def test_install_outside_event_loop(self):
        host = make_host()
        assert install(host, WidgetBuild()) is None
        assert container_of(host) is None

    def test_reuses_existing_container(self):
        async def scenario():
            host = make_host()
            placeholder = host.document.create_element("div")
            placeholder.id = CONTAINER_ID
            host.document.body.append_child(placeholder)

            start(host, FakeApi())

            matches = [n for n in host.document.document_element.iter_descendants() if n.id == CONTAINER_ID]
            assert matches == [placeholder]
            assert placeholder.query(MOUNT_ATTR) is not None

        run_async(scenario())

    def test_narrow_viewport_sizing(self):
        async def scenario():
            host = make_host(viewport_width=360)
            start(host, FakeApi())
            assert container_of(host).style["height"] == "420px"

            other = make_host(viewport_width=500)
            start(other, FakeApi())
            assert container_of(other).style["height"] == "520px"

        run_async(scenario())


class TestApiBase:

    def test_same_origin_script_pins_to_page_origin(self):
        async def scenario():
            api = FakeApi()
            host = make_host(f"http://localhost:8787/widget.js?id={WIDGET_ID}", page="http://localhost:8787/demo")
            runtime = start(host, api)
            await settle(runtime)

            assert runtime.api_base == "http://localhost:8787"
            assert str(api.posts[0].url) == "http://localhost:8787/api/track"

        run_async(scenario())

    def test_cross_origin_script_uses_baked_in_base(self):
        async def scenario():
            host = make_host(f"https://cdn.attacker.example/widget.js?id={WIDGET_ID}")
            runtime = start(host, FakeApi())
            assert runtime.api_base == "https://mapmyvisitors.com"

        run_async(scenario())

    def test_resolve_api_base(self):
        default = "https://mapmyvisitors.com"
        page = "https://customer.example:8443/page"

        assert resolve_api_base("/widget.js", page, default) == "https://customer.example:8443"
        assert resolve_api_base("https://customer.example/widget.js", "https://customer.example/", default) == "https://customer.example"
        assert resolve_api_base("https://customer.example:443/w.js", "https://customer.example/", default) == "https://customer.example"
        assert resolve_api_base("https://user:pw@customer.example/w.js", "https://customer.example/", default) == "https://customer.example"
        assert resolve_api_base("//evil.example/widget.js", page, default) == default
        assert resolve_api_base("https://customer.example/widget.js", "http://customer.example/", default) == default
        assert resolve_api_base("javascript:alert(1)", page, default) == default
        assert resolve_api_base("", page, default) == default
        assert resolve_api_base("http://[::1]:3000/w.js", "http://[::1]:3000/", default) == "http://[::1]:3000"


class TestPageview:

    def test_beacon_preferred(self):
        async def scenario():
            api = FakeApi()
            host = make_host(beacon=True)
            runtime = start(host, api)
            await settle(runtime)

            assert len(host.sent_beacons) == 1
            url, body = host.sent_beacons[0]
            assert url == "https://mapmyvisitors.com/api/track"
            assert json.loads(body) == {"widgetId": WIDGET_ID, "pageUrl": PAGE, "referrer": None}
            assert api.posts == []

        run_async(scenario())

    def test_post_without_beacon(self):
        async def scenario():
            api = FakeApi()
            host = make_host(referrer="https://news.example/")
            runtime = start(host, api)
            await settle(runtime)

            assert len(api.posts) == 1
            assert json.loads(api.posts[0].content) == {
                "widgetId": WIDGET_ID,
                "pageUrl": PAGE,
                "referrer": "https://news.example/",
            }

        run_async(scenario())

    def test_failed_post_retried_once(self):
        async def scenario():
            api = FakeApi()
            api.track_statuses = [500, 200]
            runtime = start(make_host(), api)
            await settle(runtime)
            assert len(api.posts) == 2

        run_async(scenario())

    def test_retry_failure_swallowed(self):
        async def scenario():
            api = FakeApi()
            api.track_statuses = [503, 429, 200]
            runtime = start(make_host(), api)
            await settle(runtime)

            assert len(api.posts) == 2
            assert runtime.state is WidgetState.AWAITING_VISIBILITY

        run_async(scenario())


class TestDeferredInit:

    def test_waits_for_visibility(self):
        async def scenario():
            api = FakeApi()
            host = make_host()
            runtime = start(host, api)
            await settle(runtime)

            assert runtime.ready is None
            assert api.gets == []
            assert host.observers[0].threshold == 0.1

            host.set_intersecting(False)
            assert runtime.ready is None

            await activate(host, runtime)

            assert runtime.state is WidgetState.ACTIVE
            assert host.observers[0].connected is False
            assert len(api.gets) == 1

        run_async(scenario())

    def test_without_observer_starts_next_tick(self):
        async def scenario():
            host = make_host(intersection_observer=False)
            runtime = start(host, FakeApi())

            assert runtime.ready is None
            for _ in range(5):
                await asyncio.sleep(0)
                if runtime.ready is not None:
                    break
            await runtime.ready
            await settle(runtime)

            assert runtime.state is WidgetState.ACTIVE

        run_async(scenario())

    def test_repeated_intersection_initializes_once(self):
        async def scenario():
            spy = RendererSpy()
            host = make_host(renderer_factory=spy)
            runtime = start(host, FakeApi())

            await activate(host, runtime)
            host.observers[0].callback(True)
            await settle(runtime)

            assert len(spy.created) == 1

        run_async(scenario())


class TestRendererAcquisition:

    def test_injects_library_once(self):
        async def scenario():
            spy = RendererSpy()
            host = make_host(renderer_factory=spy)
            runtime = start(host, FakeApi())
            await activate(host, runtime)

            scripts = [s for s in host.document.head.children if s.has_attribute(GLOBE_SCRIPT_MARKER)]
            assert len(scripts) == 1
            assert scripts[0].get_attribute("src").startswith("https://unpkg.com/globe.gl")
            assert spy.renderer.mount.has_attribute(MOUNT_ATTR)

        run_async(scenario())

    def test_reuses_pending_library_script(self):
        async def scenario():
            host = make_host()
            existing = Element("script", {GLOBE_SCRIPT_MARKER: "1", "src": "https://unpkg.com/globe.gl"})
            host.document.head.append_child(existing)
            runtime = start(host, FakeApi())
            await activate(host, runtime)

            scripts = [s for s in host.document.head.children if s.has_attribute(GLOBE_SCRIPT_MARKER)]
            assert scripts == [existing]
            assert host.loaded_scripts == [existing]
            assert runtime.state is WidgetState.ACTIVE

        run_async(scenario())

    def test_existing_global_skips_loading(self):
        async def scenario():
            spy = RendererSpy()
            host = make_host(renderer_factory=None)
            host.globals[GLOBE_GLOBAL] = spy
            runtime = start(host, FakeApi())
            await activate(host, runtime)

            assert host.loaded_scripts == []
            assert len(spy.created) == 1

        run_async(scenario())

    def test_no_webgl(self):
        async def scenario():
            api = FakeApi()
            spy = RendererSpy()
            host = make_host(webgl=False, renderer_factory=spy)
            runtime = start(host, api)
            await activate(host, runtime)

            container = container_of(host)
            assert container.query(ERROR_ATTR).text == WEBGL_UNSUPPORTED_MESSAGE
            assert container.query(STATUS_ATTR) is None
            assert spy.created == []
            assert api.gets == []

        run_async(scenario())

    def test_library_load_failure(self):
        async def scenario():
            api = FakeApi()
            host = make_host(script_loads=False)
            runtime = start(host, api)
            await activate(host, runtime)

            assert container_of(host).query(ERROR_ATTR).text == LIBRARY_FAILED_MESSAGE
            assert api.gets == []

        run_async(scenario())

    def test_factory_error_contained(self):
        async def scenario():
            def broken(mount, options):
                raise RuntimeError("WebGL context lost")

            host = make_host(renderer_factory=broken)
            runtime = start(host, FakeApi())
            await activate(host, runtime)

            assert container_of(host).query(ERROR_ATTR).text == "Failed to render globe."
            assert runtime.renderer is None

        run_async(scenario())

    def test_touch_device_settings(self):
        async def scenario():
            api = FakeApi()
            spy = RendererSpy()
            host = make_host(is_touch=True, device_pixel_ratio=3.0, renderer_factory=spy)
            runtime = start(host, api)
            await activate(host, runtime)

            assert spy.renderer.options.pixel_ratio == 2.0
            assert api.gets[0].url.params["limit"] == "30"

        run_async(scenario())


class TestRendering:

    def test_initial_render(self):
        async def scenario():
            api = FakeApi()
            spy = RendererSpy()
            host = make_host(renderer_factory=spy)
            runtime = start(host, api)
            await activate(host, runtime)

            request = api.gets[0]
            assert request.url.path == f"/api/visitors/{WIDGET_ID}"
            assert request.url.params["limit"] == "50"
            assert request.headers["cache-control"] == "no-store"

            renderer = spy.renderer
            assert len(renderer.point_calls) == 1
            points = renderer.point_calls[0]
            assert [p.city for p in points] == ["Tokyo", "Paris"]
            assert [p.recent for p in points] == [True, False]
            assert [p.city for p in renderer.ring_calls[0]] == ["Tokyo"]
            assert container_of(host).query(STATUS_ATTR) is None

        run_async(scenario())

    def test_identical_data_renders_once(self):
        async def scenario():
            api = FakeApi()
            spy = RendererSpy()
            host = make_host(renderer_factory=spy)
            runtime = start(host, api)
            await activate(host, runtime)

            await runtime.refresh()
            await settle(runtime)

            assert len(api.gets) == 2
            assert len(spy.renderer.point_calls) == 1

            api.payload = visitors_payload(visitors=[{"lat": 1, "lng": 2}])
            await runtime.refresh()

            assert len(spy.renderer.point_calls) == 2

        run_async(scenario())

    def test_junk_records_filtered(self):
        async def scenario():
            api = FakeApi(visitors_payload(visitors=[
                {"latitude": "91", "longitude": "0"},
                {"lat": "10", "lon": "20"},
                "garbage",
            ]))
            spy = RendererSpy()
            host = make_host(renderer_factory=spy)
            runtime = start(host, api)
            await activate(host, runtime)

            points = spy.renderer.point_calls[0]
            assert [(p.lat, p.lng) for p in points] == [(10.0, 20.0)]
            assert points[0].recent is False

        run_async(scenario())

    def test_initial_fetch_failure_shows_retrying(self):
        async def scenario():
            api = FakeApi()
            api.visitors_status = 500
            spy = RendererSpy()
            host = make_host(renderer_factory=spy)
            runtime = start(host, api)
            await activate(host, runtime)

            assert container_of(host).query(STATUS_ATTR).text == "Loading… (retrying)"
            assert spy.renderer.point_calls == []
            assert runtime.state is WidgetState.ACTIVE

        run_async(scenario())

    def test_new_refresh_aborts_in_flight_fetch(self):
        async def scenario():
            api = FakeApi()
            spy = RendererSpy()
            host = make_host(renderer_factory=spy)
            runtime = start(host, api)
            await activate(host, runtime)

            api.delay = 0.05
            api.payload = visitors_payload(visitors=[{"lat": 5, "lng": 5}])
            first = runtime.refresh()
            await asyncio.sleep(0.01)
            second = runtime.refresh()
            await settle(runtime)

            assert first.cancelled()
            assert second.done() and not second.cancelled()
            assert len(spy.renderer.point_calls) == 2

        run_async(scenario())


class TestWatermark:

    def _run(self, payloads):
        async def scenario():
            api = FakeApi(payloads[0])
            host = make_host()
            runtime = start(host, api)
            await activate(host, runtime)
            states = [container_of(host).query(WATERMARK_ATTR) is not None]
            for payload in payloads[1:]:
                api.payload = payload
                await runtime.refresh()
                states.append(container_of(host).query(WATERMARK_ATTR) is not None)
            return states

        return run_async(scenario())

    def test_shown_when_server_says_so(self):
        assert self._run([visitors_payload(showWatermark=True)]) == [True]

    def test_hidden_when_server_says_so(self):
        assert self._run([visitors_payload(showWatermark=False)]) == [False]

    def test_missing_flag_fails_closed(self):
        payload = visitors_payload()
        del payload["showWatermark"]
        assert self._run([payload]) == [True]

    def test_non_boolean_flag_fails_closed(self):
        assert self._run([visitors_payload(showWatermark="false")]) == [True]

    def test_toggles_between_polls(self):
        assert self._run([
            visitors_payload(showWatermark=True),
            visitors_payload(showWatermark=False),
            visitors_payload(showWatermark=True),
            visitors_payload(showWatermark=True),
        ]) == [True, False, True, True]

    def test_never_duplicated(self):
        async def scenario():
            host = make_host()
            runtime = start(host, FakeApi())
            await activate(host, runtime)
            await runtime.refresh()
            await runtime.refresh()
            badges = [n for n in container_of(host).iter_descendants() if n.has_attribute(WATERMARK_ATTR)]
            assert len(badges) == 1
            assert "MapMyVisitors" in badges[0].inner_html

        run_async(scenario())


class TestPollingAndEvents:

    def test_polls_on_interval(self):
        async def scenario():
            api = FakeApi()
            host = make_host()
            runtime = start(host, api, poll_interval=0.01)
            await activate(host, runtime)

            await asyncio.sleep(0.06)
            polled = len(api.gets)
            assert polled >= 2

            runtime.destroy()
            await asyncio.sleep(0.03)
            assert len(api.gets) == polled

        run_async(scenario())

    def test_refresh_when_page_becomes_visible(self):
        async def scenario():
            api = FakeApi()
            host = make_host()
            runtime = start(host, api)
            await activate(host, runtime)

            host.set_page_visible(False)
            await settle(runtime)
            assert len(api.gets) == 1

            host.set_page_visible(True)
            await settle(runtime)
            assert len(api.gets) == 2

        run_async(scenario())

    def test_resize_is_debounced(self):
        async def scenario():
            spy = RendererSpy()
            host = make_host(renderer_factory=spy)
            runtime = start(host, FakeApi())
            await activate(host, runtime)

            host.viewport_width = 400
            for _ in range(3):
                host.dispatch("resize")
            await asyncio.sleep(0.3)

            assert spy.renderer.renders == 1
            assert container_of(host).style["height"] == "420px"

        run_async(scenario())


class TestDestroy:

    def test_unload_tears_everything_down(self):
        async def scenario():
            spy = RendererSpy()
            host = make_host(renderer_factory=spy)
            runtime = start(host, FakeApi())
            await activate(host, runtime)
            poll_task = runtime._poll_task

            host.dispatch("pagehide")
            await asyncio.sleep(0)

            assert runtime.state is WidgetState.DESTROYED
            assert spy.renderer.disposed is True
            assert runtime.renderer is None
            assert poll_task.cancelled()
            for event in ("resize", "visibilitychange", "beforeunload", "pagehide"):
                assert host.listeners[event] == []

        run_async(scenario())

    def test_destroy_is_idempotent(self):
        async def scenario():
            host = make_host()
            runtime = start(host, FakeApi())
            await activate(host, runtime)

            runtime.destroy()
            runtime.destroy()
            host.dispatch("beforeunload")

            assert runtime.refresh() is None
            assert runtime.state is WidgetState.DESTROYED

        run_async(scenario())

    def test_destroy_before_visible(self):
        async def scenario():
            api = FakeApi()
            spy = RendererSpy()
            host = make_host(renderer_factory=spy)
            runtime = start(host, api)

            runtime.destroy()
            host.set_intersecting(True)
            await asyncio.sleep(0)

            assert host.observers[0].connected is False
            assert runtime.ready is None
            assert spy.created == []

        run_async(scenario())

    def test_destroy_during_library_load(self):
        async def scenario():
            spy = RendererSpy()
            host = make_host(renderer_factory=spy)
            runtime = start(host, FakeApi())

            host.set_intersecting(True)
            await asyncio.sleep(0)  # init is now waiting on the script
            runtime.destroy()
            await asyncio.gather(runtime.ready, return_exceptions=True)

            assert spy.created == []
            assert runtime.state is WidgetState.DESTROYED

        run_async(scenario())
