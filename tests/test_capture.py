# File: tests/test_capture.py
# Capture path exercised with in-memory stand-ins for playwright pages
import asyncio
from types import SimpleNamespace
from typing import Any, List, Optional

import pytest
from conftest import no_sleep, png_bytes
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from wp_vrt.capture import (
    STABILIZE_CSS,
    TIMESTAMP_PLACEHOLDER,
    BrowserContextPool,
    PageCapturer,
    PageStabilizer,
    StabilizerState,
    StabilizerTimeouts,
    capture_many_viewports,
    mask_page,
)
from wp_vrt.config import CaptureSettings
from wp_vrt.errors import CaptureError, NavigationError
from wp_vrt.models import PageRecord, Phase, Viewport
from wp_vrt.storage import capture_key


class FakeTime:
    """Clock advanced only by the injected sleep."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: List[float] = []

    def clock(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay


class FakePage:
    def __init__(
        self,
        *,
        heights: Optional[List[int]] = None,
        loaders: Optional[List[List[str]]] = None,
        goto_error: Optional[BaseException] = None,
        masked: int = 2,
        image: Optional[bytes] = None,
    ) -> None:
        self.heights = list(heights or [1000])
        self.loaders = list(loaders or [[]])
        self.goto_error = goto_error
        self.masked = masked
        self.image = image or png_bytes(40, 30)
        self.visited: List[str] = []
        self.scrolls = 0
        self.scrolled_to_origin = False
        self.styles: List[str] = []
        self.mask_args: Any = None
        self.viewport: Optional[dict] = None
        self.closed = False

    @staticmethod
    def _next(values: list):
        return values.pop(0) if len(values) > 1 else values[0]

    async def goto(self, url: str, wait_until: str = "load", timeout: float = 0):
        self.visited.append(url)
        if self.goto_error is not None:
            raise self.goto_error
        return SimpleNamespace(status=200)

    async def evaluate(self, script: str, arg: Any = None):
        if "scrollHeight" in script:
            return self._next(self.heights)
        if "scrollBy" in script:
            self.scrolls += 1
            return None
        if "querySelectorAll(sel)" in script:
            return self._next(self.loaders)
        if "scrollTo(0, 0)" in script:
            self.scrolled_to_origin = True
            return None
        if "RegExp" in script:
            self.mask_args = arg
            return self.masked
        raise AssertionError(f"unexpected script: {script}")

    async def add_style_tag(self, content: str = ""):
        self.styles.append(content)

    async def set_viewport_size(self, size: dict):
        self.viewport = size

    async def screenshot(self, full_page: bool = False, type: str = "png") -> bytes:
        assert full_page and type == "png"
        return self.image

    async def close(self):
        self.closed = True


class FakeContext:
    def __init__(self, page_factory=FakePage) -> None:
        self.page_factory = page_factory
        self.pages: List[FakePage] = []
        self.closed = False

    async def new_page(self) -> FakePage:
        page = self.page_factory()
        self.pages.append(page)
        return page

    async def close(self):
        self.closed = True


def quick_timeouts(**overrides) -> StabilizerTimeouts:
    values = dict(navigation=5.0, scroll_step_delay=0.1, max_scroll_steps=10,
                  loader_poll_interval=0.5, loader_timeout=2.0, settle_delay=1.0)
    values.update(overrides)
    return StabilizerTimeouts(**values)


# --------------------------------------------------------------------------- #
#                                 Stabilizer                                  #
# --------------------------------------------------------------------------- #


@pytest.mark.asyncio()
async def test_stabilizer_runs_states_in_order():
    t = FakeTime()
    page = FakePage(heights=[1000, 1500, 2000, 2000, 2000])
    report = await PageStabilizer(quick_timeouts(), sleep=t.sleep, clock=t.clock).stabilize(page, "http://x.test/")

    assert report.states == [
        StabilizerState.LOADING,
        StabilizerState.SCROLLING,
        StabilizerState.AWAITING_LOADERS,
        StabilizerState.SETTLED,
    ]
    assert not report.degraded
    # stops once the height is unchanged twice in a row
    assert report.scroll_steps == 4
    assert report.final_height == 2000
    assert page.scrolled_to_origin
    assert page.visited == ["http://x.test/"]
    assert t.sleeps[-1] == 1.0


@pytest.mark.asyncio()
async def test_stabilizer_scroll_budget_is_bounded():
    t = FakeTime()
    heights = [1000 * (i + 1) for i in range(50)]
    page = FakePage(heights=heights)
    report = await PageStabilizer(quick_timeouts(max_scroll_steps=3), sleep=t.sleep, clock=t.clock).stabilize(
        page, "http://x.test/"
    )
    assert report.scroll_steps == 3
    assert page.scrolls == 3


@pytest.mark.asyncio()
async def test_stabilizer_waits_for_loaders_to_disappear():
    t = FakeTime()
    page = FakePage(loaders=[[".spinner"], [".spinner"], []])
    report = await PageStabilizer(quick_timeouts(), sleep=t.sleep, clock=t.clock).stabilize(page, "http://x.test/")
    assert not report.degraded
    assert report.pending_loaders == []


@pytest.mark.asyncio()
async def test_stabilizer_degrades_on_loader_timeout():
    t = FakeTime()
    page = FakePage(loaders=[[".loading"]])
    report = await PageStabilizer(quick_timeouts(), sleep=t.sleep, clock=t.clock).stabilize(page, "http://x.test/")
    assert report.degraded
    assert report.timed_out == [StabilizerState.AWAITING_LOADERS]
    assert report.pending_loaders == [".loading"]
    # still reaches the settled state
    assert report.states[-1] is StabilizerState.SETTLED


@pytest.mark.asyncio()
async def test_stabilizer_degrades_on_navigation_timeout():
    t = FakeTime()
    page = FakePage(goto_error=PlaywrightTimeoutError("Timeout 5000ms exceeded"))
    report = await PageStabilizer(quick_timeouts(), sleep=t.sleep, clock=t.clock).stabilize(page, "http://x.test/")
    assert report.degraded
    assert StabilizerState.LOADING in report.timed_out


@pytest.mark.asyncio()
async def test_stabilizer_raises_on_navigation_failure():
    t = FakeTime()
    page = FakePage(goto_error=PlaywrightError("net::ERR_NAME_NOT_RESOLVED"))
    with pytest.raises(NavigationError):
        await PageStabilizer(quick_timeouts(), sleep=t.sleep, clock=t.clock).stabilize(page, "http://x.test/")


@pytest.mark.asyncio()
async def test_mask_page_injects_css_and_masks_timestamps():
    page = FakePage(masked=3)
    assert await mask_page(page) == 3
    assert page.styles == [STABILIZE_CSS]
    assert page.mask_args[2] == TIMESTAMP_PLACEHOLDER


# --------------------------------------------------------------------------- #
#                              Context pool                                   #
# --------------------------------------------------------------------------- #


@pytest.mark.asyncio()
async def test_pool_reuses_contexts_and_blocks_when_full():
    created: List[FakeContext] = []

    async def factory():
        ctx = FakeContext()
        created.append(ctx)
        return ctx

    pool = BrowserContextPool(factory, max_size=1)
    first = await pool.acquire()
    waiter = asyncio.create_task(pool.acquire())
    await asyncio.sleep(0.01)
    assert not waiter.done()
    assert pool.in_use == 1

    await pool.release(first)
    second = await asyncio.wait_for(waiter, 1)
    assert second is first
    assert len(created) == 1
    await pool.release(second)
    assert pool.in_use == 0


@pytest.mark.asyncio()
async def test_pool_frees_slot_when_factory_fails():
    calls = {"n": 0}

    async def factory():
        calls["n"] += 1
        if calls["n"] == 1:
            raise RuntimeError("browser crashed")
        return FakeContext()

    pool = BrowserContextPool(factory, max_size=1)
    with pytest.raises(RuntimeError, match="browser crashed"):
        await pool.acquire()
    assert (pool.size, pool.in_use) == (0, 0)
    async with pool.checkout() as ctx:
        assert isinstance(ctx, FakeContext)
    assert pool.size == 1


@pytest.mark.asyncio()
async def test_pool_close_closes_contexts():
    shutdown = {"called": False}

    async def on_close():
        shutdown["called"] = True

    async def factory():
        return FakeContext()

    async with BrowserContextPool(factory, max_size=2, on_close=on_close) as pool:
        async with pool.checkout() as ctx:
            pass
    assert ctx.closed
    assert shutdown["called"]
    with pytest.raises(RuntimeError):
        await pool.acquire()


# --------------------------------------------------------------------------- #
#                                  Capturer                                   #
# --------------------------------------------------------------------------- #


def make_capturer(store, page_factory=FakePage) -> tuple[PageCapturer, BrowserContextPool, List[FakeContext]]:
    contexts: List[FakeContext] = []

    async def factory():
        ctx = FakeContext(page_factory)
        contexts.append(ctx)
        return ctx

    pool = BrowserContextPool(factory, max_size=2)
    settings = CaptureSettings(viewport_width=1280, viewport_height=720)
    stabilizer = PageStabilizer(quick_timeouts(), sleep=no_sleep)
    return PageCapturer(pool, store, settings, stabilizer=stabilizer), pool, contexts


@pytest.mark.asyncio()
async def test_capture_stores_full_page_png(store):
    capturer, pool, contexts = make_capturer(store)
    page = PageRecord(url="http://blog.test/about/", page_id="about")
    shot = await capturer.capture("blog", page, Phase.BASELINE, "20240501")

    key = capture_key(Phase.BASELINE, "20240501", "blog", "about")
    assert store.get(key) == shot.image
    assert (shot.width, shot.height) == (40, 30)
    assert shot.phase is Phase.BASELINE
    assert shot.url == page.url
    tab = contexts[0].pages[0]
    assert tab.viewport == {"width": 1280, "height": 720}
    assert tab.styles == [STABILIZE_CSS]
    assert tab.closed
    assert pool.in_use == 0


@pytest.mark.asyncio()
async def test_capture_overwrites_previous_capture(store):
    capturer, _, _ = make_capturer(store)
    page = PageRecord(url="http://blog.test/", page_id="index")
    key = capture_key(Phase.AFTER, "20240501", "blog", "index")
    store.put(key, b"stale")
    await capturer.capture("blog", page, Phase.AFTER, "20240501")
    assert store.get(key) != b"stale"


@pytest.mark.asyncio()
async def test_capture_failure_releases_context(store):
    capturer, pool, contexts = make_capturer(
        store, lambda: FakePage(goto_error=PlaywrightError("net::ERR_CONNECTION_REFUSED"))
    )
    page = PageRecord(url="http://blog.test/", page_id="index")
    with pytest.raises(CaptureError):
        await capturer.capture("blog", page, Phase.AFTER, "20240501")
    assert contexts[0].pages[0].closed
    assert pool.in_use == 0
    assert store.list("after/") == []


@pytest.mark.asyncio()
async def test_crashed_context_is_discarded_not_reused(store):
    class CrashedContext(FakeContext):
        async def new_page(self):
            raise PlaywrightError("Target page, context or browser has been closed")

    contexts: List[FakeContext] = []

    async def factory():
        ctx = CrashedContext() if not contexts else FakeContext()
        contexts.append(ctx)
        return ctx

    pool = BrowserContextPool(factory, max_size=1)
    capturer = PageCapturer(pool, store, stabilizer=PageStabilizer(quick_timeouts(), sleep=no_sleep))
    page = PageRecord(url="http://blog.test/", page_id="index")

    with pytest.raises(CaptureError, match="context unusable"):
        await capturer.capture("blog", page, Phase.AFTER, "20240501")
    assert contexts[0].closed
    assert (pool.size, pool.in_use) == (0, 0)

    await capturer.capture("blog", page, Phase.AFTER, "20240501")
    assert len(contexts) == 2
    assert store.exists(capture_key(Phase.AFTER, "20240501", "blog", "index"))
    assert pool.in_use == 0


@pytest.mark.asyncio()
async def test_capture_many_viewports(store):
    capturer, _, _ = make_capturer(store)
    page = PageRecord(url="http://blog.test/", page_id="index")
    viewports = [Viewport(1920, 1080, "desktop"), Viewport(375, 667, "mobile")]
    results = await capture_many_viewports(capturer, "blog", page, Phase.BASELINE, "20240501", viewports)

    assert [r.ok for r in results] == [True, True]
    assert [r.capture.page_id for r in results] == ["index@desktop", "index@mobile"]
    assert store.exists(capture_key(Phase.BASELINE, "20240501", "blog", "index@mobile"))
