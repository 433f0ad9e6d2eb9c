"""
Page stabilizer: drives a loaded page to a "visually settled" state.

The sequence is an explicit state machine::

    LOADING -> SCROLLING -> AWAITING_LOADERS -> SETTLED

Every state is bounded. A timeout degrades the result (recorded on the
report) and moves on to the next state; only a failed navigation raises.
"""
from __future__ import annotations

import asyncio
import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from wp_vrt.config import CaptureSettings
from wp_vrt.errors import NavigationError

__all__ = (
    "LOADER_SELECTORS",
    "StabilizerState",
    "StabilizerTimeouts",
    "StabilizationReport",
    "PageStabilizer",
)

logger = logging.getLogger("WPVRT.capture")

LOADER_SELECTORS = (
    ".loading",
    ".spinner",
    ".loader",
    '[aria-busy="true"]',
    ".wp-block-image.is-loading",
    ".lazyloading",
)

_DOCUMENT_HEIGHT_JS = """() => Math.max(
    document.body ? document.body.scrollHeight : 0,
    document.body ? document.body.offsetHeight : 0,
    document.documentElement.clientHeight,
    document.documentElement.scrollHeight,
    document.documentElement.offsetHeight
)"""

_SCROLL_BY_VIEWPORT_JS = "() => window.scrollBy(0, window.innerHeight)"
_SCROLL_TO_ORIGIN_JS = "() => window.scrollTo(0, 0)"

_VISIBLE_LOADERS_JS = """(selectors) => selectors.filter((sel) => {
    return Array.from(document.querySelectorAll(sel)).some((el) => {
        const style = window.getComputedStyle(el);
        return style.display !== 'none' && style.visibility !== 'hidden' && el.offsetParent !== null;
    });
})"""


class StabilizerState(str, enum.Enum):
    LOADING = "loading"
    SCROLLING = "scrolling"
    AWAITING_LOADERS = "awaiting_loaders"
    SETTLED = "settled"


@dataclass(slots=True, frozen=True)
class StabilizerTimeouts:
    """Bounds for each state; all durations in seconds."""

    navigation: float = 30.0
    scroll_step_delay: float = 0.8
    max_scroll_steps: int = 10
    loader_poll_interval: float = 0.25
    loader_timeout: float = 5.0
    settle_delay: float = 2.0

    @classmethod
    def from_settings(cls, settings: CaptureSettings) -> StabilizerTimeouts:
        return cls(
            navigation=settings.navigation_timeout,
            scroll_step_delay=settings.scroll_step_delay,
            max_scroll_steps=settings.max_scroll_steps,
            loader_poll_interval=settings.loader_poll_interval,
            loader_timeout=settings.loader_timeout,
            settle_delay=settings.settle_delay,
        )


@dataclass(slots=True)
class StabilizationReport:
    states: List[StabilizerState] = field(default_factory=list)
    degraded: bool = False
    timed_out: List[StabilizerState] = field(default_factory=list)
    scroll_steps: int = 0
    final_height: int = 0
    pending_loaders: List[str] = field(default_factory=list)
    elapsed: float = 0.0

    def degrade(self, state: StabilizerState) -> None:
        self.degraded = True
        if state not in self.timed_out:
            self.timed_out.append(state)


class PageStabilizer:
    """Runs the settle sequence on a playwright ``Page`` (or a look-alike)."""

    def __init__(
        self,
        timeouts: Optional[StabilizerTimeouts] = None,
        *,
        loader_selectors=LOADER_SELECTORS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.timeouts = timeouts or StabilizerTimeouts()
        self.loader_selectors = list(loader_selectors)
        self._sleep = sleep
        self._clock = clock

    async def stabilize(self, page: Any, url: str) -> StabilizationReport:
        report = StabilizationReport()
        started = self._clock()

        self._enter(report, StabilizerState.LOADING, url)
        await self._load(page, url, report)

        self._enter(report, StabilizerState.SCROLLING, url)
        await self._scroll(page, report)

        self._enter(report, StabilizerState.AWAITING_LOADERS, url)
        await self._await_loaders(page, report)

        self._enter(report, StabilizerState.SETTLED, url)
        await self._settle(page, report)

        report.elapsed = self._clock() - started
        if report.degraded:
            logger.warning(
                "%s settled degraded (timed out in %s)",
                url, ", ".join(s.value for s in report.timed_out),
            )
        return report

    def _enter(self, report: StabilizationReport, state: StabilizerState, url: str) -> None:
        report.states.append(state)
        logger.debug("%s -> %s", url, state.value)

    async def _load(self, page: Any, url: str, report: StabilizationReport) -> None:
        try:
            response = await page.goto(url, wait_until="load", timeout=self.timeouts.navigation * 1000)
        except PlaywrightTimeoutError:
            # partially loaded page is still worth capturing
            report.degrade(StabilizerState.LOADING)
            return
        except PlaywrightError as exc:
            raise NavigationError(url, cause=exc) from exc
        status = getattr(response, "status", None)
        if status is not None and status >= 400:
            logger.warning("%s answered HTTP %s", url, status)

    async def _height(self, page: Any) -> int:
        return int(await page.evaluate(_DOCUMENT_HEIGHT_JS) or 0)

    async def _scroll(self, page: Any, report: StabilizationReport) -> None:
        t = self.timeouts
        try:
            height = await self._height(page)
            unchanged = 0
            for _ in range(t.max_scroll_steps):
                await page.evaluate(_SCROLL_BY_VIEWPORT_JS)
                report.scroll_steps += 1
                await self._sleep(t.scroll_step_delay)
                new_height = await self._height(page)
                unchanged = unchanged + 1 if new_height == height else 0
                height = new_height
                if unchanged >= 2:
                    break
            else:
                if t.max_scroll_steps:
                    logger.debug("Scroll step budget exhausted at height %d", height)
            report.final_height = height
        except PlaywrightError as exc:
            logger.debug("Scrolling interrupted: %s", exc)
            report.degrade(StabilizerState.SCROLLING)

    async def _await_loaders(self, page: Any, report: StabilizationReport) -> None:
        t = self.timeouts
        deadline = self._clock() + t.loader_timeout
        pending: List[str] = []
        try:
            while True:
                pending = list(await page.evaluate(_VISIBLE_LOADERS_JS, self.loader_selectors) or [])
                if not pending:
                    return
                if self._clock() >= deadline:
                    break
                await self._sleep(t.loader_poll_interval)
        except PlaywrightError as exc:
            logger.debug("Loader polling failed: %s", exc)
        report.pending_loaders = pending
        report.degrade(StabilizerState.AWAITING_LOADERS)

    async def _settle(self, page: Any, report: StabilizationReport) -> None:
        await self._sleep(self.timeouts.settle_delay)
        try:
            await page.evaluate(_SCROLL_TO_ORIGIN_JS)
        except PlaywrightError as exc:
            logger.debug("Scroll to origin failed: %s", exc)
            report.degrade(StabilizerState.SETTLED)
