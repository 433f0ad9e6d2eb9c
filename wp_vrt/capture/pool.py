"""
Pool of reusable browser contexts.

Contexts are created lazily up to ``max_size`` and handed back to the pool
after each capture instead of being destroyed; a checkout blocks while all
of them are in use.
"""
from __future__ import annotations

import asyncio
import logging
from collections import deque
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Deque, List, Optional

from playwright.async_api import async_playwright

from wp_vrt.config import CaptureSettings

__all__ = ("BrowserContextPool", "launch_pool")

logger = logging.getLogger("WPVRT.capture")

ContextFactory = Callable[[], Awaitable[Any]]


class BrowserContextPool:
    def __init__(
        self,
        factory: ContextFactory,
        max_size: int,
        *,
        on_close: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self._factory = factory
        self.max_size = max_size
        self._on_close = on_close
        self._idle: Deque[Any] = deque()
        self._all: List[Any] = []
        self._in_use = 0
        self._cond = asyncio.Condition()
        self._closed = False

    @property
    def size(self) -> int:
        return len(self._all)

    @property
    def in_use(self) -> int:
        return self._in_use

    async def acquire(self) -> Any:
        async with self._cond:
            while True:
                if self._closed:
                    raise RuntimeError("context pool is closed")
                if self._idle:
                    context = self._idle.popleft()
                    break
                if len(self._all) < self.max_size:
                    # reserve the slot before awaiting the factory
                    self._all.append(None)
                    context = None
                    break
                await self._cond.wait()
            self._in_use += 1

        if context is None:
            try:
                context = await self._factory()
            except BaseException:
                async with self._cond:
                    self._all.remove(None)
                    self._in_use -= 1
                    self._cond.notify()
                raise
            self._all[self._all.index(None)] = context
            logger.debug("Browser context created (%d/%d)", len(self._all), self.max_size)
        return context

    async def release(self, context: Any) -> None:
        async with self._cond:
            self._in_use -= 1
            if self._closed:
                return
            self._idle.append(context)
            self._cond.notify()

    async def discard(self, context: Any) -> None:
        """Drop a broken *context*: free its slot and close it instead of reusing it."""
        async with self._cond:
            self._in_use -= 1
            if context in self._all:
                self._all.remove(context)
            self._cond.notify()
        try:
            await context.close()
        except Exception as exc:
            logger.debug("Closing discarded browser context failed: %s", exc)
        logger.warning("Discarded a broken browser context (%d/%d left)", len(self._all), self.max_size)

    @asynccontextmanager
    async def checkout(self) -> AsyncIterator[Any]:
        context = await self.acquire()
        try:
            yield context
        finally:
            await self.release(context)

    async def close(self) -> None:
        async with self._cond:
            if self._closed:
                return
            self._closed = True
            contexts = [c for c in self._all if c is not None]
            self._idle.clear()
            self._cond.notify_all()
        for context in contexts:
            try:
                await context.close()
            except Exception as exc:
                logger.debug("Closing browser context failed: %s", exc)
        self._all = []
        if self._on_close is not None:
            await self._on_close()
        logger.debug("Browser context pool closed")

    async def __aenter__(self) -> BrowserContextPool:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


async def launch_pool(
    settings: CaptureSettings,
    max_size: int,
    *,
    user_agent: Optional[str] = None,
) -> BrowserContextPool:
    """Start chromium and return a pool whose contexts share that browser."""
    playwright = await async_playwright().start()
    browser = await playwright.chromium.launch(headless=settings.headless)
    logger.info("Chromium launched (headless=%s), pool size %d", settings.headless, max_size)

    async def factory() -> Any:
        return await browser.new_context(
            viewport={"width": settings.viewport_width, "height": settings.viewport_height},
            device_scale_factor=1,
            user_agent=user_agent,
        )

    async def shutdown() -> None:
        await browser.close()
        await playwright.stop()

    return BrowserContextPool(factory, max_size, on_close=shutdown)
