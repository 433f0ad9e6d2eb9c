"""
Breadth-first same-host page discovery gated by robots.txt.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Deque, List, Optional, Set, Tuple

from wp_vrt.crawler.fetcher import PageLoader
from wp_vrt.crawler.link_extractor import extract_links, normalize_url, page_identifier
from wp_vrt.errors import NavigationError
from wp_vrt.models import PageRecord

__all__ = ("DiscoveryLimits", "LinkDiscoverer")

RobotsCheck = Callable[[str], Awaitable[bool]]


@dataclass(slots=True, frozen=True)
class DiscoveryLimits:
    max_pages: int = 300
    max_depth: int = 3


class LinkDiscoverer:
    """BFS crawler producing the ordered page list of one site.

    After :meth:`discover` returns, ``blocked`` lists URLs skipped because of
    robots.txt and ``failed`` the URLs that were recorded but could not be
    loaded.
    """

    def __init__(
        self,
        loader: PageLoader,
        robots_allowed: RobotsCheck,
        *,
        request_delay: float = 0.0,
        crawl_delay: Optional[Callable[[str], Awaitable[Optional[float]]]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.loader = loader
        self.robots_allowed = robots_allowed
        self.request_delay = request_delay
        self._crawl_delay = crawl_delay
        self._sleep = sleep
        self.blocked: List[str] = []
        self.failed: List[str] = []
        self.logger = logging.getLogger("WPVRT.discover")

    async def discover(self, root_url: str, limits: DiscoveryLimits = DiscoveryLimits()) -> List[PageRecord]:
        self.blocked = []
        self.failed = []
        start = time.monotonic()
        root = normalize_url(root_url)
        self.logger.info("Discovery start: %s (max %d pages, depth %d)", root, limits.max_pages, limits.max_depth)

        queue: Deque[Tuple[str, int]] = deque([(root, 0)])
        seen: Set[str] = {root}
        pages: List[PageRecord] = []
        recorded_ids: Set[str] = set()
        delay = await self._effective_delay(root)

        while queue and len(pages) < limits.max_pages:
            url, depth = queue.popleft()
            page_id = page_identifier(url)
            # /about and /about/ normalize differently but share a page id
            if page_id in recorded_ids:
                continue

            if not await self.robots_allowed(url):
                self.blocked.append(url)
                self.logger.info("Skipping %s - blocked by robots.txt", url)
                continue

            if pages and delay:
                await self._sleep(delay)

            try:
                html = await self.loader.load(url)
            except NavigationError as exc:
                self.failed.append(url)
                recorded_ids.add(page_id)
                pages.append(PageRecord(url=url, page_id=page_id, depth=depth, error=str(exc)))
                self.logger.warning("Failed to load %s: %s", url, exc)
                continue

            recorded_ids.add(page_id)
            pages.append(PageRecord(url=url, page_id=page_id, depth=depth))
            if depth >= limits.max_depth:
                continue
            for link in extract_links(url, html):
                if link not in seen:
                    seen.add(link)
                    queue.append((link, depth + 1))

        duration = time.monotonic() - start
        self.logger.info(
            "Discovery done: %d pages in %.2f s (%d blocked, %d failed)",
            len(pages), duration, len(self.blocked), len(self.failed),
        )
        return pages

    async def _effective_delay(self, url: str) -> float:
        robots_delay = await self._crawl_delay(url) if self._crawl_delay else None
        return max(self.request_delay, robots_delay or 0.0)

