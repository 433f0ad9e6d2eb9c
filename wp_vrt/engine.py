"""wp_vrt.engine: wires the components from one VRTConfig and runs batches."""

from __future__ import annotations

import asyncio
from typing import List, Optional, Sequence, Union

from aiohttp import ClientSession

from wp_vrt.capture import PageCapturer, launch_pool
from wp_vrt.collaborators import (
    HttpHealthChecker,
    JsonMarkerStore,
    JsonResultStore,
    WebhookNotifier,
    WordPressUpdater,
)
from wp_vrt.concurrency import ConcurrencyController, ResourceMonitor
from wp_vrt.config import VRTConfig, load_config
from wp_vrt.crawler import DiscoveryLimits, HttpPageLoader, LinkDiscoverer, RobotsPolicy
from wp_vrt.crawler.fetcher import default_session
from wp_vrt.diff import DiffEngine, SiteComparator
from wp_vrt.errors import ConfigError
from wp_vrt.logger import logger
from wp_vrt.models import BatchResult, Mode, PageRecord, Site
from wp_vrt.orchestrator import Orchestrator
from wp_vrt.pipeline import RunOptions, SitePipeline
from wp_vrt.retry import RetryPolicy
from wp_vrt.storage import LocalArtifactStore

__all__ = ["Engine"]

Selection = Union[str, Sequence[str], None]


class Engine:
    """Facade for the CLI and tests: site selection, wiring, batch run."""

    @staticmethod
    def load_config(path: Optional[str]) -> VRTConfig:
        return load_config(path)

    def __init__(self, config: VRTConfig) -> None:
        self.config = config
        self.store = LocalArtifactStore(config.storage.root)

    def select_sites(self, selection: Selection = "all") -> List[Site]:
        """``"all"`` (or None) selects every configured site, in config order.

        A list of ids keeps the caller's order; unknown ids raise ConfigError.
        """
        if selection is None or selection == "all":
            return list(self.config.sites)
        ids = [selection] if isinstance(selection, str) else list(selection)
        unknown = [i for i in ids if i not in {s.id for s in self.config.sites}]
        if unknown:
            raise ConfigError(f"unknown site id(s): {', '.join(unknown)}")
        return [self.config.site(i) for i in dict.fromkeys(ids)]

    def _robots(self, session: ClientSession) -> RobotsPolicy:
        crawl = self.config.crawl
        return RobotsPolicy(session, crawl.user_agent, ttl=crawl.robots_ttl, timeout=crawl.robots_timeout)

    def _discoverer(self, session: ClientSession, robots: RobotsPolicy) -> LinkDiscoverer:
        """One discoverer per site; the robots cache is shared."""
        crawl = self.config.crawl
        loader = HttpPageLoader(session, user_agent=crawl.user_agent, timeout=crawl.timeout)
        return LinkDiscoverer(
            loader, robots.robots_allowed, request_delay=crawl.request_delay, crawl_delay=robots.crawl_delay
        )

    async def discover(self, site_id: str) -> List[PageRecord]:
        """Discover the pages of one site without capturing anything."""
        site = self.select_sites([site_id])[0]
        async with default_session(self.config.crawl.user_agent) as session:
            discoverer = self._discoverer(session, self._robots(session))
            return await discoverer.discover(site.root_url, DiscoveryLimits(site.max_pages, site.max_depth))

    async def run(
        self,
        selection: Selection = "all",
        mode: Union[Mode, str] = Mode.FULL,
        **flags,
    ) -> BatchResult:
        """Run one batch; *flags* are the remaining :class:`RunOptions` fields."""
        sites = self.select_sites(selection)
        options = RunOptions(mode=Mode(mode), **flags)
        cfg = self.config
        logger.info("Starting VRT batch: %d site(s), mode %s", len(sites), options.mode.value)

        monitor = ResourceMonitor(cfg.concurrency)
        site_controller = ConcurrencyController.for_sites(cfg.concurrency, monitor)
        page_controller = ConcurrencyController.for_pages(cfg.concurrency, monitor)
        retry = RetryPolicy.from_settings(cfg.retry)

        pool = None
        async with default_session(cfg.crawl.user_agent) as session:
            try:
                if options.mode is not Mode.COMPARE:
                    pool = await launch_pool(
                        cfg.capture, page_controller.budget.maximum, user_agent=cfg.crawl.user_agent
                    )
                capturer = PageCapturer(pool, self.store, cfg.capture) if pool is not None else None
                robots = self._robots(session)

                async def discover(site: Site) -> List[PageRecord]:
                    limits = DiscoveryLimits(site.max_pages, site.max_depth)
                    return await self._discoverer(session, robots).discover(site.root_url, limits)

                updater = WordPressUpdater(
                    session, credentials=cfg.credentials, command_timeout=cfg.update.command_timeout
                )
                pipeline = SitePipeline(
                    discover,
                    capturer,
                    SiteComparator(DiffEngine(cfg.diff), self.store, page_controller),
                    health_checker=HttpHealthChecker(session, timeout=cfg.update.health_timeout),
                    updater=updater,
                    rollback_executor=updater,
                    marker_store=JsonMarkerStore(cfg.storage.markers_path),
                    page_controller=page_controller,
                    config=cfg,
                    retry=retry,
                )
                orchestrator = Orchestrator(
                    pipeline,
                    site_controller,
                    persister=JsonResultStore(cfg.storage.results_path),
                    notifier=WebhookNotifier(
                        session,
                        slack_webhook_url=cfg.notifications.slack_webhook_url,
                        discord_webhook_url=cfg.notifications.discord_webhook_url,
                        timeout=cfg.notifications.timeout,
                    ),
                    settings=cfg.concurrency,
                    retry=retry,
                )
                async with monitor:
                    result = await orchestrator.run_batch(sites, options)
                logger.info("Resource stats: %s", monitor.stats())
                return result
            finally:
                if pool is not None:
                    await pool.close()

    def start(self, selection: Selection = "all", mode: Union[Mode, str] = Mode.FULL, **flags) -> BatchResult:
        """Synchronous wrapper around :meth:`run`."""
        try:
            return asyncio.run(self.run(selection, mode, **flags))
        except Exception as exc:
            logger.error("Batch failed: %s", exc)
            raise

