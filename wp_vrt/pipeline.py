"""
Per-site rollback state machine.

    HealthCheck -> CaptureBaseline -> [ApplyUpdate -> PostUpdateHealthCheck]
      -> CaptureAfter -> Compare -> [Rollback -> PostRollbackHealthCheck] -> Done

The run is linear with an early exit: the first failing stage ends the site
with a ``FAILED`` outcome tagged with that stage. Which states run depends on
the :class:`~wp_vrt.models.Mode`.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, Protocol

from aiohttp import ClientError

from wp_vrt.collaborators import HealthChecker, MarkerStore, RollbackExecutor, Updater
from wp_vrt.concurrency import ConcurrencyController
from wp_vrt.config import VRTConfig
from wp_vrt.diff import SiteComparator
from wp_vrt.errors import CaptureError, HealthCheckFailed, RollbackFailed, UpdateFailed, VRTError
from wp_vrt.models import (
    Capture,
    HealthCheckResult,
    Mode,
    PageRecord,
    Phase,
    RollbackOutcome,
    Site,
    SiteOutcome,
    SiteStatus,
    Stage,
    utcnow,
)
from wp_vrt.retry import NO_RETRY, RetryExhaustedError, RetryPolicy

__all__ = ("RunOptions", "SitePipeline", "today")

logger = logging.getLogger("WPVRT.pipeline")

# transport failures worth another attempt
TRANSIENT_ERRORS = (ClientError, asyncio.TimeoutError, ConnectionError)

DiscoverFn = Callable[[Site], Awaitable[List[PageRecord]]]


def today() -> str:
    return datetime.now().strftime("%Y%m%d")


class SiteCapturer(Protocol):
    async def capture(self, site_id: str, page: PageRecord, phase: Phase, date: str) -> Capture: ...


@dataclass(frozen=True, slots=True)
class RunOptions:
    mode: Mode = Mode.FULL
    auto_update: bool = False
    rollback_on_critical: bool = False
    notify_on_success: bool = False
    max_concurrent_sites: Optional[int] = None
    max_concurrent_pages: Optional[int] = None
    run_date: str = field(default_factory=today)


class SitePipeline:
    def __init__(
        self,
        discover: DiscoverFn,
        capturer: Optional[SiteCapturer],
        comparator: SiteComparator,
        *,
        health_checker: HealthChecker,
        updater: Optional[Updater] = None,
        rollback_executor: Optional[RollbackExecutor] = None,
        marker_store: Optional[MarkerStore] = None,
        page_controller: ConcurrencyController,
        config: VRTConfig,
        retry: RetryPolicy = NO_RETRY,
    ) -> None:
        self.discover = discover
        self.capturer = capturer
        self.comparator = comparator
        self.health_checker = health_checker
        self.updater = updater
        self.rollback_executor = rollback_executor
        self.marker_store = marker_store
        self.page_controller = page_controller
        self.config = config
        self.retry = retry

    async def run(self, site: Site, options: RunOptions) -> SiteOutcome:
        """Drive *site* through the states of ``options.mode``. Never raises."""
        outcome = SiteOutcome(site_id=site.id, site_url=site.root_url, mode=options.mode)
        started = time.monotonic()
        stage = Stage.HEALTH_CHECK
        mode = options.mode
        logger.info("Processing site %s (%s) in %s mode", site.id, site.root_url, mode.value)
        try:
            await self._health_check(site, stage, outcome)

            if mode in (Mode.BASELINE, Mode.FULL):
                stage = Stage.DISCOVER
                outcome.pages = await self.discover(site)
                stage = Stage.CAPTURE_BASELINE
                await self._capture(site, Phase.BASELINE, outcome, options)

            if options.auto_update and mode in (Mode.AFTER, Mode.FULL):
                stage = Stage.APPLY_UPDATE
                if await self._apply_update(site, outcome):
                    stage = Stage.POST_UPDATE_HEALTH_CHECK
                    await self._health_check(site, stage, outcome)

            if mode is Mode.AFTER:
                stage = Stage.DISCOVER
                outcome.pages = await self.discover(site)

            if mode in (Mode.AFTER, Mode.FULL):
                stage = Stage.CAPTURE_AFTER
                await self._capture(site, Phase.AFTER, outcome, options)

            if mode in (Mode.COMPARE, Mode.FULL):
                stage = Stage.COMPARE
                await self._compare(site, outcome, options)

                if outcome.is_critical and options.rollback_on_critical:
                    stage = Stage.ROLLBACK
                    await self._rollback(site, outcome)

            stage = Stage.DONE
        except Exception as exc:
            self._fail(outcome, stage, exc)
        outcome.processing_time = time.monotonic() - started
        outcome.finished_at = utcnow()
        if outcome.success:
            logger.info("Site %s done in %.1f s", site.id, outcome.processing_time)
        return outcome

    def _fail(self, outcome: SiteOutcome, stage: Stage, exc: BaseException) -> None:
        if isinstance(exc, VRTError) and exc.stage:
            stage = Stage(exc.stage)
        outcome.status = SiteStatus.FAILED
        outcome.failed_stage = stage
        outcome.error = str(exc)
        outcome.error_kind = exc.kind if isinstance(exc, VRTError) else type(exc).__name__
        if isinstance(exc, VRTError):
            logger.error("Site %s failed at %s: %s", outcome.site_id, stage.value, exc)
        else:
            logger.exception("Site %s failed at %s", outcome.site_id, stage.value)

    # -- states -----------------------------------------------------------

    async def _probe(self, site: Site) -> HealthCheckResult:
        try:
            return await self.retry.call(
                self.health_checker.check, site,
                retry_on=TRANSIENT_ERRORS, label=f"health check {site.id}",
            )
        except RetryExhaustedError as exc:
            return HealthCheckResult(False, f"unreachable: {exc.last_error}")

    async def _health_check(self, site: Site, stage: Stage, outcome: SiteOutcome) -> HealthCheckResult:
        result = await self._probe(site)
        outcome.health_checks[stage] = result
        if not result.healthy:
            raise HealthCheckFailed(f"{stage.value}: {result.detail}", stage=stage.value)
        logger.debug("%s healthy (%s)", site.id, stage.value)
        return result

    async def _capture(self, site: Site, phase: Phase, outcome: SiteOutcome, options: RunOptions) -> int:
        if self.capturer is None:
            raise CaptureError("no capturer configured for this run")
        targets = [p for p in outcome.pages if p.loaded]
        skipped = len(outcome.pages) - len(targets)
        if skipped:
            logger.info("%s: %d page(s) failed to load and are not captured", site.id, skipped)

        async def work(page: PageRecord) -> Capture:
            return await self.capturer.capture(site.id, page, phase, options.run_date)

        results = await self.page_controller.run_waves(
            targets,
            work,
            key=lambda p: p.page_id,
            max_concurrency=options.max_concurrent_pages,
            timeout=self.config.capture.capture_timeout,
        )
        captured = 0
        for r in results:
            if r.ok:
                captured += 1
            else:
                logger.error("%s: %s capture failed for %s: %s", site.id, phase.value, r.item.url, r.error)
        outcome.captures[phase] = captured
        logger.info("%s: %d/%d %s capture(s)", site.id, captured, len(targets), phase.value)
        return captured

    async def _apply_update(self, site: Site, outcome: SiteOutcome) -> bool:
        if site.update_method == "none" or self.updater is None:
            logger.warning("%s: update requested but no update method configured, skipping", site.id)
            return False
        try:
            update = await self.retry.call(
                self.updater.apply_update, site,
                retry_on=TRANSIENT_ERRORS, label=f"update {site.id}",
            )
        except RetryExhaustedError as exc:
            raise UpdateFailed(f"{site.id}: update failed", cause=exc.last_error) from exc
        outcome.update = update
        if not update.success:
            raise UpdateFailed(f"{site.id}: {update.detail}")
        if update.marker and self.marker_store is not None:
            await self.marker_store.record(site.id, update.marker)
        return True

    async def _compare(self, site: Site, outcome: SiteOutcome, options: RunOptions) -> None:
        results, verdict = await self.comparator.compare_site(
            site.id,
            options.run_date,
            threshold=self.config.diff.threshold,
            critical_threshold=self.config.diff.critical_threshold,
            page_ids=[p.page_id for p in outcome.pages],
        )
        outcome.results = results
        outcome.verdict = verdict

    async def _rollback(self, site: Site, outcome: SiteOutcome) -> None:
        """Roll back to the latest known-good marker, then re-check health.

        The post-rollback health check runs whether or not the rollback
        itself succeeded; either failure fails the site.
        """
        record = RollbackOutcome(attempted=True)
        outcome.rollback = record
        logger.warning("%s: critical regression, rolling back", site.id)
        failure: Optional[VRTError] = None
        try:
            marker = await self.marker_store.latest(site.id) if self.marker_store else None
            if marker is None:
                raise RollbackFailed(f"{site.id}: no known-good marker to roll back to")
            if self.rollback_executor is None:
                raise RollbackFailed(f"{site.id}: no rollback executor configured")
            record.marker = marker
            try:
                result = await self.retry.call(
                    self.rollback_executor.rollback, site, marker,
                    retry_on=TRANSIENT_ERRORS, label=f"rollback {site.id}",
                )
            except RetryExhaustedError as exc:
                raise RollbackFailed(f"{site.id}: rollback failed", cause=exc.last_error) from exc
            record.result = result
            record.success = result.success
            if not result.success:
                raise RollbackFailed(f"{site.id}: {result.detail}")
        except RollbackFailed as exc:
            record.error = str(exc)
            failure = exc
        except Exception as exc:
            record.error = str(exc)
            failure = RollbackFailed(f"{site.id}: rollback failed", cause=exc)

        post = await self._probe(site)
        record.post_health = post
        outcome.health_checks[Stage.POST_ROLLBACK_HEALTH_CHECK] = post

        if failure is not None:
            failure.stage = Stage.ROLLBACK.value
            raise failure
        if not post.healthy:
            raise HealthCheckFailed(
                f"{Stage.POST_ROLLBACK_HEALTH_CHECK.value}: {post.detail}",
                stage=Stage.POST_ROLLBACK_HEALTH_CHECK.value,
            )
        logger.info("%s: rolled back to %s", site.id, record.marker)
