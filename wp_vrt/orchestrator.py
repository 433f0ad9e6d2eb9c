"""
Batch orchestration: fan the site pipeline out over many sites.
"""
from __future__ import annotations

import logging
from typing import List, Optional, Sequence

from wp_vrt.collaborators import Notifier, Persister
from wp_vrt.concurrency import ConcurrencyController
from wp_vrt.config import ConcurrencySettings
from wp_vrt.errors import ResourceExhausted
from wp_vrt.models import BatchResult, BatchSummary, Site, SiteOutcome, SiteStatus, Stage
from wp_vrt.pipeline import RunOptions, SitePipeline
from wp_vrt.retry import NO_RETRY, RetryExhaustedError, RetryPolicy

__all__ = ("Orchestrator", "summarize")

logger = logging.getLogger("WPVRT.orchestrator")


def summarize(outcomes: Sequence[SiteOutcome], *, emergency_stopped: bool = False) -> BatchSummary:
    total = len(outcomes)
    return BatchSummary(
        total_sites=total,
        success_count=sum(1 for o in outcomes if o.success),
        failure_count=sum(1 for o in outcomes if not o.success),
        ng_count=sum(1 for o in outcomes if o.is_ng),
        critical_count=sum(1 for o in outcomes if o.is_critical),
        avg_processing_time=sum(o.processing_time for o in outcomes) / total if total else 0.0,
        emergency_stopped=emergency_stopped,
    )


class Orchestrator:
    """Runs :class:`SitePipeline` for every site in bounded waves.

    One site's failure never touches its siblings; every input site yields
    exactly one :class:`SiteOutcome`, in input order. Persistence and
    notification happen after aggregation and cannot fail the batch.
    """

    def __init__(
        self,
        pipeline: SitePipeline,
        controller: ConcurrencyController,
        *,
        persister: Optional[Persister] = None,
        notifier: Optional[Notifier] = None,
        settings: Optional[ConcurrencySettings] = None,
        retry: RetryPolicy = NO_RETRY,
    ) -> None:
        self.pipeline = pipeline
        self.controller = controller
        self.persister = persister
        self.notifier = notifier
        self.settings = settings or ConcurrencySettings()
        self.retry = retry

    async def run_batch(self, sites: Sequence[Site], options: RunOptions) -> BatchResult:
        sites = list(sites)
        logger.info(
            "Batch start: %d site(s), mode %s, date %s", len(sites), options.mode.value, options.run_date
        )

        async def work(site: Site) -> SiteOutcome:
            return await self.pipeline.run(site, options)

        item_results = await self.controller.run_waves(
            sites,
            work,
            key=lambda s: s.id,
            max_concurrency=options.max_concurrent_sites,
            inter_wave_delay=self.settings.inter_wave_delay,
        )
        by_id = {r.key: r for r in item_results}

        outcomes: List[SiteOutcome] = []
        for site in sites:
            r = by_id.get(site.id)
            if r is not None and r.ok:
                outcomes.append(r.value)
                continue
            error = r.error if r is not None else ResourceExhausted("site was never scheduled")
            outcomes.append(self._failed_outcome(site, options, error))

        summary = summarize(outcomes, emergency_stopped=self.controller.emergency_stopped)
        logger.info(
            "Batch %s done: %d ok, %d failed, %d NG, %d critical",
            summary.batch_id, summary.success_count, summary.failure_count,
            summary.ng_count, summary.critical_count,
        )
        await self._persist(summary, outcomes)
        if summary.has_ng_results or options.notify_on_success:
            await self._notify(summary, outcomes)
        return BatchResult(summary=summary, outcomes=outcomes)

    @staticmethod
    def _failed_outcome(site: Site, options: RunOptions, error: BaseException) -> SiteOutcome:
        stage = Stage.SCHEDULING
        logger.error("Site %s not processed: %s", site.id, error)
        return SiteOutcome(
            site_id=site.id,
            site_url=site.root_url,
            mode=options.mode,
            status=SiteStatus.FAILED,
            failed_stage=stage,
            error=str(error),
            error_kind=getattr(error, "kind", type(error).__name__),
        )

    async def _persist(self, summary: BatchSummary, outcomes: Sequence[SiteOutcome]) -> None:
        if self.persister is None:
            return
        for outcome in outcomes:
            try:
                await self.persister.save_outcome(summary.batch_id, outcome)
            except Exception as exc:
                logger.error("Saving result for %s failed: %s", outcome.site_id, exc)
        try:
            await self.persister.save_summary(summary, outcomes)
        except Exception as exc:
            logger.error("Saving batch summary failed: %s", exc)

    async def _notify(self, summary: BatchSummary, outcomes: Sequence[SiteOutcome]) -> None:
        if self.notifier is None:
            return
        try:
            await self.retry.call(self.notifier.notify, summary, outcomes, label="batch notification")
        except RetryExhaustedError as exc:
            logger.error("Batch notification failed: %s", exc.last_error)
