"""
Site-level comparison: pair stored captures, diff them, build the verdict.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Dict, Iterable, List, Optional, Tuple

from wp_vrt.concurrency import ConcurrencyController
from wp_vrt.diff.engine import DiffEngine
from wp_vrt.models import Capture, ComparisonResult, ComparisonStatus, Phase, SiteVerdict
from wp_vrt.storage import ArtifactStore, capture_key, capture_prefix, diff_key, parse_capture_key

__all__ = ("SiteComparator", "build_verdict")

logger = logging.getLogger("WPVRT.diff")


def build_verdict(results: Iterable[ComparisonResult], critical_threshold: float) -> SiteVerdict:
    """Aggregate page results: NG if any page is NG, critical above *critical_threshold*.

    ``MISSING_AFTER``, ``DIMENSION_MISMATCH`` and ``ERROR`` pages are counted
    on their own and never towards ``ok_count``.
    """
    results = list(results)
    verdict = SiteVerdict(status=ComparisonStatus.OK, total_pages=len(results))
    measured: List[float] = []
    for r in results:
        if r.status is ComparisonStatus.OK:
            verdict.ok_count += 1
        elif r.status is ComparisonStatus.NG:
            verdict.ng_count += 1
        elif r.status is ComparisonStatus.MISSING_AFTER:
            verdict.missing_count += 1
        else:
            verdict.error_count += 1
        if r.diff_percentage is not None:
            measured.append(r.diff_percentage)
            if r.diff_percentage > critical_threshold:
                verdict.critical_count += 1
    if verdict.ng_count:
        verdict.status = ComparisonStatus.NG
    if measured:
        verdict.avg_diff_percentage = sum(measured) / len(measured)
    return verdict


class SiteComparator:
    """Compares every (baseline, after) pair stored for one site and date."""

    def __init__(
        self,
        engine: DiffEngine,
        store: ArtifactStore,
        controller: Optional[ConcurrencyController] = None,
    ) -> None:
        self.engine = engine
        self.store = store
        self.controller = controller

    def stored_page_ids(self, phase: Phase, date: str, site_id: str) -> List[str]:
        page_ids = []
        for key in self.store.list(capture_prefix(phase, date, site_id)):
            try:
                page_ids.append(parse_capture_key(key)[3])
            except ValueError:
                logger.debug("Ignoring non-capture key %s", key)
        return page_ids

    def _load(self, phase: Phase, date: str, site_id: str, page_id: str) -> Optional[Capture]:
        data = self.store.get(capture_key(phase, date, site_id, page_id))
        if data is None:
            return None
        # dimensions are read by the engine at decode time
        return Capture(site_id=site_id, page_id=page_id, phase=phase, image=data, width=0, height=0)

    def _compare_page(self, date: str, site_id: str, page_id: str, threshold: float) -> ComparisonResult:
        baseline = self._load(Phase.BASELINE, date, site_id, page_id)
        after = self._load(Phase.AFTER, date, site_id, page_id)
        result = self.engine.compare(baseline, after, threshold, page_id=page_id)
        if result.diff_image is None:
            return result
        key = self.store.put(diff_key(date, site_id, threshold, page_id), result.diff_image)
        # the stored file is the only copy kept for the rest of the batch
        return replace(result, diff_image=None, diff_path=key)

    async def compare_site(
        self,
        site_id: str,
        date: str,
        *,
        threshold: Optional[float] = None,
        critical_threshold: Optional[float] = None,
        page_ids: Optional[Iterable[str]] = None,
    ) -> Tuple[Dict[str, ComparisonResult], SiteVerdict]:
        """Compare all pages of *site_id* captured on *date*.

        The page set is the union of *page_ids* (pages expected from
        discovery) and whatever either phase has stored, so an expected page
        with no capture still yields a ``MISSING_AFTER`` result.
        """
        settings = self.engine.settings
        threshold = settings.threshold if threshold is None else threshold
        critical = settings.critical_threshold if critical_threshold is None else critical_threshold

        ordered: Dict[str, None] = dict.fromkeys(page_ids or ())
        for phase in (Phase.BASELINE, Phase.AFTER):
            listed = await asyncio.to_thread(self.stored_page_ids, phase, date, site_id)
            ordered.update(dict.fromkeys(listed))
        pending = list(ordered)
        logger.info("Comparing %d page(s) for %s (%s)", len(pending), site_id, date)

        async def work(page_id: str) -> ComparisonResult:
            return await asyncio.to_thread(self._compare_page, date, site_id, page_id, threshold)

        if self.controller is not None:
            item_results = await self.controller.run_waves(
                pending, work, timeout=settings.compare_timeout
            )
            outcomes = [(r.key, r.value, r.error) for r in item_results]
        else:
            outcomes = []
            for page_id in pending:
                try:
                    outcomes.append((page_id, await work(page_id), None))
                except Exception as exc:
                    outcomes.append((page_id, None, exc))

        results: Dict[str, ComparisonResult] = {}
        for page_id, value, error in outcomes:
            if error is not None:
                logger.error("Comparison failed for %s/%s: %s", site_id, page_id, error)
                value = ComparisonResult(
                    page_id=page_id,
                    status=ComparisonStatus.ERROR,
                    threshold=threshold,
                    error=str(error),
                    error_kind=getattr(error, "kind", type(error).__name__),
                )
            results[page_id] = value

        verdict = build_verdict(results.values(), critical)
        logger.info(
            "%s verdict %s: %d OK, %d NG, %d critical, %d missing, %d error",
            site_id, verdict.status.value, verdict.ok_count, verdict.ng_count,
            verdict.critical_count, verdict.missing_count, verdict.error_count,
        )
        return results, verdict
