# File: tests/test_pipeline.py
# Per-site state machine: modes, update/rollback paths and failure stages
from typing import Dict, List, Optional

import pytest
from aiohttp import ClientConnectionError
from conftest import FakeHealthChecker, FakeUpdater, MemoryMarkerStore, StoreCapturer, no_sleep, png_bytes

from wp_vrt.concurrency import ConcurrencyController
from wp_vrt.config import VRTConfig
from wp_vrt.diff import DiffEngine, SiteComparator
from wp_vrt.models import ComparisonStatus, Mode, PageRecord, Phase, SiteStatus, Stage
from wp_vrt.pipeline import RunOptions, SitePipeline
from wp_vrt.retry import RetryPolicy
from wp_vrt.storage import capture_key

DATE = "20240501"
PLAIN = png_bytes()
HALF_BLACK = png_bytes(box=(0, 0, 40, 15, (0, 0, 0, 255)))
SMALL_CHANGE = png_bytes(box=(0, 0, 4, 4, (0, 0, 0, 255)))

PAGES = [
    PageRecord(url="http://blog.example.com/", page_id="index"),
    PageRecord(url="http://blog.example.com/about", page_id="about", depth=1),
]


def images(after_index: bytes = PLAIN) -> Dict[tuple, bytes]:
    return {
        (Phase.BASELINE, "index"): PLAIN,
        (Phase.BASELINE, "about"): PLAIN,
        (Phase.AFTER, "index"): after_index,
        (Phase.AFTER, "about"): PLAIN,
    }


class Harness:
    def __init__(
        self,
        config,
        store,
        *,
        shots: Optional[Dict[tuple, bytes]] = None,
        pages: Optional[List[PageRecord]] = None,
        health: Optional[FakeHealthChecker] = None,
        updater: Optional[FakeUpdater] = None,
        markers: Optional[MemoryMarkerStore] = None,
        with_capturer: bool = True,
        retry: Optional[RetryPolicy] = None,
    ) -> None:
        self.pages = PAGES if pages is None else pages
        self.discover_calls = 0
        self.health = health or FakeHealthChecker(True)
        self.updater = updater or FakeUpdater()
        self.markers = markers if markers is not None else MemoryMarkerStore()
        self.capturer = StoreCapturer(store, images() if shots is None else shots) if with_capturer else None
        self.store = store
        page_controller = ConcurrencyController.for_pages(config.concurrency)
        self.pipeline = SitePipeline(
            self.discover,
            self.capturer,
            SiteComparator(DiffEngine(config.diff), store, page_controller),
            health_checker=self.health,
            updater=self.updater,
            rollback_executor=self.updater,
            marker_store=self.markers,
            page_controller=page_controller,
            config=config,
            retry=retry or RetryPolicy(max_attempts=1, sleep=no_sleep),
        )
        self.site = config.site("blog")

    async def discover(self, site) -> List[PageRecord]:
        self.discover_calls += 1
        return list(self.pages)

    async def run(self, mode: Mode = Mode.FULL, **flags):
        return await self.pipeline.run(self.site, RunOptions(mode=mode, run_date=DATE, **flags))


# --------------------------------------------------------------------------- #
#                                 Full runs                                   #
# --------------------------------------------------------------------------- #


@pytest.mark.asyncio()
async def test_full_run_without_changes(vrt_config, store):
    h = Harness(vrt_config, store)
    outcome = await h.run()

    assert outcome.status is SiteStatus.DONE
    assert outcome.failed_stage is None
    assert outcome.captures == {Phase.BASELINE: 2, Phase.AFTER: 2}
    assert outcome.verdict.status is ComparisonStatus.OK
    assert all(r.status is ComparisonStatus.OK for r in outcome.results.values())
    assert outcome.rollback is None
    assert Stage.HEALTH_CHECK in outcome.health_checks
    assert outcome.processing_time >= 0


@pytest.mark.asyncio()
async def test_small_change_is_ng_but_not_critical(vrt_config, store):
    h = Harness(vrt_config, store, shots=images(SMALL_CHANGE))
    outcome = await h.run(rollback_on_critical=True)

    assert outcome.success
    assert outcome.is_ng
    assert not outcome.is_critical
    assert outcome.rollback is None


@pytest.mark.asyncio()
async def test_critical_regression_is_rolled_back(vrt_config, store):
    h = Harness(vrt_config, store, shots=images(HALF_BLACK))
    outcome = await h.run(auto_update=True, rollback_on_critical=True)

    assert outcome.success, outcome.error
    assert outcome.is_critical
    assert outcome.update.marker == "20240101-000000"
    assert h.updater.rollbacks == [("blog", "20240101-000000")]
    assert outcome.rollback.success
    assert outcome.rollback.post_health.healthy
    assert Stage.POST_UPDATE_HEALTH_CHECK in outcome.health_checks
    assert Stage.POST_ROLLBACK_HEALTH_CHECK in outcome.health_checks
    assert h.health.calls == 3


@pytest.mark.asyncio()
async def test_critical_without_opt_in_is_not_rolled_back(vrt_config, store):
    h = Harness(vrt_config, store, shots=images(HALF_BLACK))
    outcome = await h.run(auto_update=True)

    assert outcome.success
    assert outcome.is_critical
    assert outcome.rollback is None
    assert h.updater.rollbacks == []


@pytest.mark.asyncio()
async def test_rollback_without_marker_fails_but_checks_health(vrt_config, store):
    h = Harness(vrt_config, store, shots=images(HALF_BLACK))
    outcome = await h.run(rollback_on_critical=True)

    assert outcome.status is SiteStatus.FAILED
    assert outcome.failed_stage is Stage.ROLLBACK
    assert outcome.error_kind == "RollbackFailed"
    assert "marker" in outcome.error
    assert outcome.rollback.attempted and not outcome.rollback.success
    assert outcome.rollback.post_health is not None
    assert h.updater.rollbacks == []
    # comparison results survive the failure
    assert outcome.verdict.critical_count == 1


@pytest.mark.asyncio()
async def test_failed_rollback_still_checks_health(vrt_config, store):
    h = Harness(
        vrt_config, store,
        shots=images(HALF_BLACK),
        updater=FakeUpdater(rollback_ok=False),
        markers=MemoryMarkerStore({"blog": "m-old"}),
    )
    outcome = await h.run(rollback_on_critical=True)

    assert outcome.failed_stage is Stage.ROLLBACK
    assert "db import failed" in outcome.error
    assert h.updater.rollbacks == [("blog", "m-old")]
    assert Stage.POST_ROLLBACK_HEALTH_CHECK in outcome.health_checks


@pytest.mark.asyncio()
async def test_unhealthy_after_rollback(vrt_config, store):
    h = Harness(
        vrt_config, store,
        shots=images(HALF_BLACK),
        health=FakeHealthChecker(True, False),
        markers=MemoryMarkerStore({"blog": "m-old"}),
    )
    outcome = await h.run(rollback_on_critical=True)

    assert outcome.failed_stage is Stage.POST_ROLLBACK_HEALTH_CHECK
    assert outcome.error_kind == "HealthCheckFailed"
    assert outcome.rollback.success


# --------------------------------------------------------------------------- #
#                               Failure stages                                #
# --------------------------------------------------------------------------- #


@pytest.mark.asyncio()
async def test_unhealthy_site_stops_before_discovery(vrt_config, store):
    h = Harness(vrt_config, store, health=FakeHealthChecker(False))
    outcome = await h.run()

    assert outcome.failed_stage is Stage.HEALTH_CHECK
    assert outcome.error_kind == "HealthCheckFailed"
    assert h.discover_calls == 0
    assert h.capturer.calls == []


@pytest.mark.asyncio()
async def test_unhealthy_after_update(vrt_config, store):
    h = Harness(vrt_config, store, health=FakeHealthChecker(True, False))
    outcome = await h.run(auto_update=True)

    assert outcome.failed_stage is Stage.POST_UPDATE_HEALTH_CHECK
    assert h.markers.markers == {"blog": "20240101-000000"}
    assert all(phase is Phase.BASELINE for phase, _ in h.capturer.calls)


@pytest.mark.asyncio()
async def test_transient_health_errors_are_retried(vrt_config, store):
    class Flaky(FakeHealthChecker):
        async def check(self, site):
            self.calls += 1
            if self.calls < 3:
                raise ClientConnectionError("connection reset")
            return await super().check(site)

    health = Flaky(True)
    h = Harness(vrt_config, store, health=health, retry=RetryPolicy(max_attempts=3, sleep=no_sleep))
    outcome = await h.run(Mode.BASELINE)
    assert outcome.success
    assert health.calls >= 3


@pytest.mark.asyncio()
async def test_unreachable_site_after_retries(vrt_config, store):
    class Down(FakeHealthChecker):
        async def check(self, site):
            self.calls += 1
            raise ClientConnectionError("connection refused")

    h = Harness(vrt_config, store, health=Down(), retry=RetryPolicy(max_attempts=2, sleep=no_sleep))
    outcome = await h.run()
    assert outcome.failed_stage is Stage.HEALTH_CHECK
    assert "unreachable" in outcome.error
    assert h.health.calls == 2


@pytest.mark.asyncio()
async def test_unexpected_error_is_contained(vrt_config, store):
    h = Harness(vrt_config, store)

    async def broken_discover(site):
        raise KeyError("sitemap")

    h.pipeline.discover = broken_discover
    outcome = await h.run()
    assert outcome.failed_stage is Stage.DISCOVER
    assert outcome.error_kind == "KeyError"


# --------------------------------------------------------------------------- #
#                                    Modes                                    #
# --------------------------------------------------------------------------- #


@pytest.mark.asyncio()
async def test_baseline_mode_captures_only_baseline(vrt_config, store):
    h = Harness(vrt_config, store)
    outcome = await h.run(Mode.BASELINE)

    assert outcome.success
    assert outcome.captures == {Phase.BASELINE: 2}
    assert outcome.verdict is None
    assert store.exists(capture_key(Phase.BASELINE, DATE, "blog", "about"))
    assert not store.list(f"after/{DATE}/blog")


@pytest.mark.asyncio()
async def test_after_mode_rediscovers_and_updates(vrt_config, store):
    h = Harness(vrt_config, store)
    outcome = await h.run(Mode.AFTER, auto_update=True)

    assert outcome.success
    assert h.discover_calls == 1
    assert h.updater.updates == ["blog"]
    assert outcome.captures == {Phase.AFTER: 2}
    assert outcome.verdict is None


@pytest.mark.asyncio()
async def test_compare_mode_uses_stored_captures(vrt_config, store):
    for phase, page_id in images(HALF_BLACK):
        store.put(capture_key(phase, DATE, "blog", page_id), images(HALF_BLACK)[(phase, page_id)])
    h = Harness(vrt_config, store, with_capturer=False)
    outcome = await h.run(Mode.COMPARE)

    assert outcome.success
    assert h.discover_calls == 0
    assert set(outcome.results) == {"index", "about"}
    assert outcome.results["index"].status is ComparisonStatus.NG
    assert outcome.results["index"].diff_path is not None


@pytest.mark.asyncio()
async def test_capture_needs_a_capturer(vrt_config, store):
    h = Harness(vrt_config, store, with_capturer=False)
    outcome = await h.run(Mode.BASELINE)
    assert outcome.failed_stage is Stage.CAPTURE_BASELINE
    assert outcome.error_kind == "CaptureError"


@pytest.mark.asyncio()
async def test_unloaded_page_is_reported_missing(vrt_config, store):
    pages = PAGES + [PageRecord(url="http://blog.example.com/broken", page_id="broken", depth=1, error="HTTP 500")]
    h = Harness(vrt_config, store, pages=pages)
    outcome = await h.run()

    assert outcome.success
    assert "broken" not in {pid for _, pid in h.capturer.calls}
    assert outcome.results["broken"].status is ComparisonStatus.MISSING_AFTER
    assert outcome.verdict.missing_count == 1


@pytest.mark.asyncio()
async def test_failed_capture_becomes_missing(vrt_config, store):
    shots = images()
    del shots[(Phase.AFTER, "about")]
    h = Harness(vrt_config, store, shots=shots)
    outcome = await h.run()

    assert outcome.success
    assert outcome.captures[Phase.AFTER] == 1
    assert outcome.results["about"].error_kind == "MissingAfter"


@pytest.mark.asyncio()
async def test_update_method_none_skips_update(vrt_config, store):
    config = VRTConfig(**{**vrt_config.model_dump(), "sites": [{"id": "blog", "url": "http://blog.example.com"}]})
    h = Harness(config, store)
    outcome = await h.run(auto_update=True)
    assert outcome.success
    assert outcome.update is None
    assert h.updater.updates == []
