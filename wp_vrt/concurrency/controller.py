"""
Bounded wave execution with a resource-aware, self-adjusting budget.

:class:`ResourceMonitor` owns the telemetry loops (budget adjustment and
emergency stop). :class:`ConcurrencyController` runs work in waves sized by
its :class:`WorkerBudget`; the site level and the page level each get one,
both registered with the same monitor.
"""
from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Generic,
    Iterable,
    List,
    Optional,
    TypeVar,
)

import psutil

from wp_vrt.concurrency.budget import WorkerBudget
from wp_vrt.concurrency.sampler import ResourceSampler
from wp_vrt.config import ConcurrencySettings
from wp_vrt.errors import ResourceExhausted
from wp_vrt.models import BudgetAdjustment, ResourceSnapshot

__all__ = ("ItemResult", "ResourceMonitor", "ConcurrencyController", "recommended_settings")

T = TypeVar("T")
R = TypeVar("R")

logger = logging.getLogger("WPVRT.concurrency")

_LEAK_WINDOW = 5


@dataclass(slots=True)
class ItemResult(Generic[T, R]):
    """Terminal record for one item of a wave run, matched by ``key``."""

    key: Any
    item: T
    value: Optional[R] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ResourceMonitor:
    """Samples CPU/memory and drives budget changes and the emergency stop."""

    def __init__(
        self,
        settings: ConcurrencySettings,
        sampler: Optional[ResourceSampler] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.settings = settings
        self.sampler = sampler or ResourceSampler(history_size=settings.history_size)
        self._clock = clock
        self._sleep = sleep
        self._budgets: List[WorkerBudget] = []
        self._tasks: List[asyncio.Task] = []
        self.emergency_stopped = False
        self.emergency_reason: Optional[str] = None
        self.emergency_stops = 0
        self.memory_leak_suspected = False
        self._leak_callbacks: List[Callable[[ResourceSnapshot], None]] = []

    # -- registration -----------------------------------------------------

    def register(self, budget: WorkerBudget) -> None:
        if budget not in self._budgets:
            self._budgets.append(budget)

    def on_memory_leak(self, callback: Callable[[ResourceSnapshot], None]) -> None:
        self._leak_callbacks.append(callback)

    # -- rules ------------------------------------------------------------

    def evaluate(self, budget: WorkerBudget, snapshot: ResourceSnapshot) -> Optional[tuple[int, str]]:
        """Propose ``(new_budget, reason)`` for *budget*, or None to keep it."""
        s = self.settings
        current = budget.current
        target = current
        reason = ""

        if snapshot.cpu_percent > s.max_cpu_percent:
            target = max(budget.minimum, current - 1)
            reason = f"CPU overload ({snapshot.cpu_percent:.0f}%)"
        elif snapshot.cpu_percent < s.cpu_low_watermark and current < budget.maximum:
            target = min(budget.maximum, current + 1)
            reason = f"CPU headroom ({snapshot.cpu_percent:.0f}%)"

        if snapshot.memory_percent > s.max_memory_percent:
            target = max(budget.minimum, min(target, current - 1))
            reason = f"memory overload ({snapshot.memory_percent:.0f}%)"

        if snapshot.process_rss_mb > s.process_memory_cap_mb:
            target = max(budget.minimum, current - 1)
            reason = f"process memory {snapshot.process_rss_mb:.0f}MB over cap"

        if target == current:
            return None

        last = budget.last_adjustment
        if last is not None and self._clock() - last.timestamp < s.adjust_interval * 2:
            if abs(target - current) <= 1:
                logger.debug("Budget change %d -> %d suppressed (cooldown)", current, target)
                return None
        return target, reason

    def apply(self, budget: WorkerBudget, snapshot: ResourceSnapshot) -> Optional[BudgetAdjustment]:
        proposal = self.evaluate(budget, snapshot)
        if proposal is None:
            return None
        new, reason = proposal
        adjustment = budget.adjust(new, reason, self._clock())
        if adjustment is not None:
            logger.info("Worker budget %d -> %d (%s)", adjustment.old, adjustment.new, reason)
        return adjustment

    def check_emergency(self, snapshot: ResourceSnapshot) -> bool:
        s = self.settings
        if snapshot.cpu_percent > s.emergency_cpu_percent or snapshot.memory_percent > s.emergency_memory_percent:
            self.emergency_stops += 1
            if not self.emergency_stopped:
                self.emergency_reason = (
                    f"CPU {snapshot.cpu_percent:.0f}%, memory {snapshot.memory_percent:.0f}%"
                )
                logger.error("Emergency stop: %s", self.emergency_reason)
            self.emergency_stopped = True
            return True
        return False

    def detect_memory_leak(self) -> bool:
        """True when process RSS grew steadily faster than the configured rate."""
        recent = self.sampler.history[-_LEAK_WINDOW:]
        if len(recent) < _LEAK_WINDOW:
            return False
        deltas = [b.process_rss - a.process_rss for a, b in zip(recent, recent[1:])]
        if any(d <= 0 for d in deltas):
            return False
        elapsed = recent[-1].timestamp - recent[0].timestamp
        if elapsed <= 0:
            return False
        growth_mb = (recent[-1].process_rss - recent[0].process_rss) / 1024 / 1024
        per_minute = growth_mb / elapsed * 60
        return per_minute > self.settings.memory_leak_mb_per_min

    def tick(self) -> ResourceSnapshot:
        """One adjustment-loop iteration."""
        snapshot = self.sampler.sample()
        for budget in self._budgets:
            self.apply(budget, snapshot)
        if self.detect_memory_leak():
            if not self.memory_leak_suspected:
                logger.warning("Memory leak suspected: RSS %.0fMB and growing", snapshot.process_rss_mb)
            self.memory_leak_suspected = True
            for callback in self._leak_callbacks:
                callback(snapshot)
        return snapshot

    def reset_emergency(self) -> None:
        self.emergency_stopped = False
        self.emergency_reason = None

    # -- loops ------------------------------------------------------------

    async def _adjust_loop(self) -> None:
        while True:
            await self._sleep(self.settings.adjust_interval)
            try:
                self.tick()
            except psutil.Error as exc:
                logger.error("Resource sampling failed: %s", exc)

    async def _emergency_loop(self) -> None:
        while True:
            await self._sleep(self.settings.emergency_interval)
            try:
                self.check_emergency(self.sampler.peek())
            except psutil.Error as exc:
                logger.error("Emergency sampling failed: %s", exc)

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def start(self) -> None:
        if self._tasks:
            return
        logger.info("Resource monitoring started")
        self._tasks = [
            asyncio.create_task(self._adjust_loop(), name="vrt-adjust"),
            asyncio.create_task(self._emergency_loop(), name="vrt-emergency"),
        ]

    async def stop(self) -> None:
        if not self._tasks:
            return
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Resource monitoring stopped")

    async def __aenter__(self) -> ResourceMonitor:
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    def stats(self) -> Dict[str, Any]:
        history = self.sampler.history
        adjustments = [a for b in self._budgets for a in b.history]
        return {
            "budgets": [b.current for b in self._budgets],
            "avg_cpu_percent": round(sum(h.cpu_percent for h in history) / len(history)) if history else 0,
            "avg_memory_percent": round(sum(h.memory_percent for h in history) / len(history)) if history else 0,
            "total_adjustments": len(adjustments),
            "scale_ups": sum(1 for a in adjustments if a.direction == "scale-up"),
            "scale_downs": sum(1 for a in adjustments if a.direction == "scale-down"),
            "emergency_stops": self.emergency_stops,
            "memory_leak_suspected": self.memory_leak_suspected,
        }


class ConcurrencyController:
    """Runs ``work(item)`` over items in waves of at most ``budget.current``."""

    def __init__(
        self,
        budget: WorkerBudget,
        monitor: Optional[ResourceMonitor] = None,
        *,
        name: str = "items",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.budget = budget
        self.monitor = monitor
        self.name = name
        self._sleep = sleep
        self.in_flight = 0
        self.peak_in_flight = 0
        if monitor is not None:
            monitor.register(budget)

    @classmethod
    def for_sites(cls, settings: ConcurrencySettings, monitor: Optional[ResourceMonitor] = None, **kw) -> ConcurrencyController:
        cap = settings.max_concurrent_sites
        return cls(WorkerBudget(cap, 1, cap), monitor, name="sites", **kw)

    @classmethod
    def for_pages(cls, settings: ConcurrencySettings, monitor: Optional[ResourceMonitor] = None, **kw) -> ConcurrencyController:
        maximum = max(settings.max_workers, settings.max_concurrent_pages)
        minimum = min(settings.min_workers, settings.max_concurrent_pages)
        budget = WorkerBudget(settings.max_concurrent_pages, minimum, maximum)
        return cls(budget, monitor, name="pages", **kw)

    @property
    def emergency_stopped(self) -> bool:
        return self.monitor is not None and self.monitor.emergency_stopped

    def wave_size(self, max_concurrency: Optional[int] = None) -> int:
        size = self.budget.current
        if max_concurrency is not None:
            size = min(size, max_concurrency)
        return max(1, size)

    async def _run_one(self, item: T, work: Callable[[T], Awaitable[R]], timeout: Optional[float]) -> R:
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            if timeout is None:
                return await work(item)
            return await asyncio.wait_for(work(item), timeout)
        finally:
            self.in_flight -= 1

    async def run_waves(
        self,
        items: Iterable[T],
        work: Callable[[T], Awaitable[R]],
        *,
        key: Callable[[T], Any] = lambda item: item,
        max_concurrency: Optional[int] = None,
        timeout: Optional[float] = None,
        inter_wave_delay: float = 0.0,
    ) -> List[ItemResult[T, R]]:
        """Process *items* wave by wave; every item yields one ItemResult.

        A wave is fully settled before the next starts. Failures and
        timeouts stay inside their item's result. Once the monitor raised the
        emergency stop, no further wave starts and the remaining items get a
        :class:`ResourceExhausted` error.
        """
        pending = list(items)
        results: List[ItemResult[T, R]] = []
        index = 0
        wave_no = 0
        while index < len(pending):
            if self.emergency_stopped:
                reason = self.monitor.emergency_reason if self.monitor else None
                skipped = pending[index:]
                logger.error("Emergency stop: %d %s not started", len(skipped), self.name)
                for item in skipped:
                    results.append(ItemResult(key(item), item, error=ResourceExhausted(f"emergency stop ({reason})")))
                break

            size = self.wave_size(max_concurrency)
            wave = pending[index:index + size]
            index += len(wave)
            wave_no += 1
            logger.debug("%s wave %d: %d item(s), budget %d", self.name, wave_no, len(wave), self.budget.current)

            outcomes = await asyncio.gather(
                *(self._run_one(item, work, timeout) for item in wave),
                return_exceptions=True,
            )
            for item, outcome in zip(wave, outcomes):
                if isinstance(outcome, asyncio.TimeoutError):
                    results.append(ItemResult(key(item), item, error=TimeoutError(f"timed out after {timeout}s")))
                elif isinstance(outcome, BaseException):
                    results.append(ItemResult(key(item), item, error=outcome))
                else:
                    results.append(ItemResult(key(item), item, value=outcome))

            if index < len(pending) and inter_wave_delay > 0:
                await self._sleep(inter_wave_delay)
        return results


def recommended_settings() -> Dict[str, Any]:
    """Rough starting values derived from the host's CPU count and memory."""
    cores = os.cpu_count() or 1
    total_gb = round(psutil.virtual_memory().total / 1024 ** 3)
    return {
        "system": {"cpu_cores": cores, "total_memory_gb": total_gb},
        "concurrency": {
            "max_workers": min(cores * 2, 16),
            "max_concurrent_pages": max(1, min(cores * 2, total_gb // 2 or 1, 8)),
            "max_concurrent_sites": max(1, min(cores, 5)),
        },
    }
