"""
System and process telemetry sampling.
"""
from __future__ import annotations

import time
from collections import deque
from typing import Callable, Deque, List, Optional

import psutil

from wp_vrt.models import ResourceSnapshot


def psutil_snapshot(process: Optional[psutil.Process] = None) -> ResourceSnapshot:
    proc = process or psutil.Process()
    return ResourceSnapshot(
        cpu_percent=psutil.cpu_percent(interval=None),
        memory_percent=psutil.virtual_memory().percent,
        process_rss=proc.memory_info().rss,
        timestamp=time.monotonic(),
    )


class ResourceSampler:
    """Takes snapshots and keeps the most recent ``history_size`` of them.

    ``probe`` defaults to psutil; tests inject a scripted sequence.
    """

    def __init__(
        self,
        probe: Optional[Callable[[], ResourceSnapshot]] = None,
        *,
        history_size: int = 20,
    ) -> None:
        if probe is None:
            process = psutil.Process()
            # first cpu_percent(None) call only primes the counters
            psutil.cpu_percent(interval=None)
            probe = lambda: psutil_snapshot(process)  # noqa: E731
        self._probe = probe
        self._history: Deque[ResourceSnapshot] = deque(maxlen=history_size)

    def sample(self) -> ResourceSnapshot:
        snapshot = self._probe()
        self._history.append(snapshot)
        return snapshot

    def peek(self) -> ResourceSnapshot:
        """Take a snapshot without recording it (emergency checks)."""
        return self._probe()

    @property
    def history(self) -> List[ResourceSnapshot]:
        return list(self._history)

    @property
    def latest(self) -> Optional[ResourceSnapshot]:
        return self._history[-1] if self._history else None
