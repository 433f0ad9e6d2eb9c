"""
The adaptive worker budget: one writer (the controller), many readers.
"""
from __future__ import annotations

from collections import deque
from typing import Deque, List, Optional

from wp_vrt.models import BudgetAdjustment


class WorkerBudget:
    """Current concurrency level plus a bounded log of adjustments.

    Readers take ``current`` at wave start and may see a stale value; only
    :meth:`adjust` writes.
    """

    def __init__(self, initial: int, minimum: int, maximum: int, *, log_size: int = 50) -> None:
        if not 1 <= minimum <= maximum:
            raise ValueError("expected 1 <= minimum <= maximum")
        self.minimum = minimum
        self.maximum = maximum
        self._current = self.clamp(initial)
        self._log: Deque[BudgetAdjustment] = deque(maxlen=log_size)

    @property
    def current(self) -> int:
        return self._current

    @property
    def history(self) -> List[BudgetAdjustment]:
        return list(self._log)

    @property
    def last_adjustment(self) -> Optional[BudgetAdjustment]:
        return self._log[-1] if self._log else None

    def clamp(self, value: int) -> int:
        return max(self.minimum, min(self.maximum, value))

    def adjust(self, new: int, reason: str, now: float) -> Optional[BudgetAdjustment]:
        new = self.clamp(new)
        if new == self._current:
            return None
        record = BudgetAdjustment(timestamp=now, old=self._current, new=new, reason=reason)
        self._current = new
        self._log.append(record)
        return record
