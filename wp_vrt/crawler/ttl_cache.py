"""
Small time-evicting cache with an injected clock.
"""
from __future__ import annotations

import time
from collections import OrderedDict
from typing import Callable, Generic, Hashable, Optional, Tuple, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

_MISSING = object()


class TTLCache(Generic[K, V]):
    """Mapping whose entries expire *ttl* seconds after they were set.

    Expiry is checked lazily on read. When *maxsize* is reached the oldest
    entry is evicted.
    """

    def __init__(
        self,
        ttl: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        maxsize: int = 1024,
    ) -> None:
        if ttl <= 0:
            raise ValueError("ttl must be > 0")
        self.ttl = ttl
        self.maxsize = maxsize
        self._clock = clock
        self._data: "OrderedDict[K, Tuple[float, V]]" = OrderedDict()

    def get(self, key: K, default: Optional[V] = None) -> Optional[V]:
        entry = self._data.get(key, _MISSING)
        if entry is _MISSING:
            return default
        expires_at, value = entry  # type: ignore[misc]
        if self._clock() >= expires_at:
            del self._data[key]
            return default
        return value

    def set(self, key: K, value: V) -> None:
        if key in self._data:
            del self._data[key]
        elif len(self._data) >= self.maxsize:
            self._data.popitem(last=False)
        self._data[key] = (self._clock() + self.ttl, value)

    def __contains__(self, key: object) -> bool:
        return self.get(key, _MISSING) is not _MISSING  # type: ignore[arg-type]

    def __len__(self) -> int:
        self._purge()
        return len(self._data)

    def keys(self) -> list[K]:
        self._purge()
        return list(self._data)

    def clear(self) -> None:
        self._data.clear()

    def _purge(self) -> None:
        now = self._clock()
        for key in [k for k, (exp, _) in self._data.items() if now >= exp]:
            del self._data[key]
