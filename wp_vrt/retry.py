"""Single retry policy for every fallible collaborator call.

Health checks, updates, rollbacks and notifications all go through
:meth:`RetryPolicy.call`, parameterised per call site only by the exception
types that are worth retrying.
"""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

T = TypeVar("T")

logger = logging.getLogger("WPVRT.retry")


class RetryExhaustedError(Exception):
    """Raised when every attempt failed with a retryable error.

    Attributes:
        attempts: Total number of attempts made.
        last_error: The exception raised by the final attempt.
    """

    def __init__(self, label: str, attempts: int, last_error: BaseException) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"{label} failed after {attempts} attempt(s): {last_error}")


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with jitter, capped at ``max_delay``."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    jitter: float = 1.0
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False, compare=False)
    rng: Callable[[], float] = field(default=random.random, repr=False, compare=False)

    @classmethod
    def from_settings(cls, settings, **overrides) -> RetryPolicy:
        return cls(
            max_attempts=settings.max_attempts,
            base_delay=settings.base_delay,
            max_delay=settings.max_delay,
            jitter=settings.jitter,
            **overrides,
        )

    def backoff(self, attempt: int) -> float:
        """Delay before the attempt following *attempt* (1-based)."""
        delay = min(self.max_delay, self.base_delay * 2 ** (attempt - 1))
        return delay + self.jitter * self.rng()

    async def call(
        self,
        fn: Callable[..., Awaitable[T]],
        *args,
        retry_on: Tuple[Type[BaseException], ...] = (Exception,),
        label: Optional[str] = None,
        **kwargs,
    ) -> T:
        """Await ``fn(*args, **kwargs)`` until it succeeds or attempts run out.

        Exceptions outside *retry_on* propagate immediately. When every attempt
        fails, :class:`RetryExhaustedError` is raised with the last error
        chained as its cause.
        """
        name = label or getattr(fn, "__qualname__", repr(fn))
        last: Optional[BaseException] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                result = await fn(*args, **kwargs)
                if attempt > 1:
                    logger.info("%s succeeded on attempt %d/%d", name, attempt, self.max_attempts)
                return result
            except retry_on as exc:
                last = exc
                if attempt >= self.max_attempts:
                    break
                delay = self.backoff(attempt)
                logger.warning(
                    "%s attempt %d/%d failed: %s; retrying in %.2f s",
                    name, attempt, self.max_attempts, exc, delay,
                )
                await self.sleep(delay)
        assert last is not None
        raise RetryExhaustedError(name, self.max_attempts, last) from last


NO_RETRY = RetryPolicy(max_attempts=1, base_delay=0.0, jitter=0.0)

__all__ = ["RetryPolicy", "RetryExhaustedError", "NO_RETRY"]
