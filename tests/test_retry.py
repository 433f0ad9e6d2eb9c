# File: tests/test_retry.py
from typing import List

import pytest

from wp_vrt.config import RetrySettings
from wp_vrt.retry import NO_RETRY, RetryExhaustedError, RetryPolicy


class Recorder:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def sleep(self, delay: float) -> None:
        self.delays.append(delay)


def make_policy(**kw) -> tuple[RetryPolicy, Recorder]:
    rec = Recorder()
    kw.setdefault("jitter", 0.0)
    return RetryPolicy(sleep=rec.sleep, **kw), rec


def test_backoff_doubles_and_caps():
    policy = RetryPolicy(base_delay=1.0, max_delay=5.0, jitter=0.5, rng=lambda: 1.0)
    assert [policy.backoff(n) for n in (1, 2, 3, 4)] == [1.5, 2.5, 4.5, 5.5]


@pytest.mark.asyncio()
async def test_succeeds_after_transient_failures():
    policy, rec = make_policy(max_attempts=3, base_delay=1.0)
    attempts = {"n": 0}

    async def flaky(value):
        attempts["n"] += 1
        if attempts["n"] < 3:
            raise ConnectionError("reset")
        return value * 2

    assert await policy.call(flaky, 21, retry_on=(ConnectionError,)) == 42
    assert rec.delays == [1.0, 2.0]


@pytest.mark.asyncio()
async def test_exhaustion_chains_last_error():
    policy, rec = make_policy(max_attempts=2, base_delay=0.5)

    async def always_fails():
        raise TimeoutError("slow")

    with pytest.raises(RetryExhaustedError) as info:
        await policy.call(always_fails, label="health check blog")
    assert info.value.attempts == 2
    assert isinstance(info.value.last_error, TimeoutError)
    assert info.value.__cause__ is info.value.last_error
    assert "health check blog" in str(info.value)
    assert rec.delays == [0.5]


@pytest.mark.asyncio()
async def test_non_retryable_errors_propagate_immediately():
    policy, rec = make_policy(max_attempts=5)

    async def bad():
        raise ValueError("bad input")

    with pytest.raises(ValueError):
        await policy.call(bad, retry_on=(ConnectionError,))
    assert rec.delays == []


@pytest.mark.asyncio()
async def test_no_retry_policy_makes_one_attempt():
    calls = {"n": 0}

    async def fails():
        calls["n"] += 1
        raise ConnectionError("down")

    with pytest.raises(RetryExhaustedError):
        await NO_RETRY.call(fails)
    assert calls["n"] == 1


def test_from_settings():
    policy = RetryPolicy.from_settings(RetrySettings(max_attempts=4, base_delay=2, max_delay=10, jitter=0))
    assert (policy.max_attempts, policy.base_delay, policy.max_delay, policy.jitter) == (4, 2, 10, 0)
