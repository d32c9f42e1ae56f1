import asyncio

import pytest

from block_ingest.utils.retry import (
    STOPPED,
    RetryConfig,
    retry_async,
    run_until_stopped,
    sleep_or_stop,
)


class Flaky(Exception):
    pass


def test_delay_is_capped_exponential():
    retry = RetryConfig(max_num_retries=5, retry_base_ms=200, retry_ceiling_ms=1000)

    assert [retry.delay_for(k) for k in range(5)] == pytest.approx([0.2, 0.4, 0.8, 1.0, 1.0])
    # unbounded restart loops keep asking for later attempts
    assert retry.delay_for(5000) == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_retry_async_succeeds_after_failures(fast_retry):
    calls = []

    async def fn():
        calls.append(1)
        if len(calls) < 3:
            raise Flaky()
        return "ok"

    assert await retry_async(fn, fast_retry, (Flaky,), "flaky call") == "ok"
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_retry_async_reraises_when_budget_is_spent(fast_retry):
    calls = []

    async def fn():
        calls.append(1)
        raise Flaky()

    with pytest.raises(Flaky):
        await retry_async(fn, fast_retry, (Flaky,), "flaky call")
    assert len(calls) == fast_retry.max_num_retries + 1


@pytest.mark.asyncio
async def test_other_errors_are_not_retried(fast_retry):
    calls = []

    async def fn():
        calls.append(1)
        raise KeyError("boom")

    with pytest.raises(KeyError):
        await retry_async(fn, fast_retry, (Flaky,), "call")
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_stop_ends_backoff():
    stop = asyncio.Event()
    slow = RetryConfig(max_num_retries=10, retry_base_ms=60_000, retry_ceiling_ms=60_000)

    async def fn():
        stop.set()
        raise Flaky()

    result = await asyncio.wait_for(retry_async(fn, slow, (Flaky,), "call", stop=stop), timeout=5)
    assert result is STOPPED


@pytest.mark.asyncio
async def test_run_until_stopped():
    stop = asyncio.Event()

    async def value():
        return 42

    assert await run_until_stopped(value(), stop) == 42

    loop = asyncio.get_running_loop()
    loop.call_later(0.01, stop.set)
    assert await run_until_stopped(asyncio.sleep(60), stop) is STOPPED


@pytest.mark.asyncio
async def test_sleep_or_stop():
    stop = asyncio.Event()

    assert await sleep_or_stop(0.001, stop) is False
    stop.set()
    assert await sleep_or_stop(60, stop) is True
