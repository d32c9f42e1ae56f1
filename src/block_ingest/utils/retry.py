import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Tuple, Type

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)

# Returned instead of a result when the stop event fired first
STOPPED = object()


@dataclass
class RetryConfig:
    """Bounded exponential backoff"""

    max_num_retries: int = 5
    retry_base_ms: int = 200
    retry_ceiling_ms: int = 10_000

    def wait(self) -> wait_exponential:
        return wait_exponential(
            multiplier=self.retry_base_ms / 1000,
            max=self.retry_ceiling_ms / 1000,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay in seconds before retry number `attempt` (0 based)"""
        state = RetryCallState(retry_object=None, fn=None, args=(), kwargs={})
        state.attempt_number = attempt + 1
        return self.wait()(state)


class _Stopped(Exception):
    pass


async def run_until_stopped(aw: Awaitable[Any], stop: Optional[asyncio.Event]) -> Any:
    """Await `aw` unless `stop` is set first, in which case it is cancelled and STOPPED is returned.

    If both finish together the result of `aw` wins, so a fetched value is never thrown away.
    """
    if stop is None:
        return await aw

    task = asyncio.ensure_future(aw)
    stopper = asyncio.ensure_future(stop.wait())
    try:
        done, _ = await asyncio.wait(
            {task, stopper}, return_when=asyncio.FIRST_COMPLETED
        )
    finally:
        stopper.cancel()
        if not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    if task in done:
        return task.result()

    return STOPPED


async def sleep_or_stop(delay: float, stop: Optional[asyncio.Event]) -> bool:
    """Sleep for `delay` seconds. Returns True if `stop` was set meanwhile."""
    if stop is None:
        await asyncio.sleep(delay)
        return False

    try:
        await asyncio.wait_for(stop.wait(), timeout=delay)
        return True
    except asyncio.TimeoutError:
        return stop.is_set()


async def retry_async(
    fn: Callable[[], Awaitable[Any]],
    retry: RetryConfig,
    retry_on: Tuple[Type[BaseException], ...],
    description: str,
    stop: Optional[asyncio.Event] = None,
    interruptible: bool = True,
) -> Any:
    """Call `fn` until it succeeds, retrying on `retry_on` with backoff.

    The last error is re-raised once `retry.max_num_retries` retries are spent.
    Backoff sleeps always end early on `stop`. The call itself is only raced
    against `stop` when `interruptible` is set.
    """

    async def sleep(delay: float) -> None:
        if await sleep_or_stop(delay, stop):
            raise _Stopped()

    def log_retry(state: RetryCallState) -> None:
        logger.warning(
            f"{description} failed: {state.outcome.exception()}. "
            f"retrying ({state.attempt_number}/{retry.max_num_retries}) in {state.next_action.sleep:.2f}s"
        )

    retrying = AsyncRetrying(
        stop=stop_after_attempt(retry.max_num_retries + 1),
        wait=retry.wait(),
        retry=retry_if_exception_type(retry_on),
        reraise=True,
        sleep=sleep,
        before_sleep=log_retry,
    )

    try:
        async for attempt in retrying:
            with attempt:
                if interruptible:
                    result = await run_until_stopped(fn(), stop)
                else:
                    result = await fn()
    except _Stopped:
        return STOPPED
    except retry_on as e:
        logger.error(f"{description} failed after {retry.max_num_retries + 1} attempts: {e}")
        raise

    return result


# Returned by next_or_end when an async iterator is exhausted
END = object()


async def next_or_end(iterator: AsyncIterator[Any]) -> Any:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return END
