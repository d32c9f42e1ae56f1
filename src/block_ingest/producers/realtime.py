import logging
from typing import Optional

from .base import BlockProducer
from ..errors import TransientFetchError
from ..types import Block
from ..utils.retry import (
    END,
    STOPPED,
    RetryConfig,
    next_or_end,
    retry_async,
    run_until_stopped,
    sleep_or_stop,
)

logger = logging.getLogger(__name__)


class RealtimeSubscriber(BlockProducer):
    """Forwards new blocks of one chain as they are produced.

    `last_delivered_number` is the highest block published by this lineage.
    Whenever the subscription is (re)established, every block between it and
    the current tip is fetched and published first, so a dropped connection
    never leaves a gap.
    """

    def __init__(self, *args, reconnect: RetryConfig, watermark: Optional[int] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.reconnect = reconnect
        self.last_delivered_number = watermark
        self.reconnects = 0

    async def _deliver(self, block: Block) -> bool:
        if not await self.publish_block(block):
            return False
        self.last_delivered_number = block.number
        return True

    async def _fill_to(self, target: int) -> bool:
        """Publish last_delivered_number+1 .. target in order.

        Returns False if stopped or if a block in the range does not exist yet.
        """
        while self.last_delivered_number < target:
            block_number = self.last_delivered_number + 1

            block = await self.fetch_block(block_number)
            if block is STOPPED:
                return False
            if block is None:
                logger.info(
                    f"block {block_number} of {self.task.chain_name} is not available yet, pausing catch up"
                )
                return False

            if not await self._deliver(block):
                return False

        return True

    async def catch_up(self) -> bool:
        if self.last_delivered_number is None:
            return True

        tip = await retry_async(
            self.adapter.get_latest_block_number,
            self.fetch_retry,
            (TransientFetchError,),
            f"fetching latest block number of {self.task.chain_name}",
            stop=self.stop,
        )
        if tip is STOPPED:
            return False

        if tip <= self.last_delivered_number:
            return True

        logger.info(
            f"catching up {self.task.name} from block {self.last_delivered_number + 1} to {tip}"
        )
        return await self._fill_to(tip)

    async def _on_live_block(self, block: Block) -> bool:
        """Publish a streamed block after any missing ones. Returns True if it was published."""
        if self.last_delivered_number is None:
            self.last_delivered_number = block.number - 1
            logger.info(f"{self.task.name} starting live delivery at block {block.number}")

        if block.number <= self.last_delivered_number:
            logger.debug(
                f"{self.task.name} skipping block {block.number}, already delivered up to {self.last_delivered_number}"
            )
            return False

        if block.number > self.last_delivered_number + 1:
            logger.warning(
                f"{self.task.name} received block {block.number} after {self.last_delivered_number}, fetching the gap"
            )
            filled = await self._fill_to(block.number - 1)
            if not filled:
                if self.stop.is_set():
                    return False
                raise TransientFetchError(
                    f"could not fill the gap before block {block.number} of {self.task.chain_name}"
                )

        return await self._deliver(block)

    async def _follow(self) -> int:
        """Deliver live blocks until the stream ends or stop is set. Returns the number published."""
        delivered = 0
        stream = self.adapter.subscribe_new_blocks()
        iterator = stream.__aiter__()

        try:
            while not self.stop.is_set():
                block = await run_until_stopped(next_or_end(iterator), self.stop)
                if block is STOPPED:
                    break
                if block is END:
                    logger.warning(f"new block stream of {self.task.chain_name} ended")
                    break

                if await self._on_live_block(block):
                    delivered += 1
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        return delivered

    async def run(self) -> None:
        logger.info(
            f"starting realtime delivery of {self.task.chain_name} into {self.topic} (watermark {self.last_delivered_number})"
        )
        attempt = 0

        while not self.stop.is_set():
            try:
                if await self.catch_up():
                    if await self._follow() > 0:
                        attempt = 0
            except TransientFetchError as e:
                logger.warning(f"realtime delivery of {self.task.name} interrupted: {e}")

            if self.stop.is_set():
                break

            delay = self.reconnect.delay_for(attempt)
            attempt += 1
            self.reconnects += 1
            logger.info(f"reconnecting {self.task.name} in {delay:.2f}s")
            if await sleep_or_stop(delay, self.stop):
                break

        logger.info(
            f"realtime delivery of {self.task.name} stopped after block {self.last_delivered_number}"
        )
