import asyncio
import logging
from typing import Optional

from ..adapters.base import ChainAdapter
from ..channel.base import MessageChannel
from ..codec import make_message
from ..errors import ChannelPublishError, TransientFetchError
from ..types import Block, IngestionTask
from ..utils.retry import STOPPED, RetryConfig, retry_async

logger = logging.getLogger(__name__)


class BlockProducer:
    """Shared fetch and publish steps of the historical and realtime producers"""

    def __init__(
        self,
        adapter: ChainAdapter,
        channel: MessageChannel,
        task: IngestionTask,
        topic: str,
        fetch_retry: RetryConfig,
        publish_retry: RetryConfig,
        stop: Optional[asyncio.Event] = None,
    ):
        self.adapter = adapter
        self.channel = channel
        self.task = task
        self.topic = topic
        self.fetch_retry = fetch_retry
        self.publish_retry = publish_retry
        self.stop = stop if stop is not None else asyncio.Event()
        self.published = 0

    async def fetch_block(self, block_number: int):
        """Fetch with retries. Returns a Block, None, or STOPPED."""
        return await retry_async(
            lambda: self.adapter.get_block_by_number(block_number),
            self.fetch_retry,
            (TransientFetchError,),
            f"fetching block {block_number} of {self.task.chain_name}",
            stop=self.stop,
        )

    async def publish_block(self, block: Block) -> bool:
        """Publish with retries. Returns False if stopped before the block was published.

        The publish call is never interrupted by the stop event, only the
        backoff between attempts is.
        """
        message = make_message(self.task.chain_name, self.task.schema, block)

        result = await retry_async(
            lambda: self.channel.publish(self.topic, message),
            self.publish_retry,
            (ChannelPublishError,),
            f"publishing block {block.number} of {self.task.chain_name} to {self.topic}",
            stop=self.stop,
            interruptible=False,
        )
        if result is STOPPED:
            return False

        self.published += 1
        logger.debug(
            f"published block {block.number} ({block.tx_count} txs) of {self.task.chain_name} to {self.topic}"
        )
        return True
