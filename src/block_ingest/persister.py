import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from .channel.base import MessageChannel
from .codec import decode_block
from .errors import PersistenceError, SerializationError
from .storage.row_store import RowStore, WriteOutcome
from .types import Delivery
from .utils.retry import END, STOPPED, RetryConfig, next_or_end, run_until_stopped, sleep_or_stop

logger = logging.getLogger(__name__)


@dataclass
class PersisterStats:
    processed: int = 0
    duplicates: int = 0
    poison: int = 0
    failed: int = 0


class Persister:
    """Drains one topic into the row store.

    A delivery is acked only after its block is committed, and the block
    write is insert-if-absent, so redelivered messages never create
    duplicate rows. Messages that can not be decoded are acked and dropped.
    """

    def __init__(
        self,
        channel: MessageChannel,
        store: RowStore,
        topic: str,
        subscription: str,
        retry: Optional[RetryConfig] = None,
        stop: Optional[asyncio.Event] = None,
    ):
        self.channel = channel
        self.store = store
        self.topic = topic
        self.subscription = subscription
        self.retry = retry if retry is not None else RetryConfig()
        self.stop = stop if stop is not None else asyncio.Event()
        self.stats = PersisterStats()
        self._consecutive_failures = 0

    async def handle(self, delivery: Delivery) -> bool:
        """Process one delivery. Returns True if it was acked."""
        try:
            chain_name, block = decode_block(delivery.payload)
        except SerializationError as e:
            self.stats.poison += 1
            logger.error(
                f"dropping poison message {delivery.delivery_id} on {delivery.topic}: {e}"
            )
            await self.channel.ack(delivery)
            return True

        try:
            outcome = await self.store.write_block(chain_name, block)
        except PersistenceError as e:
            self.stats.failed += 1
            self._consecutive_failures += 1
            logger.error(
                f"failed to persist block {block.number} of {chain_name} from {delivery.delivery_id}, leaving it for redelivery: {e}"
            )
            return False
        except (ValueError, OverflowError) as e:
            # decoded but not representable as a row
            self.stats.poison += 1
            logger.error(
                f"dropping poison message {delivery.delivery_id} on {delivery.topic}, block {block.number} of {chain_name} can not be stored: {e}"
            )
            await self.channel.ack(delivery)
            return True

        self._consecutive_failures = 0
        if outcome == WriteOutcome.INSERTED:
            self.stats.processed += 1
            logger.debug(f"persisted block {block.number} of {chain_name} with {block.tx_count} txs")
        else:
            self.stats.duplicates += 1
            logger.info(f"block {block.number} of {chain_name} was already persisted ({outcome.value})")

        await self.channel.ack(delivery)
        return True

    async def run(self) -> None:
        logger.info(f"persisting {self.topic} as {self.subscription}")
        deliveries = self.channel.consume(self.topic, self.subscription)
        iterator = deliveries.__aiter__()

        try:
            while not self.stop.is_set():
                delivery = await run_until_stopped(next_or_end(iterator), self.stop)
                if delivery is STOPPED or delivery is END:
                    break

                if not await self.handle(delivery):
                    # back off while the store is failing
                    delay = self.retry.delay_for(self._consecutive_failures - 1)
                    if await sleep_or_stop(delay, self.stop):
                        break
        finally:
            aclose = getattr(deliveries, "aclose", None)
            if aclose is not None:
                await aclose()

        logger.info(f"persister for {self.topic} stopped: {self.stats}")
