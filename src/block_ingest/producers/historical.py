import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .base import BlockProducer
from ..errors import ChannelPublishError, IngestionError, PermanentAdapterError, TransientFetchError
from ..utils.retry import STOPPED

logger = logging.getLogger(__name__)


class BackfillState(str, Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    PUBLISHING = "publishing"
    EXHAUSTED = "exhausted"
    ABORTED = "aborted"
    CANCELLED = "cancelled"


@dataclass
class BackfillResult:
    state: BackfillState
    # first block that was not published, where a restart resumes
    next_block: int
    published: int
    error: Optional[IngestionError] = None


class BackfillCoordinator(BlockProducer):
    """Replays [start_block, end_block] of one chain into a topic, strictly in order.

    With no end_block the replay runs until the adapter reports a block that
    does not exist yet. Fetch and publish of one block finish before the next
    block is fetched.
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        if self.task.start_block is None:
            raise ValueError(f"historical task {self.task.name} needs a start_block")

        self.state = BackfillState.PENDING
        self.current_block = self.task.start_block

    def _finish(self, state: BackfillState, error: Optional[IngestionError] = None) -> BackfillResult:
        self.state = state
        return BackfillResult(
            state=state,
            next_block=self.current_block,
            published=self.published,
            error=error,
        )

    async def run(self) -> BackfillResult:
        end_block = self.task.end_block
        logger.info(
            f"backfilling {self.task.chain_name} blocks {self.current_block}..{end_block if end_block is not None else 'tip'} into {self.topic}"
        )

        while True:
            if end_block is not None and self.current_block > end_block:
                logger.info(f"backfill of {self.task.name} reached end block {end_block}")
                return self._finish(BackfillState.EXHAUSTED)

            if self.stop.is_set():
                logger.info(f"backfill of {self.task.name} cancelled at block {self.current_block}")
                return self._finish(BackfillState.CANCELLED)

            self.state = BackfillState.FETCHING
            try:
                block = await self.fetch_block(self.current_block)
            except (TransientFetchError, PermanentAdapterError) as e:
                logger.error(
                    f"backfill of {self.task.name} aborted at block {self.current_block} of {self.task.chain_name}: {e}"
                )
                return self._finish(BackfillState.ABORTED, e)

            if block is STOPPED:
                logger.info(f"backfill of {self.task.name} cancelled at block {self.current_block}")
                return self._finish(BackfillState.CANCELLED)

            if block is None:
                logger.info(
                    f"backfill of {self.task.name} caught up with the tip, block {self.current_block} does not exist yet"
                )
                return self._finish(BackfillState.EXHAUSTED)

            self.state = BackfillState.PUBLISHING
            try:
                published = await self.publish_block(block)
            except ChannelPublishError as e:
                logger.error(
                    f"backfill of {self.task.name} aborted publishing block {self.current_block}: {e}"
                )
                return self._finish(BackfillState.ABORTED, e)

            if not published:
                logger.info(f"backfill of {self.task.name} cancelled at block {self.current_block}")
                return self._finish(BackfillState.CANCELLED)

            self.current_block += 1
