from abc import ABC, abstractmethod
from typing import AsyncIterator, Optional
import logging

import aiohttp

from ..errors import IngestionError, PermanentAdapterError, TransientFetchError
from ..types import Block

logger = logging.getLogger(__name__)


class ChainAdapter(ABC):
    """Uniform async access to one chain.

    Implementations must be safe for concurrent calls from several tasks
    without external locking, and must not retry on their own: failures are
    raised as TransientFetchError or PermanentAdapterError so that every
    caller can apply its own retry policy.
    """

    def __init__(self, chain_name: str):
        self.chain_name = chain_name

    @abstractmethod
    async def get_block_by_number(self, block_number: int) -> Optional[Block]:
        """Return the block, or None if the chain has not produced it yet"""
        pass

    @abstractmethod
    async def get_latest_block_number(self) -> int:
        """Current tip as known to the backing node"""
        pass

    @abstractmethod
    def subscribe_new_blocks(self) -> AsyncIterator[Block]:
        """Infinite stream of newly produced blocks.

        The stream may end or raise TransientFetchError when the connection
        drops. Callers should treat that as restartable, not as end of data.
        """
        pass

    async def close(self) -> None:
        pass


# Status codes that will not get better by retrying
_PERMANENT_HTTP_STATUS = {401, 403, 404, 405}


def classify_error(description: str, e: BaseException) -> IngestionError:
    """Map a client library error onto the adapter error taxonomy"""
    if isinstance(e, IngestionError):
        return e

    if isinstance(e, aiohttp.InvalidURL):
        return PermanentAdapterError(f"{description}: invalid url {e}")

    if isinstance(e, aiohttp.ClientResponseError) and e.status in _PERMANENT_HTTP_STATUS:
        return PermanentAdapterError(f"{description}: http {e.status} {e.message}")

    return TransientFetchError(f"{description}: {type(e).__name__}: {e}")
