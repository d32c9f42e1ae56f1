import asyncio
import logging
from typing import Any, AsyncIterator, Optional

import aiohttp
from web3 import AsyncHTTPProvider, AsyncWeb3, WebSocketProvider
from web3.exceptions import BlockNotFound, Web3Exception
from websockets.exceptions import WebSocketException

from .base import ChainAdapter, classify_error
from .rpc_format import block_from_rpc, to_int
from ..types import Block

logger = logging.getLogger(__name__)

# Errors raised by web3 and its transports that are mapped onto the adapter taxonomy
_CLIENT_ERRORS = (
    aiohttp.ClientError,
    asyncio.TimeoutError,
    OSError,
    Web3Exception,
    WebSocketException,
    KeyError,
    ValueError,
)


class Adapter(ChainAdapter):
    """EVM chain access through web3.py.

    Fetches go through one shared AsyncHTTPProvider (pooled aiohttp session).
    Every subscription opens its own websocket, so the historical and realtime
    tasks of a chain can use the same adapter concurrently.
    """

    def __init__(
        self,
        chain_name: str,
        http_url: str,
        ws_url: str,
        request_timeout_s: float = 30.0,
    ):
        super().__init__(chain_name)
        self.http_url = http_url
        self.ws_url = ws_url
        self._w3 = AsyncWeb3(
            AsyncHTTPProvider(
                http_url,
                request_kwargs={"timeout": aiohttp.ClientTimeout(total=request_timeout_s)},
            )
        )

    async def _fetch_raw_block(self, block_number: int) -> Optional[Any]:
        try:
            return await self._w3.eth.get_block(block_number, full_transactions=True)
        except BlockNotFound:
            return None

    async def _fetch_block_number(self) -> Any:
        return await self._w3.eth.get_block_number()

    async def get_block_by_number(self, block_number: int) -> Optional[Block]:
        description = f"fetching block {block_number} on {self.chain_name}"
        try:
            raw = await self._fetch_raw_block(block_number)
            if raw is None:
                return None
            return block_from_rpc(raw)
        except _CLIENT_ERRORS as e:
            raise classify_error(description, e) from e

    async def get_latest_block_number(self) -> int:
        try:
            return to_int(await self._fetch_block_number())
        except _CLIENT_ERRORS as e:
            raise classify_error(
                f"fetching latest block number on {self.chain_name}", e
            ) from e

    async def _new_heads(self) -> AsyncIterator[Any]:
        async with AsyncWeb3(WebSocketProvider(self.ws_url)) as w3:
            subscription_id = await w3.eth.subscribe("newHeads")
            logger.info(f"subscribed to new heads on {self.chain_name}: {subscription_id}")

            async for response in w3.socket.process_subscriptions():
                yield response["result"]

    async def subscribe_new_blocks(self) -> AsyncIterator[Block]:
        try:
            async for header in self._new_heads():
                block_number = to_int(header["number"])
                block = await self.get_block_by_number(block_number)
                if block is None:
                    # the http node may lag behind the websocket node by a moment
                    logger.debug(
                        f"new head {block_number} on {self.chain_name} not yet available over http"
                    )
                    continue
                yield block
        except _CLIENT_ERRORS as e:
            raise classify_error(f"new block subscription on {self.chain_name}", e) from e

        logger.warning(f"new block subscription on {self.chain_name} ended")
