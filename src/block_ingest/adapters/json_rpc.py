import asyncio
import itertools
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import aiohttp

from .base import ChainAdapter, classify_error
from .rpc_format import block_from_rpc, to_int
from ..errors import TransientFetchError
from ..types import Block

logger = logging.getLogger(__name__)

_CLIENT_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, OSError, KeyError, ValueError)


class Adapter(ChainAdapter):
    """EVM chain access over plain JSON-RPC with aiohttp.

    For nodes without a websocket endpoint: new blocks are discovered by
    polling eth_blockNumber every `poll_interval_ms`.
    """

    def __init__(
        self,
        chain_name: str,
        http_url: str,
        poll_interval_ms: int = 2000,
        request_timeout_s: float = 30.0,
    ):
        super().__init__(chain_name)
        self.http_url = http_url
        self.poll_interval_ms = poll_interval_ms
        self._timeout = aiohttp.ClientTimeout(total=request_timeout_s)
        self._session: Optional[aiohttp.ClientSession] = None
        self._ids = itertools.count(1)

    def _get_session(self) -> aiohttp.ClientSession:
        # created lazily so the session binds to the running loop
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        async with self._get_session().post(self.http_url, json=payload) as response:
            response.raise_for_status()
            return await response.json(content_type=None)

    async def _call(self, method: str, params: List[Any]) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params,
            "id": next(self._ids),
        }
        logger.debug(f"{self.chain_name} rpc request: {method} {params}")

        response = await self._post(payload)

        error = response.get("error")
        if error is not None:
            raise TransientFetchError(
                f"{method} on {self.chain_name} returned error {error.get('code')}: {error.get('message')}"
            )

        return response["result"]

    async def get_block_by_number(self, block_number: int) -> Optional[Block]:
        try:
            raw = await self._call("eth_getBlockByNumber", [hex(block_number), True])
            if raw is None:
                return None
            return block_from_rpc(raw)
        except _CLIENT_ERRORS as e:
            raise classify_error(
                f"fetching block {block_number} on {self.chain_name}", e
            ) from e

    async def get_latest_block_number(self) -> int:
        try:
            return to_int(await self._call("eth_blockNumber", []))
        except _CLIENT_ERRORS as e:
            raise classify_error(
                f"fetching latest block number on {self.chain_name}", e
            ) from e

    async def subscribe_new_blocks(self) -> AsyncIterator[Block]:
        last_seen = await self.get_latest_block_number()
        logger.info(f"polling new blocks on {self.chain_name} from {last_seen + 1}")

        while True:
            await asyncio.sleep(self.poll_interval_ms / 1000)

            tip = await self.get_latest_block_number()
            for block_number in range(last_seen + 1, tip + 1):
                block = await self.get_block_by_number(block_number)
                if block is None:
                    break
                last_seen = block_number
                yield block

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
