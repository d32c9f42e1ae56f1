"""Message channel on Redis Streams.

A topic is a stream key and a subscription is a consumer group. Acked entries
are deleted, so the stream length is the backlog used for backpressure.
"""

import asyncio
import logging
from typing import AsyncIterator, Dict, List, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError, ResponseError

from .base import MessageChannel
from ..config import ChannelConfig
from ..errors import ChannelConsumeError, ChannelPublishError
from ..types import Delivery, Message

logger = logging.getLogger(__name__)

_Entry = Tuple[bytes, Dict[bytes, bytes]]


def _as_str(value) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else str(value)


class Channel(MessageChannel):
    def __init__(self, config: ChannelConfig, client: Optional[redis.Redis] = None):
        self.config = config
        self._client = client if client is not None else redis.from_url(config.url)
        self._groups = set()

    async def _wait_for_capacity(self, topic: str) -> None:
        if self.config.max_backlog <= 0:
            return

        while await self._client.xlen(topic) >= self.config.max_backlog:
            logger.debug(f"topic {topic} is at its backlog limit, waiting for consumers")
            await asyncio.sleep(self.config.backlog_poll_ms / 1000)

    async def publish(self, topic: str, message: Message) -> None:
        fields = {
            "chain_name": message.chain_name,
            "schema": message.schema,
            "block_number": str(message.block_number),
            "data": message.payload,
        }
        try:
            await self._wait_for_capacity(topic)
            await self._client.xadd(topic, fields)
        except RedisError as e:
            raise ChannelPublishError(
                f"Failed to publish block {message.block_number} to {topic}: {e}"
            ) from e

    async def _ensure_group(self, topic: str, subscription: str) -> None:
        if (topic, subscription) in self._groups:
            return

        try:
            await self._client.xgroup_create(topic, subscription, id="0", mkstream=True)
            logger.info(f"created consumer group {subscription} on {topic}")
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

        self._groups.add((topic, subscription))

    def _deliveries(self, topic: str, subscription: str, entries: List[_Entry]) -> List[Delivery]:
        out = []
        for entry_id, fields in entries:
            if fields is None:
                # deleted while pending
                continue
            out.append(
                Delivery(
                    topic=topic,
                    subscription=subscription,
                    delivery_id=_as_str(entry_id),
                    payload=fields.get(b"data", b""),
                )
            )
        return out

    async def _read(self, topic: str, subscription: str, entry_id: str, block: Optional[int]) -> List[_Entry]:
        response = await self._client.xreadgroup(
            subscription,
            self.config.consumer_name,
            {topic: entry_id},
            count=self.config.batch_size,
            block=block,
        )
        if not response:
            return []
        return response[0][1]

    async def _claim_idle(self, topic: str, subscription: str) -> List[_Entry]:
        if self.config.claim_idle_ms <= 0:
            return []

        response = await self._client.xautoclaim(
            topic,
            subscription,
            self.config.consumer_name,
            min_idle_time=self.config.claim_idle_ms,
            start_id="0-0",
            count=self.config.batch_size,
        )
        return response[1]

    async def consume(self, topic: str, subscription: str) -> AsyncIterator[Delivery]:
        try:
            await self._ensure_group(topic, subscription)
        except RedisError as e:
            raise ChannelConsumeError(f"Failed to subscribe {subscription} to {topic}: {e}") from e

        # entries delivered to this consumer before a restart but never acked
        pending_from: Optional[str] = "0"

        while True:
            try:
                if pending_from is not None:
                    entries = await self._read(topic, subscription, pending_from, None)
                    if entries:
                        pending_from = _as_str(entries[-1][0])
                        logger.info(f"redelivering {len(entries)} pending entries from {topic}")
                    else:
                        pending_from = None
                        continue
                else:
                    entries = await self._claim_idle(topic, subscription)
                    if entries:
                        logger.info(f"claimed {len(entries)} idle entries from {topic}")
                    else:
                        entries = await self._read(topic, subscription, ">", self.config.block_ms)
            except RedisError as e:
                raise ChannelConsumeError(f"Failed to read from {topic}: {e}") from e

            for delivery in self._deliveries(topic, subscription, entries):
                yield delivery

    async def ack(self, delivery: Delivery) -> None:
        try:
            await self._client.xack(delivery.topic, delivery.subscription, delivery.delivery_id)
            await self._client.xdel(delivery.topic, delivery.delivery_id)
        except RedisError as e:
            raise ChannelConsumeError(
                f"Failed to ack {delivery.delivery_id} on {delivery.topic}: {e}"
            ) from e

    async def close(self) -> None:
        await self._client.aclose()
