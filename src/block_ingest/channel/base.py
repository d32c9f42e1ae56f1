from abc import ABC, abstractmethod
from typing import AsyncIterator
import logging

from ..types import Delivery, Message, TaskMode

logger = logging.getLogger(__name__)


class MessageChannel(ABC):
    """Ordered, at-least-once publish/subscribe primitive"""

    @abstractmethod
    async def publish(self, topic: str, message: Message) -> None:
        """Append a message to a topic.

        Waits while the topic is saturated instead of dropping messages.
        Raises ChannelPublishError.
        """
        pass

    @abstractmethod
    def consume(self, topic: str, subscription: str) -> AsyncIterator[Delivery]:
        """Yield deliveries for a subscription.

        Deliveries that are not acked are handed out again after a timeout or
        when the consumer restarts. Raises ChannelConsumeError.
        """
        pass

    @abstractmethod
    async def ack(self, delivery: Delivery) -> None:
        pass

    async def close(self) -> None:
        pass


def topic_name(prefix: str, chain_name: str, schema: str, mode: TaskMode) -> str:
    """One topic per (chain, schema), with a separate `-historical` topic for backfill"""
    topic = f"{prefix}{chain_name}-{schema}"
    if mode == TaskMode.HISTORICAL:
        topic += "-historical"
    return topic
