from . import redis_streams
from .base import MessageChannel
from ..config import ChannelConfig, ChannelKind
import logging

logger = logging.getLogger(__name__)


def create_channel(config: ChannelConfig) -> MessageChannel:
    match config.kind:
        case ChannelKind.REDIS_STREAMS:
            return redis_streams.Channel(config)
        case _:
            raise ValueError(f"Invalid channel kind: {config.kind}")
