from .base import MessageChannel, topic_name
from .channel import create_channel

__all__ = ["MessageChannel", "create_channel", "topic_name"]
