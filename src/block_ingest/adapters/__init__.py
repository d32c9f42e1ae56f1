from .adapter import create_adapter
from .base import ChainAdapter

__all__ = ["ChainAdapter", "create_adapter"]
