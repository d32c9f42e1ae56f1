from .row_store import RowStore, WriteOutcome
from .schema import BLOCKS, TRANSACTIONS, metadata

__all__ = ["BLOCKS", "TRANSACTIONS", "RowStore", "WriteOutcome", "metadata"]
