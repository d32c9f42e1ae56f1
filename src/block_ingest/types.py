from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


@dataclass(frozen=True)
class Transaction:
    hash: str
    block_number: int
    from_address: str
    to_address: Optional[str]
    # 256 bit quantities are kept as decimal strings
    value: str
    gas_price: str
    gas: str
    input: str
    nonce: int


@dataclass(frozen=True)
class Block:
    number: int
    hash: str
    parent_hash: str
    timestamp: int
    miner: str
    difficulty: str
    gas_used: int
    gas_limit: int
    size: int
    receipts_root: str
    total_difficulty: str = "0"
    transactions: List[Transaction] = field(default_factory=list)

    @property
    def tx_count(self) -> int:
        return len(self.transactions)


class TaskMode(str, Enum):
    HISTORICAL = "historical"
    REALTIME = "realtime"


@dataclass(frozen=True)
class IngestionTask:
    """A unit of producer work created from configuration at startup"""

    chain_name: str
    schema: str
    mode: TaskMode
    start_block: Optional[int] = None
    # None means "until caught up with the tip" for historical tasks
    end_block: Optional[int] = None

    @property
    def name(self) -> str:
        return f"{self.chain_name}-{self.schema}-{self.mode.value}"


@dataclass(frozen=True)
class Message:
    chain_name: str
    schema: str
    block_number: int
    payload: bytes


@dataclass(frozen=True)
class Delivery:
    """One (re)delivery of a message handed out by a channel"""

    topic: str
    subscription: str
    delivery_id: str
    payload: bytes
