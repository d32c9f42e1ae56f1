import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import Engine, Table, create_engine, func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError

from .schema import BLOCKS, TRANSACTIONS, metadata
from ..codec import transaction_to_dict
from ..errors import ConfigError, PersistenceError
from ..types import Block

logger = logging.getLogger(__name__)

_DIALECTS = ("postgresql", "sqlite")


class WriteOutcome(str, Enum):
    INSERTED = "inserted"
    # the block was already stored with the same hash
    DUPLICATE = "duplicate"
    # the block was already stored with a different hash, stored row kept
    CONFLICT = "conflict"


def create_engine_from_url(url: str) -> Engine:
    """Create SQLAlchemy engine from config URL"""
    return create_engine(url, pool_pre_ping=True)


def _block_row(chain_name: str, block: Block) -> Dict[str, Any]:
    return {
        "chain_name": chain_name,
        "block_number": block.number,
        "hash": block.hash,
        "parent_hash": block.parent_hash,
        "timestamp": datetime.fromtimestamp(block.timestamp, tz=timezone.utc),
        "miner": block.miner,
        "difficulty": block.difficulty,
        "total_difficulty": block.total_difficulty,
        "gas_used": block.gas_used,
        "gas_limit": block.gas_limit,
        "size": block.size,
        "receipts_root": block.receipts_root,
        "tx_count": block.tx_count,
        "transactions_json": [transaction_to_dict(tx) for tx in block.transactions],
    }


def _transaction_rows(chain_name: str, block: Block) -> List[Dict[str, Any]]:
    return [
        {
            "chain_name": chain_name,
            "block_number": tx.block_number,
            "tx_hash": tx.hash,
            "from_address": tx.from_address,
            "to_address": tx.to_address,
            "value": tx.value,
            "gas_price": tx.gas_price,
            "gas": tx.gas,
            "input": tx.input,
            "nonce": tx.nonce,
        }
        for tx in block.transactions
    ]


class RowStore:
    """Relational store for blocks and transactions.

    Writes are insert-if-absent keyed by (chain_name, block_number) and
    (chain_name, tx_hash), so applying the same block twice leaves the
    tables unchanged after the first time.
    """

    def __init__(self, engine: Engine):
        if engine.dialect.name not in _DIALECTS:
            raise ConfigError(f"Unsupported database dialect: {engine.dialect.name}")
        self.engine = engine

    @classmethod
    def from_url(cls, url: str) -> "RowStore":
        return cls(create_engine_from_url(url))

    def _insert(self, table: Table):
        match self.engine.dialect.name:
            case "postgresql":
                return postgresql.insert(table)
            case "sqlite":
                return sqlite.insert(table)
            case _:
                raise ConfigError(f"Unsupported database dialect: {self.engine.dialect.name}")

    def create_tables(self) -> None:
        logger.info("Creating database tables if they don't exist")
        try:
            metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to create tables: {e}") from e

    def write_block_impl(self, chain_name: str, block: Block) -> WriteOutcome:
        block_stmt = self._insert(BLOCKS).on_conflict_do_nothing(
            index_elements=["chain_name", "block_number"]
        )
        tx_stmt = self._insert(TRANSACTIONS).on_conflict_do_nothing(
            index_elements=["chain_name", "tx_hash"]
        )

        try:
            with self.engine.begin() as conn:
                result = conn.execute(block_stmt, _block_row(chain_name, block))

                if result.rowcount == 1:
                    outcome = WriteOutcome.INSERTED
                else:
                    stored_hash = conn.execute(
                        select(BLOCKS.c.hash).where(
                            BLOCKS.c.chain_name == chain_name,
                            BLOCKS.c.block_number == block.number,
                        )
                    ).scalar_one()
                    if stored_hash == block.hash:
                        outcome = WriteOutcome.DUPLICATE
                    else:
                        outcome = WriteOutcome.CONFLICT

                tx_rows = _transaction_rows(chain_name, block)
                if tx_rows and outcome != WriteOutcome.CONFLICT:
                    conn.execute(tx_stmt, tx_rows)
        except SQLAlchemyError as e:
            raise PersistenceError(
                f"Failed to write block {block.number} of {chain_name}: {e}"
            ) from e

        if outcome == WriteOutcome.CONFLICT:
            logger.warning(
                f"block {block.number} of {chain_name} was redelivered with hash {block.hash} "
                f"but is stored with hash {stored_hash}, keeping the stored row"
            )

        return outcome

    async def write_block(self, chain_name: str, block: Block) -> WriteOutcome:
        """Upsert a block and its transactions in one database transaction"""
        return await asyncio.to_thread(self.write_block_impl, chain_name, block)

    def max_block_number_impl(self, chain_name: str) -> Optional[int]:
        try:
            with self.engine.connect() as conn:
                return conn.execute(
                    select(func.max(BLOCKS.c.block_number)).where(
                        BLOCKS.c.chain_name == chain_name
                    )
                ).scalar()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to read max block number of {chain_name}: {e}") from e

    async def max_block_number(self, chain_name: str) -> Optional[int]:
        """Highest persisted block of a chain, None if nothing is stored yet"""
        return await asyncio.to_thread(self.max_block_number_impl, chain_name)

    def close(self) -> None:
        self.engine.dispose()
