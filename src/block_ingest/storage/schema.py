from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    Table,
    Text,
    UniqueConstraint,
)

metadata = MetaData()

# sqlite only autoincrements INTEGER primary keys
_ID_TYPE = BigInteger().with_variant(Integer, "sqlite")

BLOCKS = Table(
    "blocks",
    metadata,
    Column("id", _ID_TYPE, primary_key=True, autoincrement=True),
    Column("chain_name", Text, nullable=False),
    Column("block_number", BigInteger, nullable=False),
    Column("hash", Text, nullable=False),
    Column("parent_hash", Text, nullable=False),
    Column("timestamp", DateTime(timezone=True), nullable=False),
    Column("miner", Text, nullable=False),
    Column("difficulty", Text, nullable=False),
    Column("total_difficulty", Text, nullable=False),
    Column("gas_used", BigInteger, nullable=False),
    Column("gas_limit", BigInteger, nullable=False),
    Column("size", BigInteger, nullable=False),
    Column("receipts_root", Text, nullable=False),
    Column("tx_count", BigInteger, nullable=False),
    Column("transactions_json", JSON, nullable=False),
    UniqueConstraint("chain_name", "block_number", name="uq_blocks_chain_block"),
)

TRANSACTIONS = Table(
    "transactions",
    metadata,
    Column("id", _ID_TYPE, primary_key=True, autoincrement=True),
    Column("chain_name", Text, nullable=False),
    Column("block_number", BigInteger, nullable=False),
    Column("tx_hash", Text, nullable=False),
    Column("from_address", Text, nullable=False),
    Column("to_address", Text, nullable=True),
    Column("value", Text, nullable=False),
    Column("gas_price", Text, nullable=False),
    Column("gas", Text, nullable=False),
    Column("input", Text, nullable=False),
    Column("nonce", BigInteger, nullable=False),
    UniqueConstraint("chain_name", "tx_hash", name="uq_transactions_chain_hash"),
    Index("ix_transactions_chain_block", "chain_name", "block_number"),
)
