"""JSON wire format for block messages.

One object per block:

    {chain_name, block_number, hash, parent_hash, timestamp, miner, difficulty,
     total_difficulty, gas_used, gas_limit, size, receipts_root, tx_count,
     transactions: [{hash, from, to, value, gas_price, gas, input, nonce, block_number}]}

Integer fields must fit the signed 64 bit columns they are stored in and the
timestamp must be a datetime (year 9999 at most). Payloads outside those
bounds are rejected like malformed ones.
"""

import json
import logging
from typing import Any, Dict, Tuple

import dacite

from .errors import SerializationError
from .types import Block, Message, Transaction

logger = logging.getLogger(__name__)

_DACITE_CONFIG = dacite.Config(strict=True)

# integer columns are signed 64 bit
_MAX_INT64 = 2**63 - 1
# 9999-12-31T23:59:59Z, the last second a datetime can hold
_MAX_TIMESTAMP = 253402300799


def transaction_to_dict(tx: Transaction) -> Dict[str, Any]:
    return {
        "hash": tx.hash,
        "from": tx.from_address,
        "to": tx.to_address,
        "value": tx.value,
        "gas_price": tx.gas_price,
        "gas": tx.gas,
        "input": tx.input,
        "nonce": tx.nonce,
        "block_number": tx.block_number,
    }


def block_to_dict(chain_name: str, block: Block) -> Dict[str, Any]:
    return {
        "chain_name": chain_name,
        "block_number": block.number,
        "hash": block.hash,
        "parent_hash": block.parent_hash,
        "timestamp": block.timestamp,
        "miner": block.miner,
        "difficulty": block.difficulty,
        "total_difficulty": block.total_difficulty,
        "gas_used": block.gas_used,
        "gas_limit": block.gas_limit,
        "size": block.size,
        "receipts_root": block.receipts_root,
        "tx_count": block.tx_count,
        "transactions": [transaction_to_dict(tx) for tx in block.transactions],
    }


def encode_block(chain_name: str, block: Block) -> bytes:
    # sort_keys keeps the payload deterministic for a given block
    return json.dumps(block_to_dict(chain_name, block), sort_keys=True).encode("utf-8")


def make_message(chain_name: str, schema: str, block: Block) -> Message:
    return Message(
        chain_name=chain_name,
        schema=schema,
        block_number=block.number,
        payload=encode_block(chain_name, block),
    )


def _transaction_data(raw: Any) -> Dict[str, Any]:
    if not isinstance(raw, dict):
        raise SerializationError(f"transaction must be an object, got {type(raw).__name__}")

    data = dict(raw)
    try:
        data["from_address"] = data.pop("from")
        data["to_address"] = data.pop("to")
    except KeyError as e:
        raise SerializationError(f"transaction is missing field {e}") from e

    return data


def _check_range(what: str, value: int, upper: int = _MAX_INT64) -> None:
    if value < 0 or value > upper:
        raise SerializationError(f"{what} {value} is out of range")


def _check_block_ranges(block: Block) -> None:
    _check_range("block_number", block.number)
    _check_range(f"timestamp of block {block.number}", block.timestamp, _MAX_TIMESTAMP)
    _check_range(f"gas_used of block {block.number}", block.gas_used)
    _check_range(f"gas_limit of block {block.number}", block.gas_limit)
    _check_range(f"size of block {block.number}", block.size)
    for tx in block.transactions:
        _check_range(f"nonce of transaction {tx.hash}", tx.nonce)


def decode_block(payload: bytes) -> Tuple[str, Block]:
    """Decode a wire payload into (chain_name, Block). Raises SerializationError."""
    try:
        raw = json.loads(payload)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise SerializationError(f"payload is not valid json: {e}") from e

    if not isinstance(raw, dict):
        raise SerializationError(f"payload must be an object, got {type(raw).__name__}")

    data = dict(raw)
    try:
        chain_name = data.pop("chain_name")
        data["number"] = data.pop("block_number")
        tx_count = data.pop("tx_count")
        transactions = data.pop("transactions")
    except KeyError as e:
        raise SerializationError(f"payload is missing field {e}") from e

    if not isinstance(chain_name, str) or not chain_name:
        raise SerializationError("chain_name must be a non empty string")
    if not isinstance(transactions, list):
        raise SerializationError("transactions must be a list")

    data["transactions"] = [_transaction_data(tx) for tx in transactions]

    try:
        block = dacite.from_dict(data_class=Block, data=data, config=_DACITE_CONFIG)
    except dacite.DaciteError as e:
        raise SerializationError(f"payload does not match the block schema: {e}") from e

    if tx_count != block.tx_count:
        raise SerializationError(
            f"tx_count {tx_count} does not match {block.tx_count} transactions in block {block.number}"
        )

    for tx in block.transactions:
        if tx.block_number != block.number:
            raise SerializationError(
                f"transaction {tx.hash} belongs to block {tx.block_number}, not {block.number}"
            )

    _check_block_ranges(block)

    return chain_name, block
