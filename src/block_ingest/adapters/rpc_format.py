"""Conversion of EVM node block objects into Block values.

Accepts both web3 decoded responses (ints, HexBytes, AttributeDict) and raw
JSON-RPC responses (0x prefixed hex strings).
"""

from typing import Any, Mapping, Optional

from ..types import Block, Transaction


def to_int(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, bool):
        raise ValueError(f"unexpected boolean quantity: {value}")
    if isinstance(value, int):
        return value
    if isinstance(value, (bytes, bytearray)):
        return int.from_bytes(value, "big")
    if isinstance(value, str):
        return int(value, 16) if value.startswith(("0x", "0X")) else int(value)
    raise ValueError(f"unexpected quantity: {value!r}")


def to_hex(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    return str(value)


def to_address(value: Any) -> Optional[str]:
    if value is None:
        return None
    return to_hex(value)


def transaction_from_rpc(raw: Mapping[str, Any], block_number: int) -> Transaction:
    return Transaction(
        hash=to_hex(raw["hash"]),
        block_number=to_int(raw.get("blockNumber", block_number)),
        from_address=to_address(raw["from"]) or "",
        to_address=to_address(raw.get("to")),
        value=str(to_int(raw.get("value"))),
        gas_price=str(to_int(raw.get("gasPrice"))),
        gas=str(to_int(raw.get("gas"))),
        input=to_hex(raw.get("input", "0x")),
        nonce=to_int(raw.get("nonce")),
    )


def block_from_rpc(raw: Mapping[str, Any]) -> Block:
    """Build a Block from an `eth_getBlockByNumber(n, true)` result"""
    number = to_int(raw["number"])

    transactions = []
    for tx in raw.get("transactions", []):
        if isinstance(tx, Mapping):
            transactions.append(transaction_from_rpc(tx, number))
        else:
            raise ValueError(f"block {number} was fetched without full transactions")

    return Block(
        number=number,
        hash=to_hex(raw["hash"]),
        parent_hash=to_hex(raw["parentHash"]),
        timestamp=to_int(raw["timestamp"]),
        miner=to_address(raw.get("miner")) or "",
        difficulty=str(to_int(raw.get("difficulty"))),
        total_difficulty=str(to_int(raw.get("totalDifficulty"))),
        gas_used=to_int(raw["gasUsed"]),
        gas_limit=to_int(raw["gasLimit"]),
        size=to_int(raw.get("size")),
        receipts_root=to_hex(raw.get("receiptsRoot")),
        transactions=transactions,
    )
