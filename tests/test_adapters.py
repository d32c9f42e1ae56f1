import asyncio

import aiohttp
import pytest

from block_ingest.adapters import create_adapter
from block_ingest.adapters import evm, json_rpc
from block_ingest.adapters.base import classify_error
from block_ingest.adapters.rpc_format import block_from_rpc, to_address, to_hex, to_int
from block_ingest.config import AdapterKind, ChainConfig
from block_ingest.errors import PermanentAdapterError, TransientFetchError

TIP = 10


class FakeNode:
    """Serves blocks 0..tip. `tips` are handed out by successive tip queries."""

    def __init__(self, tip: int = TIP):
        self.tip = tip
        self.tips = []

    def next_tip(self) -> int:
        if self.tips:
            self.tip = self.tips.pop(0)
        return self.tip

    def has_block(self, block_number: int) -> bool:
        return block_number <= self.tip


def web3_block(n: int) -> dict:
    # decoded the way web3 returns it: ints and bytes
    return {
        "number": n,
        "hash": bytes([n]) * 32,
        "parentHash": bytes([n - 1]) * 32,
        "timestamp": 1_700_000_000 + n,
        "miner": "0x" + "ab" * 20,
        "difficulty": 0,
        "totalDifficulty": 10**22,
        "gasUsed": 21000,
        "gasLimit": 30_000_000,
        "size": 600,
        "receiptsRoot": b"\x01" * 32,
        "transactions": [
            {
                "hash": bytes([n, 1]) * 16,
                "blockNumber": n,
                "from": "0x" + "11" * 20,
                "to": None,
                "value": 5,
                "gasPrice": 7,
                "gas": 21000,
                "input": b"",
                "nonce": 3,
            }
        ],
    }


def rpc_block(n: int) -> dict:
    # raw JSON-RPC: 0x prefixed hex strings
    return {
        "number": hex(n),
        "hash": "0x" + f"{n:02x}" * 32,
        "parentHash": "0x" + f"{n - 1:02x}" * 32,
        "timestamp": hex(1_700_000_000 + n),
        "miner": "0x" + "ab" * 20,
        "difficulty": "0x0",
        "totalDifficulty": hex(10**22),
        "gasUsed": hex(21000),
        "gasLimit": hex(30_000_000),
        "size": hex(600),
        "receiptsRoot": "0x" + "01" * 32,
        "transactions": [
            {
                "hash": "0x" + f"{n:02x}01" * 16,
                "blockNumber": hex(n),
                "from": "0x" + "11" * 20,
                "to": None,
                "value": "0x5",
                "gasPrice": "0x7",
                "gas": hex(21000),
                "input": "0x",
                "nonce": "0x3",
            }
        ],
    }


def make_evm_adapter(monkeypatch, node: FakeNode) -> evm.Adapter:
    adapter = evm.Adapter("testchain", "http://localhost:8545", "ws://localhost:8546")

    async def fetch_raw_block(block_number):
        return web3_block(block_number) if node.has_block(block_number) else None

    async def fetch_block_number():
        return node.next_tip()

    monkeypatch.setattr(adapter, "_fetch_raw_block", fetch_raw_block)
    monkeypatch.setattr(adapter, "_fetch_block_number", fetch_block_number)
    return adapter


def make_json_rpc_adapter(monkeypatch, node: FakeNode) -> json_rpc.Adapter:
    adapter = json_rpc.Adapter("testchain", "http://localhost:8545", poll_interval_ms=1)

    async def post(payload):
        match payload["method"]:
            case "eth_blockNumber":
                result = hex(node.next_tip())
            case "eth_getBlockByNumber":
                block_number = int(payload["params"][0], 16)
                result = rpc_block(block_number) if node.has_block(block_number) else None
            case _:
                return {"jsonrpc": "2.0", "id": payload["id"], "error": {"code": -32601, "message": "not found"}}
        return {"jsonrpc": "2.0", "id": payload["id"], "result": result}

    monkeypatch.setattr(adapter, "_post", post)
    return adapter


@pytest.fixture(params=["evm", "json_rpc"])
def make_adapter(request, monkeypatch):
    def make(node: FakeNode):
        if request.param == "evm":
            return make_evm_adapter(monkeypatch, node)
        return make_json_rpc_adapter(monkeypatch, node)

    return make


@pytest.mark.asyncio
async def test_block_by_number_matches_request(make_adapter):
    adapter = make_adapter(FakeNode())

    for n in (1, 5, TIP):
        block = await adapter.get_block_by_number(n)
        assert block is not None
        assert block.number == n
        assert block.hash == "0x" + f"{n:02x}" * 32
        assert block.tx_count == 1
        assert all(tx.block_number == n for tx in block.transactions)


@pytest.mark.asyncio
async def test_block_beyond_tip_is_none(make_adapter):
    adapter = make_adapter(FakeNode())

    assert await adapter.get_block_by_number(TIP + 1) is None


@pytest.mark.asyncio
async def test_latest_block_number(make_adapter):
    adapter = make_adapter(FakeNode())

    assert await adapter.get_latest_block_number() == TIP


@pytest.mark.asyncio
async def test_both_variants_decode_the_same_block(monkeypatch):
    node = FakeNode()
    from_web3 = await make_evm_adapter(monkeypatch, node).get_block_by_number(7)
    from_rpc = await make_json_rpc_adapter(monkeypatch, node).get_block_by_number(7)

    assert from_web3 == from_rpc
    assert from_rpc.transactions[0].to_address is None
    assert from_rpc.transactions[0].value == "5"
    assert from_rpc.total_difficulty == str(10**22)


@pytest.mark.asyncio
async def test_json_rpc_polling_yields_every_new_block(monkeypatch):
    node = FakeNode()
    node.tips = [10, 12, 12, 13]
    adapter = make_json_rpc_adapter(monkeypatch, node)

    stream = adapter.subscribe_new_blocks()
    blocks = [await stream.__anext__() for _ in range(3)]
    await stream.aclose()

    assert [block.number for block in blocks] == [11, 12, 13]


@pytest.mark.asyncio
async def test_evm_subscription_resolves_heads(monkeypatch):
    adapter = make_evm_adapter(monkeypatch, FakeNode())

    async def new_heads():
        # 11 is not available over http yet and is skipped
        for number in (9, 11, 10):
            yield {"number": number}

    monkeypatch.setattr(adapter, "_new_heads", new_heads)

    blocks = [block async for block in adapter.subscribe_new_blocks()]

    assert [block.number for block in blocks] == [9, 10]


@pytest.mark.asyncio
async def test_evm_subscription_drop_is_transient(monkeypatch):
    adapter = make_evm_adapter(monkeypatch, FakeNode())

    async def new_heads():
        yield {"number": 9}
        raise ConnectionResetError("socket closed")

    monkeypatch.setattr(adapter, "_new_heads", new_heads)

    received = []
    with pytest.raises(TransientFetchError):
        async for block in adapter.subscribe_new_blocks():
            received.append(block.number)

    assert received == [9]


@pytest.mark.asyncio
async def test_evm_errors_are_classified(monkeypatch):
    adapter = make_evm_adapter(monkeypatch, FakeNode())

    async def timeout(block_number):
        raise asyncio.TimeoutError()

    monkeypatch.setattr(adapter, "_fetch_raw_block", timeout)
    with pytest.raises(TransientFetchError):
        await adapter.get_block_by_number(1)

    async def bad_url(block_number):
        raise aiohttp.InvalidURL("not a url")

    monkeypatch.setattr(adapter, "_fetch_raw_block", bad_url)
    with pytest.raises(PermanentAdapterError):
        await adapter.get_block_by_number(1)


@pytest.mark.asyncio
async def test_json_rpc_errors_are_classified(monkeypatch):
    adapter = json_rpc.Adapter("testchain", "http://localhost:8545")

    async def connection_refused(payload):
        raise aiohttp.ClientConnectionError("connection refused")

    monkeypatch.setattr(adapter, "_post", connection_refused)
    with pytest.raises(TransientFetchError):
        await adapter.get_latest_block_number()

    async def rpc_error(payload):
        return {"jsonrpc": "2.0", "id": payload["id"], "error": {"code": -32000, "message": "header not found"}}

    monkeypatch.setattr(adapter, "_post", rpc_error)
    with pytest.raises(TransientFetchError):
        await adapter.get_block_by_number(1)

    async def unauthorized(payload):
        raise aiohttp.ClientResponseError(None, (), status=401, message="Unauthorized")

    monkeypatch.setattr(adapter, "_post", unauthorized)
    with pytest.raises(PermanentAdapterError):
        await adapter.get_block_by_number(1)


def test_classify_error_keeps_ingestion_errors():
    error = PermanentAdapterError("bad credentials")

    assert classify_error("fetching", error) is error
    assert isinstance(classify_error("fetching", OSError("reset")), TransientFetchError)


def test_rpc_quantities():
    assert to_int("0x10") == 16
    assert to_int("16") == 16
    assert to_int(b"\x01\x00") == 256
    assert to_int(None) == 0
    assert to_hex(b"\xab\xcd") == "0xabcd"
    assert to_address(None) is None

    with pytest.raises(ValueError):
        to_int(True)


def test_block_without_full_transactions_is_rejected():
    raw = rpc_block(3)
    raw["transactions"] = ["0x" + "ff" * 32]

    with pytest.raises(ValueError):
        block_from_rpc(raw)


def test_create_adapter():
    evm_adapter = create_adapter(
        "ethereum",
        ChainConfig(
            adapter_type=AdapterKind.EVM,
            schemas=["blocks"],
            http_url="http://localhost:8545",
            ws_url="ws://localhost:8546",
        ),
    )
    rpc_adapter = create_adapter(
        "sepolia",
        ChainConfig(
            adapter_type=AdapterKind.EVM_JSONRPC,
            schemas=["blocks"],
            http_url="http://localhost:8545",
            poll_interval_ms=500,
        ),
    )

    assert isinstance(evm_adapter, evm.Adapter)
    assert evm_adapter.chain_name == "ethereum"
    assert isinstance(rpc_adapter, json_rpc.Adapter)
    assert rpc_adapter.poll_interval_ms == 500
