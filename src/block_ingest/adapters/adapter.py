import logging

from . import evm, json_rpc
from .base import ChainAdapter
from ..config import AdapterKind, ChainConfig

logger = logging.getLogger(__name__)


def create_adapter(chain_name: str, chain: ChainConfig) -> ChainAdapter:
    match chain.adapter_type:
        case AdapterKind.EVM:
            assert chain.ws_url is not None
            return evm.Adapter(
                chain_name,
                http_url=chain.http_url,
                ws_url=chain.ws_url,
                request_timeout_s=chain.request_timeout_s,
            )
        case AdapterKind.EVM_JSONRPC:
            return json_rpc.Adapter(
                chain_name,
                http_url=chain.http_url,
                poll_interval_ms=chain.poll_interval_ms,
                request_timeout_s=chain.request_timeout_s,
            )
        case _:
            raise ValueError(f"Invalid adapter type: {chain.adapter_type}")
