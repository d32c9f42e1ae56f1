import argparse
import asyncio
import logging
import signal
from typing import Dict, List, Optional

from .adapters import ChainAdapter, create_adapter
from .channel import create_channel
from .config import Config, parse_config
from .storage.row_store import RowStore
from .supervisor import Supervisor

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "blockchains.toml"


def build_adapters(config: Config) -> Dict[str, ChainAdapter]:
    return {
        chain_name: create_adapter(chain_name, chain)
        for chain_name, chain in config.blockchains.items()
    }


async def close_adapters(adapters: Dict[str, ChainAdapter]) -> None:
    for chain_name, adapter in adapters.items():
        try:
            await adapter.close()
        except Exception as e:
            logger.warning(f"Failed to close adapter of {chain_name}: {e}")


def install_signal_handlers(supervisor: Supervisor) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, supervisor.request_stop)
        except NotImplementedError:
            logger.warning(f"Can not install a handler for {sig.name} on this platform")


async def run_ingestion(config: Config) -> Supervisor:
    """Run producers and persisters until a stop signal arrives"""
    store = RowStore.from_url(config.storage.url)
    if config.storage.create_tables:
        await asyncio.to_thread(store.create_tables)

    channel = create_channel(config.channel)
    adapters = build_adapters(config)
    supervisor = Supervisor(config, channel, store, adapters)

    install_signal_handlers(supervisor)

    try:
        await supervisor.run()
    finally:
        await close_adapters(adapters)
        await channel.close()
        store.close()

    return supervisor


async def show_tip(config: Config) -> None:
    """Print the latest block of every configured chain"""
    adapters = build_adapters(config)

    try:
        for chain_name, adapter in adapters.items():
            block_number = await adapter.get_latest_block_number()
            block = await adapter.get_block_by_number(block_number)
            if block is None:
                print(f"{chain_name}: latest block {block_number} (not available yet)")
                continue
            print(
                f"{chain_name}: latest block {block.number} hash {block.hash} with {block.tx_count} transactions"
            )
    finally:
        await close_adapters(adapters)


def create_tables(config: Config) -> None:
    store = RowStore.from_url(config.storage.url)
    try:
        store.create_tables()
    finally:
        store.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Blockchain block ingestion")

    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG_PATH,
        help="Path to the TOML or YAML config file",
    )
    parser.add_argument(
        "command",
        nargs="?",
        default="run",
        choices=["run", "tip", "create-tables"],
        help="run ingestion (default), print the latest block of each chain, or create the tables",
    )

    return parser


async def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    config = parse_config(args.config)

    match args.command:
        case "tip":
            await show_tip(config)
        case "create-tables":
            await asyncio.to_thread(create_tables, config)
        case _:
            await run_ingestion(config)
