import asyncio
import logging
import sys

from dotenv import load_dotenv

from block_ingest.app import main as app_main
from block_ingest.utils.logging_setup import get_current_log_file, setup_logging

load_dotenv()

# Set up logging
setup_logging()
logger = logging.getLogger(__name__)


async def main():
    """Main entry point for the application"""
    try:
        logger.info("Starting blockchain block ingestion")
        logger.info(f"Writing logs to {get_current_log_file()}")

        await app_main()

    except Exception as e:
        logger.error(f"Fatal error: {e}")
        logger.error(f"Error occurred at line {sys.exc_info()[2].tb_lineno}")
        raise


if __name__ == "__main__":
    asyncio.run(main())
