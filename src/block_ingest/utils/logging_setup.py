import logging
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

# Global variables to track logging state
_is_logging_configured = False
_current_log_file = None


def setup_logging(log_dir: str = "logs"):
    """Configure logging for all modules"""
    global _is_logging_configured, _current_log_file

    # If logging is already configured, return the existing logger
    if _is_logging_configured:
        return logging.getLogger()

    log_path = Path(log_dir)
    log_path.mkdir(exist_ok=True)

    # Create a timestamp for the log file
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    _current_log_file = log_path / f"block_ingest_{timestamp}.log"

    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # File handler with UTF-8 encoding
    file_handler = logging.FileHandler(_current_log_file, encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)

    if sys.platform == "win32":
        # Fix Windows console encoding
        sys.stdout.reconfigure(encoding="utf-8")
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(os.environ.get("LOGLEVEL", "INFO").upper())
    console_handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)

    # Set higher log level for noisy third-party libraries
    for name in ("web3", "urllib3", "aiohttp", "websockets", "redis", "sqlalchemy", "asyncio"):
        logging.getLogger(name).setLevel(logging.WARNING)

    _is_logging_configured = True
    return root_logger


def get_current_log_file() -> Optional[Path]:
    """Get the path to the current log file"""
    return _current_log_file
