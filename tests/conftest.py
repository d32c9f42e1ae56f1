import logging

import pytest

from block_ingest.storage.row_store import RowStore
from block_ingest.utils.retry import RetryConfig


# Configure logging for tests
@pytest.fixture(autouse=True)
def configure_logging():
    # Set up logging
    logging.basicConfig(
        level=logging.DEBUG,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    yield


@pytest.fixture
def fast_retry():
    return RetryConfig(max_num_retries=3, retry_base_ms=1, retry_ceiling_ms=5)


@pytest.fixture
def store(tmp_path):
    row_store = RowStore.from_url(f"sqlite:///{tmp_path / 'blocks.db'}")
    row_store.create_tables()
    yield row_store
    row_store.close()
