"""
Storage backend factory.

Creates the local SQLite stores for an index directory:
- embeddings.db: index records and partition scan state
- failures.db: per-record failure/backoff history
"""

from typing import NamedTuple

from .config import IndexerConfig
from .embedding_store import EmbeddingStore
from .failure_tracker import FailureTracker

EMBEDDINGS_DB = "embeddings.db"
FAILURES_DB = "failures.db"


class StoreBundle(NamedTuple):
    """Collection of storage backends returned by the factory."""
    embedding_store: EmbeddingStore
    failure_tracker: FailureTracker


def create_stores(config: IndexerConfig, *, clock=None) -> StoreBundle:
    """Create the local storage backends under config.path."""
    store_path = config.path
    embedding_store = EmbeddingStore(store_path / EMBEDDINGS_DB)
    failure_tracker = FailureTracker(
        store_path / FAILURES_DB,
        max_failure_count=config.max_failure_count,
        backoff_base=config.retry_backoff_base_seconds,
        backoff_max=config.retry_backoff_max_seconds,
        clock=clock,
    )
    return StoreBundle(embedding_store=embedding_store, failure_tracker=failure_tracker)
