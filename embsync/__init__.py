"""
embsync - incremental embedding index for a record store.

Keeps a local index of content embeddings in step with a source store,
re-embedding only records whose content changed.

Quick start:
    from embsync import IndexEngine

    with IndexEngine("~/.embsync") as engine:
        engine.sync_all(engine.source_partitions())
"""

__version__ = "0.1.0"

from .api import IndexEngine
from .config import IndexerConfig, ServiceConfig, load_or_create_config
from .providers.embedding_service import EmbeddingServiceClient, EmbeddingServiceError
from .source_store import SQLiteSourceStore
from .types import (
    CleanupResult,
    DiffCheckResult,
    FailureRecord,
    IndexingDiff,
    IndexingResult,
    IndexRecord,
    PartitionScanState,
    SourceRecord,
    SyncResult,
)

__all__ = [
    "IndexEngine",
    "IndexerConfig",
    "ServiceConfig",
    "load_or_create_config",
    "EmbeddingServiceClient",
    "EmbeddingServiceError",
    "SQLiteSourceStore",
    "CleanupResult",
    "DiffCheckResult",
    "FailureRecord",
    "IndexingDiff",
    "IndexingResult",
    "IndexRecord",
    "PartitionScanState",
    "SourceRecord",
    "SyncResult",
]
