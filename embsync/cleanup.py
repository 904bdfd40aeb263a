"""
Orphan cleanup.

Removes embeddings and failure rows whose source record is gone, and all
index data for partitions that are no longer synced.
"""

import logging

from .embedding_store import EmbeddingStore
from .failure_tracker import FailureTracker
from .protocol import SourceStoreProtocol
from .types import CleanupResult

logger = logging.getLogger(__name__)


class OrphanCleanup:
    """Deletes index data that no longer has a live source record."""

    def __init__(
        self,
        source: SourceStoreProtocol,
        embedding_store: EmbeddingStore,
        failure_tracker: FailureTracker,
    ):
        self._source = source
        self._embeddings = embedding_store
        self._failures = failure_tracker

    def delete_embeddings(self, record_ids: list[int]) -> int:
        """Delete the given embeddings (e.g. a diff's to_delete list)."""
        removed = self._embeddings.delete_batch(record_ids)
        if removed:
            logger.info("Removed %d orphaned embeddings", removed)
        return removed

    def cleanup_orphaned_embeddings(self, partition_id: int) -> int:
        """
        Remove embeddings whose source record no longer exists.

        Returns:
            Number of embeddings removed
        """
        embedded_ids = self._embeddings.list_ids(partition_id)
        if not embedded_ids:
            return 0

        existing = self._source.existing_ids(embedded_ids)
        orphaned = [rid for rid in embedded_ids if rid not in existing]
        if orphaned:
            self._embeddings.delete_batch(orphaned)
            logger.info(
                "Removed %d orphaned embeddings from partition %s", len(orphaned), partition_id,
            )
        return len(orphaned)

    def cleanup_unsynced_partitions(self, synced_partition_ids: list[int]) -> CleanupResult:
        """
        Remove embeddings, failure rows and scan state for every partition
        that has embeddings but is not in the allow-list.
        """
        synced = set(synced_partition_ids)
        to_remove = [p for p in self._embeddings.list_partitions() if p not in synced]

        result = CleanupResult()
        for partition_id in to_remove:
            count = self._embeddings.delete_partition(partition_id)
            self._failures.clear_failures([partition_id])
            self._embeddings.delete_scan_state(partition_id)
            result.partitions_removed += 1
            result.embeddings_removed += count
            logger.info(
                "Removed %d embeddings, failure records and scan state for unsynced partition %s",
                count, partition_id,
            )
        return result

    def cleanup_stale_failure_records(self, partition_id: int) -> int:
        """
        Remove failure rows (retry-ready and permanently failed) whose source
        record no longer exists.

        Returns:
            Number of failure rows removed
        """
        failed_ids = [f.record_id for f in self._failures.list_failures(partition_id)]
        if not failed_ids:
            return 0

        existing = self._source.existing_ids(failed_ids)
        stale = [rid for rid in failed_ids if rid not in existing]
        if stale:
            self._failures.remove_batch(stale)
            logger.info(
                "Removed %d stale failure records from partition %s", len(stale), partition_id,
            )
        return len(stale)
