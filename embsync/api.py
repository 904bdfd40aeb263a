"""
Core API for the incremental embedding index.

IndexEngine wires the stores, the diff engine, the batch indexer and
orphan cleanup together, and runs the scheduler pass for a partition:

    check -> full diff (if needed) -> index -> delete orphans -> save baseline

Work on one partition is serialized by a per-partition lock. Different
partitions may be synced from different threads.
"""

import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from .backend import create_stores
from .cleanup import OrphanCleanup
from .config import IndexerConfig, get_store_path, load_or_create_config
from .content import is_eligible
from .diff import DiffEngine
from .embedding_store import EmbeddingStore
from .failure_tracker import FailureTracker
from .indexer import Indexer, ProgressCallback
from .protocol import EmbeddingServiceProtocol, SourceStoreProtocol
from .types import (
    CleanupResult,
    DiffCheckResult,
    FailureRecord,
    IndexingDiff,
    IndexingResult,
    PartitionScanState,
    SourceRecord,
    SyncResult,
)

logger = logging.getLogger(__name__)


class IndexEngine:
    """
    Keeps a local embedding index in step with a source record store.

    Example:
        with IndexEngine("~/.embsync") as engine:
            for result in engine.sync_all([1, 2]):
                print(result.partition_id, result.indexing.indexed)
    """

    def __init__(
        self,
        store_path: Optional[str | Path] = None,
        *,
        config: Optional[IndexerConfig] = None,
        source: Optional[SourceStoreProtocol] = None,
        service: Optional[EmbeddingServiceProtocol] = None,
        embedding_store: Optional[EmbeddingStore] = None,
        failure_tracker: Optional[FailureTracker] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        """
        Open (or create) an index store.

        Args:
            store_path: Index directory. Uses EMBSYNC_STORE_PATH or ~/.embsync
                if not specified.
            config: Pre-loaded IndexerConfig (skips filesystem config discovery).
            source: Injected source store (default: SQLite at config.source_path).
            service: Injected embedding service (default: HTTP client, created
                on first use).
            embedding_store: Injected embedding store.
            failure_tracker: Injected failure tracker.
            clock: Returns current UTC time (tests).
        """
        # --- Config resolution ---
        if config is not None:
            self._config = config
        else:
            self._config = load_or_create_config(get_store_path(store_path))
        self._config.validate()
        self._store_path = self._config.path

        # --- Source ---
        self._owns_source = source is None
        if source is None:
            if self._config.source_path is None:
                raise ValueError(
                    "No source configured. Set [source] path in embsync.toml "
                    "or EMBSYNC_SOURCE_PATH."
                )
            from .source_store import SQLiteSourceStore
            source = SQLiteSourceStore(Path(self._config.source_path))
        self._source = source

        # --- Persistent operations log ---
        from .logging_config import configure_ops_log
        self._ops_log_handler = configure_ops_log(self._store_path)

        # --- Storage backends (injected or factory-created) ---
        if embedding_store is not None and failure_tracker is not None:
            self._embeddings = embedding_store
            self._failures = failure_tracker
        else:
            bundle = create_stores(self._config, clock=clock)
            self._embeddings = bundle.embedding_store
            self._failures = bundle.failure_tracker
            if embedding_store is not None:
                bundle.embedding_store.close()
                self._embeddings = embedding_store
            if failure_tracker is not None:
                bundle.failure_tracker.close()
                self._failures = failure_tracker

        # Embedding service is created lazily (avoids needing credentials for read-only ops)
        self._service = service
        self._owns_service = False
        self._indexer: Optional[Indexer] = None

        self._diff = DiffEngine(self._source, self._embeddings, self._config, clock=clock)
        self._cleanup = OrphanCleanup(self._source, self._embeddings, self._failures)

        self._locks_guard = threading.Lock()
        self._partition_locks: dict[int, threading.Lock] = {}

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _get_service(self) -> EmbeddingServiceProtocol:
        if self._service is None:
            service_config = self._config.service
            if not service_config.api_key:
                raise ValueError(
                    "No embeddings API key configured. Set EMBSYNC_API_KEY."
                )
            from .providers.embedding_service import EmbeddingServiceClient
            self._service = EmbeddingServiceClient(
                service_config.api_url,
                service_config.api_key,
                timeout=service_config.timeout,
            )
            self._owns_service = True
        return self._service

    def _get_indexer(self) -> Indexer:
        if self._indexer is None:
            self._indexer = Indexer(
                self._source, self._embeddings, self._failures,
                self._get_service(), self._config,
            )
        return self._indexer

    @contextmanager
    def _partition_lock(self, partition_id: int):
        with self._locks_guard:
            lock = self._partition_locks.setdefault(partition_id, threading.Lock())
        with lock:
            yield

    # -------------------------------------------------------------------------
    # Change detection
    # -------------------------------------------------------------------------

    def should_run_full_diff(self, partition_id: int) -> DiffCheckResult:
        """Cheap check: does this partition need a full diff?"""
        return self._diff.should_run_full_diff(partition_id)

    def compute_full_diff(self, partition_id: int) -> IndexingDiff:
        """Authoritative diff of source records against stored embeddings."""
        return self._diff.compute_full_diff(partition_id)

    def scan_state(self, partition_id: int) -> Optional[PartitionScanState]:
        """Baseline recorded by the last successful full diff."""
        return self._embeddings.get_scan_state(partition_id)

    # -------------------------------------------------------------------------
    # Indexing
    # -------------------------------------------------------------------------

    def index_record_ids(
        self,
        record_ids: list[int],
        *,
        batch_size: Optional[int] = None,
        skip_unchanged: bool = False,
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[threading.Event] = None,
    ) -> IndexingResult:
        """Index records by ID in sequential batches."""
        return self._get_indexer().index_record_ids(
            record_ids,
            batch_size=batch_size,
            skip_unchanged=skip_unchanged,
            on_progress=on_progress,
            cancel=cancel,
        )

    def index_record(self, record: SourceRecord) -> bool:
        """Index one record now (e.g. right after it was saved)."""
        with self._partition_lock(record.partition_id):
            return self._get_indexer().index_record(record)

    def filter_not_in_backoff(self, record_ids: list[int]) -> list[int]:
        """Drop IDs still in backoff or permanently failed."""
        return self._failures.filter_not_in_backoff(record_ids)

    def sync_partition(
        self,
        partition_id: int,
        *,
        force: bool = False,
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[threading.Event] = None,
    ) -> SyncResult:
        """
        Run one scheduler pass over a partition.

        If a full diff is needed (or forced): index the diff's records that
        are not in backoff, delete orphaned embeddings and stale failure
        rows, then save the new baseline. Failed records whose backoff has
        passed are retried on every pass.

        A cancelled pass keeps committed batches but does not delete or save
        the baseline, so the next pass recomputes the remaining work.
        Source and store errors propagate without saving the baseline.
        """
        with self._partition_lock(partition_id):
            if force:
                check = DiffCheckResult(True, "Forced full diff")
            else:
                check = self._diff.should_run_full_diff(partition_id)
            result = SyncResult(
                partition_id=partition_id, diff_ran=check.needs_diff, reason=check.reason,
            )
            logger.info("Partition %s: %s", partition_id, check.reason)

            to_delete: list[int] = []
            to_index: list[int] = []
            source_state = None
            if check.needs_diff:
                # Captured before the diff so concurrent edits trigger the next one
                source_state = self._diff.get_source_state(partition_id)
                diff = self._diff.compute_full_diff(partition_id)
                to_index = self._failures.filter_not_in_backoff(diff.to_index)
                result.deferred = len(diff.to_index) - len(to_index)
                to_delete = diff.to_delete

            queued = set(to_index)
            for record_id in self._failures.items_ready_for_retry(partition_id):
                if record_id not in queued:
                    to_index.append(record_id)
                    queued.add(record_id)
            result.to_index = len(to_index)

            if to_index:
                result.indexing = self._get_indexer().index_record_ids(
                    to_index,
                    skip_unchanged=True,
                    on_progress=on_progress,
                    cancel=cancel,
                )
                if result.indexing.cancelled:
                    logger.info("Partition %s: sync cancelled, baseline not saved", partition_id)
                    return result

            if check.needs_diff:
                result.deleted = self._cleanup.delete_embeddings(to_delete)
                result.stale_failures_removed = self._cleanup.cleanup_stale_failure_records(
                    partition_id
                )
                self._diff.save_index_state(partition_id, source_state)

            logger.info(
                "Partition %s synced: %d indexed, %d skipped, %d failed, %d deleted, %d deferred",
                partition_id, result.indexing.indexed, result.indexing.skipped,
                result.indexing.failed, result.deleted, result.deferred,
            )
            return result

    def sync_all(
        self,
        partition_ids: list[int],
        *,
        prune: bool = True,
        force: bool = False,
        on_progress: Optional[Callable[[int, int, int], None]] = None,
        cancel: Optional[threading.Event] = None,
    ) -> list[SyncResult]:
        """
        Sync partitions in order.

        Args:
            partition_ids: Partitions under management
            prune: First remove index data for partitions not in the list
            force: Force a full diff for every partition
            on_progress: Called with (partition_id, processed, total)
            cancel: Stops between batches and between partitions
        """
        if prune:
            self.cleanup_unsynced_partitions(partition_ids)

        results = []
        for partition_id in partition_ids:
            if cancel is not None and cancel.is_set():
                break
            progress = None
            if on_progress is not None:
                def progress(done: int, total: int, _pid: int = partition_id) -> None:
                    on_progress(_pid, done, total)
            result = self.sync_partition(
                partition_id, force=force, on_progress=progress, cancel=cancel,
            )
            results.append(result)
            if result.indexing.cancelled:
                break
        return results

    def apply_changes(
        self,
        modified_ids: Optional[list[int]] = None,
        deleted_ids: Optional[list[int]] = None,
    ) -> dict:
        """
        Apply change notifications without a full diff.

        Deleted IDs lose their embedding and failure row. Modified IDs are
        re-indexed if their content changed; modified IDs that are gone or
        no longer eligible lose their embedding and failure row.

        Returns:
            Dict with: deleted, removed_ineligible, indexed, skipped, failed
        """
        deleted_ids = list(deleted_ids or [])
        deleted = set(deleted_ids)
        modified_ids = [rid for rid in (modified_ids or []) if rid not in deleted]
        summary = {"deleted": 0, "removed_ineligible": 0, "indexed": 0, "skipped": 0, "failed": 0}

        if deleted_ids:
            summary["deleted"] = self._embeddings.delete_batch(deleted_ids)
            self._failures.remove_batch(deleted_ids)

        if not modified_ids:
            return summary

        loaded = self._source.get_records(modified_ids)
        by_partition: dict[int, list[int]] = {}
        ineligible: list[int] = []
        for record_id in modified_ids:
            record = loaded.get(record_id)
            try:
                eligible = record is not None and is_eligible(
                    record, self._config.min_content_length
                )
            except (TypeError, AttributeError):
                eligible = False
            if eligible:
                by_partition.setdefault(record.partition_id, []).append(record_id)
            else:
                ineligible.append(record_id)

        if ineligible:
            summary["removed_ineligible"] = self._embeddings.delete_batch(ineligible)
            self._failures.remove_batch(ineligible)

        for partition_id, ids in by_partition.items():
            with self._partition_lock(partition_id):
                result = self._get_indexer().index_record_ids(ids, skip_unchanged=True)
            summary["indexed"] += result.indexed
            summary["skipped"] += result.skipped
            summary["failed"] += result.failed

        logger.info(
            "Applied changes: %d indexed, %d deleted, %d removed as ineligible",
            summary["indexed"], summary["deleted"], summary["removed_ineligible"],
        )
        return summary

    # -------------------------------------------------------------------------
    # Cleanup
    # -------------------------------------------------------------------------

    def cleanup_orphaned_embeddings(self, partition_id: int) -> int:
        """Remove embeddings whose source record no longer exists."""
        with self._partition_lock(partition_id):
            return self._cleanup.cleanup_orphaned_embeddings(partition_id)

    def cleanup_unsynced_partitions(self, synced_partition_ids: list[int]) -> CleanupResult:
        """Remove all index data for partitions not in the allow-list."""
        return self._cleanup.cleanup_unsynced_partitions(synced_partition_ids)

    def cleanup_stale_failure_records(self, partition_id: int) -> int:
        """Remove failure rows whose source record no longer exists."""
        with self._partition_lock(partition_id):
            return self._cleanup.cleanup_stale_failure_records(partition_id)

    def remove_embedding(self, record_id: int) -> bool:
        """Remove the embedding for one record."""
        return self._embeddings.delete(record_id)

    def remove_partition_embeddings(self, partition_id: int) -> int:
        """Remove all embeddings for a partition and forget its baseline."""
        with self._partition_lock(partition_id):
            removed = self._embeddings.delete_partition(partition_id)
            self._embeddings.delete_scan_state(partition_id)
        return removed

    # -------------------------------------------------------------------------
    # Failures
    # -------------------------------------------------------------------------

    def clear_failures(self, partition_ids: list[int]) -> int:
        """Reset backoff state so failed records get a fresh attempt."""
        return self._failures.clear_failures(partition_ids)

    def list_failures(self, partition_id: Optional[int] = None) -> list[FailureRecord]:
        return self._failures.list_failures(partition_id)

    def items_ready_for_retry(self, partition_id: Optional[int] = None) -> list[int]:
        return self._failures.items_ready_for_retry(partition_id)

    def permanently_failed_items(self, partition_id: Optional[int] = None) -> list[int]:
        return self._failures.permanently_failed_items(partition_id)

    def failed_stats(self, partition_id: Optional[int] = None) -> dict:
        """Counts of failed, retry-ready and permanently failed records."""
        return self._failures.stats(partition_id)

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    def stats(self, partition_id: Optional[int] = None) -> dict:
        """Embedding count plus the configured model key."""
        return {
            "embedding_count": self._embeddings.count(partition_id),
            "dimensions": self._config.embedding_dimensions,
            "model_id": self._config.effective_model_id,
        }

    def source_partitions(self) -> list[int]:
        """Partitions that currently have live source records."""
        return self._source.list_partitions()

    def indexed_partitions(self) -> list[int]:
        """Partitions that currently have stored embeddings."""
        return self._embeddings.list_partitions()

    @property
    def config(self) -> IndexerConfig:
        """Public access to the engine configuration."""
        return self._config

    @property
    def failure_tracker(self) -> FailureTracker:
        return self._failures

    @property
    def embedding_store(self) -> EmbeddingStore:
        return self._embeddings

    def close(self) -> None:
        """Close stores, the owned source and service, and the ops log."""
        if getattr(self, "_owns_service", False) and self._service is not None:
            self._service.close()
            self._service = None
        if getattr(self, "_owns_source", False) and getattr(self, "_source", None) is not None:
            self._source.close()
            self._source = None
        if getattr(self, "_embeddings", None) is not None:
            self._embeddings.close()
        if getattr(self, "_failures", None) is not None:
            self._failures.close()
        if getattr(self, "_ops_log_handler", None) is not None:
            from .logging_config import remove_ops_log
            remove_ops_log(self._ops_log_handler)
            self._ops_log_handler = None

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - close resources."""
        self.close()
        return False
