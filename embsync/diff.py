"""
Change detection between the source and the embedding store.

Two tiers:
- should_run_full_diff(): cheap aggregate comparisons against the stored
  PartitionScanState, run on every scheduler tick.
- compute_full_diff(): the authoritative O(existing + current)
  reconciliation, streaming source records page by page.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from .config import IndexerConfig
from .content import is_eligible, record_content_hash
from .embedding_store import EmbeddingStore
from .protocol import SourceStoreProtocol
from .types import (
    DiffCheckResult,
    IndexingDiff,
    PartitionScanState,
    PartitionSourceState,
    format_utc,
    parse_utc_timestamp,
)

logger = logging.getLogger(__name__)

DAY_SECONDS = 24 * 60 * 60


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class DiffEngine:
    """Decides what to (re)index and what to delete for a partition."""

    def __init__(
        self,
        source: SourceStoreProtocol,
        embedding_store: EmbeddingStore,
        config: IndexerConfig,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._source = source
        self._embeddings = embedding_store
        self._config = config
        self._clock = clock or _utc_now

    def _is_stale(self, existing: Optional[tuple[str, str, int]], content_hash: str) -> bool:
        """True if a record with this hash needs embedding given what is stored."""
        if existing is None:
            return True
        stored_hash, model_id, dimensions = existing
        return stored_hash != content_hash or (model_id, dimensions) != self._config.model_key

    def compute_full_diff(self, partition_id: int) -> IndexingDiff:
        """
        Compute which records need (re)indexing and which embeddings are orphaned.

        A record is indexed if it is eligible and has no stored embedding,
        a different content hash, or an embedding from another model.
        Every stored embedding not matched by a current eligible record is
        reported for deletion (deleted from the source or no longer eligible).

        Source read errors propagate; nothing is persisted here.
        """
        existing = self._embeddings.content_hash_map(partition_id)
        diff = IndexingDiff()
        seen: set[int] = set()

        for page in self._source.iter_records(partition_id, self._config.page_size):
            for record in page:
                try:
                    if not is_eligible(record, self._config.min_content_length):
                        continue
                    content_hash = record_content_hash(record)
                except (TypeError, AttributeError, UnicodeError) as e:
                    logger.debug("Skipping malformed record %s: %s", record.record_id, e)
                    diff.skipped += 1
                    continue

                seen.add(record.record_id)
                diff.total_eligible += 1
                if self._is_stale(existing.get(record.record_id), content_hash):
                    diff.to_index.append(record.record_id)

        diff.to_delete = [rid for rid in existing if rid not in seen]

        logger.info(
            "Full diff for partition %s: %d to index, %d to delete, %d eligible",
            partition_id, len(diff.to_index), len(diff.to_delete), diff.total_eligible,
        )
        return diff

    def get_source_state(self, partition_id: int) -> PartitionSourceState:
        """Current item count and latest modification time from the source."""
        return PartitionSourceState(
            item_count=self._source.count_records(partition_id),
            max_client_modified_at=self._source.max_client_modified_at(partition_id),
        )

    def should_run_full_diff(self, partition_id: int) -> DiffCheckResult:
        """
        Check whether a full diff is needed for a partition.

        A full diff is needed if:
        1. No stored state exists (first run or establishing baseline)
        2. The last scan is older than the safety interval
        3. The source item count changed (additions or deletions)
        4. The source's latest modification time increased (edits)
        5. The stored embedding count changed (external data loss)
        6. Any stored embedding came from a different model

        Checks run in this order and stop at the first positive.
        """
        stored = self._embeddings.get_scan_state(partition_id)

        if stored is None:
            if self._embeddings.count(partition_id) == 0:
                return DiffCheckResult(True, "First run - no embeddings exist")
            return DiffCheckResult(True, "No stored state - establishing baseline")

        since_last_scan = self._clock() - parse_utc_timestamp(stored.last_scan_timestamp)
        safety_interval = timedelta(milliseconds=self._config.full_diff_safety_interval_ms)
        if since_last_scan > safety_interval:
            days = round(since_last_scan.total_seconds() / DAY_SECONDS)
            return DiffCheckResult(True, f"Safety net - last scan was {days} days ago")

        current = self.get_source_state(partition_id)

        if current.item_count != stored.item_count:
            return DiffCheckResult(
                True, f"Item count changed: {stored.item_count} -> {current.item_count}",
            )

        if current.max_client_modified_at and stored.max_client_modified_seen:
            current_max = parse_utc_timestamp(current.max_client_modified_at)
            stored_max = parse_utc_timestamp(stored.max_client_modified_seen)
            if current_max > stored_max:
                return DiffCheckResult(True, "Items modified since last scan")

        embedding_count = self._embeddings.count(partition_id)
        if embedding_count != stored.embedding_count:
            return DiffCheckResult(
                True,
                f"Embedding count changed: {stored.embedding_count} -> {embedding_count}",
            )

        model_id, dimensions = self._config.model_key
        if self._embeddings.count_incompatible(partition_id, model_id, dimensions):
            return DiffCheckResult(True, f"Embedding model changed to {model_id}")

        return DiffCheckResult(False, "No changes detected")

    def save_index_state(
        self, partition_id: int, source_state: PartitionSourceState,
    ) -> PartitionScanState:
        """
        Record the baseline after a successful full diff.

        ``source_state`` must be captured before the diff started, so that
        edits made while the diff ran are caught on the next check.
        """
        now = format_utc(self._clock())
        state = PartitionScanState(
            partition_id=partition_id,
            last_scan_timestamp=now,
            max_client_modified_seen=source_state.max_client_modified_at or now,
            item_count=source_state.item_count,
            embedding_count=self._embeddings.count(partition_id),
        )
        self._embeddings.upsert_scan_state(state)
        return state
