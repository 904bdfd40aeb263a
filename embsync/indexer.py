"""
Batch indexing pipeline.

Loads source records in bounded batches, drops ineligible and unchanged
ones, calls the embedding service once per batch, and persists results.

Failure handling per batch:
- ids the service returns no embedding for, or a vector of the wrong
  size or outside the int8 range, are recorded as failures one by one
- if the embedding call raises, every id sent in that batch is recorded
  as failed with the shared error message, and the run continues with
  the next batch
- source read errors and store write errors propagate

Records found ineligible lose any failure row.
"""

import logging
import threading
from typing import Callable, Optional

from .config import MAX_BATCH_SIZE, IndexerConfig
from .content import build_embedding_text, compute_content_hash, is_eligible
from .embedding_store import EmbeddingStore, embedding_to_blob
from .failure_tracker import FailureTracker
from .protocol import EmbeddingServiceProtocol, SourceStoreProtocol
from .types import IndexingResult, IndexRecord, SourceRecord, utc_now

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


class Indexer:
    """
    Generates and stores embeddings for source records.

    Batches are processed sequentially and in order. Cancellation is
    checked between batches only; committed batches stay committed.
    """

    def __init__(
        self,
        source: SourceStoreProtocol,
        embedding_store: EmbeddingStore,
        failure_tracker: FailureTracker,
        service: EmbeddingServiceProtocol,
        config: IndexerConfig,
    ):
        self._source = source
        self._embeddings = embedding_store
        self._failures = failure_tracker
        self._service = service
        self._config = config

    @property
    def model_id(self) -> str:
        return self._config.effective_model_id

    @property
    def dimensions(self) -> int:
        return self._config.embedding_dimensions

    def _prepare(self, record: SourceRecord) -> Optional[tuple[str, str]]:
        """Embedding text and hash for an eligible record, else None.

        Malformed records (non-text fields) count as ineligible.
        """
        try:
            if not is_eligible(record, self._config.min_content_length):
                return None
            text = build_embedding_text(record.title, record.body)
        except (TypeError, AttributeError, UnicodeError) as e:
            logger.debug("Skipping malformed record %s: %s", record.record_id, e)
            return None
        return text, compute_content_hash(text)

    def _filter_unchanged(
        self, prepared: list[tuple[SourceRecord, str, str]],
    ) -> list[tuple[SourceRecord, str, str]]:
        """Drop records whose stored hash and model key already match."""
        existing = self._embeddings.get_index_keys([r.record_id for r, _, _ in prepared])
        current_key = self._config.model_key
        keep = []
        for record, text, content_hash in prepared:
            stored = existing.get(record.record_id)
            if stored is not None and stored[0] == content_hash and stored[1:] == current_key:
                continue
            keep.append((record, text, content_hash))
        return keep

    def _build_record(
        self, record: SourceRecord, content_hash: str, embedding: list[int],
    ) -> IndexRecord:
        return IndexRecord(
            record_id=record.record_id,
            partition_id=record.partition_id,
            source_version=record.version,
            client_modified_at=record.client_modified_at or utc_now(),
            content_hash=content_hash,
            embedding=embedding_to_blob(embedding),
            dimensions=self.dimensions,
            model_id=self.model_id,
        )

    def _embed_batch(
        self, batch: list[tuple[SourceRecord, str, str]], result: IndexingResult,
    ) -> None:
        """Call the service once for a batch and persist what came back."""
        texts = [text for _, text, _ in batch]
        ids = [record.record_id for record, _, _ in batch]

        try:
            response = self._service.generate_embeddings_with_retry(texts, ids)
        except Exception as e:
            error_msg = f"{type(e).__name__}: {e}"
            logger.warning(
                "Embedding batch of %d failed (ids %s..%s): %s",
                len(ids), ids[0], ids[-1], error_msg,
            )
            self._failures.record_failures(
                [(record.record_id, record.partition_id) for record, _, _ in batch],
                error_msg,
            )
            result.failed += len(batch)
            return

        by_id = {}
        for emb in response.embeddings:
            by_id.setdefault(emb.item_id, emb)

        records: list[IndexRecord] = []
        missing: list[tuple[int, int]] = []
        mismatched: list[tuple[int, int]] = []
        invalid: list[tuple[int, int]] = []
        for record, _, content_hash in batch:
            emb = by_id.get(record.record_id)
            if emb is None:
                missing.append((record.record_id, record.partition_id))
            elif len(emb.embedding) != self.dimensions:
                mismatched.append((record.record_id, record.partition_id))
            else:
                try:
                    records.append(self._build_record(record, content_hash, emb.embedding))
                except (ValueError, TypeError) as e:
                    logger.warning("Invalid embedding for record %s: %s", record.record_id, e)
                    invalid.append((record.record_id, record.partition_id))

        if records:
            self._embeddings.upsert_batch(records)
            self._failures.remove_batch([r.record_id for r in records])
            result.indexed += len(records)

        if missing:
            self._failures.record_failures(missing, "No embedding returned")
        if mismatched:
            self._failures.record_failures(
                mismatched, f"Embedding dimensions mismatch (expected {self.dimensions})",
            )
        if invalid:
            self._failures.record_failures(invalid, "Invalid embedding values (expected int8)")
        result.failed += len(missing) + len(mismatched) + len(invalid)

    def index_record_ids(
        self,
        record_ids: list[int],
        *,
        batch_size: Optional[int] = None,
        skip_unchanged: bool = False,
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[threading.Event] = None,
    ) -> IndexingResult:
        """
        Index records by ID, loading and embedding one batch at a time.

        Args:
            record_ids: IDs to index
            batch_size: IDs per batch (default from config, clamped to 500)
            skip_unchanged: Skip records whose stored hash already matches
            on_progress: Called after every batch with (processed, total)
            cancel: Checked between batches; when set the run stops early

        Returns:
            IndexingResult. IDs missing from the source or ineligible are
            counted as skipped.
        """
        batch_size = min(batch_size or self._config.batch_size, MAX_BATCH_SIZE)
        if batch_size < 1:
            raise ValueError(f"batch_size must be positive (got {batch_size})")
        result = IndexingResult()
        total = len(record_ids)
        if total == 0:
            return result

        for start in range(0, total, batch_size):
            if cancel is not None and cancel.is_set():
                logger.info("Indexing cancelled after %d of %d records", result.processed, total)
                result.cancelled = True
                break

            batch_ids = record_ids[start:start + batch_size]
            loaded = self._source.get_records(batch_ids)

            prepared: list[tuple[SourceRecord, str, str]] = []
            ineligible: list[int] = []
            for record_id in batch_ids:
                record = loaded.get(record_id)
                item = self._prepare(record) if record is not None else None
                if item is None:
                    result.skipped += 1
                    if record is not None:
                        ineligible.append(record_id)
                    continue
                prepared.append((record, *item))

            if ineligible:
                self._failures.remove_batch(ineligible)

            if skip_unchanged and prepared:
                to_embed = self._filter_unchanged(prepared)
                result.skipped += len(prepared) - len(to_embed)
            else:
                to_embed = prepared

            if to_embed:
                self._embed_batch(to_embed, result)

            if on_progress is not None:
                on_progress(result.processed, total)

        logger.info(
            "Indexed %d, skipped %d, failed %d of %d records",
            result.indexed, result.skipped, result.failed, total,
        )
        return result

    def index_record(self, record: SourceRecord) -> bool:
        """
        Index a single record immediately.

        Returns:
            True if a new embedding was stored; False if the record was
            ineligible, unchanged, or failed (failures are recorded)
        """
        prepared = self._prepare(record)
        if prepared is None:
            self._failures.remove(record.record_id)
            return False
        text, content_hash = prepared
        if not self._filter_unchanged([(record, text, content_hash)]):
            return False

        result = IndexingResult()
        self._embed_batch([(record, text, content_hash)], result)
        return result.indexed == 1
