"""Tests for full diff computation and the cheap change check."""

import pytest

from embsync.content import record_content_hash
from embsync.diff import DiffEngine
from embsync.embedding_store import embedding_to_blob
from embsync.types import IndexRecord, PartitionScanState, format_utc
from tests.conftest import TEST_DIMENSIONS, make_record


@pytest.fixture
def diff_engine(source, embedding_store, config, clock):
    return DiffEngine(source, embedding_store, config, clock=clock)


def _index(embedding_store, config, record, *, content_hash=None, model_id=None, dims=None):
    """Store an IndexRecord as if the record had been embedded."""
    dims = dims or TEST_DIMENSIONS
    embedding_store.upsert(IndexRecord(
        record_id=record.record_id,
        partition_id=record.partition_id,
        source_version=record.version,
        client_modified_at=record.client_modified_at,
        content_hash=content_hash or record_content_hash(record),
        embedding=embedding_to_blob([0] * dims),
        dimensions=dims,
        model_id=model_id or config.effective_model_id,
    ))


class TestComputeFullDiff:
    def test_unindexed_stale_unchanged_and_orphan(self, diff_engine, source, embedding_store, config):
        a = make_record(1, body="Record A has never been embedded before today.")
        b = make_record(2, body="Record B body was edited after it was embedded.")
        c = make_record(3, body="Record C is embedded and has not changed at all.")
        d = make_record(4, body="Record D was embedded and then deleted upstream.")
        source.put_many([a, b, c])
        _index(embedding_store, config, b, content_hash="stale-hash")
        _index(embedding_store, config, c)
        _index(embedding_store, config, d)

        diff = diff_engine.compute_full_diff(1)
        assert diff.to_index == [1, 2]
        assert diff.to_delete == [4]
        assert diff.total_eligible == 3

    def test_eligibility_boundary(self, diff_engine, source):
        source.put_many([
            make_record(1, title="", body="x" * 39),
            make_record(2, title="", body="x" * 40),
        ])
        diff = diff_engine.compute_full_diff(1)
        assert diff.to_index == [2]
        assert diff.total_eligible == 1

    def test_record_that_became_ineligible_is_deleted(self, diff_engine, source, embedding_store, config):
        record = make_record(1)
        _index(embedding_store, config, record)
        record.body = "too short"
        source.put(record)
        diff = diff_engine.compute_full_diff(1)
        assert diff.to_index == []
        assert diff.to_delete == [1]

    def test_soft_deleted_record_is_orphan(self, diff_engine, source, embedding_store, config):
        record = make_record(1)
        source.put(record)
        _index(embedding_store, config, record)
        source.mark_deleted([1])
        assert diff_engine.compute_full_diff(1).to_delete == [1]

    def test_other_partitions_untouched(self, diff_engine, source, embedding_store, config):
        source.put(make_record(1, partition_id=1))
        other = make_record(2, partition_id=2)
        source.put(other)
        _index(embedding_store, config, other)
        diff = diff_engine.compute_full_diff(1)
        assert diff.to_index == [1]
        assert diff.to_delete == []

    def test_pages_through_large_partition(self, source, embedding_store, config, clock):
        config.page_size = 7
        source.put_many([make_record(i) for i in range(1, 51)])
        diff = DiffEngine(source, embedding_store, config, clock=clock).compute_full_diff(1)
        assert diff.to_index == list(range(1, 51))

    def test_model_change_marks_record_stale(self, diff_engine, source, embedding_store, config):
        record = make_record(1)
        source.put(record)
        _index(embedding_store, config, record, model_id="older-model")
        assert diff_engine.compute_full_diff(1).to_index == [1]

    def test_dimension_change_marks_record_stale(self, diff_engine, source, embedding_store, config):
        record = make_record(1)
        source.put(record)
        _index(embedding_store, config, record, dims=TEST_DIMENSIONS * 2)
        assert diff_engine.compute_full_diff(1).to_index == [1]

    def test_malformed_record_is_skipped(self, diff_engine, source):
        source.put_many([make_record(1), make_record(2)])
        # SQLite keeps a BLOB as-is even in a TEXT column
        source._conn.execute("UPDATE records SET body = ? WHERE record_id = 2", (b"\x00\x01",))
        source._conn.commit()
        diff = diff_engine.compute_full_diff(1)
        assert diff.to_index == [1]
        assert diff.skipped == 1


class TestShouldRunFullDiff:
    def _baseline(self, diff_engine, source, embedding_store, config, n=3):
        records = [make_record(i) for i in range(1, n + 1)]
        source.put_many(records)
        for r in records:
            _index(embedding_store, config, r)
        diff_engine.save_index_state(1, diff_engine.get_source_state(1))
        return records

    def test_first_run(self, diff_engine):
        result = diff_engine.should_run_full_diff(1)
        assert result.needs_diff
        assert result.reason == "First run - no embeddings exist"

    def test_embeddings_without_state(self, diff_engine, embedding_store, config):
        _index(embedding_store, config, make_record(1))
        result = diff_engine.should_run_full_diff(1)
        assert result.needs_diff
        assert result.reason == "No stored state - establishing baseline"

    def test_no_changes_one_hour_later(self, diff_engine, source, embedding_store, config, clock):
        self._baseline(diff_engine, source, embedding_store, config)
        clock.advance(hours=1)
        result = diff_engine.should_run_full_diff(1)
        assert not result.needs_diff
        assert result.reason == "No changes detected"

    def test_safety_net_after_eight_days(self, diff_engine, source, embedding_store, config, clock):
        self._baseline(diff_engine, source, embedding_store, config)
        clock.advance(days=8)
        result = diff_engine.should_run_full_diff(1)
        assert result.needs_diff
        assert "Safety net" in result.reason
        assert result.reason == "Safety net - last scan was 8 days ago"

    def test_item_count_changed(self, diff_engine, source, embedding_store, config):
        self._baseline(diff_engine, source, embedding_store, config)
        source.put(make_record(99, modified="2026-01-01T00:00:00.000000"))
        result = diff_engine.should_run_full_diff(1)
        assert result.needs_diff
        assert result.reason == "Item count changed: 3 -> 4"

    def test_items_modified(self, diff_engine, source, embedding_store, config):
        records = self._baseline(diff_engine, source, embedding_store, config)
        records[0].body = "An in-place edit that keeps the item count the same."
        records[0].client_modified_at = "2026-01-14T08:00:00.000000"
        source.put(records[0])
        result = diff_engine.should_run_full_diff(1)
        assert result.needs_diff
        assert result.reason == "Items modified since last scan"

    def test_embedding_count_changed(self, diff_engine, source, embedding_store, config):
        self._baseline(diff_engine, source, embedding_store, config)
        embedding_store.delete(2)
        result = diff_engine.should_run_full_diff(1)
        assert result.needs_diff
        assert result.reason == "Embedding count changed: 3 -> 2"

    def test_model_changed(self, diff_engine, source, embedding_store, config):
        self._baseline(diff_engine, source, embedding_store, config)
        config.model_id = "voyage-4-int8"
        result = diff_engine.should_run_full_diff(1)
        assert result.needs_diff
        assert result.reason == "Embedding model changed to voyage-4-int8"

    def test_item_count_checked_before_embedding_count(self, diff_engine, source, embedding_store, config):
        self._baseline(diff_engine, source, embedding_store, config)
        source.put(make_record(99, modified="2026-01-01T00:00:00.000000"))
        embedding_store.delete(1)
        assert diff_engine.should_run_full_diff(1).reason.startswith("Item count changed")


class TestSaveIndexState:
    def test_records_source_state_and_embedding_count(self, diff_engine, source, embedding_store, config, clock):
        records = [make_record(1), make_record(2, modified="2026-01-12T10:30:00.000000")]
        source.put_many(records)
        _index(embedding_store, config, records[0])

        state = diff_engine.save_index_state(1, diff_engine.get_source_state(1))
        assert state == PartitionScanState(
            partition_id=1,
            last_scan_timestamp=format_utc(clock()),
            max_client_modified_seen="2026-01-12T10:30:00.000000",
            item_count=2,
            embedding_count=1,
        )
        assert embedding_store.get_scan_state(1) == state

    def test_empty_partition_uses_now(self, diff_engine, clock):
        state = diff_engine.save_index_state(1, diff_engine.get_source_state(1))
        assert state.item_count == 0
        assert state.max_client_modified_seen == format_utc(clock())
