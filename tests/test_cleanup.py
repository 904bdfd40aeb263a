"""Tests for orphan cleanup."""

import pytest

from embsync.cleanup import OrphanCleanup
from embsync.indexer import Indexer
from embsync.types import PartitionScanState
from tests.conftest import make_record


@pytest.fixture
def cleanup(source, embedding_store, failure_tracker):
    return OrphanCleanup(source, embedding_store, failure_tracker)


@pytest.fixture
def indexer(source, embedding_store, failure_tracker, service, config):
    return Indexer(source, embedding_store, failure_tracker, service, config)


def test_orphaned_embeddings_removed(cleanup, indexer, source, embedding_store):
    source.put_many([make_record(i) for i in range(1, 5)])
    indexer.index_record_ids([1, 2, 3, 4])
    source.mark_deleted([2])
    source.purge([4])

    assert cleanup.cleanup_orphaned_embeddings(1) == 2
    assert embedding_store.list_ids(1) == [1, 3]


def test_orphan_cleanup_on_empty_partition(cleanup):
    assert cleanup.cleanup_orphaned_embeddings(42) == 0


def test_unsynced_partitions_removed(cleanup, indexer, source, embedding_store, failure_tracker):
    source.put_many([make_record(1, 1), make_record(2, 2), make_record(3, 3)])
    indexer.index_record_ids([1, 2, 3])
    failure_tracker.record_failure(20, 2, "boom")
    embedding_store.upsert_scan_state(PartitionScanState(
        partition_id=2,
        last_scan_timestamp="2026-01-15T12:00:00.000000",
        max_client_modified_seen=None,
        item_count=1,
        embedding_count=1,
    ))

    result = cleanup.cleanup_unsynced_partitions([1, 3])

    assert result.partitions_removed == 1
    assert result.embeddings_removed == 1
    assert embedding_store.list_partitions() == [1, 3]
    assert failure_tracker.count(2) == 0
    assert embedding_store.get_scan_state(2) is None


def test_unsynced_cleanup_keeps_allowed(cleanup, indexer, source, embedding_store):
    source.put_many([make_record(1, 1), make_record(2, 2)])
    indexer.index_record_ids([1, 2])
    result = cleanup.cleanup_unsynced_partitions([1, 2])
    assert result.partitions_removed == 0
    assert embedding_store.count() == 2


def test_stale_failures_removed(cleanup, source, failure_tracker):
    source.put(make_record(1))
    failure_tracker.record_failure(1, 1, "boom")
    failure_tracker.record_failure(2, 1, "boom")
    for _ in range(failure_tracker.max_failure_count):
        failure_tracker.record_failure(3, 1, "boom")

    assert cleanup.cleanup_stale_failure_records(1) == 2
    assert [f.record_id for f in failure_tracker.list_failures(1)] == [1]


def test_delete_embeddings(cleanup, indexer, source, embedding_store):
    source.put_many([make_record(1), make_record(2)])
    indexer.index_record_ids([1, 2])
    assert cleanup.delete_embeddings([2, 99]) == 1
    assert cleanup.delete_embeddings([]) == 0
    assert embedding_store.list_ids(1) == [1]
