"""Tests for the embsync command line."""

import json

import pytest
from typer.testing import CliRunner

from embsync.cli import app
from embsync.source_store import SQLiteSourceStore
from tests.conftest import MockEmbeddingService, make_record

runner = CliRunner()


@pytest.fixture
def store_dir(tmp_path, monkeypatch):
    """Index directory plus a seeded source database."""
    for var in ("EMBSYNC_STORE_PATH", "EMBSYNC_API_URL", "EMBSYNC_SOURCE_PATH"):
        monkeypatch.delenv(var, raising=False)
    source_path = tmp_path / "source.db"
    with SQLiteSourceStore(source_path) as source:
        source.put_many([make_record(1, 1), make_record(2, 1), make_record(3, 2)])
    return tmp_path / "store", source_path


@pytest.fixture
def mock_service(monkeypatch):
    """Route the engine's embedding client to the deterministic mock."""
    service = MockEmbeddingService(dimensions=512)
    monkeypatch.setenv("EMBSYNC_API_KEY", "test-key")
    monkeypatch.setattr(
        "embsync.providers.embedding_service.EmbeddingServiceClient",
        lambda *args, **kwargs: service,
    )
    return service


def _invoke(store_dir, *args):
    store, source = store_dir
    return runner.invoke(app, ["--store", str(store), "--source", str(source), *args])


def test_check_before_first_sync(store_dir):
    result = _invoke(store_dir, "check", "1")
    assert result.exit_code == 0
    assert "full diff needed" in result.output
    assert "First run" in result.output


def test_diff_json(store_dir):
    result = _invoke(store_dir, "--json", "diff", "1")
    assert result.exit_code == 0
    data = json.loads(result.output)
    assert data["to_index"] == [1, 2]
    assert data["to_delete"] == []


def test_sync_then_status(store_dir, mock_service):
    result = _invoke(store_dir, "sync")
    assert result.exit_code == 0, result.output
    assert sorted(mock_service.embedded_ids) == [1, 2, 3]

    result = _invoke(store_dir, "--json", "status")
    data = json.loads(result.output)
    assert data["embedding_count"] == 3
    assert [p["partition_id"] for p in data["partitions"]] == [1, 2]

    result = _invoke(store_dir, "check", "1")
    assert "up to date" in result.output


def test_sync_with_prune(store_dir, mock_service):
    _invoke(store_dir, "sync")
    result = _invoke(store_dir, "--json", "sync", "1", "--prune")
    assert result.exit_code == 0, result.output
    data = json.loads(result.output)
    assert [r["partition_id"] for r in data] == [1]

    status = json.loads(_invoke(store_dir, "--json", "status").output)
    assert [p["partition_id"] for p in status["partitions"]] == [1]


def test_failures_and_clear(store_dir, mock_service):
    mock_service.drop_ids = {2}
    _invoke(store_dir, "sync", "1")

    result = _invoke(store_dir, "--json", "failures", "--partition", "1")
    rows = json.loads(result.output)
    assert [r["record_id"] for r in rows] == [2]
    assert rows[0]["last_error"] == "No embedding returned"

    result = _invoke(store_dir, "failures", "--permanent")
    assert "No failed records." in result.output

    result = _invoke(store_dir, "clear-failures", "1")
    assert "Cleared 1 failure records" in result.output


def test_cleanup(store_dir, mock_service):
    _invoke(store_dir, "sync", "1")
    with SQLiteSourceStore(store_dir[1]) as source:
        source.mark_deleted([1])

    result = _invoke(store_dir, "--json", "cleanup", "1")
    assert json.loads(result.output) == {"embeddings_removed": 1, "failures_removed": 0}


def test_missing_source_is_reported(tmp_path, monkeypatch):
    monkeypatch.delenv("EMBSYNC_SOURCE_PATH", raising=False)
    result = runner.invoke(app, ["--store", str(tmp_path / "store"), "check", "1"])
    assert result.exit_code == 1
    assert "No source configured" in result.output
