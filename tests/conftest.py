"""
Shared pytest fixtures for embsync tests.

Provides a deterministic embedding service and tmp_path SQLite stores so
no test touches the network.
"""

import hashlib
from datetime import datetime, timedelta, timezone

import pytest

from embsync.config import IndexerConfig
from embsync.embedding_store import EmbeddingStore
from embsync.failure_tracker import FailureTracker
from embsync.providers.embedding_service import (
    EmbeddingResponse,
    EmbeddingResult,
    EmbeddingServiceError,
)
from embsync.source_store import SQLiteSourceStore
from embsync.types import SourceRecord

TEST_DIMENSIONS = 8

# Long enough to clear the default 40 character eligibility threshold
LONG_BODY = "This body has comfortably more than forty characters of text."


class FakeClock:
    """Controllable UTC clock. Call to read, advance() to move forward."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class MockEmbeddingService:
    """
    Deterministic mock embedding service.

    Generates int8 vectors from a hash of the text. Can be told to drop
    specific ids from responses, or to raise on specific calls.
    """

    def __init__(self, dimensions: int = TEST_DIMENSIONS):
        self.dimensions = dimensions
        self.calls: list[list[int]] = []
        self.drop_ids: set[int] = set()
        self.fail_calls: set[int] = set()   # 1-based call numbers that raise
        self.fail_ids: set[int] = set()     # any call containing one of these raises
        self.vectors: dict[int, list[int]] = {}  # fixed vectors returned for these ids

    def _vector(self, text: str) -> list[int]:
        digest = hashlib.sha256(text.encode()).digest()
        repeated = digest * (self.dimensions // len(digest) + 1)
        return [b - 128 for b in repeated[:self.dimensions]]

    def generate_embeddings(self, texts: list[str], ids: list[int]) -> EmbeddingResponse:
        self.calls.append(list(ids))
        if len(self.calls) in self.fail_calls or self.fail_ids.intersection(ids):
            raise EmbeddingServiceError("Embedding request failed after 3 attempts: 503")
        return EmbeddingResponse(
            embeddings=[
                EmbeddingResult(
                    item_id=i,
                    embedding=self.vectors.get(i) or self._vector(t),
                    dimensions=self.dimensions,
                )
                for t, i in zip(texts, ids)
                if i not in self.drop_ids
            ],
            model="mock-model",
        )

    def generate_embeddings_with_retry(self, texts: list[str], ids: list[int]) -> EmbeddingResponse:
        return self.generate_embeddings(texts, ids)

    def close(self):
        pass

    @property
    def embedded_ids(self) -> list[int]:
        return [i for call in self.calls for i in call]


def make_record(
    record_id: int,
    partition_id: int = 1,
    *,
    title: str = "Title",
    body: str = LONG_BODY,
    version: int = 1,
    modified: str = "2026-01-10T09:00:00.000000",
) -> SourceRecord:
    return SourceRecord(
        record_id=record_id,
        partition_id=partition_id,
        version=version,
        title=title,
        body=body,
        client_modified_at=modified,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config(tmp_path):
    """Indexer config rooted in a temp store directory."""
    return IndexerConfig(path=tmp_path / "store", embedding_dimensions=TEST_DIMENSIONS)


@pytest.fixture
def source(tmp_path):
    store = SQLiteSourceStore(tmp_path / "source.db")
    yield store
    store.close()


@pytest.fixture
def embedding_store(tmp_path):
    store = EmbeddingStore(tmp_path / "store" / "embeddings.db")
    yield store
    store.close()


@pytest.fixture
def failure_tracker(tmp_path, clock):
    tracker = FailureTracker(tmp_path / "store" / "failures.db", clock=clock)
    yield tracker
    tracker.close()


@pytest.fixture
def service():
    return MockEmbeddingService()


@pytest.fixture
def engine(config, source, service, embedding_store, failure_tracker, clock):
    """IndexEngine over temp stores with the mock service."""
    from embsync.api import IndexEngine
    eng = IndexEngine(
        config=config,
        source=source,
        service=service,
        embedding_store=embedding_store,
        failure_tracker=failure_tracker,
        clock=clock,
    )
    yield eng
    eng.close()
