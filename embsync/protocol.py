"""
Protocol definitions for the collaborators the index engine consumes.

- SourceStoreProtocol: the read-only source item store
- EmbeddingServiceProtocol: the embedding generation service

Structural subtyping: implementations need no explicit inheritance.
"""

from typing import Iterator, Optional, Protocol, runtime_checkable

from .providers.embedding_service import EmbeddingResponse
from .source_store import SourcePage
from .types import SourceRecord


@runtime_checkable
class SourceStoreProtocol(Protocol):
    """
    Read-only access to source records.

    Implemented by:
    - SQLiteSourceStore (local SQLite database)

    list_records / iter_records / get_records return SourceRecord objects
    populated with record_id, partition_id, version, title, body and
    client_modified_at; nothing else is assumed to be loaded. Deleted
    records are never returned.
    """

    def list_records(
        self,
        partition_id: int,
        cursor: Optional[int] = None,
        limit: int = ...,
    ) -> SourcePage: ...

    def iter_records(
        self, partition_id: int, page_size: int = ...,
    ) -> Iterator[list[SourceRecord]]: ...

    def get_records(self, record_ids: list[int]) -> dict[int, SourceRecord]: ...

    def existing_ids(self, record_ids: list[int]) -> set[int]: ...

    # Cheap aggregates, called on every scheduler tick

    def count_records(self, partition_id: int) -> int: ...

    def max_client_modified_at(self, partition_id: int) -> Optional[str]: ...

    def list_partitions(self) -> list[int]: ...


@runtime_checkable
class EmbeddingServiceProtocol(Protocol):
    """
    Generates embeddings for batches of texts.

    Implemented by:
    - EmbeddingServiceClient (HTTP client for the embeddings API)

    At most one result per input id is returned; missing ids are valid
    partial results.
    """

    def generate_embeddings(
        self, texts: list[str], ids: list[int],
    ) -> EmbeddingResponse: ...

    def generate_embeddings_with_retry(
        self, texts: list[str], ids: list[int],
    ) -> EmbeddingResponse: ...
