"""
Embedding store using SQLite.

Persists one index record per indexed source record (content hash,
quantized embedding, model metadata) and the per-partition scan state
used to skip unnecessary full diffs.

Batch writes are applied inside a single IMMEDIATE transaction and rolled
back on any error, so a failed batch never leaves a content hash that
disagrees with its stored embedding.
"""

import logging
import sqlite3
import threading
from pathlib import Path
from typing import Iterable, Optional

import numpy as np

from .types import IndexRecord, PartitionScanState, utc_now

logger = logging.getLogger(__name__)

# SQLite default limit on bound parameters is 999 on older builds
_MAX_SQL_PARAMS = 900


def embedding_to_blob(embedding) -> bytes:
    """Encode an int8-quantized embedding as a fixed-width blob.

    Raises:
        ValueError: If any element falls outside the int8 range
    """
    arr = np.asarray(embedding)
    if arr.ndim != 1:
        raise ValueError(f"embedding must be one-dimensional (got shape {arr.shape})")
    if arr.size and (arr.min() < -128 or arr.max() > 127):
        raise ValueError("embedding values must fit in int8")
    return arr.astype(np.int8).tobytes()


def blob_to_embedding(blob: bytes) -> np.ndarray:
    """Decode a stored blob back to an int8 vector."""
    return np.frombuffer(blob, dtype=np.int8)


def _chunks(ids: list, size: int = _MAX_SQL_PARAMS) -> Iterable[list]:
    for i in range(0, len(ids), size):
        yield ids[i:i + size]


class EmbeddingStore:
    """
    SQLite-backed store for index records and partition scan state.

    Mutations are upserts/deletes keyed by record_id, so every write is
    idempotent and safe to retry.
    """

    def __init__(self, store_path: Path):
        """
        Args:
            store_path: Path to SQLite database file
        """
        self._db_path = store_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        # isolation_level=None gives manual transaction control for BEGIN IMMEDIATE
        self._conn = sqlite3.connect(
            str(self._db_path), check_same_thread=False,
            isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS embeddings (
                record_id INTEGER PRIMARY KEY,
                partition_id INTEGER NOT NULL,
                source_version INTEGER NOT NULL,
                client_modified_at TEXT NOT NULL,
                content_hash TEXT NOT NULL,
                embedding BLOB NOT NULL,
                dimensions INTEGER NOT NULL,
                model_id TEXT NOT NULL,
                indexed_at TEXT NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_embeddings_partition
            ON embeddings(partition_id)
        """)
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS partition_scan_state (
                partition_id INTEGER PRIMARY KEY,
                last_scan_timestamp TEXT NOT NULL,
                max_client_modified_seen TEXT,
                item_count INTEGER NOT NULL,
                embedding_count INTEGER NOT NULL
            )
        """)

    def _row_to_record(self, row: sqlite3.Row) -> IndexRecord:
        return IndexRecord(
            record_id=row["record_id"],
            partition_id=row["partition_id"],
            source_version=row["source_version"],
            client_modified_at=row["client_modified_at"],
            content_hash=row["content_hash"],
            embedding=bytes(row["embedding"]),
            dimensions=row["dimensions"],
            model_id=row["model_id"],
            indexed_at=row["indexed_at"],
        )

    @staticmethod
    def _check_record(record: IndexRecord) -> None:
        decoded = len(blob_to_embedding(record.embedding))
        if decoded != record.dimensions:
            raise ValueError(
                f"Embedding for record {record.record_id} has {decoded} elements, "
                f"expected {record.dimensions}"
            )

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def upsert(self, record: IndexRecord) -> IndexRecord:
        """Insert or replace a single index record."""
        return self.upsert_batch([record])[0]

    def upsert_batch(self, records: list[IndexRecord]) -> list[IndexRecord]:
        """
        Insert or replace index records atomically.

        Either every record is written or none is.

        Raises:
            ValueError: If an embedding's decoded length != dimensions
            sqlite3.Error: On write failure (after rollback)
        """
        if not records:
            return []
        for record in records:
            self._check_record(record)

        now = utc_now()
        rows = [
            (
                r.record_id, r.partition_id, r.source_version, r.client_modified_at,
                r.content_hash, r.embedding, r.dimensions, r.model_id,
                r.indexed_at or now,
            )
            for r in records
        ]
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                self._conn.executemany("""
                    INSERT OR REPLACE INTO embeddings
                    (record_id, partition_id, source_version, client_modified_at,
                     content_hash, embedding, dimensions, model_id, indexed_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, rows)
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

        for record in records:
            if not record.indexed_at:
                record.indexed_at = now
        return records

    def delete(self, record_id: int) -> bool:
        """Delete one index record. Returns True if it existed."""
        return self.delete_batch([record_id]) > 0

    def delete_batch(self, record_ids: list[int]) -> int:
        """Delete index records atomically. Returns count deleted."""
        if not record_ids:
            return 0
        deleted = 0
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                for chunk in _chunks(list(record_ids)):
                    placeholders = ",".join("?" * len(chunk))
                    cursor = self._conn.execute(
                        f"DELETE FROM embeddings WHERE record_id IN ({placeholders})",
                        chunk,
                    )
                    deleted += cursor.rowcount
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise
        return deleted

    def delete_partition(self, partition_id: int) -> int:
        """Delete all index records in a partition. Returns count deleted."""
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM embeddings WHERE partition_id = ?", (partition_id,)
            )
        return cursor.rowcount

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def get(self, record_id: int) -> Optional[IndexRecord]:
        """Get an index record by record ID."""
        cursor = self._conn.execute(
            "SELECT * FROM embeddings WHERE record_id = ?", (record_id,)
        )
        row = cursor.fetchone()
        return self._row_to_record(row) if row is not None else None

    def get_content_hashes(self, record_ids: list[int]) -> dict[int, str]:
        """Map record_id -> content_hash for the given IDs (missing IDs omitted)."""
        return {
            rid: key[0] for rid, key in self.get_index_keys(record_ids).items()
        }

    def get_index_keys(self, record_ids: list[int]) -> dict[int, tuple[str, str, int]]:
        """Map record_id -> (content_hash, model_id, dimensions) for the given IDs."""
        result: dict[int, tuple[str, str, int]] = {}
        for chunk in _chunks(list(record_ids)):
            placeholders = ",".join("?" * len(chunk))
            cursor = self._conn.execute(f"""
                SELECT record_id, content_hash, model_id, dimensions
                FROM embeddings
                WHERE record_id IN ({placeholders})
            """, chunk)
            for row in cursor:
                result[row["record_id"]] = (
                    row["content_hash"], row["model_id"], row["dimensions"],
                )
        return result

    def content_hash_map(self, partition_id: int) -> dict[int, tuple[str, str, int]]:
        """Map record_id -> (content_hash, model_id, dimensions) for a partition."""
        cursor = self._conn.execute("""
            SELECT record_id, content_hash, model_id, dimensions
            FROM embeddings
            WHERE partition_id = ?
        """, (partition_id,))
        return {
            row["record_id"]: (row["content_hash"], row["model_id"], row["dimensions"])
            for row in cursor
        }

    def list_ids(self, partition_id: int) -> list[int]:
        """List record IDs with embeddings in a partition."""
        cursor = self._conn.execute(
            "SELECT record_id FROM embeddings WHERE partition_id = ? ORDER BY record_id",
            (partition_id,),
        )
        return [row["record_id"] for row in cursor]

    def list_partitions(self) -> list[int]:
        """List partitions that have at least one stored embedding."""
        cursor = self._conn.execute(
            "SELECT DISTINCT partition_id FROM embeddings ORDER BY partition_id"
        )
        return [row["partition_id"] for row in cursor]

    def count(self, partition_id: Optional[int] = None) -> int:
        """Count index records, optionally within one partition."""
        if partition_id is None:
            cursor = self._conn.execute("SELECT COUNT(*) FROM embeddings")
        else:
            cursor = self._conn.execute(
                "SELECT COUNT(*) FROM embeddings WHERE partition_id = ?",
                (partition_id,),
            )
        return cursor.fetchone()[0]

    def count_incompatible(self, partition_id: int, model_id: str, dimensions: int) -> int:
        """Count records in a partition produced by a different model key."""
        cursor = self._conn.execute("""
            SELECT COUNT(*) FROM embeddings
            WHERE partition_id = ?
              AND (model_id != ? OR dimensions != ?)
        """, (partition_id, model_id, dimensions))
        return cursor.fetchone()[0]

    # -------------------------------------------------------------------------
    # Partition Scan State
    # -------------------------------------------------------------------------

    def get_scan_state(self, partition_id: int) -> Optional[PartitionScanState]:
        """Get the stored scan state for a partition, if any."""
        cursor = self._conn.execute("""
            SELECT partition_id, last_scan_timestamp, max_client_modified_seen,
                   item_count, embedding_count
            FROM partition_scan_state
            WHERE partition_id = ?
        """, (partition_id,))
        row = cursor.fetchone()
        if row is None:
            return None
        return PartitionScanState(
            partition_id=row["partition_id"],
            last_scan_timestamp=row["last_scan_timestamp"],
            max_client_modified_seen=row["max_client_modified_seen"],
            item_count=row["item_count"],
            embedding_count=row["embedding_count"],
        )

    def upsert_scan_state(self, state: PartitionScanState) -> None:
        """Write a partition's scan state as a single row replace."""
        with self._lock:
            self._conn.execute("""
                INSERT OR REPLACE INTO partition_scan_state
                (partition_id, last_scan_timestamp, max_client_modified_seen,
                 item_count, embedding_count)
                VALUES (?, ?, ?, ?, ?)
            """, (
                state.partition_id, state.last_scan_timestamp,
                state.max_client_modified_seen, state.item_count,
                state.embedding_count,
            ))

    def delete_scan_state(self, partition_id: int) -> bool:
        """Forget a partition's scan state. Returns True if one existed."""
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM partition_scan_state WHERE partition_id = ?",
                (partition_id,),
            )
        return cursor.rowcount > 0

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __del__(self):
        self.close()
