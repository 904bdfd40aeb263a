"""
Source record store using SQLite.

A concrete implementation of the read-only source interface the index
consumes. The index never writes here; the write helpers exist for
importing records and for tests.

Listing is keyset-paged by record_id so that iterating a large partition
never holds more than one page in memory. Every page carries exactly the
fields in SOURCE_FIELDS.
"""

import sqlite3
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, Optional

from .types import SourceRecord, utc_now

# Fields returned for each record by list_records / get_records
SOURCE_FIELDS = (
    "record_id", "partition_id", "version", "title", "body", "client_modified_at",
)

DEFAULT_PAGE_SIZE = 500

_MAX_SQL_PARAMS = 900


@dataclass
class SourcePage:
    """One page of records plus the cursor for the next page (None at end)."""
    records: list[SourceRecord] = field(default_factory=list)
    next_cursor: Optional[int] = None


class SQLiteSourceStore:
    """
    SQLite-backed source item store.

    Deleted records are soft-deleted (``deleted = 1``) and are invisible to
    every read operation.
    """

    def __init__(self, db_path: Path):
        """
        Args:
            db_path: Path to SQLite database file
        """
        self._db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS records (
                record_id INTEGER PRIMARY KEY,
                partition_id INTEGER NOT NULL,
                version INTEGER NOT NULL DEFAULT 0,
                title TEXT,
                body TEXT,
                client_modified_at TEXT NOT NULL,
                deleted INTEGER NOT NULL DEFAULT 0
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_records_partition
            ON records(partition_id, deleted)
        """)
        self._conn.commit()

    def _row_to_record(self, row: sqlite3.Row) -> SourceRecord:
        return SourceRecord(
            record_id=row["record_id"],
            partition_id=row["partition_id"],
            version=row["version"],
            title=row["title"],
            body=row["body"],
            client_modified_at=row["client_modified_at"],
        )

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def put(self, record: SourceRecord) -> SourceRecord:
        """Insert or update a record, restoring it if it was soft-deleted."""
        return self.put_many([record])[0]

    def put_many(self, records: list[SourceRecord]) -> list[SourceRecord]:
        """Insert or update records in one transaction."""
        with self._lock:
            try:
                for record in records:
                    if not record.client_modified_at:
                        record.client_modified_at = utc_now()
                    self._conn.execute("""
                        INSERT OR REPLACE INTO records
                        (record_id, partition_id, version, title, body,
                         client_modified_at, deleted)
                        VALUES (?, ?, ?, ?, ?, ?, 0)
                    """, (
                        record.record_id, record.partition_id, record.version,
                        record.title, record.body, record.client_modified_at,
                    ))
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise
        return records

    def mark_deleted(self, record_ids: list[int]) -> int:
        """Soft-delete records. Returns count affected."""
        if not record_ids:
            return 0
        placeholders = ",".join("?" * len(record_ids))
        with self._lock:
            cursor = self._conn.execute(
                f"UPDATE records SET deleted = 1 WHERE record_id IN ({placeholders})",
                list(record_ids),
            )
            self._conn.commit()
        return cursor.rowcount

    def purge(self, record_ids: list[int]) -> int:
        """Remove records permanently. Returns count removed."""
        if not record_ids:
            return 0
        placeholders = ",".join("?" * len(record_ids))
        with self._lock:
            cursor = self._conn.execute(
                f"DELETE FROM records WHERE record_id IN ({placeholders})",
                list(record_ids),
            )
            self._conn.commit()
        return cursor.rowcount

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def list_records(
        self,
        partition_id: int,
        cursor: Optional[int] = None,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> SourcePage:
        """
        List one page of live records in a partition, ordered by record_id.

        Args:
            partition_id: Partition to list
            cursor: Resume after this record_id (None for the first page)
            limit: Page size

        Returns:
            SourcePage whose next_cursor is None on the last page
        """
        after = cursor if cursor is not None else -1
        rows = self._conn.execute("""
            SELECT record_id, partition_id, version, title, body, client_modified_at
            FROM records
            WHERE partition_id = ? AND deleted = 0 AND record_id > ?
            ORDER BY record_id
            LIMIT ?
        """, (partition_id, after, limit)).fetchall()
        records = [self._row_to_record(row) for row in rows]
        next_cursor = records[-1].record_id if len(records) == limit else None
        return SourcePage(records=records, next_cursor=next_cursor)

    def iter_records(
        self, partition_id: int, page_size: int = DEFAULT_PAGE_SIZE,
    ) -> Iterator[list[SourceRecord]]:
        """Yield a partition's live records one page at a time."""
        cursor: Optional[int] = None
        while True:
            page = self.list_records(partition_id, cursor, page_size)
            if page.records:
                yield page.records
            if page.next_cursor is None:
                return
            cursor = page.next_cursor

    def get_records(self, record_ids: list[int]) -> dict[int, SourceRecord]:
        """Load live records by ID. Deleted and unknown IDs are omitted."""
        result: dict[int, SourceRecord] = {}
        ids = list(record_ids)
        for i in range(0, len(ids), _MAX_SQL_PARAMS):
            chunk = ids[i:i + _MAX_SQL_PARAMS]
            placeholders = ",".join("?" * len(chunk))
            rows = self._conn.execute(f"""
                SELECT record_id, partition_id, version, title, body, client_modified_at
                FROM records
                WHERE deleted = 0 AND record_id IN ({placeholders})
            """, chunk)
            for row in rows:
                result[row["record_id"]] = self._row_to_record(row)
        return result

    def existing_ids(self, record_ids: list[int]) -> set[int]:
        """Subset of the given IDs that exist and are not deleted."""
        found: set[int] = set()
        ids = list(record_ids)
        for i in range(0, len(ids), _MAX_SQL_PARAMS):
            chunk = ids[i:i + _MAX_SQL_PARAMS]
            placeholders = ",".join("?" * len(chunk))
            rows = self._conn.execute(
                f"SELECT record_id FROM records WHERE deleted = 0 AND record_id IN ({placeholders})",
                chunk,
            )
            found.update(row["record_id"] for row in rows)
        return found

    def count_records(self, partition_id: int) -> int:
        """Count live records in a partition."""
        cursor = self._conn.execute(
            "SELECT COUNT(*) FROM records WHERE partition_id = ? AND deleted = 0",
            (partition_id,),
        )
        return cursor.fetchone()[0]

    def max_client_modified_at(self, partition_id: int) -> Optional[str]:
        """Latest client_modified_at among live records, or None if empty."""
        cursor = self._conn.execute(
            "SELECT MAX(client_modified_at) FROM records WHERE partition_id = ? AND deleted = 0",
            (partition_id,),
        )
        return cursor.fetchone()[0]

    def list_partitions(self) -> list[int]:
        """List partitions that have live records."""
        cursor = self._conn.execute(
            "SELECT DISTINCT partition_id FROM records WHERE deleted = 0 ORDER BY partition_id"
        )
        return [row["partition_id"] for row in cursor]

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
