"""
Failure and backoff tracking using SQLite.

Every record whose embedding attempt failed gets a failure row. Each new
failure increments the count and pushes the retry time out exponentially:
min(BASE * 2^failure_count, MAX) seconds. Records that reach the failure
ceiling are permanently failed: they stay in the table with their last
error for diagnosis and are excluded from automatic retry until cleared.

A successful index deletes the row.
"""

import logging
import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional

from .types import FailureRecord, format_utc

logger = logging.getLogger(__name__)

# Retry backoff: min(BASE * 2^failure_count, MAX) seconds
RETRY_BACKOFF_BASE = 30      # 60s after the first failure
RETRY_BACKOFF_MAX = 86400    # 1 day maximum delay

# Failures before a record is excluded from automatic retry
MAX_FAILURE_COUNT = 5

_MAX_SQL_PARAMS = 900


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class FailureTracker:
    """
    SQLite-backed store of per-record failure history.

    The single place where retry policy lives: callers record failures and
    ask which records may be attempted; they never compute backoff
    themselves.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        max_failure_count: int = MAX_FAILURE_COUNT,
        backoff_base: float = RETRY_BACKOFF_BASE,
        backoff_max: float = RETRY_BACKOFF_MAX,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            db_path: Path to SQLite database file
            max_failure_count: Failure ceiling; at or above it a record is
                permanently failed
            backoff_base: Base delay in seconds
            backoff_max: Maximum delay in seconds
            clock: Returns the current UTC time (injectable for tests)
        """
        self._db_path = db_path
        self._max_failure_count = max_failure_count
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._clock = clock or _utc_now
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(
            str(self._db_path), check_same_thread=False,
            isolation_level=None,
        )
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS embedding_failures (
                record_id INTEGER PRIMARY KEY,
                partition_id INTEGER NOT NULL,
                failure_count INTEGER NOT NULL DEFAULT 0,
                last_error TEXT,
                next_retry_after TEXT NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_failures_partition
            ON embedding_failures(partition_id)
        """)

    @property
    def max_failure_count(self) -> int:
        return self._max_failure_count

    def _now(self) -> str:
        return format_utc(self._clock())

    def backoff_seconds(self, failure_count: int) -> float:
        """Delay before the next retry after the given number of failures."""
        return min(self._backoff_base * (2 ** failure_count), self._backoff_max)

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def record_failure(
        self, record_id: int, partition_id: int, error: Optional[str] = None,
    ) -> FailureRecord:
        """Record one failed attempt for a record."""
        return self.record_failures([(record_id, partition_id)], error)[0]

    def record_failures(
        self, items: list[tuple[int, int]], error: Optional[str] = None,
    ) -> list[FailureRecord]:
        """
        Record a failed attempt for each (record_id, partition_id), sharing one
        error message.

        Creates rows at failure_count=1 or increments existing ones, and sets
        next_retry_after = now + backoff(failure_count). Applied atomically.
        """
        if not items:
            return []
        now = self._clock()
        records: list[FailureRecord] = []
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                for record_id, partition_id in items:
                    row = self._conn.execute(
                        "SELECT failure_count FROM embedding_failures WHERE record_id = ?",
                        (record_id,),
                    ).fetchone()
                    count = (row[0] if row else 0) + 1
                    delay = self.backoff_seconds(count)
                    retry_at = format_utc(now + timedelta(seconds=delay))
                    self._conn.execute("""
                        INSERT OR REPLACE INTO embedding_failures
                        (record_id, partition_id, failure_count, last_error, next_retry_after)
                        VALUES (?, ?, ?, ?, ?)
                    """, (record_id, partition_id, count, error, retry_at))
                    records.append(FailureRecord(
                        record_id=record_id,
                        partition_id=partition_id,
                        failure_count=count,
                        last_error=error,
                        next_retry_after=retry_at,
                    ))
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

        for rec in records:
            if rec.failure_count >= self._max_failure_count:
                logger.warning(
                    "Record %s permanently failed after %d attempts: %s",
                    rec.record_id, rec.failure_count, error or "unknown",
                )
        logger.info(
            "Recorded %d embedding failure(s): %s", len(records), error or "unknown",
        )
        return records

    def remove(self, record_id: int) -> bool:
        """Delete a record's failure row (called after a successful index)."""
        return self.remove_batch([record_id]) > 0

    def remove_batch(self, record_ids: list[int]) -> int:
        """Delete failure rows for the given record IDs. Returns count removed."""
        if not record_ids:
            return 0
        removed = 0
        ids = list(record_ids)
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                for i in range(0, len(ids), _MAX_SQL_PARAMS):
                    chunk = ids[i:i + _MAX_SQL_PARAMS]
                    placeholders = ",".join("?" * len(chunk))
                    cursor = self._conn.execute(
                        f"DELETE FROM embedding_failures WHERE record_id IN ({placeholders})",
                        chunk,
                    )
                    removed += cursor.rowcount
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise
        return removed

    def clear_failures(self, partition_ids: list[int]) -> int:
        """
        Delete all failure rows for the given partitions.

        Used after a configuration change so previously failed records get
        a fresh attempt. Returns count cleared.
        """
        if not partition_ids:
            return 0
        placeholders = ",".join("?" * len(partition_ids))
        with self._lock:
            cursor = self._conn.execute(
                f"DELETE FROM embedding_failures WHERE partition_id IN ({placeholders})",
                list(partition_ids),
            )
        cleared = cursor.rowcount
        if cleared:
            logger.info(
                "Cleared %d failure record(s) for partitions %s", cleared, list(partition_ids),
            )
        return cleared

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def get(self, record_id: int) -> Optional[FailureRecord]:
        """Get the failure row for a record, if any."""
        return self.get_failures([record_id]).get(record_id)

    def get_failures(self, record_ids: list[int]) -> dict[int, FailureRecord]:
        """Map record_id -> FailureRecord for the given IDs (missing IDs omitted)."""
        result: dict[int, FailureRecord] = {}
        ids = list(record_ids)
        for i in range(0, len(ids), _MAX_SQL_PARAMS):
            chunk = ids[i:i + _MAX_SQL_PARAMS]
            placeholders = ",".join("?" * len(chunk))
            cursor = self._conn.execute(f"""
                SELECT record_id, partition_id, failure_count, last_error, next_retry_after
                FROM embedding_failures
                WHERE record_id IN ({placeholders})
            """, chunk)
            for row in cursor:
                result[row[0]] = FailureRecord(*row)
        return result

    def list_failures(self, partition_id: Optional[int] = None) -> list[FailureRecord]:
        """List failure rows, optionally within one partition."""
        sql = """
            SELECT record_id, partition_id, failure_count, last_error, next_retry_after
            FROM embedding_failures
        """
        params: tuple = ()
        if partition_id is not None:
            sql += " WHERE partition_id = ?"
            params = (partition_id,)
        sql += " ORDER BY record_id"
        return [FailureRecord(*row) for row in self._conn.execute(sql, params)]

    def items_ready_for_retry(self, partition_id: Optional[int] = None) -> list[int]:
        """Record IDs below the failure ceiling whose backoff window has passed."""
        sql = """
            SELECT record_id FROM embedding_failures
            WHERE failure_count < ? AND next_retry_after <= ?
        """
        params: list = [self._max_failure_count, self._now()]
        if partition_id is not None:
            sql += " AND partition_id = ?"
            params.append(partition_id)
        sql += " ORDER BY record_id"
        return [row[0] for row in self._conn.execute(sql, params)]

    def permanently_failed_items(self, partition_id: Optional[int] = None) -> list[int]:
        """Record IDs at or above the failure ceiling."""
        sql = "SELECT record_id FROM embedding_failures WHERE failure_count >= ?"
        params: list = [self._max_failure_count]
        if partition_id is not None:
            sql += " AND partition_id = ?"
            params.append(partition_id)
        sql += " ORDER BY record_id"
        return [row[0] for row in self._conn.execute(sql, params)]

    def filter_not_in_backoff(self, record_ids: list[int]) -> list[int]:
        """
        Drop IDs still inside their backoff window or permanently failed.

        Order of the surviving IDs is preserved. IDs with no failure row
        always pass.
        """
        if not record_ids:
            return []
        failures = self.get_failures(record_ids)
        now = self._now()
        kept = []
        for record_id in record_ids:
            failed = failures.get(record_id)
            if failed is None:
                kept.append(record_id)
            elif failed.failure_count >= self._max_failure_count:
                continue
            elif now >= failed.next_retry_after:
                kept.append(record_id)
        return kept

    def count(self, partition_id: Optional[int] = None) -> int:
        """Count failure rows, optionally within one partition."""
        if partition_id is None:
            cursor = self._conn.execute("SELECT COUNT(*) FROM embedding_failures")
        else:
            cursor = self._conn.execute(
                "SELECT COUNT(*) FROM embedding_failures WHERE partition_id = ?",
                (partition_id,),
            )
        return cursor.fetchone()[0]

    def stats(self, partition_id: Optional[int] = None) -> dict:
        """Failure counts: total, ready for retry, permanently failed."""
        return {
            "total_failed": self.count(partition_id),
            "ready_for_retry": len(self.items_ready_for_retry(partition_id)),
            "permanently_failed": len(self.permanently_failed_items(partition_id)),
        }

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
        """Ensure connection is closed on garbage collection."""
        self.close()
