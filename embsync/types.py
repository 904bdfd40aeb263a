"""
Data types for the embedding index.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


def format_utc(dt: datetime) -> str:
    """Format a datetime in the canonical stored form: YYYY-MM-DDTHH:MM:SS.ffffff.

    Fixed width and always UTC, so stored timestamps compare correctly
    as strings inside SQL queries.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")


def utc_now() -> str:
    """Current UTC timestamp in canonical format."""
    return format_utc(datetime.now(timezone.utc))


def parse_utc_timestamp(ts: str) -> datetime:
    """Parse a stored timestamp string to a timezone-aware UTC datetime.

    Handles the canonical format (no suffix) as well as source timestamps
    that carry 'Z' or '+00:00' suffixes, or use a space separator.
    """
    ts = ts.strip().replace("Z", "+00:00")
    if len(ts) > 10 and ts[10] == " ":
        ts = ts[:10] + "T" + ts[11:]
    dt = datetime.fromisoformat(ts)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass
class SourceRecord:
    """
    A record as read from the source item store.

    Read-only to the index. ``client_modified_at`` is assigned by the
    source and used for change ordering.
    """
    record_id: int
    partition_id: int
    version: int
    title: str
    body: str
    client_modified_at: Optional[str] = None


@dataclass
class IndexRecord:
    """
    One indexed source record: its fingerprint and embedding.

    ``content_hash`` always describes the text that produced ``embedding``.
    """
    record_id: int
    partition_id: int
    source_version: int
    client_modified_at: str
    content_hash: str
    embedding: bytes
    dimensions: int
    model_id: str
    indexed_at: str = ""


@dataclass
class FailureRecord:
    """A record currently in a failure/backoff cycle."""
    record_id: int
    partition_id: int
    failure_count: int
    last_error: Optional[str]
    next_retry_after: str


@dataclass
class PartitionScanState:
    """Snapshot of a partition taken after its last successful full diff."""
    partition_id: int
    last_scan_timestamp: str
    max_client_modified_seen: Optional[str]
    item_count: int
    embedding_count: int


@dataclass
class PartitionSourceState:
    """Current source-side aggregates for a partition (cheap queries)."""
    item_count: int
    max_client_modified_at: Optional[str]


@dataclass
class IndexingDiff:
    """Result of a full diff for one partition."""
    to_index: list[int] = field(default_factory=list)
    to_delete: list[int] = field(default_factory=list)
    total_eligible: int = 0
    skipped: int = 0  # malformed records that could not be read


@dataclass
class IndexingResult:
    """Aggregate counters for an indexing run."""
    indexed: int = 0
    skipped: int = 0
    failed: int = 0
    cancelled: bool = False

    @property
    def processed(self) -> int:
        return self.indexed + self.skipped + self.failed


@dataclass
class DiffCheckResult:
    """Whether a full diff should run, and why."""
    needs_diff: bool
    reason: str


@dataclass
class CleanupResult:
    """Counts from removing partitions that are no longer synced."""
    partitions_removed: int = 0
    embeddings_removed: int = 0


@dataclass
class SyncResult:
    """Outcome of one scheduler pass over a partition."""
    partition_id: int
    diff_ran: bool
    reason: str
    indexing: IndexingResult = field(default_factory=IndexingResult)
    deleted: int = 0
    stale_failures_removed: int = 0
    to_index: int = 0
    deferred: int = 0  # in backoff or permanently failed
