"""
Content eligibility and hashing.

A source record is worth indexing only when its title and body together
carry enough text. The embedding text is fingerprinted so that unchanged
records are never re-embedded.
"""

import hashlib
from typing import Optional

from .types import SourceRecord

# Minimum combined length of trimmed title + body required for indexing
MIN_CONTENT_LENGTH = 40


def _field_text(value) -> str:
    """Coerce a source field to text. Missing fields read as empty."""
    if value is None:
        return ""
    if not isinstance(value, str):
        raise TypeError(f"expected text field, got {type(value).__name__}")
    return value


def content_length(title: Optional[str], body: Optional[str]) -> int:
    """Combined length of trimmed title and trimmed body."""
    return len(_field_text(title).strip() + _field_text(body).strip())


def is_eligible(record: SourceRecord, min_length: int = MIN_CONTENT_LENGTH) -> bool:
    """
    Check whether a record carries enough text to be indexed.

    Raises:
        TypeError: If title or body is not text (malformed record)
    """
    return content_length(record.title, record.body) >= min_length


def build_embedding_text(title: Optional[str], body: Optional[str]) -> str:
    """Build the exact text sent for embedding from title and body."""
    text = f"{_field_text(title).strip()}\n\n{_field_text(body).strip()}"
    return text.strip()


def compute_content_hash(text: str) -> str:
    """SHA256 of the embedding text, used for change detection."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def record_content_hash(record: SourceRecord) -> str:
    """Content hash of a source record's embedding text."""
    return compute_content_hash(build_embedding_text(record.title, record.body))
