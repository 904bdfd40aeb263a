"""
Configuration management for embedding index stores.

The configuration is stored as a TOML file in the store directory.
It specifies indexing limits, retry policy, the embedding model, and
how to reach the embedding service and the source database.
"""

import os
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import tomli_w


CONFIG_FILENAME = "embsync.toml"
CONFIG_VERSION = 1

DEFAULT_STORE_DIR = Path.home() / ".embsync"

# Upper bound on texts per embedding request, enforced by the service
MAX_BATCH_SIZE = 500

DAY_MS = 24 * 60 * 60 * 1000


@dataclass
class ServiceConfig:
    """How to reach the embedding generation service."""
    api_url: str = "https://api.beaverapp.ai"
    api_key: str = ""
    timeout: float = 30.0


@dataclass
class IndexerConfig:
    """Complete indexer configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    min_content_length: int = 40
    batch_size: int = 500
    page_size: int = 500
    full_diff_safety_interval_ms: int = 7 * DAY_MS
    max_failure_count: int = 5
    retry_backoff_base_seconds: float = 30.0
    retry_backoff_max_seconds: float = 86400.0
    embedding_dimensions: int = 512
    model_id: Optional[str] = None

    source_path: Optional[Path] = None
    service: ServiceConfig = field(default_factory=ServiceConfig)

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    @property
    def effective_model_id(self) -> str:
        """Model identifier stored with every embedding."""
        return self.model_id or f"voyage-3-int8-{self.embedding_dimensions}"

    @property
    def model_key(self) -> tuple[str, int]:
        """Compatibility key: stored embeddings with another key are stale."""
        return (self.effective_model_id, self.embedding_dimensions)

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()

    def validate(self) -> None:
        """
        Check option ranges.

        Raises:
            ValueError: If any option is out of range
        """
        if self.min_content_length < 0:
            raise ValueError(f"min_content_length must be >= 0 (got {self.min_content_length})")
        if not 1 <= self.batch_size <= MAX_BATCH_SIZE:
            raise ValueError(f"batch_size must be between 1 and {MAX_BATCH_SIZE} (got {self.batch_size})")
        if self.page_size < 1:
            raise ValueError(f"page_size must be >= 1 (got {self.page_size})")
        if self.full_diff_safety_interval_ms <= 0:
            raise ValueError("full_diff_safety_interval_ms must be positive")
        if self.max_failure_count < 1:
            raise ValueError(f"max_failure_count must be >= 1 (got {self.max_failure_count})")
        if self.retry_backoff_base_seconds <= 0:
            raise ValueError("retry_backoff_base_seconds must be positive")
        if self.retry_backoff_max_seconds < self.retry_backoff_base_seconds:
            raise ValueError("retry_backoff_max_seconds must be >= retry_backoff_base_seconds")
        if self.embedding_dimensions < 1:
            raise ValueError(f"embedding_dimensions must be >= 1 (got {self.embedding_dimensions})")


def get_store_path(store_path: Optional[str | Path] = None) -> Path:
    """
    Resolve the store directory.

    Priority: explicit argument, EMBSYNC_STORE_PATH, ~/.embsync
    """
    if store_path is not None:
        return Path(store_path).expanduser().resolve()
    env_path = os.environ.get("EMBSYNC_STORE_PATH")
    if env_path:
        return Path(env_path).expanduser().resolve()
    return DEFAULT_STORE_DIR


def _apply_env_overrides(config: IndexerConfig) -> IndexerConfig:
    """Environment variables take precedence over the config file."""
    api_url = os.environ.get("EMBSYNC_API_URL")
    if api_url:
        config.service.api_url = api_url
    api_key = os.environ.get("EMBSYNC_API_KEY")
    if api_key:
        config.service.api_key = api_key
    source_path = os.environ.get("EMBSYNC_SOURCE_PATH")
    if source_path:
        config.source_path = Path(source_path).expanduser()
    return config


def load_config(store_path: Path) -> IndexerConfig:
    """
    Load configuration from a store directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = store_path / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    store = data.get("store", {})
    version = store.get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    indexer: dict[str, Any] = data.get("indexer", {})
    embedding: dict[str, Any] = data.get("embedding", {})
    service: dict[str, Any] = data.get("service", {})
    source: dict[str, Any] = data.get("source", {})

    defaults = IndexerConfig(path=store_path)
    config = IndexerConfig(
        path=store_path,
        version=version,
        created=store.get("created", ""),
        min_content_length=int(indexer.get("min_content_length", defaults.min_content_length)),
        batch_size=int(indexer.get("batch_size", defaults.batch_size)),
        page_size=int(indexer.get("page_size", defaults.page_size)),
        full_diff_safety_interval_ms=int(
            indexer.get("full_diff_safety_interval_ms", defaults.full_diff_safety_interval_ms)
        ),
        max_failure_count=int(indexer.get("max_failure_count", defaults.max_failure_count)),
        retry_backoff_base_seconds=float(
            indexer.get("retry_backoff_base_seconds", defaults.retry_backoff_base_seconds)
        ),
        retry_backoff_max_seconds=float(
            indexer.get("retry_backoff_max_seconds", defaults.retry_backoff_max_seconds)
        ),
        embedding_dimensions=int(embedding.get("dimensions", defaults.embedding_dimensions)),
        model_id=embedding.get("model_id") or None,
        source_path=Path(source["path"]).expanduser() if source.get("path") else None,
        service=ServiceConfig(
            api_url=service.get("api_url", defaults.service.api_url),
            api_key=service.get("api_key", ""),
            timeout=float(service.get("timeout", defaults.service.timeout)),
        ),
    )
    config.validate()
    return _apply_env_overrides(config)


def save_config(config: IndexerConfig) -> None:
    """
    Save configuration to the store directory.

    Creates the directory if it doesn't exist. The API key is never
    written; supply it through EMBSYNC_API_KEY.
    """
    config.path.mkdir(parents=True, exist_ok=True)

    embedding: dict[str, Any] = {"dimensions": config.embedding_dimensions}
    if config.model_id:
        embedding["model_id"] = config.model_id

    data: dict[str, Any] = {
        "store": {
            "version": config.version,
            "created": config.created,
        },
        "indexer": {
            "min_content_length": config.min_content_length,
            "batch_size": config.batch_size,
            "page_size": config.page_size,
            "full_diff_safety_interval_ms": config.full_diff_safety_interval_ms,
            "max_failure_count": config.max_failure_count,
            "retry_backoff_base_seconds": config.retry_backoff_base_seconds,
            "retry_backoff_max_seconds": config.retry_backoff_max_seconds,
        },
        "embedding": embedding,
        "service": {
            "api_url": config.service.api_url,
            "timeout": config.service.timeout,
        },
    }
    if config.source_path is not None:
        data["source"] = {"path": str(config.source_path)}

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(store_path: Path) -> IndexerConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    config_path = store_path / CONFIG_FILENAME

    if config_path.exists():
        return load_config(store_path)
    config = IndexerConfig(path=store_path)
    save_config(config)
    return _apply_env_overrides(config)
