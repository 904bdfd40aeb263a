"""
Error log for failures that escape a CLI command.

Each entry records what the command was working on (command name,
partitions, store) followed by the full traceback. The CLI shows the
user one line and points at this file.
"""

import logging
import os
import traceback
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .config import get_store_path
from .types import utc_now

logger = logging.getLogger(__name__)

ERROR_LOG_FILENAME = "embsync-errors.log"


@dataclass
class ErrorContext:
    """What the CLI was doing when an error escaped."""
    command: Optional[str] = None
    partition_ids: list[int] = field(default_factory=list)
    store_path: Optional[Path] = None

    def describe(self) -> str:
        parts = [f"command={self.command or '-'}"]
        if self.partition_ids:
            parts.append("partitions=" + ",".join(str(p) for p in self.partition_ids))
        return " ".join(parts)


def error_log_path(store_path: Optional[str | Path] = None) -> Path:
    """Error log inside the resolved store directory."""
    return get_store_path(store_path) / ERROR_LOG_FILENAME


def format_error_entry(exc: BaseException, context: ErrorContext, timestamp: str) -> str:
    lines = [
        "=" * 60,
        f"[{timestamp}] {context.describe()}",
        f"{type(exc).__name__}: {exc}",
        "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)).rstrip(),
    ]
    return "\n" + "\n".join(lines) + "\n"


def log_exception(exc: BaseException, context: Optional[ErrorContext] = None) -> Path:
    """
    Append an entry for an unhandled exception.

    Also reports a one-line summary through logging, so the ops log
    shows which command failed.

    Returns:
        Path to the error log file
    """
    context = context or ErrorContext()
    log_path = error_log_path(context.store_path)
    logger.error("%s failed: %s: %s", context.describe(), type(exc).__name__, exc)
    entry = format_error_entry(exc, context, utc_now())
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(entry)
    except OSError as e:
        logger.warning("Could not write error log %s: %s", log_path, e)
    return log_path
