"""Shared utility functions for mantis-mcp."""

import logging
import sys
from datetime import datetime, timezone
from typing import Iterable

LOG_FORMAT = "[mantis-mcp] %(asctime)s %(levelname)s %(name)s: %(message)s"
_LEVELS = {
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}


def configure_logging(level: str = "info") -> None:
    """Send all log records to stderr; stdout carries MCP JSON-RPC."""
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    root.setLevel(_LEVELS.get(level.lower(), logging.INFO))
    # Model downloads and HTTP pools are chatty at INFO.
    for noisy in ("httpx", "urllib3", "sentence_transformers", "filelock"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def now_iso() -> str:
    """Get current UTC timestamp as ISO string."""
    return datetime.now(timezone.utc).isoformat()


def escape_filter_value(value: str) -> str:
    """Escape single quotes in filter values to prevent injection."""
    return value.replace("'", "''")


def in_filter(column: str, ids: Iterable[int]) -> str:
    """Build a `column IN (...)` filter for integer ids."""
    values = ", ".join(str(int(i)) for i in ids)
    return f"{column} IN ({values})"


def batched(items: list, size: int) -> Iterable[list]:
    """Yield consecutive slices of at most `size` items."""
    for start in range(0, len(items), size):
        yield items[start : start + size]
