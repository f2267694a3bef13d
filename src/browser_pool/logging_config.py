"""Logging setup for worker processes.

Two output formats:
- text: classic "%(asctime)s - %(name)s - %(levelname)s - %(message)s" lines
- json: one JSON object per line, suited to log collectors

Extra fields passed via ``logger.info(..., extra={...})`` are included in JSON
output. Exceptions attached with ``exc_info`` become an ``error`` object with
message and stack.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .worker.utils import format_error

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Attributes present on every LogRecord; anything else came from `extra`
_RESERVED_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()
) | {"message", "asctime", "taskName"}


class JsonFormatter(logging.Formatter):
    """Render log records as single-line JSON."""

    def __init__(self, worker_id: Optional[str] = None):
        super().__init__()
        self.worker_id = worker_id

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if self.worker_id:
            entry["workerId"] = self.worker_id

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                entry[key] = value

        if record.exc_info and record.exc_info[1] is not None:
            entry["error"] = format_error(record.exc_info[1])

        return json.dumps(entry, default=str)


def setup_logging(
    level: str = "info",
    fmt: str = "json",
    worker_id: Optional[str] = None,
) -> None:
    """
    Configure the root logger once at process entry.

    Args:
        level: Log level name (debug, info, warning, error, critical)
        fmt: 'json' or 'text'
        worker_id: Worker identity stamped on every JSON line
    """
    handler = logging.StreamHandler(sys.stdout)
    if fmt == "json":
        handler.setFormatter(JsonFormatter(worker_id=worker_id))
    else:
        prefix = f"[{worker_id[:8]}] " if worker_id else ""
        handler.setFormatter(logging.Formatter(prefix + TEXT_FORMAT))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level.upper())

    # Keep library debug output out of worker logs
    for noisy in ("redis", "asyncio"):
        logging.getLogger(noisy).setLevel(max(root.level, logging.INFO))
