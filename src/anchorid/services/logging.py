"""Process-wide logging setup for the API server and the CLI."""

from __future__ import annotations

import json
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

__all__ = ["JsonFormatter", "setup_logging"]

_ROOT = "anchorid"


def _json_payload(record: logging.LogRecord, formatter: logging.Formatter) -> str:
    base = {
        "time": formatter.formatTime(record),
        "level": record.levelname,
        "logger": record.name,
        "msg": record.getMessage(),
    }
    extra = getattr(record, "extra", None)
    if isinstance(extra, dict):
        base.update(extra)
    if record.exc_info:
        base["exc"] = formatter.formatException(record.exc_info)
    return json.dumps(base, ensure_ascii=False)


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        return _json_payload(record, self)


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str | Path] = None,
    *,
    max_bytes: int = 5_000_000,
    backup_count: int = 3,
) -> logging.Logger:
    """Attach a JSON handler to the ``anchorid`` logger tree.

    Without ``log_file`` records go to stderr.  Calling again replaces the
    handlers instead of stacking them.
    """

    logger = logging.getLogger(_ROOT)
    numeric_level = getattr(logging, str(level).upper(), logging.INFO)
    logger.setLevel(numeric_level)
    logger.handlers.clear()
    logger.propagate = False

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handler: logging.Handler = RotatingFileHandler(
            path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
    else:
        handler = logging.StreamHandler()
    handler.setLevel(numeric_level)
    handler.setFormatter(JsonFormatter())
    logger.addHandler(handler)
    return logger
