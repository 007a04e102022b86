"""Logging setup shared by the bridge service and the CLI."""

from __future__ import annotations

import json
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

__all__ = ["setup_logging", "JsonFormatter"]

_CONSOLE_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def _json_payload(record: logging.LogRecord) -> str:
    base = {
        "level": record.levelname,
        "logger": record.name,
        "msg": record.getMessage(),
    }
    timestamp = getattr(record, "asctime", None)
    if timestamp:
        base["time"] = timestamp
    extra = getattr(record, "extra", None)
    if isinstance(extra, dict):
        base.update(extra)
    if record.exc_info:
        base["exc"] = logging.Formatter().formatException(record.exc_info)
    return json.dumps(base, ensure_ascii=False)


class JsonFormatter(logging.Formatter):
    """One JSON object per line, used for the rotating file sink."""

    def format(self, record: logging.LogRecord) -> str:
        record.asctime = self.formatTime(record)
        return _json_payload(record)


def setup_logging(
    level: Optional[str] = None,
    *,
    log_file: Optional[str] = None,
    max_bytes: int = 5_000_000,
    backup_count: int = 3,
) -> logging.Logger:
    """Configure the ``extbridge`` logger tree.

    Console output is always enabled; ``log_file`` adds a JSON rotating file.
    Calling it twice replaces the handlers instead of stacking them.
    """

    resolved_level = (level or "INFO").upper()
    numeric_level = getattr(logging, resolved_level, logging.INFO)

    logger = logging.getLogger("extbridge")
    logger.setLevel(numeric_level)
    logger.handlers.clear()
    logger.propagate = False

    console = logging.StreamHandler()
    console.setLevel(numeric_level)
    console.setFormatter(logging.Formatter(_CONSOLE_FORMAT))
    logger.addHandler(console)

    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")
        handler.setLevel(numeric_level)
        handler.setFormatter(JsonFormatter())
        logger.addHandler(handler)

    return logger
