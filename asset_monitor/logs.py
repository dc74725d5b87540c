"""JSON line logging for the monitor services.

Each record is rendered as one JSON object so the hosting platform can index
it. Structured fields ride along with ``extra={"fields": {...}}``.
"""
from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

_SEVERITY = {
    logging.DEBUG: "DEBUG",
    logging.INFO: "INFO",
    logging.WARNING: "WARNING",
    logging.ERROR: "ERROR",
    logging.CRITICAL: "CRITICAL",
}

_HANDLER_NAME = "asset_monitor.json"


class JSONFormatter(logging.Formatter):
    """Render log records as single-line JSON documents."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "severity": _SEVERITY.get(record.levelno, record.levelname),
            "message": record.getMessage(),
            "logger": record.name,
            "now": datetime.now(timezone.utc).isoformat(),
        }
        fields = getattr(record, "fields", None)
        if fields:
            entry.update(fields)
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_logging(level: int = logging.INFO, stream=None) -> logging.Logger:
    """Install the JSON handler on the package logger once and return it."""

    logger = logging.getLogger("asset_monitor")
    logger.setLevel(level)
    for handler in logger.handlers:
        if handler.get_name() == _HANDLER_NAME:
            return logger
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(JSONFormatter())
    logger.addHandler(handler)
    logger.propagate = False
    return logger


def fields(
    base: Optional[Dict[str, Any]] = None, **extra: Any
) -> Dict[str, Dict[str, Any]]:
    """Build the ``extra`` mapping expected by :class:`JSONFormatter`.

    Empty values are dropped so entries stay compact, mirroring ``omitempty``
    on the consumers' side.
    """

    merged: Dict[str, Any] = dict(base or {})
    merged.update(extra)
    return {"fields": {k: v for k, v in merged.items() if v not in (None, "", [], {})}}


__all__ = ["JSONFormatter", "configure_logging", "fields"]
