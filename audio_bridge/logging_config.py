"""Logging setup for the bridge: JSON records in production, console text otherwise."""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Optional

# Pipeline identifiers passed through ``extra=`` on log calls
PIPELINE_FIELDS = ("tab_id", "batch_id", "playlist_id", "track_id", "context")

QUIET_LOGGERS = ("aioice", "aiortc", "websockets")


def _pipeline_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {key: getattr(record, key) for key in PIPELINE_FIELDS if hasattr(record, key)}


class JSONFormatter(logging.Formatter):
    """One JSON object per record, carrying any pipeline identifiers."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **_pipeline_fields(record),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Human-readable lines with pipeline identifiers appended as ``key=value``."""

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = _pipeline_fields(record)
        if not fields:
            return line
        suffix = " ".join(f"{key}={value}" for key, value in fields.items())
        # Keep identifiers on the message line, ahead of any traceback
        head, sep, tail = line.partition("\n")
        return f"{head} [{suffix}]{sep}{tail}"


def configure_logging(level: str = "INFO", json_output: Optional[bool] = None) -> None:
    """Install a single stdout handler on the root logger.

    Args:
        level: Root log level name
        json_output: Force JSON (True) or console (False) output; by default
            JSON is used when AUDIO_BRIDGE_ENV is production or staging
    """
    if json_output is None:
        env = os.environ.get("AUDIO_BRIDGE_ENV", "development").lower()
        json_output = env in ("production", "prod", "staging")

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if json_output else ConsoleFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
