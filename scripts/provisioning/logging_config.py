"""Structured logging configuration.

JSON lines by default; `text` mirrors the progress-log layout for people
watching a run in a terminal.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone

EXTRA_FIELDS = (
    "user_number",
    "source_file",
    "state",
    "mode",
    "records",
    "duration_s",
    "run_id",
)

LOG_FORMATS = ("json", "text")


class JsonFormatter(logging.Formatter):
    """Emit one JSON object per log line."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = self.formatException(record.exc_info)
        for key in EXTRA_FIELDS:
            val = getattr(record, key, None)
            if val is not None:
                log_entry[key] = val
        return json.dumps(log_entry)


class TextFormatter(logging.Formatter):
    """`2024-05-01 10:00:00 [ERROR] User 03: message`."""

    def __init__(self) -> None:
        super().__init__(datefmt="%Y-%m-%d %H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        user_number = getattr(record, "user_number", None)
        who = f"User {user_number:02d}: " if isinstance(user_number, int) else ""
        line = f"{self.formatTime(record, self.datefmt)} [{record.levelname}] {who}{record.getMessage()}"
        if record.exc_info and record.exc_info[1]:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(level: str = "INFO", fmt: str = "json") -> None:
    """Attach a single stderr handler to the `provisioning` logger tree."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(TextFormatter() if fmt == "text" else JsonFormatter())
    root = logging.getLogger("provisioning")
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()
    root.addHandler(handler)
    root.propagate = False
