"""Main entry point for the GreenLake Orchestrator CLI.

Logs go to stderr so that ledgers printed on stdout stay parseable. JSON is
the default log format; GLP_LOG_FORMAT=text switches to a human-readable
one-line format for interactive use.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import UTC, datetime

from .cli import cli

DEFAULT_LOG_LEVEL = "WARNING"
TEXT_LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

# LogRecord attributes that are not user supplied extras
RESERVED_RECORD_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in RESERVED_RECORD_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging() -> None:
    """Configure structured logging from GLP_LOG_FORMAT and GLP_LOG_LEVEL."""
    handler = logging.StreamHandler(sys.stderr)
    if os.environ.get("GLP_LOG_FORMAT", "json").lower() == "text":
        handler.setFormatter(logging.Formatter(TEXT_LOG_FORMAT))
    else:
        handler.setFormatter(JsonFormatter())

    level_name = os.environ.get("GLP_LOG_LEVEL", DEFAULT_LOG_LEVEL).upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.WARNING

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def run() -> None:
    """Entry point for the glo console script."""
    setup_logging()
    cli(prog_name="glo")


if __name__ == "__main__":
    run()
