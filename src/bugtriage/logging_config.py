"""
Logging Configuration with Structured Logging Support

Text logging for the CLI and workers, JSON logging with correlation IDs for
the ingestion API. The ingestion pipeline sets `correlation_id_var` to a per
report id, so log lines of concurrent ingestions can be told apart.

Usage:
    from bugtriage.logging_config import configure_logging, setup_structured_logging

    # CLI / worker
    configure_logging(log_level="DEBUG")

    # API server
    setup_structured_logging()

Environment Variables:
    BUGTRIAGE_LOG_DIR - Directory for log files (file logging is off without it)
    BUGTRIAGE_LOG_LEVEL - Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
"""

from __future__ import annotations

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import datetime
from pathlib import Path
from typing import Optional

# Context var for correlation ID (used in structured logging)
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

STANDARD_ATTRS = frozenset(
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
        "thread",
        "threadName",
        "taskName",
        "exc_info",
        "exc_text",
        "stack_info",
        "message",
    }
)


class StructuredFormatter(logging.Formatter):
    """JSON formatter with correlation ID.

    Each entry carries timestamp, level, logger, message, correlation ID and
    any extra fields attached to the record.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": correlation_id_var.get(),
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in STANDARD_ATTRS:
                log_data[key] = value

        return json.dumps(log_data, default=str)


def setup_structured_logging(log_level: str = "INFO") -> None:
    """Configure structured JSON logging on the root logger.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper()))

    # Clear existing handlers
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredFormatter())
    handler.setLevel(getattr(logging, log_level.upper()))

    root_logger.addHandler(handler)


def configure_logging(
    log_level: Optional[str] = None,
    log_dir: Optional[Path] = None,
    log_to_console: bool = True,
    log_filename: Optional[str] = None,
) -> logging.Logger:
    """
    Configure the `bugtriage` logger.

    Args:
        log_level: Log level, defaults to BUGTRIAGE_LOG_LEVEL or INFO
        log_dir: Directory for a log file, defaults to BUGTRIAGE_LOG_DIR (no file when unset)
        log_to_console: Whether to log to stdout
        log_filename: Custom log filename (defaults to a timestamped name)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger("bugtriage")

    # Clear existing handlers to avoid duplicates
    logger.handlers.clear()

    if log_level is None:
        log_level = os.environ.get("BUGTRIAGE_LOG_LEVEL", "INFO")
    logger.setLevel(getattr(logging, log_level.upper()))

    formatter = logging.Formatter(
        fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if log_to_console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    if log_dir is None and "BUGTRIAGE_LOG_DIR" in os.environ:
        log_dir = Path(os.environ["BUGTRIAGE_LOG_DIR"])

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        if log_filename is None:
            log_filename = f"bugtriage_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"
        log_path = log_dir / log_filename

        file_handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

        logger.info(f"Logging to: {log_path}")

    return logger
