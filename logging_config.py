"""
Centralized logging configuration for the scrape coordinator.

Log records are written to stdout in a single human-readable line; any
``extra={...}`` context passed to a logging call is appended as ``key=value``
pairs so queue and profile events stay greppable.
"""

import logging
import os
import sys

# Attributes present on every LogRecord; anything else came from ``extra``.
_RESERVED_ATTRS = frozenset([
    'name', 'msg', 'args', 'created', 'filename', 'funcName',
    'levelname', 'levelno', 'lineno', 'module', 'msecs',
    'message', 'pathname', 'process', 'processName',
    'relativeCreated', 'thread', 'threadName', 'exc_info',
    'exc_text', 'stack_info', 'asctime', 'taskName',
])


class StructuredFormatter(logging.Formatter):
    """
    Formatter that renders ``extra`` fields after the message.

    Example output::

        2024-05-01 10:00:00 - admission_queue - INFO - Slot granted | active=1 domain=example.com
    """

    def format(self, record: logging.LogRecord) -> str:
        base_msg = super().format(record)

        extra_fields = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS
        }

        if extra_fields:
            extra_str = " | " + " ".join(
                f"{k}={v}" for k, v in sorted(extra_fields.items())
            )
            return base_msg + extra_str

        return base_msg


def setup_logging(name: str = "scrape_coordinator") -> logging.Logger:
    """
    Configure the root logger and return a named logger.

    Args:
        name: Logger name (default: "scrape_coordinator")

    Returns:
        Configured logger instance
    """
    log_level_str = os.getenv("LOG_LEVEL", "INFO").upper()
    log_level = getattr(logging, log_level_str, logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Remove existing handlers to avoid duplicates
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(StructuredFormatter(
        fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    ))
    root_logger.addHandler(console_handler)

    return logging.getLogger(name)
