"""
Logging for the subscription feed aggregator.

One DEBUG log file per run plus a console handler. Every line carries the
context it was written in: the aggregation run, the batch group and the
channel a worker thread is fetching, e.g.

    12:00:01 | INFO     | [run 2 | group 1/3 | UCuAXFkg] Listed 10 uploads

Context lives in thread-local storage. Batch workers copy their caller's
context with `get_log_context()` before adding the channel they work on.
"""

import logging
import os
import sys
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional

from config import get_config

LOGGER_NAME = "feed_aggregator"

# Rendered in this order; anything else goes after them alphabetically
CONTEXT_ORDER = ("run", "group", "channel")

_context = threading.local()


def get_log_context() -> dict:
    """Copy of the current thread's context fields."""
    return dict(getattr(_context, "fields", {}))


def set_log_context(**fields) -> None:
    """Add fields to this thread's context. A value of None removes the field."""
    current = get_log_context()
    for name, value in fields.items():
        if value is None:
            current.pop(name, None)
        else:
            current[name] = value
    _context.fields = current


def clear_log_context() -> None:
    _context.fields = {}


def short_channel(channel: str) -> str:
    """@handle -> handle (12 chars), UC... -> first 8 chars."""
    if channel.startswith("@"):
        return channel[1:13]
    if channel.startswith("UC"):
        return channel[:8]
    return channel[:10]


def format_context(fields: dict) -> str:
    parts = []
    names = [n for n in CONTEXT_ORDER if n in fields] + sorted(n for n in fields if n not in CONTEXT_ORDER)
    for name in names:
        value = str(fields[name])
        if name == "channel":
            parts.append(short_channel(value))
        else:
            parts.append(f"{name} {value}")
    return f"[{' | '.join(parts)}] " if parts else ""


class ContextFormatter(logging.Formatter):
    """Exposes the thread's context to format strings as %(context)s."""

    def format(self, record):
        # Records are formatted on the thread that logged them
        if not hasattr(record, "context"):
            record.context = format_context(get_log_context())
        return super().format(record)


def setup_logging(
    log_dir: Optional[str] = None,
    log_level: Optional[str] = None,
    console_level: Optional[str] = None
) -> logging.Logger:
    """
    Set up the file and console handlers. Safe to call more than once.

    Args:
        log_dir: Directory for log files (default: from config)
        log_level: Overall log level (default: from config)
        console_level: Console output level (default: from config)
    """
    cfg = get_config()
    log_dir = log_dir or cfg.log_dir
    log_level = (log_level or cfg.log_level).upper()
    console_level = (console_level or cfg.console_log_level).upper()

    Path(log_dir).mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, log_level, logging.DEBUG))
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
    log_file = Path(log_dir) / f"feed_{timestamp}.log"
    file_handler = logging.FileHandler(log_file, encoding='utf-8')
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(ContextFormatter(
        '%(asctime)s | %(levelname)-8s | %(name)s:%(funcName)s:%(lineno)d | %(context)s%(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))
    logger.addHandler(file_handler)

    latest_log = Path(log_dir) / "latest.log"
    try:
        if latest_log.is_symlink() or latest_log.exists():
            latest_log.unlink()
        if os.name != 'nt':
            latest_log.symlink_to(log_file.name)
    except (OSError, NotImplementedError) as e:
        logger.debug(f"Could not create latest.log symlink: {e}")

    # stdout is reserved for feed output
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(getattr(logging, console_level, logging.INFO))
    console_handler.setFormatter(ContextFormatter('%(asctime)s | %(levelname)-8s | %(context)s%(message)s',
                                                  datefmt='%H:%M:%S'))
    logger.addHandler(console_handler)

    logger.info(f"Logging to {log_file} (level {log_level}, console {console_level})")
    return logger


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Get a child logger for a specific module."""
    base_logger = logging.getLogger(LOGGER_NAME)
    if name:
        return base_logger.getChild(name)
    return base_logger


class LogContext:
    """
    Log START/DONE/FAILED with timing around a block.

    Keyword fields are added to the thread's log context for the duration
    of the block and restored afterwards:

        with LogContext(log, "aggregation pass", run=3):
            ...
    """

    def __init__(self, logger: logging.Logger, operation: str, level: int = logging.DEBUG, **fields):
        self.logger = logger
        self.operation = operation
        self.level = level
        self.fields = fields
        self.start_time = None
        self._saved = None

    def __enter__(self):
        self._saved = get_log_context()
        set_log_context(**self.fields)
        self.start_time = datetime.now()
        self.logger.log(self.level, f"START: {self.operation}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        elapsed = (datetime.now() - self.start_time).total_seconds()
        if exc_type:
            self.logger.error(f"FAILED: {self.operation} after {elapsed:.2f}s: {exc_type.__name__}: {exc_val}")
        else:
            self.logger.log(self.level, f"DONE: {self.operation} in {elapsed:.2f}s")
        _context.fields = self._saved
        return False
