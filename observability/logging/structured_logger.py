"""
Structured Logger
=================

Logging setup for the DeepLynx loader.

Features:
- Plain text or JSON-formatted logs
- Console and optional file output
- Context enrichment (run_id, table, data_source_id)
"""

import json
import logging
import os
import sys
import threading
import traceback
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional

# Thread-local storage for context
_context = threading.local()

TEXT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

_RESERVED_ATTRS = {
    'name', 'msg', 'args', 'created', 'filename', 'funcName',
    'levelname', 'levelno', 'lineno', 'module', 'msecs',
    'pathname', 'process', 'processName', 'relativeCreated',
    'stack_info', 'exc_info', 'exc_text', 'thread', 'threadName',
    'message', 'taskName'
}


def current_context() -> dict:
    """Return a copy of the fields bound by ``log_context``."""
    return dict(getattr(_context, 'data', {}))


class JsonFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def __init__(self, include_extra: bool = True):
        super().__init__()
        self.include_extra = include_extra

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno
        }

        # Add exception info if present
        if record.exc_info:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info)
            }

        context = current_context()
        if context:
            log_entry["context"] = context

        # Add extra fields
        if self.include_extra:
            for key in set(record.__dict__.keys()) - _RESERVED_ATTRS:
                log_entry[key] = getattr(record, key)

        return json.dumps(log_entry, default=str)


@contextmanager
def log_context(**kwargs):
    """
    Context manager for adding context to all logs within scope.

    Usage:
        with log_context(run_id="123", table="sensor_a"):
            logger.info("Loading")  # JSON output includes run_id and table
    """
    if not hasattr(_context, 'data'):
        _context.data = {}

    old_data = _context.data.copy()
    _context.data.update(kwargs)

    try:
        yield
    finally:
        _context.data = old_data


def configure_logging(
    debug: bool = False,
    log_file: Optional[str] = None,
    json_format: bool = False
) -> logging.Logger:
    """
    Configure the root logger for a loader process.

    Args:
        debug: Log at DEBUG instead of INFO
        log_file: Optional file to write logs to, alongside stdout
        json_format: Use JSON formatting instead of plain text

    Returns:
        The configured root logger
    """
    level = logging.DEBUG if debug else logging.INFO
    formatter = JsonFormatter() if json_format else logging.Formatter(TEXT_FORMAT)

    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    root.addHandler(console_handler)

    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    return root


def new_run_id() -> str:
    """Generate a new run ID."""
    return str(uuid.uuid4())[:8]
