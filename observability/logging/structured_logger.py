"""
Structured Logger
=================

Logging setup for the replication service.

Features:
- JSON-formatted logs
- Thread-local context enrichment (table key, batch id)
- Optional file output
"""

import json
import logging
import os
import sys
import threading
import traceback
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional

# Thread-local storage for context
_context = threading.local()

_RESERVED_ATTRS = {
    'name', 'msg', 'args', 'created', 'filename', 'funcName',
    'levelname', 'levelno', 'lineno', 'module', 'msecs',
    'pathname', 'process', 'processName', 'relativeCreated',
    'stack_info', 'exc_info', 'exc_text', 'thread', 'threadName',
    'message', 'taskName', 'context'
}

PLAIN_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def get_context() -> dict:
    return dict(getattr(_context, 'data', {}))


@contextmanager
def log_context(**kwargs):
    """
    Add fields to every log record emitted by this thread within scope.

    Usage:
        with log_context(table="src.db.sales.orders"):
            logger.info("Processing")  # record carries table=...
    """
    old_data = get_context()
    _context.data = dict(old_data, **kwargs)
    try:
        yield
    finally:
        _context.data = old_data


class ContextFilter(logging.Filter):
    """Attaches the thread-local context to each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.context = get_context()
        return True


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
            "line": record.lineno,
            "thread": record.threadName,
        }

        if record.exc_info:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info)
            }

        context = getattr(record, "context", None)
        if context is None:
            context = get_context()
        if context:
            log_entry["context"] = context

        if self.include_extra:
            for key in set(record.__dict__.keys()) - _RESERVED_ATTRS:
                log_entry[key] = getattr(record, key)

        return json.dumps(log_entry, default=str)


class ContextFormatter(logging.Formatter):
    """Plain formatter that appends context fields as key=value."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = getattr(record, "context", None) or {}
        if context:
            line += " [" + " ".join(f"{k}={v}" for k, v in context.items()) + "]"
        return line


def setup_logging(
    level: str = "INFO",
    json_format: bool = False,
    log_file: Optional[str] = None
) -> logging.Logger:
    """
    Configure the root logger for the replication service.

    Args:
        level: Log level name
        json_format: Emit JSON lines instead of plain text
        log_file: Also write to this file

    Returns:
        The configured root logger
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    for handler in list(root.handlers):
        root.removeHandler(handler)

    formatter = JsonFormatter() if json_format else ContextFormatter(PLAIN_FORMAT)
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(ContextFilter())
        root.addHandler(handler)

    return root
