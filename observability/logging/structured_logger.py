"""
Structured Logger
=================

Process-wide logging setup for the replication daemon.

Records go to stdout (and optionally a file) either as plain lines or as one
JSON object per line. Fields bound with ``log_context`` (run id, event id,
collection, operation) are attached to every record emitted in that scope.
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
from typing import Dict, Optional

PLAIN_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Attributes every LogRecord carries; anything else came in through ``extra``.
_STANDARD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {
    "message", "asctime", "context"
}

_local = threading.local()


def current_context() -> Dict:
    """Fields bound on the calling thread."""
    return dict(getattr(_local, "fields", {}))


@contextmanager
def log_context(**fields):
    """
    Bind fields to every log record emitted by this thread inside the block.

    Nested blocks add to the outer fields and restore them on exit.
    """
    previous = current_context()
    _local.fields = {**previous, **fields}
    try:
        yield
    finally:
        _local.fields = previous


class ContextFilter(logging.Filter):
    """Copies the thread's bound fields onto ``record.context``."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.context = current_context()
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
        }

        context = getattr(record, "context", None)
        if context:
            entry["context"] = context

        entry.update({
            key: value for key, value in vars(record).items()
            if key not in _STANDARD_ATTRS
        })

        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc_value, exc_tb = record.exc_info
            entry["exception"] = {
                "type": exc_type.__name__,
                "message": str(exc_value),
                "traceback": traceback.format_exception(exc_type, exc_value, exc_tb),
            }

        return json.dumps(entry, default=str)


def configure_logging(
    level: str = "INFO",
    json_format: bool = False,
    log_to_file: bool = False,
    log_path: Optional[str] = None
):
    """
    Replace the root logger's handlers.

    Args:
        level: Level name such as INFO or DEBUG
        json_format: Emit JSON lines instead of the plain format
        log_to_file: Write to ``log_path`` as well as stdout
        log_path: Defaults to logs/replication.log
    """
    formatter = JsonFormatter() if json_format else logging.Formatter(PLAIN_FORMAT)
    handlers = [logging.StreamHandler(sys.stdout)]

    if log_to_file:
        log_path = log_path or os.path.join("logs", "replication.log")
        os.makedirs(os.path.dirname(log_path) or ".", exist_ok=True)
        handlers.append(logging.FileHandler(log_path))

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for handler in list(root.handlers):
        root.removeHandler(handler)
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(ContextFilter())
        root.addHandler(handler)


def new_trace_id() -> str:
    """Short random id used to tag one daemon run in the logs."""
    return uuid.uuid4().hex[:8]
