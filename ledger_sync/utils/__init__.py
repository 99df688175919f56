"""Logging, trace context and time helpers."""

from .logging_setup import (
    setup_category_logging,
    flush_all_loggers,
    shutdown_logging,
    get_logger,
)
from .structured_logger import StructuredLogger, LogCategory
from .trace_context import get_cycle_id, get_subject, new_cycle
from .timezone import now_utc, from_unix, window_start

__all__ = [
    "StructuredLogger",
    "LogCategory",
    "setup_category_logging",
    "flush_all_loggers",
    "shutdown_logging",
    "get_logger",
    "get_cycle_id",
    "get_subject",
    "new_cycle",
    "now_utc",
    "from_unix",
    "window_start",
]
