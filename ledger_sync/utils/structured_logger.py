"""
Alert-grade JSON lines.

Operators grep and ship these: reorg suspicions, orphan detection,
error-rate trips, reconnect exhaustion, startup and shutdown. Each line
is one JSON object carrying the category, the current cycle id and,
when the cycle has one, the transaction or entity it concerns.
"""

from __future__ import annotations
import json
import logging
from enum import Enum
from typing import Any, Dict, Optional

from .timezone import now_utc
from .trace_context import get_cycle_id, get_subject


class LogCategory(Enum):
    SYSTEM = "SYSTEM"  # Startup, shutdown, migrations, fatal conditions
    INGEST = "INGEST"  # Subscription, backfill, checkpoint progress
    LEDGER = "LEDGER"  # Finality and reorg observations
    RECON = "RECON"  # Drift corrections and orphans
    ALERT = "ALERT"  # Needs an operator


class StructuredLogger:
    """
    Wraps a category logger; the payload becomes the log message.

        alerts = StructuredLogger(logger)
        alerts.warning(LogCategory.ALERT, "Potential reorg", {"tx_id": tx_id})

    produces
        {"timestamp": "...", "level": "WARNING", "category": "ALERT",
         "cycle": "a7f3b2", "subject": "5xK...", "message": "Potential reorg",
         "data": {"tx_id": "5xK..."}}
    """

    def __init__(self, logger: logging.Logger):
        self.logger = logger

    def log(
        self,
        level: int,
        category: LogCategory,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        if not self.logger.isEnabledFor(level):
            return
        entry: Dict[str, Any] = {
            "timestamp": now_utc().isoformat(),
            "level": logging.getLevelName(level),
            "category": category.value,
            "cycle": get_cycle_id(),
            "message": message,
        }
        subject = get_subject()
        if subject is not None:
            entry["subject"] = subject
        if data:
            entry["data"] = data
        self.logger.log(level, json.dumps(entry, default=str))

    def info(self, category: LogCategory, message: str, data: Optional[Dict[str, Any]] = None) -> None:
        self.log(logging.INFO, category, message, data)

    def warning(self, category: LogCategory, message: str, data: Optional[Dict[str, Any]] = None) -> None:
        self.log(logging.WARNING, category, message, data)

    def error(self, category: LogCategory, message: str, data: Optional[Dict[str, Any]] = None) -> None:
        self.log(logging.ERROR, category, message, data)

    def critical(self, category: LogCategory, message: str, data: Optional[Dict[str, Any]] = None) -> None:
        self.log(logging.CRITICAL, category, message, data)
