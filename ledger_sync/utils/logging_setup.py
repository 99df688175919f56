"""
Category logging for the sync worker.

Every module logs through `get_logger(__name__)`, which routes it to one
of four category loggers by module prefix:

- system: startup, shutdown, config, migrations, worker lifecycle, health
- ingest: subscription, pipeline, dispatch, checkpoint, backfill
- ledger: Solana RPC/websocket adapter, decoding, finality checks
- recon:  reconciliation passes, corrections, orphans

`setup_category_logging()` gives each category its own JSON-lines file
for the run, under logs/{date}/, written from a QueueListener thread so
the event loop never blocks on disk. Console output is optional.
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import sys
from datetime import datetime
from pathlib import Path
from queue import Queue
from typing import Any, Dict, List, Tuple

from .trace_context import get_cycle_id, get_subject

ROOT_LOGGER_NAME = "ledger_sync"

CATEGORIES = ("system", "ingest", "ledger", "recon")

# First matching prefix wins, so narrower prefixes come first.
MODULE_ROUTING: List[Tuple[str, str]] = [
    ("ledger_sync.infrastructure.adapters", "ledger"),
    ("ledger_sync.application.finality_tracker", "ledger"),
    ("ledger_sync.application.reconciliation_engine", "recon"),
    ("ledger_sync.infrastructure.persistence.repositories.projection_repository", "recon"),
    ("ledger_sync.application.ingestion_manager", "ingest"),
    ("ledger_sync.application.event_pipeline", "ingest"),
    ("ledger_sync.application.dispatcher", "ingest"),
    ("ledger_sync.application.backfill_runner", "ingest"),
    ("ledger_sync.application.checkpoints", "ingest"),
    ("ledger_sync.application.error_tracker", "ingest"),
    ("ledger_sync.infrastructure.persistence.repositories.checkpoint_repository", "ingest"),
]

_listeners: List[logging.handlers.QueueListener] = []

# StructuredLogger keys -> file keys
_RENAMED = {"timestamp": "ts", "category": "cat", "message": "msg", "subject": "ref"}


def get_category_for_module(module_name: str) -> str:
    for prefix, category in MODULE_ROUTING:
        if module_name.startswith(prefix):
            return category
    return "system"


def get_logger(module_name: str) -> logging.Logger:
    """Category logger for a module: `logger = get_logger(__name__)`."""
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{get_category_for_module(module_name)}")


def _category_of(logger_name: str) -> str:
    prefix, _, category = logger_name.partition(".")
    return category if prefix == ROOT_LOGGER_NAME and category in CATEGORIES else "system"


class JSONFormatter(logging.Formatter):
    """
    One JSON object per line: ts, level, cat, cycle, ref?, msg, data?, exception?

    Lines that are already JSON (from StructuredLogger) keep their fields
    under the short key names.
    """

    def format(self, record: logging.LogRecord) -> str:
        msg = record.getMessage()
        entry: Dict[str, Any]
        if msg.startswith("{") and msg.endswith("}"):
            try:
                parsed = json.loads(msg)
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, dict):
                entry = {_RENAMED.get(k, k): v for k, v in parsed.items()}
                entry["cat"] = str(entry.get("cat", _category_of(record.name))).lower()
                entry.setdefault("cycle", get_cycle_id())
                if record.exc_info:
                    entry["exception"] = self.formatException(record.exc_info)
                return json.dumps(entry, default=str)

        entry = {
            "ts": datetime.now().astimezone().isoformat(),
            "level": record.levelname,
            "cat": _category_of(record.name),
            "cycle": get_cycle_id(),
        }
        subject = get_subject()
        if subject is not None:
            entry["ref"] = subject
        entry["msg"] = msg
        if getattr(record, "data", None):
            entry["data"] = record.data
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """`HH:MM:SS [LEVEL  ] cat    [cycle] message`, coloured by level on a tty."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        text = record.getMessage()
        if record.exc_info:
            text = f"{text}\n{self.formatException(record.exc_info)}"
        stamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        level = f"[{record.levelname:7}]"
        if self.use_colors:
            level = f"{self.COLORS.get(record.levelname, '')}{level}{self.RESET}"
        return f"{stamp} {level} {_category_of(record.name):6} [{get_cycle_id()}] {text}"


def setup_category_logging(
    env: str,
    log_dir: str = "./logs",
    level: str = "INFO",
    console: bool = False,
    verbose: bool = False,
) -> Dict[str, logging.Logger]:
    """
    Attach handlers to the category loggers.

    Files: {log_dir}/{YYYY-MM-DD}/ledger_sync_{env}_{category}_{HHMMSS}.log,
    one set per run. Calling again replaces the previous handlers.

    Returns:
        Category name -> logger.
    """
    shutdown_logging()

    started = datetime.now()
    run_dir = Path(log_dir) / started.strftime("%Y-%m-%d")
    run_dir.mkdir(parents=True, exist_ok=True)
    run_tag = started.strftime("%H%M%S")
    effective = logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO)

    loggers: Dict[str, logging.Logger] = {}
    for category in CATEGORIES:
        logger = logging.getLogger(f"{ROOT_LOGGER_NAME}.{category}")
        for handler in logger.handlers[:]:
            logger.removeHandler(handler)
            handler.close()
        logger.setLevel(effective)
        logger.propagate = False

        file_handler = logging.FileHandler(
            run_dir / f"ledger_sync_{env}_{category}_{run_tag}.log", encoding="utf-8"
        )
        file_handler.setFormatter(JSONFormatter())

        queue: Queue = Queue(-1)
        logger.addHandler(logging.handlers.QueueHandler(queue))
        listener = logging.handlers.QueueListener(queue, file_handler, respect_handler_level=True)
        listener.start()
        _listeners.append(listener)

        if console:
            stream = logging.StreamHandler(sys.stderr)
            stream.setFormatter(ConsoleFormatter(use_colors=sys.stderr.isatty()))
            logger.addHandler(stream)

        loggers[category] = logger

    for noisy in ("asyncpg", "aiohttp", "websockets"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return loggers


def flush_all_loggers() -> None:
    """Flush handlers of every category logger."""
    for category in CATEGORIES:
        for handler in logging.getLogger(f"{ROOT_LOGGER_NAME}.{category}").handlers:
            handler.flush()


def shutdown_logging() -> None:
    """Stop the queue listeners; pending records are written first."""
    while _listeners:
        _listeners.pop().stop()
