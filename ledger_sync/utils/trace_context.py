"""
Correlation ids for log lines.

Each unit of work gets a 6-hex-char cycle id: a received log batch, a
backfill window, a reconciliation pass or a single-entity re-sync. The
optional subject names what the cycle is about (a transaction id or an
entity address). Formatters stamp both on every line emitted inside the
cycle; ContextVars keep concurrent tasks apart.

    with new_cycle(subject=batch.tx_id):
        await pipeline.process(batch)
"""

from __future__ import annotations

import secrets
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

NO_CYCLE = "------"

_cycle_id: ContextVar[Optional[str]] = ContextVar("cycle_id", default=None)
_subject: ContextVar[Optional[str]] = ContextVar("cycle_subject", default=None)


def get_cycle_id() -> str:
    return _cycle_id.get() or NO_CYCLE


def get_subject() -> Optional[str]:
    """Transaction id or entity address of the current cycle, if any."""
    return _subject.get()


@contextmanager
def new_cycle(subject: Optional[str] = None) -> Iterator[str]:
    """Run the block under a fresh cycle id; yields the id."""
    cycle_id = secrets.token_hex(3)
    cycle_token = _cycle_id.set(cycle_id)
    subject_token = _subject.set(subject)
    try:
        yield cycle_id
    finally:
        _subject.reset(subject_token)
        _cycle_id.reset(cycle_token)
