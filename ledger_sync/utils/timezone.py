"""
UTC helpers.

Everything the worker stores or compares is timezone-aware UTC. Ledger
block and event timestamps arrive as unix seconds.
"""

from __future__ import annotations
from datetime import datetime, timedelta, timezone
from typing import Optional

UTC = timezone.utc


def now_utc() -> datetime:
    return datetime.now(UTC)


def from_unix(seconds: Optional[int]) -> Optional[datetime]:
    """Ledger unix seconds -> aware UTC datetime (None passes through)."""
    if seconds is None:
        return None
    return datetime.fromtimestamp(seconds, UTC)


def window_start(window: timedelta) -> datetime:
    """Start of the trailing window ending now."""
    return now_utc() - window
