"""Bounded window of recently dispatched transaction ids."""

from __future__ import annotations
from collections import deque
from threading import Lock
from typing import Deque, Set


class DedupWindow:
    """
    Fixed-capacity FIFO set of transaction ids.

    An id present in the window is never dispatched twice. Once more than
    `capacity` newer ids have been added the oldest is evicted, so a
    duplicate delivered after that many other transactions would be
    dispatched again; consumers' idempotent upserts absorb that case.
    """

    def __init__(self, capacity: int = 10_000):
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self._capacity = capacity
        self._order: Deque[str] = deque()
        self._members: Set[str] = set()
        self._lock = Lock()
        self._evicted = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def evicted(self) -> int:
        """Number of ids evicted since creation."""
        return self._evicted

    def add(self, tx_id: str) -> bool:
        """
        Add an id.

        Returns:
            True if the id was new, False if it was already in the window.
        """
        with self._lock:
            if tx_id in self._members:
                return False
            if len(self._order) >= self._capacity:
                oldest = self._order.popleft()
                self._members.discard(oldest)
                self._evicted += 1
            self._order.append(tx_id)
            self._members.add(tx_id)
            return True

    def __contains__(self, tx_id: object) -> bool:
        with self._lock:
            return tx_id in self._members

    def __len__(self) -> int:
        with self._lock:
            return len(self._order)
