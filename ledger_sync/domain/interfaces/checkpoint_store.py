"""Checkpoint persistence capability."""

from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional


@dataclass
class Checkpoint:
    """Durable ingestion progress for one named process."""
    process_name: str
    last_processed_position: int = 0
    last_processed_tx_id: Optional[str] = None
    last_sync_time: Optional[datetime] = None
    healthy: bool = True
    consecutive_error_count: int = 0
    last_error_message: Optional[str] = None


class CheckpointStore(ABC):
    """
    Checkpoint storage keyed by process name.

    Rows are created on first upsert and never deleted.
    """

    @abstractmethod
    async def get(self, process_name: str) -> Optional[Checkpoint]:
        """Return the checkpoint for a process, or None if never written."""

    @abstractmethod
    async def upsert(self, process_name: str, **fields: Any) -> Checkpoint:
        """
        Create or update a checkpoint.

        `last_processed_position`, when given, must never move the stored
        value backwards.
        """

    @abstractmethod
    async def increment_errors(
        self,
        process_name: str,
        message: str,
        healthy: bool,
    ) -> Checkpoint:
        """Bump consecutive_error_count and record the latest error."""
