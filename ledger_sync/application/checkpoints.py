"""Single writer for a process's ingestion checkpoint."""

from __future__ import annotations
import asyncio
from typing import Optional

from ..domain.interfaces import Checkpoint, CheckpointStore
from ..utils.logging_setup import get_logger
from ..utils.timezone import now_utc


logger = get_logger(__name__)


class CheckpointTracker:
    """
    Tracks and persists ingestion progress for one process name.

    Shared by live ingestion and backfill so that position writes are
    serialized and only ever move forward.
    """

    def __init__(self, store: CheckpointStore, process_name: str):
        self._store = store
        self._process_name = process_name
        self._position = 0
        self._last_tx_id: Optional[str] = None
        self._lock = asyncio.Lock()
        self._loaded = False

    @property
    def process_name(self) -> str:
        return self._process_name

    @property
    def position(self) -> int:
        """Last persisted position (0 before load or first write)."""
        return self._position

    @property
    def last_tx_id(self) -> Optional[str]:
        return self._last_tx_id

    @property
    def loaded(self) -> bool:
        return self._loaded

    async def load(self) -> Checkpoint:
        """Read the checkpoint, creating it on first run."""
        checkpoint = await self._store.get(self._process_name)
        if checkpoint is None:
            checkpoint = await self._store.upsert(
                self._process_name,
                last_processed_position=0,
                last_sync_time=now_utc(),
                healthy=True,
                consecutive_error_count=0,
            )
            logger.info(f"Created checkpoint for {self._process_name}")
        else:
            logger.info(
                f"Resuming {self._process_name} from position {checkpoint.last_processed_position}"
            )
        async with self._lock:
            self._position = max(self._position, checkpoint.last_processed_position)
            self._last_tx_id = checkpoint.last_processed_tx_id
            self._loaded = True
        return checkpoint

    async def advance(
        self,
        position: int,
        tx_id: Optional[str] = None,
        healthy: bool = True,
    ) -> bool:
        """
        Persist a new position if it is ahead of the current one.

        Returns:
            True if the checkpoint moved forward.
        """
        async with self._lock:
            if position <= self._position:
                return False
            fields = {
                "last_processed_position": position,
                "last_sync_time": now_utc(),
                "healthy": healthy,
                "consecutive_error_count": 0,
            }
            if tx_id is not None:
                fields["last_processed_tx_id"] = tx_id
            await self._store.upsert(self._process_name, **fields)
            self._position = position
            if tx_id is not None:
                self._last_tx_id = tx_id
        logger.debug(f"Checkpoint {self._process_name} -> {position}")
        return True

    async def record_error(self, message: str, healthy: bool) -> None:
        """Record an ingestion error against the checkpoint (truncated to 500 chars)."""
        await self._store.increment_errors(self._process_name, message[:500], healthy)

    async def mark_stopped(self, reason: str) -> None:
        """Flag the process unhealthy on shutdown, keeping the position."""
        await self._store.upsert(
            self._process_name,
            healthy=False,
            last_error_message=reason,
            last_sync_time=now_utc(),
        )

    async def snapshot(self) -> Optional[Checkpoint]:
        """Current persisted checkpoint row."""
        return await self._store.get(self._process_name)
