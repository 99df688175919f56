"""
Repository for ingestion checkpoints.

One row per named ingestion process. Rows are upserted and never
deleted; the stored position can only move forward.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from asyncpg import Record

from ....domain.interfaces import Checkpoint, CheckpointStore
from ....utils.logging_setup import get_logger
from ..database import Database
from .base import BaseRepository

logger = get_logger(__name__)

CHECKPOINT_COLUMNS = (
    "last_processed_position",
    "last_processed_tx_id",
    "last_sync_time",
    "healthy",
    "consecutive_error_count",
    "last_error_message",
)


class CheckpointRepository(BaseRepository[Checkpoint], CheckpointStore):
    """PostgreSQL checkpoint store backed by the `sync_checkpoints` table."""

    def __init__(self, db: Database):
        super().__init__(db)

    @property
    def table_name(self) -> str:
        return "sync_checkpoints"

    def _to_entity(self, record: Record) -> Checkpoint:
        """Convert database record to Checkpoint."""
        return Checkpoint(
            process_name=record["process_name"],
            last_processed_position=record["last_processed_position"],
            last_processed_tx_id=record["last_processed_tx_id"],
            last_sync_time=record["last_sync_time"],
            healthy=record["healthy"],
            consecutive_error_count=record["consecutive_error_count"],
            last_error_message=record["last_error_message"],
        )

    async def get(self, process_name: str) -> Optional[Checkpoint]:
        query = "SELECT * FROM sync_checkpoints WHERE process_name = $1"
        record = await self._db.fetchrow(query, process_name)
        return self._to_entity(record) if record else None

    async def upsert(self, process_name: str, **fields: Any) -> Checkpoint:
        """
        Insert or update a checkpoint.

        Position writes go through GREATEST so a stale writer can never
        move the stored position backwards.
        """
        self._check_columns(fields, CHECKPOINT_COLUMNS)
        columns = ["process_name", *fields.keys()]
        values = [process_name, *fields.values()]
        placeholders = [f"${i}" for i in range(1, len(columns) + 1)]

        updates = []
        for col in fields:
            if col == "last_processed_position":
                updates.append(
                    "last_processed_position = GREATEST("
                    "sync_checkpoints.last_processed_position, EXCLUDED.last_processed_position)"
                )
            else:
                updates.append(f"{col} = EXCLUDED.{col}")
        updates.append("updated_at = NOW()")

        query = f"""
            INSERT INTO sync_checkpoints ({', '.join(columns)})
            VALUES ({', '.join(placeholders)})
            ON CONFLICT (process_name) DO UPDATE SET {', '.join(updates)}
            RETURNING *
        """
        record = await self._db.fetchrow(query, *values)
        return self._to_entity(record)

    async def increment_errors(
        self,
        process_name: str,
        message: str,
        healthy: bool,
    ) -> Checkpoint:
        query = """
            INSERT INTO sync_checkpoints (
                process_name, consecutive_error_count, last_error_message, healthy
            )
            VALUES ($1, 1, $2, $3)
            ON CONFLICT (process_name) DO UPDATE SET
                consecutive_error_count = sync_checkpoints.consecutive_error_count + 1,
                last_error_message = EXCLUDED.last_error_message,
                healthy = EXCLUDED.healthy,
                updated_at = NOW()
            RETURNING *
        """
        record = await self._db.fetchrow(query, process_name, message, healthy)
        checkpoint = self._to_entity(record)
        logger.debug(
            f"Checkpoint {process_name} error count {checkpoint.consecutive_error_count}"
        )
        return checkpoint

    async def list_all(self) -> Dict[str, Checkpoint]:
        """All checkpoints keyed by process name."""
        records = await self._db.fetch("SELECT * FROM sync_checkpoints ORDER BY process_name")
        return {r["process_name"]: self._to_entity(r) for r in records}
