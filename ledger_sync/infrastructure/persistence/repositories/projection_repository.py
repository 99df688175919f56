"""
Repository giving reconciliation access to a projection table.

Generic over the table and its tracked columns; the consumer owns the
rest of the schema. Rows whose address is still the 'pending'
placeholder (created off-chain, not yet confirmed) are never selected.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Dict, List, Optional, Sequence

from asyncpg import Record

from ....domain.interfaces import (
    OrphanReason,
    ProjectedEntity,
    ProjectionStore,
    ProjectionWriter,
)
from ....utils.logging_setup import get_logger
from ....utils.timezone import window_start
from ..database import Database
from .base import BaseRepository

logger = get_logger(__name__)

PENDING_ADDRESS = "pending"


class ProjectionRepository(BaseRepository[ProjectedEntity], ProjectionStore, ProjectionWriter):
    """
    Reconciliation and consumer access to one projection table.

    Expects the columns `on_chain_address`, `is_orphaned`, `orphaned_at`,
    `orphan_reason`, `last_reconciled_at` and `created_at` next to the
    tracked columns. Consumer writes are limited to `writable_columns`
    (the tracked columns when not given).
    """

    def __init__(
        self,
        db: Database,
        table: str,
        tracked_columns: Sequence[str],
        writable_columns: Optional[Sequence[str]] = None,
    ):
        super().__init__(db)
        if not tracked_columns:
            raise ValueError("tracked_columns must not be empty")
        self._table = table
        self._tracked = tuple(tracked_columns)
        self._writable = tuple(writable_columns or tracked_columns)

    @property
    def table_name(self) -> str:
        return self._table

    @property
    def tracked_columns(self) -> Sequence[str]:
        return self._tracked

    def _select(self) -> str:
        columns = ", ".join(
            ["on_chain_address", *self._tracked, "created_at", "is_orphaned"]
        )
        return f"SELECT {columns} FROM {self._table}"

    def _to_entity(self, record: Record) -> ProjectedEntity:
        return ProjectedEntity(
            address=record["on_chain_address"],
            fields={col: record[col] for col in self._tracked},
            projected_at=record["created_at"],
            is_orphaned=bool(record["is_orphaned"]),
        )

    # -------------------------------------------------------------------------
    # Query Methods
    # -------------------------------------------------------------------------

    async def list_recent(self, window: timedelta) -> List[ProjectedEntity]:
        query = f"""
            {self._select()}
            WHERE created_at >= $1
              AND is_orphaned = FALSE
              AND on_chain_address <> $2
            ORDER BY created_at
        """
        records = await self._db.fetch(query, window_start(window), PENDING_ADDRESS)
        return [self._to_entity(r) for r in records]

    async def list_all(self, exclude_orphaned: bool = True) -> List[ProjectedEntity]:
        orphan_clause = "AND is_orphaned = FALSE" if exclude_orphaned else ""
        query = f"""
            {self._select()}
            WHERE on_chain_address <> $1
              {orphan_clause}
            ORDER BY created_at
        """
        records = await self._db.fetch(query, PENDING_ADDRESS)
        return [self._to_entity(r) for r in records]

    async def get(self, address: str) -> Optional[ProjectedEntity]:
        query = f"{self._select()} WHERE on_chain_address = $1"
        record = await self._db.fetchrow(query, address)
        return self._to_entity(record) if record else None

    # -------------------------------------------------------------------------
    # Update Methods
    # -------------------------------------------------------------------------

    async def apply_correction(self, address: str, fields: Dict[str, Any]) -> None:
        """Overwrite tracked columns with canonical values."""
        if not fields:
            return
        self._check_columns(fields, self._tracked)
        set_clause, params = self._build_set_clause(fields, start=2)
        query = f"""
            UPDATE {self._table}
            SET {set_clause}, last_reconciled_at = NOW()
            WHERE on_chain_address = $1
        """
        result = await self._db.execute(query, address, *params)
        logger.debug(f"{self._table} {address} corrected ({result})")

    async def mark_orphaned(self, address: str, reason: OrphanReason) -> None:
        query = f"""
            UPDATE {self._table}
            SET is_orphaned = TRUE,
                orphaned_at = NOW(),
                orphan_reason = $2
            WHERE on_chain_address = $1
        """
        await self._db.execute(query, address, reason.value)

    # -------------------------------------------------------------------------
    # Consumer Writes
    # -------------------------------------------------------------------------

    async def insert(self, address: str, fields: Dict[str, Any]) -> bool:
        self._check_columns(fields, self._writable)
        columns = ["on_chain_address", *fields]
        placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
        query = f"""
            INSERT INTO {self._table} ({", ".join(columns)})
            VALUES ({placeholders})
            ON CONFLICT (on_chain_address) DO NOTHING
        """
        result = await self._db.execute(query, address, *fields.values())
        return _affected(result) > 0

    async def update(self, address: str, fields: Dict[str, Any]) -> bool:
        if not fields:
            return False
        self._check_columns(fields, self._writable)
        set_clause, params = self._build_set_clause(fields, start=2)
        query = f"UPDATE {self._table} SET {set_clause} WHERE on_chain_address = $1"
        result = await self._db.execute(query, address, *params)
        return _affected(result) > 0

    async def increment(self, address: str, column: str, amount: int = 1) -> bool:
        self._check_columns([column], self._writable)
        query = f"""
            UPDATE {self._table}
            SET {column} = COALESCE({column}, 0) + $2
            WHERE on_chain_address = $1
        """
        result = await self._db.execute(query, address, amount)
        return _affected(result) > 0


def _affected(status: str) -> int:
    """Row count from an asyncpg command tag ("INSERT 0 1", "UPDATE 3")."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError):
        return 0
