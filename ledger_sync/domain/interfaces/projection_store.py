"""Projection access needed by reconciliation (schema owned by the consumer)."""

from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional


class OrphanReason(Enum):
    """Why a projected entity lost its canonical counterpart."""
    BLOCK_REORG = "block_reorg"  # creating transaction rolled back
    ACCOUNT_CLOSED = "account_closed"  # account no longer exists


@dataclass
class ProjectedEntity:
    """The reconcilable slice of a projected record."""
    address: str
    fields: Dict[str, Any] = field(default_factory=dict)
    projected_at: Optional[datetime] = None
    is_orphaned: bool = False


class ProjectionStore(ABC):
    """Per-entity-type read/update access to the off-chain projection."""

    @abstractmethod
    async def list_recent(self, window: timedelta) -> List[ProjectedEntity]:
        """Non-orphaned entities projected within the trailing window."""

    @abstractmethod
    async def list_all(self, exclude_orphaned: bool = True) -> List[ProjectedEntity]:
        """All entities, orphaned ones excluded unless asked for."""

    @abstractmethod
    async def get(self, address: str) -> Optional[ProjectedEntity]:
        """A single entity by on-chain address."""

    @abstractmethod
    async def apply_correction(self, address: str, fields: Dict[str, Any]) -> None:
        """Overwrite tracked fields with canonical values and stamp the reconciliation time."""

    @abstractmethod
    async def mark_orphaned(self, address: str, reason: OrphanReason) -> None:
        """Flag an entity as orphaned; the row is kept."""


class ProjectionWriter(ABC):
    """Write access used by event consumers; every operation is idempotent per address."""

    @abstractmethod
    async def insert(self, address: str, fields: Dict[str, Any]) -> bool:
        """Create an entity; returns False if the address is already projected."""

    @abstractmethod
    async def update(self, address: str, fields: Dict[str, Any]) -> bool:
        """Set fields on an existing entity; returns False if it is not projected."""

    @abstractmethod
    async def increment(self, address: str, column: str, amount: int = 1) -> bool:
        """Add to a numeric field; returns False if the entity is not projected."""
