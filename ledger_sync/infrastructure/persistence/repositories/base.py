"""
Shared base for the sync repositories.

Column names are interpolated into SQL, so every caller-supplied name
goes through an allow-list first; values always travel as $n parameters.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, Generic, Iterable, List, Tuple, TypeVar

from asyncpg import Record

from ..database import Database

T = TypeVar("T")


class BaseRepository(ABC, Generic[T]):
    """
    Repository over one table.

    Subclasses provide the table name and the record mapping.
    """

    def __init__(self, db: Database):
        """
        Initialize repository with database connection.

        Args:
            db: Database connection manager.
        """
        self._db = db

    @property
    @abstractmethod
    def table_name(self) -> str:
        """The database table name for this repository."""

    @abstractmethod
    def _to_entity(self, record: Record) -> T:
        """Convert an asyncpg record to an entity object."""

    # -------------------------------------------------------------------------
    # Helper Methods
    # -------------------------------------------------------------------------

    @staticmethod
    def _check_columns(columns: Iterable[str], allowed: Iterable[str]) -> None:
        """
        Reject column names outside the allow-list.

        Raises:
            ValueError: On an unknown column.
        """
        allowed_set = set(allowed)
        unknown = [c for c in columns if c not in allowed_set]
        if unknown:
            raise ValueError(f"Unknown column(s): {', '.join(sorted(unknown))}")

    @staticmethod
    def _build_set_clause(
        fields: Dict[str, Any], start: int = 1
    ) -> Tuple[str, List[Any]]:
        """
        Build `col = $n` assignments from a column=value mapping.

        Args:
            fields: Column=value mapping.
            start: Number of the first placeholder.

        Returns:
            Tuple of (set_clause_string, parameter_list).
        """
        clauses = []
        params = []
        for i, (col, val) in enumerate(fields.items(), start):
            clauses.append(f"{col} = ${i}")
            params.append(val)
        return ", ".join(clauses), params
