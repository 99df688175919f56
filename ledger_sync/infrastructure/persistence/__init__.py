"""PostgreSQL persistence via asyncpg."""

from .database import Database, DatabaseError, ConnectionError, QueryError
from .repositories import CheckpointRepository, ProjectionRepository

__all__ = [
    "Database",
    "DatabaseError",
    "ConnectionError",
    "QueryError",
    "CheckpointRepository",
    "ProjectionRepository",
]
