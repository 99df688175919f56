"""
asyncpg pool for the checkpoint and projection tables.

The worker owns the lifecycle: `connect()` once at startup, `close()`
last during shutdown. Repositories only use the query helpers, which
wrap driver failures in QueryError so callers see one exception type.
Inside `transaction()` the helpers run on the transaction's connection,
so several repository calls commit or roll back together.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import Any, AsyncIterator, List, Optional

import asyncpg
from asyncpg import Connection, Pool, Record

from config.models import DatabaseConfig
from ...utils.logging_setup import get_logger

logger = get_logger(__name__)

_bound: ContextVar[Optional[Connection]] = ContextVar("db_transaction_connection", default=None)


class DatabaseError(Exception):
    """Base exception for database operations."""


class ConnectionError(DatabaseError):
    """Pool could not be created, or was used before connect()."""


class QueryError(DatabaseError):
    """Statement failed."""


class Database:
    """
    Connection pool plus the four query shapes the repositories need.

    Usage:
        db = Database(config.database)
        await db.connect()
        row = await db.fetchrow(
            "SELECT * FROM sync_checkpoints WHERE process_name = $1", "event-listener"
        )
        async with db.transaction():
            await promotions.increment(address, "current_supply")
            await coupons.insert(coupon, fields)
        await db.close()
    """

    def __init__(self, config: DatabaseConfig):
        self._config = config
        self._pool: Optional[Pool] = None

    @property
    def is_connected(self) -> bool:
        return self._pool is not None

    @property
    def pool(self) -> Pool:
        if self._pool is None:
            raise ConnectionError("Database not connected. Call connect() first.")
        return self._pool

    async def connect(self) -> None:
        """
        Create the pool.

        Raises:
            ConnectionError: If PostgreSQL is unreachable or rejects the credentials.
        """
        if self._pool is not None:
            logger.warning("Database already connected")
            return

        cfg = self._config
        logger.info(
            f"Connecting to {cfg.host}:{cfg.port}/{cfg.database} as {cfg.user} "
            f"(pool {cfg.pool.min_connections}-{cfg.pool.max_connections})"
        )
        try:
            self._pool = await asyncpg.create_pool(
                cfg.dsn,
                min_size=cfg.pool.min_connections,
                max_size=cfg.pool.max_connections,
                command_timeout=cfg.command_timeout_sec,
            )
        except Exception as e:
            logger.error(f"Failed to connect to database: {e}")
            raise ConnectionError(f"Failed to connect to {cfg.host}:{cfg.port}: {e}") from e
        logger.info("Database pool ready")

    async def close(self) -> None:
        pool, self._pool = self._pool, None
        if pool is not None:
            await pool.close()
            logger.info("Database pool closed")

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def _run(self, method: str, query: str, args: tuple, **kwargs: Any) -> Any:
        try:
            conn = _bound.get()
            if conn is not None:
                return await getattr(conn, method)(query, *args, **kwargs)
            async with self.pool.acquire() as conn:
                return await getattr(conn, method)(query, *args, **kwargs)
        except ConnectionError:
            raise
        except Exception as e:
            statement = " ".join(query.split())[:200]
            logger.error(f"{method} failed: {e} [{statement}]")
            raise QueryError(f"{method} failed: {e}") from e

    async def execute(self, query: str, *args: Any) -> str:
        """Run a statement; returns the command tag ("UPDATE 1", "INSERT 0 0")."""
        return await self._run("execute", query, args)

    async def fetch(self, query: str, *args: Any) -> List[Record]:
        return await self._run("fetch", query, args)

    async def fetchrow(self, query: str, *args: Any) -> Optional[Record]:
        return await self._run("fetchrow", query, args)

    async def fetchval(self, query: str, *args: Any, column: int = 0) -> Any:
        return await self._run("fetchval", query, args, column=column)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Connection]:
        """
        Connection inside a transaction; rolls back if the block raises.

        Query helpers called from the same task use this connection until
        the block exits. A nested call opens a savepoint.
        """
        outer = _bound.get()
        if outer is not None:
            async with outer.transaction():
                yield outer
            return
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                token = _bound.set(conn)
                try:
                    yield conn
                finally:
                    _bound.reset(token)
