"""
Schema migrations for the sync tables.

Files are `NNN_name.sql` in this directory and are applied in version
order, each in its own transaction together with its schema_migrations
row. Two workers starting at once serialize on a transaction-scoped
advisory lock; the loser sees the version already recorded and skips it.

    applied = await run_migrations(db)
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from ledger_sync.infrastructure.persistence.database import Database
from ledger_sync.utils.logging_setup import get_logger

logger = get_logger(__name__)

MIGRATIONS_DIR = Path(__file__).resolve().parent
MIGRATION_FILE = re.compile(r"^(\d{3})_(\w+)\.sql$")

# Arbitrary constant shared by every worker of this schema.
ADVISORY_LOCK_KEY = 0x1ED6E5

CREATE_TABLE = """
    CREATE TABLE IF NOT EXISTS schema_migrations (
        version     TEXT PRIMARY KEY,
        name        TEXT NOT NULL,
        applied_at  TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
"""


@dataclass(frozen=True)
class Migration:
    version: str
    name: str
    path: Path


class MigrationError(Exception):
    """A migration file could not be read or applied."""


def discover(directory: Path) -> List[Migration]:
    """Migration files in `directory`, sorted by version; other files are ignored."""
    if not directory.is_dir():
        logger.warning(f"Migrations directory not found: {directory}")
        return []
    found = []
    for path in directory.iterdir():
        match = MIGRATION_FILE.match(path.name)
        if match:
            found.append(Migration(match.group(1), match.group(2), path))
    return sorted(found, key=lambda m: m.version)


class MigrationRunner:
    def __init__(self, db: Database, directory: Path | str = MIGRATIONS_DIR):
        self._db = db
        self._directory = Path(directory)

    async def current_version(self) -> Optional[str]:
        await self._db.execute(CREATE_TABLE)
        return await self._db.fetchval("SELECT MAX(version) FROM schema_migrations")

    async def pending(self) -> List[Migration]:
        await self._db.execute(CREATE_TABLE)
        rows = await self._db.fetch("SELECT version FROM schema_migrations")
        applied = {row["version"] for row in rows}
        return [m for m in discover(self._directory) if m.version not in applied]

    async def run(self) -> List[Migration]:
        """
        Apply pending migrations in order.

        Returns:
            The migrations this call applied.

        Raises:
            MigrationError: On the first failure; later migrations are not attempted.
        """
        applied = []
        for migration in await self.pending():
            if await self._apply(migration):
                applied.append(migration)
        if applied:
            logger.info(f"Schema at version {applied[-1].version} ({len(applied)} applied)")
        else:
            logger.info("Schema up to date")
        return applied

    async def _apply(self, migration: Migration) -> bool:
        try:
            sql = migration.path.read_text(encoding="utf-8")
        except OSError as e:
            raise MigrationError(f"Cannot read {migration.path}: {e}") from e

        try:
            async with self._db.transaction() as conn:
                await conn.execute("SELECT pg_advisory_xact_lock($1)", ADVISORY_LOCK_KEY)
                if await conn.fetchval(
                    "SELECT 1 FROM schema_migrations WHERE version = $1", migration.version
                ):
                    logger.info(f"Migration {migration.version} applied by another worker")
                    return False
                logger.info(f"Applying migration {migration.version}_{migration.name}")
                await conn.execute(sql)
                await conn.execute(
                    "INSERT INTO schema_migrations (version, name) VALUES ($1, $2)",
                    migration.version,
                    migration.name,
                )
        except Exception as e:
            logger.error(f"Migration {migration.version} failed: {e}")
            raise MigrationError(f"Migration {migration.version}_{migration.name} failed: {e}") from e
        return True


async def run_migrations(db: Database) -> List[Migration]:
    """Apply the bundled migrations."""
    return await MigrationRunner(db).run()
