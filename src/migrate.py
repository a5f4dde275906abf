"""
Schema migrations for the PostgreSQL state backend.

Forward-only SQL files in ``migrations/`` named ``NNN_description.sql``
are applied in version order, each in its own transaction together with
its bookkeeping row. A session advisory lock keeps two engines starting
against the same database from migrating at once.
"""

import hashlib
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

import asyncpg

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

MIGRATION_FILE = re.compile(r"^(?P<version>\d{3})_(?P<name>\w+)\.sql$")

MIGRATION_TABLE = "cairn_schema_migrations"

# Arbitrary application-wide key for pg_advisory_lock.
ADVISORY_LOCK_KEY = 0x636169726E


@dataclass(frozen=True)
class Migration:
    """One forward-only schema change."""

    version: str
    name: str
    path: Path

    @property
    def filename(self) -> str:
        return self.path.name

    def read(self) -> str:
        return self.path.read_text(encoding="utf-8")

    @property
    def checksum(self) -> str:
        return hashlib.sha256(self.read().encode("utf-8")).hexdigest()


def load_migrations(directory: Optional[Path] = None) -> List[Migration]:
    """
    Collect the migration files of a directory in version order.

    Files that do not follow the ``NNN_name.sql`` convention are ignored.

    Raises:
        FileNotFoundError: If the directory does not exist.
        ValueError: If two files share a version number.
    """
    directory = directory or MIGRATIONS_DIR
    if not directory.is_dir():
        raise FileNotFoundError(f"Migrations directory not found: {directory}")

    by_version: Dict[str, Migration] = {}
    for path in directory.glob("*.sql"):
        found = MIGRATION_FILE.match(path.name)
        if found is None or not path.is_file():
            continue
        migration = Migration(found["version"], found["name"], path)
        clash = by_version.get(migration.version)
        if clash is not None:
            first, second = sorted([clash.filename, migration.filename])
            raise ValueError(
                f"Duplicate migration version {migration.version}: {first} and {second}"
            )
        by_version[migration.version] = migration

    return [by_version[v] for v in sorted(by_version)]


async def applied_checksums(conn: asyncpg.Connection) -> Dict[str, str]:
    """Version -> checksum of every migration already recorded."""
    await conn.execute(f"""
        CREATE TABLE IF NOT EXISTS {MIGRATION_TABLE} (
            version VARCHAR(16) PRIMARY KEY,
            filename VARCHAR(255) NOT NULL,
            checksum CHAR(64) NOT NULL,
            applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
        """)
    rows = await conn.fetch(f"SELECT version, checksum FROM {MIGRATION_TABLE}")
    return {row["version"]: row["checksum"] for row in rows}


async def apply_migration(conn: asyncpg.Connection, migration: Migration) -> None:
    """Run one migration's SQL and record it in the same transaction."""
    async with conn.transaction():
        await conn.execute(migration.read())
        await conn.execute(
            f"INSERT INTO {MIGRATION_TABLE} (version, filename, checksum) "
            f"VALUES ($1, $2, $3)",
            migration.version,
            migration.filename,
            migration.checksum,
        )
    logger.info(f"Applied migration {migration.filename}")


async def run_migrations(pool: asyncpg.Pool, directory: Optional[Path] = None) -> int:
    """
    Bring the state schema up to date.

    Args:
        pool: A connected asyncpg pool.
        directory: Where the SQL files live; the packaged ones by default.

    Returns:
        Number of migrations applied.

    Raises:
        asyncpg.PostgresError: If a migration fails. That migration is
            rolled back; earlier ones stay applied.
    """
    migrations = load_migrations(directory)

    async with pool.acquire() as conn:
        await conn.execute("SELECT pg_advisory_lock($1)", ADVISORY_LOCK_KEY)
        try:
            applied = await applied_checksums(conn)
            pending = []
            for migration in migrations:
                recorded = applied.get(migration.version)
                if recorded is None:
                    pending.append(migration)
                elif recorded != migration.checksum:
                    logger.warning(
                        f"Migration {migration.filename} was edited after it was "
                        f"applied; the change will not be run"
                    )

            for migration in pending:
                await apply_migration(conn, migration)
        finally:
            await conn.execute("SELECT pg_advisory_unlock($1)", ADVISORY_LOCK_KEY)

    if pending:
        logger.info(f"State schema migrated ({len(pending)} migration(s) applied)")
    else:
        logger.debug("State schema is up to date")
    return len(pending)
