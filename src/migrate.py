"""
Database migration runner for the object store.

Applies forward-only SQL migrations from the migrations/ directory. Several
controller replicas may start at once, so the whole run holds a PostgreSQL
advisory lock; each migration still commits in its own transaction.
"""

import logging
import re
from pathlib import Path
from typing import List, Optional, Set, Tuple

import asyncpg

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

MIGRATION_PATTERN = re.compile(r"^(\d{3})_.+\.sql$")

# Arbitrary key shared by all replicas
MIGRATION_LOCK_KEY = 0x6361_7061


async def ensure_migration_table(conn: asyncpg.Connection) -> None:
    """Create the schema_migrations tracking table if it doesn't exist."""
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version VARCHAR(16) PRIMARY KEY,
            filename VARCHAR(255) NOT NULL,
            applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
        """)


def discover_migrations(
    directory: Optional[Path] = None,
) -> List[Tuple[str, str, Path]]:
    """
    Discover migration files.

    Args:
        directory: Directory to scan; defaults to MIGRATIONS_DIR

    Returns:
        Sorted list of (version, filename, path) tuples.

    Raises:
        FileNotFoundError: If the directory doesn't exist.
    """
    directory = directory or MIGRATIONS_DIR
    if not directory.is_dir():
        raise FileNotFoundError(f"Migrations directory not found: {directory}")

    migrations = []
    for entry in sorted(directory.iterdir()):
        match = MIGRATION_PATTERN.match(entry.name)
        if match and entry.is_file():
            migrations.append((match.group(1), entry.name, entry))

    return migrations


async def get_applied_versions(conn: asyncpg.Connection) -> Set[str]:
    """Get the set of already-applied migration versions."""
    rows = await conn.fetch("SELECT version FROM schema_migrations")
    return {row["version"] for row in rows}


async def apply_migration(
    conn: asyncpg.Connection, version: str, filename: str, path: Path
) -> None:
    """
    Apply a single migration in its own transaction.

    Args:
        conn: Connection holding the migration lock.
        version: Migration version string (e.g. "001").
        filename: Migration filename for audit trail.
        path: Full path to the SQL file.
    """
    sql = path.read_text(encoding="utf-8")

    async with conn.transaction():
        await conn.execute(sql)
        await conn.execute(
            "INSERT INTO schema_migrations (version, filename) VALUES ($1, $2)",
            version,
            filename,
        )

    logger.info(f"Applied migration {filename}")


async def run_migrations(
    pool: asyncpg.Pool, directory: Optional[Path] = None
) -> int:
    """
    Apply all pending migrations in order under the migration lock.

    Args:
        pool: An asyncpg connection pool (must already be connected).
        directory: Migrations directory; defaults to MIGRATIONS_DIR

    Returns:
        Number of migrations applied.

    Raises:
        FileNotFoundError: If the migrations directory is missing.
        asyncpg.PostgresError: If a migration fails (it is rolled back;
            previously applied migrations remain).
    """
    all_migrations = discover_migrations(directory)
    if not all_migrations:
        logger.info("No migration files found")
        return 0

    async with pool.acquire() as conn:
        await conn.execute("SELECT pg_advisory_lock($1)", MIGRATION_LOCK_KEY)
        try:
            await ensure_migration_table(conn)
            applied = await get_applied_versions(conn)
            pending = [m for m in all_migrations if m[0] not in applied]

            if not pending:
                logger.info("Database schema is up to date")
                return 0

            logger.info(f"Applying {len(pending)} pending migration(s)")
            for version, filename, path in pending:
                await apply_migration(conn, version, filename, path)
        finally:
            await conn.execute("SELECT pg_advisory_unlock($1)", MIGRATION_LOCK_KEY)

    logger.info(f"Successfully applied {len(pending)} migration(s)")
    return len(pending)
