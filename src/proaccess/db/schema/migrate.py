"""Forward-only migration runner and schema version helper."""

import asyncio
import logging
from pathlib import Path
from typing import Optional

import asyncpg

from proaccess.db.models import Table
from proaccess.db.pool import close_pool, get_pool

logger = logging.getLogger(__name__)

# Arbitrary application-wide key for pg_try_advisory_lock
MIGRATION_LOCK_ID = 731_004

MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"


def migration_files(migrations_dir: Path) -> list[tuple[int, Path]]:
    """
    Migration scripts in ``migrations_dir`` ordered by version.

    Files are named ``NNN_description.sql``; anything without a numeric
    prefix is ignored.

    Raises:
        ValueError: If two files share a version number
    """
    found: dict[int, Path] = {}
    for sql_file in migrations_dir.glob("*.sql"):
        prefix = sql_file.stem.split("_", 1)[0]
        if not prefix.isdigit():
            continue

        version = int(prefix)
        if version in found:
            raise ValueError(
                f"Duplicate migration version {version}: {found[version].name}, {sql_file.name}"
            )
        found[version] = sql_file

    return sorted(found.items())


async def _applied_versions(conn: asyncpg.Connection) -> set[int]:
    await conn.execute(f"""
        CREATE TABLE IF NOT EXISTS {Table.SCHEMA_MIGRATIONS} (
            version INTEGER PRIMARY KEY,
            filename TEXT NOT NULL DEFAULT '',
            applied_at TIMESTAMPTZ DEFAULT now()
        )
    """)
    rows = await conn.fetch(f"SELECT version FROM {Table.SCHEMA_MIGRATIONS}")
    return {row["version"] for row in rows}


async def migrate(migrations_dir: Path = MIGRATIONS_DIR) -> int:
    """
    Apply all pending migrations in order.

    Each script runs in its own transaction together with its
    ``schema_migrations`` row, so a failing script leaves no trace and
    the next boot retries it. Replicas booting at the same time are
    serialized by an advisory lock.

    Returns:
        int: Number of migrations applied in this run

    Raises:
        FileNotFoundError: If migrations directory not found
        RuntimeError: If another migration run holds the lock
        asyncpg.PostgresError: On database errors
    """
    if not migrations_dir.is_dir():
        raise FileNotFoundError(f"Migrations directory not found: {migrations_dir}")

    files = migration_files(migrations_dir)
    pool = await get_pool()

    async with pool.acquire() as conn:
        if not await conn.fetchval("SELECT pg_try_advisory_lock($1)", MIGRATION_LOCK_ID):
            raise RuntimeError(
                "Another migration is currently running. "
                "Wait for it to complete and try again."
            )

        try:
            applied = await _applied_versions(conn)
            pending = [(v, path) for v, path in files if v not in applied]

            for version, sql_path in pending:
                async with conn.transaction():
                    # Without arguments asyncpg sends the whole script as one simple query
                    await conn.execute(sql_path.read_text(encoding="utf-8"))
                    await conn.execute(
                        f"INSERT INTO {Table.SCHEMA_MIGRATIONS} (version, filename) VALUES ($1, $2)",
                        version,
                        sql_path.name,
                    )
                logger.info(f"Applied migration {version:03d}: {sql_path.name}")

            return len(pending)

        finally:
            await conn.execute("SELECT pg_advisory_unlock($1)", MIGRATION_LOCK_ID)


async def schema_version() -> Optional[int]:
    """Highest applied migration version, or None on an empty database."""
    pool = await get_pool()

    async with pool.acquire() as conn:
        await _applied_versions(conn)
        return await conn.fetchval(f"SELECT MAX(version) FROM {Table.SCHEMA_MIGRATIONS}")


def main() -> None:
    """CLI entry point for running migrations."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    async def _run():
        try:
            applied = await migrate()
            version = await schema_version()
        finally:
            await close_pool()
        print(f"Applied {applied} migration(s). Current schema version: {version}")

    asyncio.run(_run())


if __name__ == "__main__":
    main()
