"""SQLite connection lifecycle, migrations, and write transactions.

One aiosqlite connection is shared by the whole process (web app or CLI
command). Scan workers write concurrently from many coroutines, so writes
that span several statements go through ``transaction()``, which serializes
them behind an asyncio lock and commits or rolls back as a unit.
"""

import asyncio
import contextlib
import datetime
import logging
from collections.abc import AsyncIterator
from pathlib import Path
from types import TracebackType
from typing import Final

import aiosqlite

logger = logging.getLogger(__name__)

_MIGRATIONS_DIR: Final[Path] = Path(__file__).parent / "migrations"
_BUSY_TIMEOUT_MS: Final[int] = 5000
_MEMORY_PATH: Final[str] = ":memory:"


class Database:
    """Async SQLite database with migrations and serialized write transactions.

    Usage::

        async with Database("data/market_sweep.db") as db:
            async with db.transaction() as conn:
                await conn.execute("INSERT ...", params)
    """

    def __init__(self, db_path: str = "data/market_sweep.db") -> None:
        self._db_path = db_path
        self._connection: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    @property
    def path(self) -> str:
        return self._db_path

    @property
    def connection(self) -> aiosqlite.Connection:
        """Return the active connection or raise if not connected."""
        if self._connection is None:
            msg = "Database is not connected. Call connect() or use 'async with'."
            raise RuntimeError(msg)
        return self._connection

    @property
    def is_connected(self) -> bool:
        return self._connection is not None

    async def connect(self) -> None:
        """Open the connection, apply pragmas, and run pending migrations."""
        if self._db_path != _MEMORY_PATH:
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._connection = await aiosqlite.connect(self._db_path)
        await self._connection.execute("PRAGMA journal_mode=WAL")
        await self._connection.execute("PRAGMA synchronous=NORMAL")
        await self._connection.execute(f"PRAGMA busy_timeout={_BUSY_TIMEOUT_MS}")
        await self._connection.execute("PRAGMA foreign_keys=ON")
        await self._run_migrations()
        logger.info("Database connected: %s", self._db_path)

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            logger.info("Database closed: %s", self._db_path)

    async def __aenter__(self) -> "Database":
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    @contextlib.asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run a group of writes atomically, one group at a time.

        Commits when the block exits normally and rolls back if it raises.
        """
        conn = self.connection
        async with self._write_lock:
            try:
                yield conn
            except BaseException:
                await conn.rollback()
                raise
            await conn.commit()

    async def applied_versions(self) -> list[int]:
        """Migration versions recorded in ``schema_version``, ascending."""
        cursor = await self.connection.execute(
            "SELECT version FROM schema_version ORDER BY version"
        )
        rows = await cursor.fetchall()
        return [row[0] for row in rows]

    async def _run_migrations(self) -> None:
        """Apply pending NNN_description.sql files in version order.

        Applied versions are recorded in ``schema_version``; running twice is
        a no-op.
        """
        conn = self.connection
        await conn.execute(
            "CREATE TABLE IF NOT EXISTS schema_version "
            "(version INTEGER PRIMARY KEY, applied_at TEXT NOT NULL)"
        )
        await conn.commit()

        applied = set(await self.applied_versions())
        for migration_file in sorted(_MIGRATIONS_DIR.glob("*.sql")):
            version = int(migration_file.name.split("_", 1)[0])
            if version in applied:
                continue

            logger.info("Applying migration %03d: %s", version, migration_file.name)
            # executescript() commits per statement; a partial failure leaves the
            # version unrecorded so the file is retried on the next connect.
            await conn.executescript(migration_file.read_text(encoding="utf-8"))
            await conn.execute(
                "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                (version, datetime.datetime.now(datetime.UTC).isoformat()),
            )
            await conn.commit()
