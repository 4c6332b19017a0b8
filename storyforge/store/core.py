"""SQLite connection handling, transactions and timestamps.

Every store operation opens its own connection. Multi-statement work runs
inside ``Database.transaction()``, which issues ``BEGIN IMMEDIATE`` so the
write lock is taken up front: two concurrent spends for the same user are
serialized by SQLite (waiting up to ``busy_timeout_ms``) instead of both
reading the same balance.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path

import aiosqlite

from storyforge.errors import StoreError
from storyforge.store.schema import SCHEMA_SQL, SCHEMA_VERSION

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_db_time(value: datetime) -> str:
    """Fixed-width ISO-8601 so text ordering matches time ordering."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


class Database:
    def __init__(self, db_path: str | Path, *, busy_timeout_ms: int = 5000) -> None:
        self.db_path = Path(db_path)
        self.busy_timeout_ms = max(0, min(int(busy_timeout_ms), 60000))

    async def init(self) -> None:
        """Create the schema if needed. Safe to call on every startup."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        async with self.connect() as db:
            await db.execute("PRAGMA journal_mode=WAL")
            async with db.execute("PRAGMA user_version") as cursor:
                row = await cursor.fetchone()
            version = int(row[0]) if row else 0
            if version > SCHEMA_VERSION:
                raise StoreError(
                    "SQLite schema version mismatch (database is newer than this build). "
                    f"Found user_version={version}, supported={SCHEMA_VERSION}."
                )
            await db.executescript(SCHEMA_SQL)
            await db.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        logger.info("Database ready at %s (schema v%d)", self.db_path, SCHEMA_VERSION)

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[aiosqlite.Connection]:
        """Autocommit connection with rows addressable by column name."""
        try:
            async with aiosqlite.connect(self.db_path, isolation_level=None) as db:
                db.row_factory = aiosqlite.Row
                await db.execute("PRAGMA foreign_keys=ON")
                if self.busy_timeout_ms > 0:
                    await db.execute(f"PRAGMA busy_timeout={self.busy_timeout_ms}")
                yield db
        except aiosqlite.IntegrityError:
            raise
        except aiosqlite.DatabaseError as e:
            raise StoreError(f"Database operation failed: {e}") from e

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """One atomic unit: commit on normal exit, roll back on any exception."""
        async with self.connect() as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                yield db
            except BaseException:
                await db.execute("ROLLBACK")
                raise
            await db.execute("COMMIT")

    async def ping(self) -> None:
        async with self.connect() as db:
            await db.execute("SELECT 1")
