"""SQLite adapter built on aiosqlite.

The connection is opened in autocommit mode (``isolation_level=None``) so the
engine's explicit BEGIN/COMMIT/ROLLBACK are the only transaction boundaries.
SQLite DDL is transactional, so a failed migration leaves no partial schema.

The cross-process lock is a row in a small lock table. A crashed process can
leave its row behind; ``lock_stale_after_seconds`` lets a later run break it.
The holder refreshes ``acquired_at`` with every migration it commits, and a
row whose owner is a live process on this host is never broken.
"""

import os
import socket
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional, Sequence

import aiosqlite
import structlog

from portunus.core.errors import ConnectionFailedError, DatabaseError
from portunus.db.base import Database

log = structlog.get_logger()

MEMORY = ":memory:"
DEFAULT_LOCK_TABLE = "_portunus_lock"

LOCK_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS {table} (
    name TEXT PRIMARY KEY,
    owner TEXT NOT NULL,
    acquired_at TEXT NOT NULL
)
"""


def _timestamp(moment: datetime) -> str:
    # Fixed width so timestamps compare correctly as text
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def owner_alive(owner: str) -> Optional[bool]:
    """Whether the process named by a ``host:pid:token`` owner is running.

    None when that cannot be told: another host, or an unrecognised owner.
    """
    parts = owner.split(":")
    if len(parts) != 3 or parts[0] != socket.gethostname() or not parts[1].isdigit():
        return None
    try:
        os.kill(int(parts[1]), 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return None
    return True


class SQLiteDatabase(Database):
    """Single aiosqlite connection with explicit transactions."""

    dialect = "sqlite"

    def __init__(
        self,
        db_path: str,
        busy_timeout_ms: int = 5000,
        lock_stale_after_seconds: Optional[float] = None,
        lock_table: str = DEFAULT_LOCK_TABLE,
    ):
        """Initialize the adapter.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
            busy_timeout_ms: How long a statement waits on another writer.
            lock_stale_after_seconds: Break lock rows not refreshed for this
                long, unless their owner is still running on this host.
            lock_table: Name of the lock table.
        """
        self._db_path = db_path
        self._busy_timeout_ms = busy_timeout_ms
        self._lock_stale_after = lock_stale_after_seconds
        self._lock_table = lock_table
        self._connection: Optional[aiosqlite.Connection] = None
        self._in_transaction = False
        self._log = log.bind(component="sqlite", db_path=db_path)

    @property
    def db_path(self) -> str:
        return self._db_path

    @property
    def name(self) -> str:
        if self._db_path == MEMORY:
            return "memory"
        return Path(self._db_path).stem

    @property
    def is_connected(self) -> bool:
        return self._connection is not None

    @property
    def in_transaction(self) -> bool:
        return self._in_transaction

    def _conn(self) -> aiosqlite.Connection:
        if self._connection is None:
            raise RuntimeError("SQLite database not connected")
        return self._connection

    async def connect(self) -> None:
        """Connect to the database."""
        if self._connection is not None:
            return

        try:
            if self._db_path != MEMORY:
                Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)

            self._connection = await aiosqlite.connect(self._db_path, isolation_level=None)

            # WAL lets readers proceed while a migration transaction writes
            await self._connection.execute("PRAGMA journal_mode=WAL")
            await self._connection.execute(f"PRAGMA busy_timeout={int(self._busy_timeout_ms)}")
        except (sqlite3.Error, OSError) as e:
            self._connection = None
            raise ConnectionFailedError(f"Cannot open SQLite database {self._db_path}", e) from e

        self._log.debug("sqlite_connected")

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            self._in_transaction = False
            self._log.debug("sqlite_closed")

    async def execute(self, statement: str, params: Sequence[Any] = ()) -> int:
        conn = self._conn()
        try:
            async with conn.execute(statement, tuple(params)) as cursor:
                return max(cursor.rowcount, 0)
        except sqlite3.Error as e:
            raise DatabaseError(str(e), e) from e

    async def fetch_all(self, statement: str, params: Sequence[Any] = ()) -> list[tuple]:
        conn = self._conn()
        try:
            async with conn.execute(statement, tuple(params)) as cursor:
                rows = await cursor.fetchall()
        except sqlite3.Error as e:
            raise DatabaseError(str(e), e) from e
        return [tuple(row) for row in rows]

    async def table_exists(self, table: str) -> bool:
        schema, _, name = table.rpartition(".")
        catalog = f"{schema}.sqlite_master" if schema else "sqlite_master"
        rows = await self.fetch_all(
            f"SELECT 1 FROM {catalog} WHERE type = 'table' AND name = ?",
            (name,),
        )
        return bool(rows)

    async def begin(self) -> None:
        if self._in_transaction:
            raise RuntimeError("Transaction already in progress")
        # IMMEDIATE takes the write lock up front instead of upgrading mid-migration
        await self.execute("BEGIN IMMEDIATE")
        self._in_transaction = True

    async def commit(self) -> None:
        if not self._in_transaction:
            raise RuntimeError("No transaction in progress")
        await self.execute("COMMIT")
        self._in_transaction = False

    async def rollback(self) -> None:
        if not self._in_transaction:
            return
        try:
            if self._conn().in_transaction:
                await self.execute("ROLLBACK")
        finally:
            self._in_transaction = False

    async def _ensure_lock_table(self) -> None:
        await self.execute(LOCK_TABLE_SQL.format(table=self._lock_table))

    async def _break_stale_lock(self, name: str) -> None:
        if self._lock_stale_after is None:
            return

        cutoff = _timestamp(_utcnow() - timedelta(seconds=self._lock_stale_after))
        rows = await self.fetch_all(
            f"SELECT owner, acquired_at FROM {self._lock_table} WHERE name = ? AND acquired_at < ?",
            (name, cutoff),
        )
        for owner, acquired_at in rows:
            if owner_alive(owner):
                self._log.info("lock_holder_alive", lock=name, holder=owner, acquired_at=acquired_at)
                continue

            # Match acquired_at too: a refresh since the SELECT keeps the row
            broken = await self.execute(
                f"DELETE FROM {self._lock_table} WHERE name = ? AND owner = ? AND acquired_at = ?",
                (name, owner, acquired_at),
            )
            if broken:
                self._log.warning(
                    "stale_lock_broken",
                    lock=name,
                    previous_owner=owner,
                    acquired_at=acquired_at,
                    stale_after_seconds=self._lock_stale_after,
                )

    async def try_lock(self, name: str, owner: str) -> bool:
        try:
            await self._ensure_lock_table()
            await self._break_stale_lock(name)
            await self.execute(
                f"INSERT INTO {self._lock_table} (name, owner, acquired_at) VALUES (?, ?, ?)",
                (name, owner, _timestamp(_utcnow())),
            )
        except DatabaseError as e:
            if isinstance(e.cause, sqlite3.IntegrityError):
                return False
            if isinstance(e.cause, sqlite3.OperationalError) and "locked" in str(e.cause):
                # Another process is mid-write (possibly mid-migration)
                return False
            raise
        return True

    async def refresh_lock(self, name: str, owner: str) -> bool:
        refreshed = await self.execute(
            f"UPDATE {self._lock_table} SET acquired_at = ? WHERE name = ? AND owner = ?",
            (_timestamp(_utcnow()), name, owner),
        )
        return refreshed > 0

    async def unlock(self, name: str, owner: str) -> None:
        await self._ensure_lock_table()
        await self.execute(
            f"DELETE FROM {self._lock_table} WHERE name = ? AND owner = ?",
            (name, owner),
        )

    async def lock_holder(self, name: str) -> Optional[str]:
        if not await self.table_exists(self._lock_table):
            return None
        rows = await self.fetch_all(
            f"SELECT owner FROM {self._lock_table} WHERE name = ?",
            (name,),
        )
        return rows[0][0] if rows else None
