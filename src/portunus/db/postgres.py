"""PostgreSQL adapter built on asyncpg.

The migration lock is a session-level advisory lock, so it is released by
the server if the process dies without unlocking. The lock key is derived
from the lock name the same way sqlx derives it from the database name.
"""

import re
import zlib
from typing import Any, Optional, Sequence

import structlog

from portunus.core.errors import ConnectionFailedError, DatabaseError
from portunus.db.base import Database

log = structlog.get_logger()

_QMARK = re.compile(r"\?")

# sqlx: 0x3d32ad9e * crc32(name); fits in a signed 64-bit integer
LOCK_KEY_MULTIPLIER = 0x3D32AD9E


def advisory_lock_key(name: str) -> int:
    """64-bit advisory lock key for a lock name."""
    return LOCK_KEY_MULTIPLIER * zlib.crc32(name.encode("utf-8"))


def to_numeric_params(statement: str) -> str:
    """Rewrite ``?`` placeholders to asyncpg's ``$1, $2, ...``.

    Only used for the engine's own ledger statements, which never contain a
    literal question mark. Migration bodies are executed without parameters.
    """
    counter = iter(range(1, 10_000))
    return _QMARK.sub(lambda _: f"${next(counter)}", statement)


def _rows_affected(status: str) -> int:
    # asyncpg returns the command tag, e.g. "INSERT 0 1" or "ALTER TABLE"
    last = status.rsplit(" ", 1)[-1] if status else ""
    return int(last) if last.isdigit() else 0


class PostgresDatabase(Database):
    """Single asyncpg connection with explicit transactions."""

    dialect = "postgresql"

    def __init__(self, dsn: str, connect_timeout: float = 10.0):
        """Initialize the adapter.

        Args:
            dsn: postgres:// or postgresql:// connection string.
            connect_timeout: Seconds to wait for the server.
        """
        self._dsn = dsn
        self._connect_timeout = connect_timeout
        self._connection: Any = None
        self._transaction: Any = None
        self._database_name: Optional[str] = None
        self._log = log.bind(component="postgres")

    @property
    def name(self) -> str:
        return self._database_name or "postgres"

    @property
    def is_connected(self) -> bool:
        return self._connection is not None

    @property
    def in_transaction(self) -> bool:
        return self._transaction is not None

    def _conn(self) -> Any:
        if self._connection is None:
            raise RuntimeError("PostgreSQL database not connected")
        return self._connection

    async def connect(self) -> None:
        if self._connection is not None:
            return

        import asyncpg

        try:
            self._connection = await asyncpg.connect(self._dsn, timeout=self._connect_timeout)
        except (OSError, asyncpg.PostgresError, TimeoutError) as e:
            raise ConnectionFailedError("Cannot connect to PostgreSQL", e) from e

        self._database_name = await self._connection.fetchval("SELECT current_database()")
        self._log.debug("postgres_connected", database=self._database_name)

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            self._transaction = None
            self._log.debug("postgres_closed")

    async def execute(self, statement: str, params: Sequence[Any] = ()) -> int:
        import asyncpg

        conn = self._conn()
        try:
            if params:
                status = await conn.execute(to_numeric_params(statement), *params)
            else:
                status = await conn.execute(statement)
        except asyncpg.PostgresError as e:
            raise DatabaseError(str(e), e) from e
        return _rows_affected(status)

    async def fetch_all(self, statement: str, params: Sequence[Any] = ()) -> list[tuple]:
        import asyncpg

        conn = self._conn()
        try:
            records = await conn.fetch(to_numeric_params(statement), *params)
        except asyncpg.PostgresError as e:
            raise DatabaseError(str(e), e) from e
        return [tuple(record) for record in records]

    async def table_exists(self, table: str) -> bool:
        # Unquoted identifiers are folded to lower case by the server
        schema, _, name = table.lower().rpartition(".")
        if schema:
            rows = await self.fetch_all(
                "SELECT 1 FROM information_schema.tables WHERE table_schema = ? AND table_name = ?",
                (schema, name),
            )
        else:
            rows = await self.fetch_all(
                "SELECT 1 FROM information_schema.tables "
                "WHERE table_schema = ANY(current_schemas(false)) AND table_name = ?",
                (name,),
            )
        return bool(rows)

    async def begin(self) -> None:
        if self._transaction is not None:
            raise RuntimeError("Transaction already in progress")
        transaction = self._conn().transaction()
        await transaction.start()
        self._transaction = transaction

    async def commit(self) -> None:
        if self._transaction is None:
            raise RuntimeError("No transaction in progress")
        transaction, self._transaction = self._transaction, None
        await transaction.commit()

    async def rollback(self) -> None:
        if self._transaction is None:
            return
        transaction, self._transaction = self._transaction, None
        await transaction.rollback()

    async def try_lock(self, name: str, owner: str) -> bool:
        rows = await self.fetch_all("SELECT pg_try_advisory_lock(?)", (advisory_lock_key(name),))
        return bool(rows and rows[0][0])

    async def unlock(self, name: str, owner: str) -> None:
        await self.fetch_all("SELECT pg_advisory_unlock(?)", (advisory_lock_key(name),))
