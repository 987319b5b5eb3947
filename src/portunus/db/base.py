"""
Database access interface consumed by the migration engine.

The engine issues author-supplied statement text and only distinguishes
success from failure. Adapters translate driver errors into DatabaseError,
keeping the driver exception as ``cause``.
"""
from abc import ABC, abstractmethod
from typing import Any, Optional, Sequence


class Database(ABC):
    """Async database connection with explicit transaction control.

    One Database wraps one connection (one session); the engine is single
    threaded, so no pooling is needed. Parameters use ``?`` placeholders.
    """

    dialect: str = "generic"

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether connect() succeeded and close() has not been called."""

    @property
    @abstractmethod
    def in_transaction(self) -> bool:
        """Whether begin() was called without a matching commit/rollback."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Database name, used to derive the default lock key."""

    @abstractmethod
    async def connect(self) -> None:
        """Open the connection. Raises ConnectionFailedError on failure."""

    @abstractmethod
    async def close(self) -> None:
        """Close the connection. Safe to call twice."""

    @abstractmethod
    async def execute(self, statement: str, params: Sequence[Any] = ()) -> int:
        """Execute one statement and return the number of rows affected."""

    @abstractmethod
    async def fetch_all(self, statement: str, params: Sequence[Any] = ()) -> list[tuple]:
        """Execute a query and return all rows as tuples."""

    @abstractmethod
    async def table_exists(self, table: str) -> bool:
        """Whether ``table`` (optionally schema-qualified) exists."""

    @abstractmethod
    async def begin(self) -> None:
        """Start a transaction."""

    @abstractmethod
    async def commit(self) -> None:
        """Commit the current transaction."""

    @abstractmethod
    async def rollback(self) -> None:
        """Roll back the current transaction. No-op outside a transaction."""

    @abstractmethod
    async def try_lock(self, name: str, owner: str) -> bool:
        """Try once to take the named cross-process lock.

        Returns True if this connection now holds it, False if another
        session does.
        """

    @abstractmethod
    async def unlock(self, name: str, owner: str) -> None:
        """Release the named lock if this connection holds it."""

    async def refresh_lock(self, name: str, owner: str) -> bool:
        """Mark the held lock as still in use.

        Returns False if ``owner`` no longer holds it. Session-scoped locks
        cannot go stale, so the default only reports success.
        """
        return True

    async def lock_holder(self, name: str) -> Optional[str]:
        """Owner of the named lock, when the database records one."""
        return None

    async def __aenter__(self) -> "Database":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.dialect}:{self.name}>"
