"""Version Ledger - which migrations are applied, stored in the target database.

One row per applied migration. Rows are inserted and deleted only by the
Executor, inside the same transaction as the migration's statements, so the
ledger never disagrees with the schema.
"""

import re
from datetime import datetime, timezone
from typing import Optional

import structlog

from portunus.core.errors import ConfigurationError
from portunus.db.base import Database
from portunus.domain.migration import LedgerEntry, Migration

log = structlog.get_logger()

DEFAULT_TABLE = "_portunus_migrations"

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")

LEDGER_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS {table} (
    version BIGINT PRIMARY KEY,
    label TEXT NOT NULL,
    checksum TEXT NOT NULL,
    applied_at TEXT NOT NULL,
    execution_ms BIGINT NOT NULL DEFAULT 0
)
"""


def _parse_timestamp(value: object) -> datetime:
    if isinstance(value, datetime):
        moment = value
    else:
        moment = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


class VersionLedger:
    """Reads and writes the ledger table.

    Args:
        database: Connected database.
        table: Ledger table name; may be schema-qualified ("ops.migrations").
    """

    def __init__(self, database: Database, table: str = DEFAULT_TABLE):
        if not _IDENTIFIER.match(table):
            raise ConfigurationError(f"Invalid ledger table name: {table!r}")
        self._db = database
        self._table = table
        self._initialized = False
        self._log = log.bind(component="ledger", table=table)

    @property
    def table(self) -> str:
        return self._table

    async def ensure_initialized(self) -> None:
        """Create the ledger table if it does not exist. Idempotent."""
        await self._db.execute(LEDGER_SCHEMA_SQL.format(table=self._table))
        self._initialized = True

    async def exists(self) -> bool:
        """Whether the ledger table exists. Creates nothing."""
        if not self._initialized:
            self._initialized = await self._db.table_exists(self._table)
        return self._initialized

    async def applied(self) -> dict[int, LedgerEntry]:
        """Applied migrations keyed by version, ascending.

        A database that was never migrated has no ledger table yet; that
        reads as an empty ledger.
        """
        if not await self.exists():
            return {}
        rows = await self._db.fetch_all(
            f"SELECT version, label, checksum, applied_at, execution_ms "
            f"FROM {self._table} ORDER BY version ASC"
        )
        entries = {}
        for version, label, checksum, applied_at, execution_ms in rows:
            entries[int(version)] = LedgerEntry(
                version=int(version),
                label=label,
                checksum=checksum,
                applied_at=_parse_timestamp(applied_at),
                execution_ms=int(execution_ms or 0),
            )
        return entries

    async def applied_versions(self) -> set[int]:
        return set(await self.applied())

    def _require_transaction(self, operation: str) -> None:
        if not self._db.in_transaction:
            raise RuntimeError(f"{operation} must run inside the migration's transaction")

    async def record_applied(
        self,
        migration: Migration,
        execution_ms: int = 0,
        applied_at: Optional[datetime] = None,
    ) -> LedgerEntry:
        """Insert the ledger row for ``migration``. Transaction required."""
        self._require_transaction("record_applied")
        entry = LedgerEntry(
            version=migration.version,
            label=migration.label,
            checksum=migration.checksum,
            applied_at=applied_at or datetime.now(timezone.utc),
            execution_ms=execution_ms,
        )
        await self._db.execute(
            f"INSERT INTO {self._table} (version, label, checksum, applied_at, execution_ms) "
            f"VALUES (?, ?, ?, ?, ?)",
            (
                entry.version,
                entry.label,
                entry.checksum,
                entry.applied_at.isoformat(),
                entry.execution_ms,
            ),
        )
        return entry

    async def record_reverted(self, version: int) -> None:
        """Delete the ledger row for ``version``. Transaction required."""
        self._require_transaction("record_reverted")
        deleted = await self._db.execute(
            f"DELETE FROM {self._table} WHERE version = ?",
            (version,),
        )
        if deleted != 1:
            self._log.warning("ledger_row_not_found", version=version, deleted=deleted)
