"""
Portunus migration runs - component wiring.

A run:
1. Load the migration source (pure; authoring errors stop here)
2. Connect to the database
3. Acquire the migration lock
4. Make sure the ledger exists
5. Plan against the ledger as it is now
6. Execute the plan, one transaction per migration
7. Release the lock (always, including on error and cancellation)

Planning happens under the lock so two processes never work from
diverging views of the ledger. Dry runs and status skip steps 3, 4 and 7
and write nothing to the database.
"""
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional, Sequence

import structlog

from portunus.core.config import (
    DEFAULT_DATABASE_URL,
    DEFAULT_LEDGER_TABLE,
    DEFAULT_LOCK_NAME,
    DEFAULT_LOCK_POLL_INTERVAL_SECONDS,
    DEFAULT_LOCK_TIMEOUT_SECONDS,
    DEFAULT_MIGRATIONS_PATH,
    ConfigManager,
)
from portunus.core.errors import IrreversibleMigrationError
from portunus.core.retry import RetryConfig
from portunus.db.base import Database
from portunus.db.factory import connect_database, resolve_database_url
from portunus.domain.migration import Direction, Migration, MigrationStatus, RunReport
from portunus.services.executor import Executor
from portunus.services.ledger import VersionLedger
from portunus.services.lock import LockCoordinator
from portunus.services.planner import Planner
from portunus.services.source import MigrationSource

log = structlog.get_logger()


class Migrator:
    """Runs migrations from one source against one database.

    Usage:
        async with await Migrator.from_config(config) as migrator:
            report = await migrator.up()

    Args:
        database: Connected database. Closed by close().
        migrations: Migrations loaded from the source.
        ledger_table: Ledger table name.
        lock_name: Name of the cross-process lock.
        lock_timeout_seconds: How long to wait for the lock (None: forever).
        lock_poll_interval_seconds: Delay between lock attempts.
        validate_checksums: Refuse to run if applied migrations were edited.
        dry_run: Plan and log, but execute nothing.
    """

    def __init__(
        self,
        database: Database,
        migrations: Sequence[Migration],
        *,
        ledger_table: str = DEFAULT_LEDGER_TABLE,
        lock_name: str = DEFAULT_LOCK_NAME,
        lock_timeout_seconds: Optional[float] = DEFAULT_LOCK_TIMEOUT_SECONDS,
        lock_poll_interval_seconds: float = DEFAULT_LOCK_POLL_INTERVAL_SECONDS,
        validate_checksums: bool = True,
        dry_run: bool = False,
    ):
        self._db = database
        self._ledger = VersionLedger(database, ledger_table)
        self._planner = Planner(migrations, self._ledger, validate_checksums=validate_checksums)
        self._lock = LockCoordinator(
            database,
            name=lock_name,
            timeout_seconds=lock_timeout_seconds,
            poll_interval_seconds=lock_poll_interval_seconds,
        )
        self._executor = Executor(database, self._ledger, dry_run=dry_run, heartbeat=self._lock.refresh)
        self._log = log.bind(component="migrator", database=database.name)

    @classmethod
    async def from_config(cls, config: ConfigManager, dry_run: bool = False) -> "Migrator":
        """Load the source and connect to the database described by ``config``."""
        migrations = MigrationSource(
            config.get_path("migrations.path", DEFAULT_MIGRATIONS_PATH),
            require_reversible=config.get_bool("migrations.require_reversible", False),
        ).load()

        lock_timeout = config.get_float("lock.timeout_seconds", DEFAULT_LOCK_TIMEOUT_SECONDS)
        if lock_timeout is not None and lock_timeout < 0:
            lock_timeout = None  # negative: wait forever

        database = await connect_database(
            resolve_database_url(
                str(config.get("database.url", DEFAULT_DATABASE_URL)),
                config.base_dir("database.url"),
            ),
            retry=RetryConfig(max_attempts=config.get_int("database.connect_attempts", 3)),
            lock_stale_after_seconds=config.get_float("lock.stale_after_seconds", None),
        )

        return cls(
            database,
            migrations,
            ledger_table=str(config.get("migrations.table", DEFAULT_LEDGER_TABLE)),
            lock_name=str(config.get("lock.name", DEFAULT_LOCK_NAME)),
            lock_timeout_seconds=lock_timeout,
            lock_poll_interval_seconds=config.get_float(
                "lock.poll_interval_seconds", DEFAULT_LOCK_POLL_INTERVAL_SECONDS
            ),
            validate_checksums=config.get_bool("migrations.validate_checksums", True),
            dry_run=dry_run,
        )

    @property
    def database(self) -> Database:
        return self._db

    @property
    def ledger(self) -> VersionLedger:
        return self._ledger

    @property
    def planner(self) -> Planner:
        return self._planner

    @property
    def executor(self) -> Executor:
        return self._executor

    @property
    def lock(self) -> LockCoordinator:
        return self._lock

    async def up(self, limit: Optional[int] = None) -> RunReport:
        """Apply pending migrations, oldest first.

        Args:
            limit: Apply at most this many (None for all).
        """
        async with self._guard():
            plan = await self._planner.pending_up(limit)
            return await self._execute(plan, Direction.UP)

    async def down(self, n: Optional[int] = 1) -> RunReport:
        """Revert the ``n`` newest applied migrations (None for all).

        Raises:
            IrreversibleMigrationError: before anything runs, if any planned
                migration has no down statements.
        """
        async with self._guard():
            plan = await self._planner.pending_down(n)
            for migration in plan:
                if not migration.reversible:
                    raise IrreversibleMigrationError(migration.version, migration.label)
            return await self._execute(plan, Direction.DOWN)

    async def status(self) -> list[MigrationStatus]:
        """Status of every known migration. Read-only; takes no lock."""
        return await self._planner.status()

    @asynccontextmanager
    async def _guard(self) -> AsyncIterator[None]:
        # Dry runs only read, so they neither lock nor create the ledger
        if self._executor.dry_run:
            yield
            return
        async with self._lock:
            await self._ledger.ensure_initialized()
            yield

    async def _execute(self, plan: list[Migration], direction: Direction) -> RunReport:
        if not plan:
            self._log.info("nothing_to_migrate", direction=direction.value)
            return RunReport(direction=direction, dry_run=self._executor.dry_run)

        self._log.info(
            "migration_run_started",
            direction=direction.value,
            planned=[m.display_name for m in plan],
        )
        if direction == Direction.UP:
            report = await self._executor.apply_all(plan)
        else:
            report = await self._executor.revert_all(plan)
        self._log.info(
            "migration_run_completed",
            direction=direction.value,
            count=report.count,
            dry_run=report.dry_run,
        )
        return report

    async def close(self) -> None:
        """Release the lock if still held and close the database."""
        await self._lock.release()
        await self._db.close()

    async def __aenter__(self) -> "Migrator":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
