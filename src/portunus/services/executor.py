"""Executor - runs migrations inside transactions.

Each migration is one transaction: its statements, then its ledger update,
then COMMIT. Any failure - a statement error, the ledger write, COMMIT itself,
or cancellation - rolls the whole transaction back, so no partial migration
and no ledger row for an uncommitted change can survive.

Runs are fail-fast: the first failing migration stops the run. Migrations
committed earlier in the run stay committed and recorded.
"""

import time
from typing import Any, Awaitable, Callable, Optional, Sequence

import structlog

from portunus.core.errors import (
    DatabaseError,
    IrreversibleMigrationError,
    MigrationApplyError,
)
from portunus.db.base import Database
from portunus.domain.migration import AppliedResult, Direction, Migration, RunReport
from portunus.services.ledger import VersionLedger

log = structlog.get_logger()

LEDGER_STEP = "<ledger update>"
COMMIT_STEP = "COMMIT"


class Executor:
    """Applies and reverts migrations against one database.

    Args:
        database: Connected database.
        ledger: Ledger stored in the same database.
        dry_run: Log what would run without executing anything.
        heartbeat: Awaited inside every migration transaction before the
            ledger update; an error from it rolls the migration back.
    """

    def __init__(
        self,
        database: Database,
        ledger: VersionLedger,
        dry_run: bool = False,
        heartbeat: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self._db = database
        self._ledger = ledger
        self._dry_run = dry_run
        self._heartbeat = heartbeat
        self._log = log.bind(component="executor")

    @property
    def dry_run(self) -> bool:
        return self._dry_run

    async def apply_one(self, migration: Migration) -> AppliedResult:
        """Apply ``migration`` and record it, atomically.

        Raises:
            MigrationApplyError: a statement failed; nothing was kept.
        """
        return await self._run(migration, Direction.UP)

    async def revert_one(self, migration: Migration) -> AppliedResult:
        """Revert ``migration`` and remove its record, atomically.

        Raises:
            IrreversibleMigrationError: the migration has no down statements.
            MigrationApplyError: a statement failed; nothing was kept.
        """
        if not migration.reversible:
            raise IrreversibleMigrationError(migration.version, migration.label)
        return await self._run(migration, Direction.DOWN)

    async def apply_all(self, plan: Sequence[Migration]) -> RunReport:
        """Apply ``plan`` in order, stopping at the first failure."""
        return await self._run_all(plan, Direction.UP)

    async def revert_all(self, plan: Sequence[Migration]) -> RunReport:
        """Revert ``plan`` in order, stopping at the first failure."""
        return await self._run_all(plan, Direction.DOWN)

    async def _run_all(self, plan: Sequence[Migration], direction: Direction) -> RunReport:
        report = RunReport(direction=direction, planned=list(plan), dry_run=self._dry_run)

        if self._dry_run:
            for migration in plan:
                self._log.info(
                    "dry_run_migration",
                    direction=direction.value,
                    version=migration.version,
                    label=migration.label,
                    statements=len(migration.statements(direction)),
                )
            return report

        step = self.apply_one if direction == Direction.UP else self.revert_one
        for migration in plan:
            report.results.append(await step(migration))
        return report

    async def _run(self, migration: Migration, direction: Direction) -> AppliedResult:
        statements = migration.statements(direction)
        log_ctx = {"version": migration.version, "label": migration.label, "direction": direction.value}
        self._log.info("running_migration", statements=len(statements), **log_ctx)

        started = time.perf_counter()
        await self._db.begin()
        try:
            for index, statement in enumerate(statements):
                await self._step(migration, direction, statement, index, self._db.execute(statement))

            if self._heartbeat is not None:
                await self._heartbeat()

            execution_ms = int((time.perf_counter() - started) * 1000)
            if direction == Direction.UP:
                ledger_write = self._ledger.record_applied(migration, execution_ms)
            else:
                ledger_write = self._ledger.record_reverted(migration.version)
            await self._step(migration, direction, LEDGER_STEP, len(statements), ledger_write)
            await self._step(migration, direction, COMMIT_STEP, len(statements), self._db.commit())
        except BaseException as e:
            await self._rollback(e, log_ctx)
            raise

        self._log.info("migration_committed", execution_ms=execution_ms, **log_ctx)
        return AppliedResult(
            version=migration.version,
            label=migration.label,
            direction=direction,
            execution_ms=execution_ms,
        )

    @staticmethod
    async def _step(
        migration: Migration,
        direction: Direction,
        statement: str,
        index: int,
        awaitable: Awaitable[Any],
    ) -> Any:
        try:
            return await awaitable
        except DatabaseError as e:
            raise MigrationApplyError(
                version=migration.version,
                label=migration.label,
                statement=statement,
                statement_index=index,
                cause=e.cause or e,
                direction=direction.value,
            ) from e

    async def _rollback(self, error: BaseException, log_ctx: dict) -> None:
        try:
            await self._db.rollback()
        except Exception as rollback_error:
            # The original error is what the caller needs to see
            self._log.error("rollback_failed", error=str(rollback_error), **log_ctx)

        if isinstance(error, MigrationApplyError):
            self._log.error(
                "migration_failed",
                statement_index=error.statement_index,
                statement=error.statement,
                error=str(error.cause),
                **log_ctx,
            )
        elif isinstance(error, Exception):
            self._log.error("migration_failed", error=str(error), **log_ctx)
        else:
            self._log.warning("migration_interrupted", **log_ctx)
