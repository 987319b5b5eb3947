"""Planner - decides which migrations to run, in which order.

The ledger is read fresh on every call; nothing about the database's
version state is cached between plans.

- Forward plans are oldest first: later migrations may depend on schema
  created by earlier ones.
- Reverse plans are newest first: undoing the newest change first keeps
  every down script running against the schema it was written for.
"""

from typing import Optional, Sequence

import structlog

from portunus.core.errors import ChecksumMismatchError, UnknownAppliedMigrationError
from portunus.domain.migration import (
    LedgerEntry,
    Migration,
    MigrationState,
    MigrationStatus,
)
from portunus.services.ledger import VersionLedger

log = structlog.get_logger()


class Planner:
    """Diffs the migration source against the ledger.

    Args:
        migrations: Every migration from the source.
        ledger: Ledger of the target database.
        validate_checksums: Refuse to plan while an applied migration's up
            script differs from what was applied.
    """

    def __init__(
        self,
        migrations: Sequence[Migration],
        ledger: VersionLedger,
        validate_checksums: bool = True,
    ):
        self._migrations = sorted(migrations, key=lambda m: m.version)
        self._by_version = {m.version: m for m in self._migrations}
        self._ledger = ledger
        self._validate_checksums = validate_checksums
        self._log = log.bind(component="planner")

    @property
    def migrations(self) -> list[Migration]:
        return list(self._migrations)

    def _check_checksums(self, applied: dict[int, LedgerEntry]) -> None:
        if not self._validate_checksums:
            return
        for version, entry in applied.items():
            migration = self._by_version.get(version)
            if migration is not None and migration.checksum != entry.checksum:
                raise ChecksumMismatchError(version, entry.checksum, migration.checksum)

    async def pending_up(self, limit: Optional[int] = None) -> list[Migration]:
        """Unapplied migrations, ascending by version.

        Args:
            limit: Return at most this many (None for all).
        """
        applied = await self._ledger.applied()
        self._check_checksums(applied)

        missing = sorted(v for v in applied if v not in self._by_version)
        if missing:
            self._log.warning("applied_migrations_missing_from_source", versions=missing)

        pending = [m for m in self._migrations if m.version not in applied]

        newest_applied = max(applied) if applied else None
        if newest_applied is not None:
            late = [m.version for m in pending if m.version < newest_applied]
            if late:
                self._log.warning(
                    "out_of_order_migration",
                    versions=late,
                    newest_applied=newest_applied,
                )

        if limit is not None:
            pending = pending[:max(limit, 0)]
        return pending

    async def pending_down(self, n: Optional[int] = 1) -> list[Migration]:
        """The ``n`` newest applied migrations, descending by version.

        ``n=None`` selects every applied migration.

        Raises:
            UnknownAppliedMigrationError: a selected ledger entry has no
                migration in the source.
        """
        if n is not None and n <= 0:
            return []

        applied = await self._ledger.applied()
        self._check_checksums(applied)

        selected = sorted(applied, reverse=True)
        if n is not None:
            selected = selected[:n]
        plan = []
        for version in selected:
            migration = self._by_version.get(version)
            if migration is None:
                raise UnknownAppliedMigrationError(version)
            plan.append(migration)
        return plan

    async def status(self) -> list[MigrationStatus]:
        """One row per version known to the source or the ledger, ascending."""
        applied = await self._ledger.applied()
        rows = []
        for version in sorted(set(applied) | set(self._by_version)):
            migration = self._by_version.get(version)
            entry = applied.get(version)

            if entry is None:
                state = MigrationState.PENDING
            elif migration is None:
                state = MigrationState.MISSING
            elif migration.checksum != entry.checksum:
                state = MigrationState.MODIFIED
            else:
                state = MigrationState.APPLIED

            rows.append(
                MigrationStatus(
                    version=version,
                    label=migration.label if migration else entry.label,
                    state=state,
                    applied_at=entry.applied_at if entry else None,
                    reversible=migration.reversible if migration else None,
                )
            )
        return rows
