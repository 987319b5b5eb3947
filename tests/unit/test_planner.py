"""Unit tests for the Planner.

The ledger is mocked: the planner only ever reads ``applied()``.
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from portunus.core.errors import ChecksumMismatchError, UnknownAppliedMigrationError
from portunus.domain.migration import LedgerEntry, Migration, MigrationState
from portunus.services.planner import Planner

APPLIED_AT = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_migration(version: int, reversible: bool = True) -> Migration:
    return Migration(
        version=version,
        label=f"m{version}",
        up=(f"CREATE TABLE t{version} (id INTEGER)",),
        down=(f"DROP TABLE t{version}",) if reversible else (),
    )


def entry_for(migration: Migration, checksum: str = "") -> LedgerEntry:
    return LedgerEntry(
        version=migration.version,
        label=migration.label,
        checksum=checksum or migration.checksum,
        applied_at=APPLIED_AT,
    )


def mock_ledger(*entries: LedgerEntry) -> MagicMock:
    ledger = MagicMock()
    ledger.applied = AsyncMock(return_value={e.version: e for e in entries})
    return ledger


M1, M2, M3 = make_migration(1), make_migration(2), make_migration(3)


class TestPendingUp:
    """Tests for Planner.pending_up()."""

    @pytest.mark.asyncio
    async def test_everything_pending_ascending(self):
        """With an empty ledger every migration is pending, oldest first."""
        planner = Planner([M3, M1, M2], mock_ledger())
        assert await planner.pending_up() == [M1, M2, M3]

    @pytest.mark.asyncio
    async def test_applied_excluded(self):
        planner = Planner([M1, M2, M3], mock_ledger(entry_for(M1)))
        assert await planner.pending_up() == [M2, M3]

    @pytest.mark.asyncio
    async def test_nothing_pending(self):
        """A fully applied source plans nothing."""
        planner = Planner([M1, M2], mock_ledger(entry_for(M1), entry_for(M2)))
        assert await planner.pending_up() == []

    @pytest.mark.asyncio
    async def test_limit(self):
        planner = Planner([M1, M2, M3], mock_ledger())
        assert await planner.pending_up(limit=2) == [M1, M2]
        assert await planner.pending_up(limit=0) == []

    @pytest.mark.asyncio
    async def test_gap_below_newest_applied_is_planned(self):
        """A migration older than the newest applied one still runs."""
        planner = Planner([M1, M2, M3], mock_ledger(entry_for(M1), entry_for(M3)))
        assert await planner.pending_up() == [M2]

    @pytest.mark.asyncio
    async def test_missing_from_source_tolerated(self):
        """Applied versions no longer in the source do not block forward plans."""
        gone = make_migration(9)
        planner = Planner([M1, M2], mock_ledger(entry_for(M1), entry_for(gone)))
        assert await planner.pending_up() == [M2]

    @pytest.mark.asyncio
    async def test_checksum_mismatch(self):
        """An applied migration edited afterwards stops the plan."""
        planner = Planner([M1, M2], mock_ledger(entry_for(M1, checksum="0" * 96)))

        with pytest.raises(ChecksumMismatchError) as exc_info:
            await planner.pending_up()

        assert exc_info.value.version == 1
        assert exc_info.value.current == M1.checksum

    @pytest.mark.asyncio
    async def test_checksum_validation_disabled(self):
        planner = Planner(
            [M1, M2],
            mock_ledger(entry_for(M1, checksum="0" * 96)),
            validate_checksums=False,
        )
        assert await planner.pending_up() == [M2]

    @pytest.mark.asyncio
    async def test_ledger_read_on_every_call(self):
        """Plans are never computed from a cached ledger."""
        ledger = mock_ledger()
        planner = Planner([M1], ledger)

        await planner.pending_up()
        ledger.applied.return_value = {1: entry_for(M1)}

        assert await planner.pending_up() == []
        assert ledger.applied.await_count == 2


class TestPendingDown:
    """Tests for Planner.pending_down()."""

    @pytest.mark.asyncio
    async def test_default_reverts_newest(self):
        planner = Planner([M1, M2, M3], mock_ledger(entry_for(M1), entry_for(M2)))
        assert await planner.pending_down() == [M2]

    @pytest.mark.asyncio
    async def test_descending(self):
        """Reverse plans run newest first."""
        planner = Planner([M1, M2, M3], mock_ledger(entry_for(M1), entry_for(M2), entry_for(M3)))
        assert await planner.pending_down(2) == [M3, M2]

    @pytest.mark.asyncio
    async def test_none_means_all(self):
        planner = Planner([M1, M2], mock_ledger(entry_for(M1), entry_for(M2)))
        assert await planner.pending_down(None) == [M2, M1]

    @pytest.mark.asyncio
    async def test_more_than_applied(self):
        """Asking for more than is applied reverts what there is."""
        planner = Planner([M1, M2], mock_ledger(entry_for(M1)))
        assert await planner.pending_down(5) == [M1]

    @pytest.mark.asyncio
    async def test_zero_is_empty(self):
        ledger = mock_ledger(entry_for(M1))
        planner = Planner([M1], ledger)
        assert await planner.pending_down(0) == []

    @pytest.mark.asyncio
    async def test_empty_ledger(self):
        planner = Planner([M1], mock_ledger())
        assert await planner.pending_down() == []

    @pytest.mark.asyncio
    async def test_unknown_applied_version(self):
        """Reverting a version the source no longer has is an error."""
        gone = make_migration(9)
        planner = Planner([M1], mock_ledger(entry_for(M1), entry_for(gone)))

        with pytest.raises(UnknownAppliedMigrationError) as exc_info:
            await planner.pending_down()

        assert exc_info.value.version == 9

    @pytest.mark.asyncio
    async def test_unknown_version_outside_selection_ignored(self):
        """Only the selected entries need to exist in the source."""
        gone = make_migration(0)
        planner = Planner([M1], mock_ledger(entry_for(gone), entry_for(M1)))
        assert await planner.pending_down(1) == [M1]


class TestStatus:
    """Tests for Planner.status()."""

    @pytest.mark.asyncio
    async def test_states(self):
        """Every known version is reported with its state."""
        gone = make_migration(9)
        irreversible = make_migration(4, reversible=False)
        planner = Planner(
            [M1, M2, M3, irreversible],
            mock_ledger(entry_for(M1), entry_for(M2, checksum="f" * 96), entry_for(gone)),
        )

        rows = await planner.status()

        assert [(r.version, r.state) for r in rows] == [
            (1, MigrationState.APPLIED),
            (2, MigrationState.MODIFIED),
            (3, MigrationState.PENDING),
            (4, MigrationState.PENDING),
            (9, MigrationState.MISSING),
        ]
        assert rows[0].applied_at == APPLIED_AT
        assert rows[2].applied_at is None
        assert rows[3].reversible is False
        assert rows[4].label == "m9"
        assert rows[4].reversible is None

    @pytest.mark.asyncio
    async def test_status_does_not_raise_on_mismatch(self):
        """Status reports problems instead of refusing to run."""
        planner = Planner([M1], mock_ledger(entry_for(M1, checksum="0" * 96)))
        (row,) = await planner.status()
        assert row.state == MigrationState.MODIFIED
