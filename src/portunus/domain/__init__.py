"""Domain models - pure data structures with no I/O dependencies."""

from portunus.domain.migration import (
    AppliedResult,
    Direction,
    LedgerEntry,
    Migration,
    MigrationState,
    MigrationStatus,
    RunReport,
    compute_checksum,
    format_identity,
)

__all__ = [
    "AppliedResult",
    "Direction",
    "LedgerEntry",
    "Migration",
    "MigrationState",
    "MigrationStatus",
    "RunReport",
    "compute_checksum",
    "format_identity",
]
