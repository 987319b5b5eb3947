"""
Migration domain models.

These models represent migrations, ledger entries, run results and status rows.
"""
import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

# Minimum width when displaying versions; timestamps are already wider
IDENTITY_WIDTH = 4


class Direction(str, Enum):
    """Direction a migration is run in."""
    UP = "up"
    DOWN = "down"


class MigrationState(str, Enum):
    """State of a migration as reported by status."""
    APPLIED = "applied"
    PENDING = "pending"
    MISSING = "missing"  # In the ledger, gone from the source
    MODIFIED = "modified"  # Applied, but the up script changed since


def compute_checksum(text: str) -> str:
    """SHA-384 hex digest of a migration's raw up script."""
    return hashlib.sha384(text.encode("utf-8")).hexdigest()


def format_identity(version: int) -> str:
    """Zero-padded display form of a version."""
    return str(version).zfill(IDENTITY_WIDTH)


@dataclass(frozen=True)
class Migration:
    """One migration: an identity plus up and down statement bodies.

    ``version`` is the only ordering key. An empty ``down`` marks the migration
    as irreversible.
    """
    version: int
    label: str
    up: tuple[str, ...]
    down: tuple[str, ...] = ()
    checksum: str = ""
    source: Optional[Path] = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if self.version < 0:
            raise ValueError(f"version must be non-negative, got {self.version}")
        if not self.up:
            raise ValueError(f"migration {self.version} has no up statements")
        if not self.checksum:
            object.__setattr__(self, "checksum", compute_checksum(";\n".join(self.up)))

    @property
    def identity(self) -> str:
        return format_identity(self.version)

    @property
    def reversible(self) -> bool:
        return len(self.down) > 0

    @property
    def display_name(self) -> str:
        """Human-readable name for logs."""
        return f"{self.identity}_{self.label}"

    def statements(self, direction: Direction) -> tuple[str, ...]:
        return self.up if direction == Direction.UP else self.down


@dataclass(frozen=True)
class LedgerEntry:
    """A row of the version ledger: one applied migration."""
    version: int
    label: str
    checksum: str
    applied_at: datetime
    execution_ms: int = 0

    @property
    def identity(self) -> str:
        return format_identity(self.version)


@dataclass
class AppliedResult:
    """Outcome of one committed migration in a run."""
    version: int
    label: str
    direction: Direction
    execution_ms: int

    @property
    def identity(self) -> str:
        return format_identity(self.version)


@dataclass
class RunReport:
    """Results of a migration run, in execution order."""
    direction: Direction
    planned: list[Migration] = field(default_factory=list)
    results: list[AppliedResult] = field(default_factory=list)
    dry_run: bool = False

    @property
    def count(self) -> int:
        return len(self.results)

    @property
    def versions(self) -> list[int]:
        return [r.version for r in self.results]

    @property
    def complete(self) -> bool:
        """True when every planned migration committed (or dry run)."""
        return self.dry_run or len(self.results) == len(self.planned)


@dataclass
class MigrationStatus:
    """Status row for one migration version."""
    version: int
    label: str
    state: MigrationState
    applied_at: Optional[datetime] = None
    reversible: Optional[bool] = None

    @property
    def identity(self) -> str:
        return format_identity(self.version)
