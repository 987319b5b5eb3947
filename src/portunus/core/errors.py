"""
Error type hierarchy for Portunus.

Errors are grouped by the phase that raises them:

- Source errors: the migration directory is wrong (authoring mistakes)
- Coordination errors: another run holds the lock
- Execution errors: a migration could not be applied or reverted
- Database errors: the adapter or driver failed

Only connection establishment is treated as transient; everything else is
surfaced to the caller verbatim and never retried.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class ErrorCategory(str, Enum):
    """Classification of error types for retry decisions."""

    TRANSIENT = "transient"  # Database still starting - may retry
    PERMANENT = "permanent"  # Authoring or operational mistake - never retry


# CLI exit codes
EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_APPLY_FAILED = 2
EXIT_LOCK_TIMEOUT = 3
EXIT_SOURCE_INVALID = 4
EXIT_INTERRUPTED = 130


class PortunusError(Exception):
    """Base exception for all Portunus errors."""

    category: ErrorCategory = ErrorCategory.PERMANENT
    exit_code: int = EXIT_FAILURE

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)

    def __str__(self) -> str:
        if self.cause:
            return f"{self.message} (caused by: {self.cause})"
        return self.message


class ConfigurationError(PortunusError):
    """Configuration is missing or invalid."""

    pass


# =============================================================================
# Source (load-time) errors
# =============================================================================


class SourceError(PortunusError):
    """The migration directory could not be loaded."""

    exit_code = EXIT_SOURCE_INVALID


class DuplicateIdentityError(SourceError):
    """Two migrations resolve to the same version."""

    def __init__(self, version: int, paths: list[str]):
        super().__init__(
            f"Duplicate migration version {version}: {', '.join(paths)}"
        )
        self.version = version
        self.paths = paths


class MalformedMigrationError(SourceError):
    """A migration file is unparseable or its up/down pairing is broken."""

    def __init__(self, message: str, path: Optional[str] = None):
        if path:
            message = f"{path}: {message}"
        super().__init__(message)
        self.path = path


# =============================================================================
# Coordination errors
# =============================================================================


class LockTimeoutError(PortunusError):
    """Another process held the migration lock for too long."""

    exit_code = EXIT_LOCK_TIMEOUT

    def __init__(self, lock_name: str, timeout_seconds: float, holder: Optional[str] = None):
        message = f"Timed out after {timeout_seconds:g}s waiting for migration lock '{lock_name}'"
        if holder:
            message += f" (held by {holder})"
        super().__init__(message)
        self.lock_name = lock_name
        self.timeout_seconds = timeout_seconds
        self.holder = holder


class LockLostError(PortunusError):
    """The migration lock was taken over while this run still needed it."""

    exit_code = EXIT_LOCK_TIMEOUT

    def __init__(self, lock_name: str, owner: str):
        super().__init__(f"Migration lock '{lock_name}' is no longer held by {owner}")
        self.lock_name = lock_name
        self.owner = owner


# =============================================================================
# Execution errors
# =============================================================================


class ExecutionError(PortunusError):
    """A migration run could not be planned or executed."""

    pass


class MigrationApplyError(ExecutionError):
    """A statement failed; the migration's transaction was rolled back.

    Raised for both directions. ``direction`` is ``"up"`` or ``"down"``.
    """

    exit_code = EXIT_APPLY_FAILED

    def __init__(
        self,
        version: int,
        label: str,
        statement: str,
        statement_index: int,
        cause: BaseException,
        direction: str = "up",
    ):
        super().__init__(
            f"Migration {version} ({label}) failed at {direction} statement "
            f"#{statement_index + 1}",
            cause,
        )
        self.version = version
        self.label = label
        self.statement = statement
        self.statement_index = statement_index
        self.direction = direction


class IrreversibleMigrationError(ExecutionError):
    """A revert was requested for a migration with no down statements."""

    def __init__(self, version: int, label: str):
        super().__init__(f"Migration {version} ({label}) has no down statements")
        self.version = version
        self.label = label


class UnknownAppliedMigrationError(ExecutionError):
    """The ledger records a version that no longer exists in the source."""

    def __init__(self, version: int):
        super().__init__(
            f"Migration {version} is recorded as applied but was not found in the migration source"
        )
        self.version = version


class ChecksumMismatchError(ExecutionError):
    """An applied migration was edited after it was applied."""

    def __init__(self, version: int, recorded: str, current: str):
        super().__init__(
            f"Migration {version} was modified after it was applied "
            f"(recorded checksum {recorded[:12]}…, current {current[:12]}…)"
        )
        self.version = version
        self.recorded = recorded
        self.current = current


# =============================================================================
# Database errors
# =============================================================================


class DatabaseError(PortunusError):
    """The database adapter or driver reported a failure."""

    pass


class ConnectionFailedError(DatabaseError):
    """Could not connect to the database - may succeed on retry."""

    category = ErrorCategory.TRANSIENT


def is_retryable(error: BaseException) -> bool:
    """Check whether an error may succeed on retry."""
    return isinstance(error, PortunusError) and error.category == ErrorCategory.TRANSIENT
