"""Core framework infrastructure - config, errors, logging, retry, shutdown."""

from portunus.core.config import ConfigManager
from portunus.core.errors import (
    ChecksumMismatchError,
    ConfigurationError,
    ConnectionFailedError,
    DatabaseError,
    DuplicateIdentityError,
    ErrorCategory,
    ExecutionError,
    IrreversibleMigrationError,
    LockLostError,
    LockTimeoutError,
    MalformedMigrationError,
    MigrationApplyError,
    PortunusError,
    SourceError,
    UnknownAppliedMigrationError,
    is_retryable,
)
from portunus.core.logging import setup_logging
from portunus.core.retry import RetryConfig, retry_transient
from portunus.core.shutdown import ShutdownManager

__all__ = [
    # Config
    "ConfigManager",
    # Logging
    "setup_logging",
    # Errors
    "ErrorCategory",
    "PortunusError",
    "ConfigurationError",
    "SourceError",
    "DuplicateIdentityError",
    "MalformedMigrationError",
    "LockTimeoutError",
    "LockLostError",
    "ExecutionError",
    "MigrationApplyError",
    "IrreversibleMigrationError",
    "UnknownAppliedMigrationError",
    "ChecksumMismatchError",
    "DatabaseError",
    "ConnectionFailedError",
    "is_retryable",
    # Retry
    "RetryConfig",
    "retry_transient",
    # Shutdown
    "ShutdownManager",
]
