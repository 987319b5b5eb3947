"""Services - the migration engine, one responsibility per module."""

from portunus.services.executor import Executor
from portunus.services.ledger import VersionLedger
from portunus.services.lock import LockCoordinator, LockState
from portunus.services.planner import Planner
from portunus.services.source import MigrationSource, create_migration, load_migrations
from portunus.services.statements import split_sections, split_statements

__all__ = [
    "Executor",
    "LockCoordinator",
    "LockState",
    "MigrationSource",
    "Planner",
    "VersionLedger",
    "create_migration",
    "load_migrations",
    "split_sections",
    "split_statements",
]
