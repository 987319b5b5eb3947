"""Portunus - versioned SQL schema migrations with a database-resident ledger and lock."""

__version__ = "0.1.0"

from portunus.app import Migrator
from portunus.domain.migration import Migration, RunReport

__all__ = ["Migrator", "Migration", "RunReport", "__version__"]
