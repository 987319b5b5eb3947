"""Database adapters implementing the engine's execute/transaction interface."""

from portunus.db.base import Database
from portunus.db.factory import connect_database, create_database
from portunus.db.postgres import PostgresDatabase
from portunus.db.sqlite import SQLiteDatabase

__all__ = [
    "Database",
    "PostgresDatabase",
    "SQLiteDatabase",
    "connect_database",
    "create_database",
]
