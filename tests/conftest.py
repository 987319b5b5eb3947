"""
Shared pytest fixtures for Portunus tests.
"""
import sqlite3
from pathlib import Path
from typing import Callable, Optional

import pytest
import pytest_asyncio

from portunus.db.sqlite import SQLiteDatabase


@pytest.fixture
def migrations_dir(tmp_path: Path) -> Path:
    """Empty migration directory."""
    directory = tmp_path / "migrations"
    directory.mkdir()
    return directory


@pytest.fixture
def write_migration(migrations_dir: Path) -> Callable[..., Path]:
    """Write a <version>_<label>.up.sql script (and .down.sql if given)."""

    def _write(version: str, label: str, up: str, down: Optional[str] = None) -> Path:
        up_path = migrations_dir / f"{version}_{label}.up.sql"
        up_path.write_text(up)
        if down is not None:
            (migrations_dir / f"{version}_{label}.down.sql").write_text(down)
        return up_path

    return _write


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    """Path of a not-yet-created SQLite database file."""
    return tmp_path / "app.db"


@pytest_asyncio.fixture
async def sqlite_db(db_path: Path):
    """Connected SQLite adapter on a temporary file."""
    database = SQLiteDatabase(str(db_path), busy_timeout_ms=200)
    await database.connect()
    yield database
    await database.close()


def _schema_names(db_path: Path, kind: str) -> set[str]:
    conn = sqlite3.connect(db_path)
    try:
        rows = conn.execute(
            "SELECT name FROM sqlite_master WHERE type = ? AND name NOT LIKE 'sqlite_%'",
            (kind,),
        ).fetchall()
    finally:
        conn.close()
    return {row[0] for row in rows}


@pytest.fixture
def table_names(db_path: Path) -> Callable[[], set[str]]:
    """Read the user tables currently in the database file."""
    return lambda: _schema_names(db_path, "table")


@pytest.fixture
def index_names(db_path: Path) -> Callable[[], set[str]]:
    """Read the named indexes currently in the database file."""
    return lambda: _schema_names(db_path, "index")
