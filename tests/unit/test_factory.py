"""Unit tests for building database adapters from URLs."""

from pathlib import Path
from unittest.mock import patch

import pytest

from portunus.core.errors import ConfigurationError, ConnectionFailedError
from portunus.core.retry import RetryConfig
from portunus.db.factory import (
    connect_database,
    create_database,
    resolve_database_url,
    sqlite_path_from_url,
)
from portunus.db.postgres import PostgresDatabase
from portunus.db.sqlite import MEMORY, SQLiteDatabase


class TestSqlitePathFromUrl:
    """Tests for sqlite_path_from_url."""

    @pytest.mark.parametrize(
        "url,expected",
        [
            ("sqlite:///app.db", "app.db"),
            ("sqlite:///./data/app.db", "./data/app.db"),
            ("sqlite:////var/lib/app.db", "/var/lib/app.db"),
            ("sqlite://:memory:", MEMORY),
            ("sqlite:///:memory:", MEMORY),
            ("sqlite://", MEMORY),
        ],
    )
    def test_paths(self, url, expected):
        assert sqlite_path_from_url(url) == expected

    def test_no_path(self):
        with pytest.raises(ConfigurationError):
            sqlite_path_from_url("sqlite:///")


class TestCreateDatabase:
    """Tests for create_database."""

    def test_sqlite(self):
        database = create_database("sqlite:///data/app.db", lock_stale_after_seconds=30)
        assert isinstance(database, SQLiteDatabase)
        assert database.db_path == "data/app.db"
        assert database.dialect == "sqlite"

    @pytest.mark.parametrize(
        "url",
        [
            "postgres://app@localhost/app",
            "postgresql://app@localhost:5432/app",
            "postgresql+asyncpg://app@localhost/app",
        ],
    )
    def test_postgres(self, url):
        database = create_database(url)
        assert isinstance(database, PostgresDatabase)
        assert database.dialect == "postgresql"

    def test_unsupported_scheme(self):
        with pytest.raises(ConfigurationError, match="Unsupported database URL scheme 'mysql'"):
            create_database("mysql://app@localhost/app")

    def test_not_a_url(self):
        with pytest.raises(ConfigurationError):
            create_database("app.db")


class TestResolveDatabaseUrl:
    """Tests for resolve_database_url."""

    def test_relative_sqlite_path_anchored(self, tmp_path):
        resolved = resolve_database_url("sqlite:///./data/app.db", tmp_path / "config")
        assert sqlite_path_from_url(resolved) == f"{(tmp_path / 'config').as_posix()}/data/app.db"

    def test_relative_base_dir(self):
        assert resolve_database_url("sqlite:///app.db", Path("config")) == "sqlite:///config/app.db"

    @pytest.mark.parametrize(
        "url",
        [
            "sqlite:////var/lib/app.db",
            "sqlite://:memory:",
            "postgresql://app@localhost/app",
        ],
    )
    def test_left_alone(self, url, tmp_path):
        assert resolve_database_url(url, tmp_path) == url

    def test_no_base_dir(self):
        assert resolve_database_url("sqlite:///app.db", None) == "sqlite:///app.db"


class TestConnectDatabase:
    """Tests for connect_database."""

    @pytest.mark.asyncio
    async def test_connects(self, db_path):
        database = await connect_database(f"sqlite:///{db_path}")
        try:
            assert database.is_connected
        finally:
            await database.close()

    @pytest.mark.asyncio
    async def test_retries_connection_failures(self, db_path):
        """Transient connection failures are retried before giving up."""
        calls = []
        original = SQLiteDatabase.connect

        async def flaky_connect(self):
            calls.append(1)
            if len(calls) < 3:
                raise ConnectionFailedError("database starting up")
            await original(self)

        retry = RetryConfig(max_attempts=3, min_wait_seconds=0, max_wait_seconds=0, jitter=False)
        with patch.object(SQLiteDatabase, "connect", flaky_connect):
            database = await connect_database(f"sqlite:///{db_path}", retry=retry)

        try:
            assert len(calls) == 3
            assert database.is_connected
        finally:
            await database.close()

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, db_path):
        async def always_fails(self):
            raise ConnectionFailedError("connection refused")

        retry = RetryConfig(max_attempts=2, min_wait_seconds=0, max_wait_seconds=0, jitter=False)
        with patch.object(SQLiteDatabase, "connect", always_fails):
            with pytest.raises(ConnectionFailedError):
                await connect_database(f"sqlite:///{db_path}", retry=retry)
