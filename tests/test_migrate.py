"""Unit tests for migrate.py - state schema migrations."""

import hashlib

import pytest
from unittest.mock import AsyncMock, MagicMock
from contextlib import asynccontextmanager

from migrate import (
    ADVISORY_LOCK_KEY,
    MIGRATION_TABLE,
    Migration,
    applied_checksums,
    apply_migration,
    load_migrations,
    run_migrations,
)


def _sha(text):
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def _connection(applied=None):
    """Connection mock whose bookkeeping table holds ``applied`` (version -> sql)."""
    conn = AsyncMock()
    conn.fetch = AsyncMock(
        return_value=[
            {"version": v, "checksum": _sha(sql)} for v, sql in (applied or {}).items()
        ]
    )
    mock_transaction = AsyncMock()
    mock_transaction.__aenter__ = AsyncMock(return_value=mock_transaction)
    mock_transaction.__aexit__ = AsyncMock(return_value=False)
    conn.transaction = MagicMock(return_value=mock_transaction)
    return conn


def _pool(conn):
    pool = AsyncMock()

    @asynccontextmanager
    async def mock_acquire():
        yield conn

    pool.acquire = mock_acquire
    return pool


def _executed(conn):
    return [call[0][0] for call in conn.execute.call_args_list]


@pytest.fixture
def migrations_dir(tmp_path):
    (tmp_path / "001_records.sql").write_text("CREATE TABLE a (id INT);")
    (tmp_path / "002_leases.sql").write_text("CREATE TABLE b (id INT);")
    return tmp_path


class TestLoadMigrations:
    """Tests for load_migrations."""

    def test_version_order(self, tmp_path):
        (tmp_path / "010_later.sql").write_text("SELECT 10;")
        (tmp_path / "002_second.sql").write_text("SELECT 2;")
        (tmp_path / "001_first.sql").write_text("SELECT 1;")

        migrations = load_migrations(tmp_path)

        assert [m.version for m in migrations] == ["001", "002", "010"]
        assert migrations[0].name == "first"
        assert migrations[0].filename == "001_first.sql"
        assert migrations[0].read() == "SELECT 1;"

    def test_ignores_other_files(self, tmp_path):
        (tmp_path / "001_valid.sql").write_text("SELECT 1;")
        (tmp_path / "002_readme.txt").write_text("not a migration")
        (tmp_path / "schema.sql").write_text("SELECT 1;")
        (tmp_path / "1_short.sql").write_text("SELECT 1;")
        (tmp_path / "003_subdir.sql").mkdir()

        assert [m.filename for m in load_migrations(tmp_path)] == ["001_valid.sql"]

    def test_missing_directory(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_migrations(tmp_path / "nonexistent")

    def test_duplicate_version(self, tmp_path):
        (tmp_path / "001_a.sql").write_text("SELECT 1;")
        (tmp_path / "001_b.sql").write_text("SELECT 2;")

        with pytest.raises(ValueError, match="001_a.sql and 001_b.sql"):
            load_migrations(tmp_path)

    def test_packaged_migrations(self):
        migrations = load_migrations()
        assert migrations[0].filename == "001_initial.sql"
        assert "state_leases" in migrations[0].read()

    def test_checksum(self, tmp_path):
        path = tmp_path / "001_x.sql"
        path.write_text("SELECT 1;")
        assert Migration("001", "x", path).checksum == _sha("SELECT 1;")


@pytest.mark.asyncio
class TestAppliedChecksums:
    """Tests for applied_checksums."""

    async def test_creates_bookkeeping_table(self):
        conn = _connection()

        assert await applied_checksums(conn) == {}
        sql = conn.execute.call_args[0][0]
        assert f"CREATE TABLE IF NOT EXISTS {MIGRATION_TABLE}" in sql
        assert "checksum" in sql

    async def test_returns_recorded_versions(self):
        conn = _connection({"001": "SELECT 1;"})
        assert await applied_checksums(conn) == {"001": _sha("SELECT 1;")}


@pytest.mark.asyncio
class TestApplyMigration:
    """Tests for apply_migration."""

    async def test_runs_sql_and_records_in_one_transaction(self, migrations_dir):
        migration = load_migrations(migrations_dir)[0]
        conn = _connection()

        await apply_migration(conn, migration)

        conn.transaction.assert_called_once()
        sql, record = conn.execute.call_args_list
        assert sql[0] == ("CREATE TABLE a (id INT);",)
        assert MIGRATION_TABLE in record[0][0]
        assert record[0][1:] == (
            "001",
            "001_records.sql",
            _sha("CREATE TABLE a (id INT);"),
        )

    async def test_propagates_errors(self, migrations_dir):
        conn = _connection()
        conn.execute = AsyncMock(side_effect=Exception("syntax error"))

        with pytest.raises(Exception, match="syntax error"):
            await apply_migration(conn, load_migrations(migrations_dir)[0])


@pytest.mark.asyncio
class TestRunMigrations:
    """Tests for run_migrations."""

    async def test_fresh_database(self, migrations_dir):
        conn = _connection()
        assert await run_migrations(_pool(conn), migrations_dir) == 2

    async def test_only_pending_applied(self, migrations_dir):
        conn = _connection({"001": "CREATE TABLE a (id INT);"})

        assert await run_migrations(_pool(conn), migrations_dir) == 1

        executed = _executed(conn)
        assert "CREATE TABLE b (id INT);" in executed
        assert "CREATE TABLE a (id INT);" not in executed

    async def test_up_to_date(self, migrations_dir):
        conn = _connection(
            {"001": "CREATE TABLE a (id INT);", "002": "CREATE TABLE b (id INT);"}
        )

        assert await run_migrations(_pool(conn), migrations_dir) == 0
        conn.transaction.assert_not_called()

    async def test_edited_migration_is_not_rerun(self, migrations_dir, caplog):
        conn = _connection(
            {"001": "CREATE TABLE a (old INT);", "002": "CREATE TABLE b (id INT);"}
        )

        assert await run_migrations(_pool(conn), migrations_dir) == 0
        assert "001_records.sql was edited" in caplog.text

    async def test_holds_advisory_lock(self, migrations_dir):
        conn = _connection()

        await run_migrations(_pool(conn), migrations_dir)

        calls = conn.execute.call_args_list
        assert calls[0][0] == ("SELECT pg_advisory_lock($1)", ADVISORY_LOCK_KEY)
        assert calls[-1][0] == ("SELECT pg_advisory_unlock($1)", ADVISORY_LOCK_KEY)

    async def test_unlocks_on_failure(self, tmp_path):
        (tmp_path / "001_broken.sql").write_text("BROKEN;")
        conn = _connection()

        async def execute(sql, *args):
            if sql == "BROKEN;":
                raise Exception("syntax error")

        conn.execute = AsyncMock(side_effect=execute)

        with pytest.raises(Exception, match="syntax error"):
            await run_migrations(_pool(conn), tmp_path)
        assert _executed(conn)[-1] == "SELECT pg_advisory_unlock($1)"
