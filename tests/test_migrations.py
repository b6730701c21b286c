"""
Unit tests for the migration runner (no database: connections are mocked).
"""
from unittest.mock import AsyncMock, MagicMock

import pytest

import migrations


class TestGetMigrationFiles:
    def test_bundled_migrations(self):
        files = migrations.get_migration_files()
        assert files[0][0] == "001"
        assert files[0][1].name == "001_init.sql"

    def test_numeric_order(self, tmp_path):
        for name in ("10_later.sql", "2_second.sql", "1_first.sql", "notes.sql"):
            (tmp_path / name).write_text("SELECT 1;")
        versions = [version for version, _ in migrations.get_migration_files(tmp_path)]
        assert versions == ["1", "2", "10"]

    def test_missing_directory(self, tmp_path):
        assert migrations.get_migration_files(tmp_path / "absent") == []

    def test_schema_has_core_tables(self):
        sql = migrations.get_migration_files()[0][1].read_text(encoding="utf-8")
        for table in ("orders", "processed_webhook_events", "subscriptions"):
            assert f"CREATE TABLE IF NOT EXISTS {table}" in sql


def _conn(applied=()):
    conn = MagicMock()
    conn.execute = AsyncMock()
    conn.fetch = AsyncMock(return_value=[{"version": v} for v in applied])
    transaction = MagicMock()
    transaction.__aenter__ = AsyncMock(return_value=None)
    transaction.__aexit__ = AsyncMock(return_value=False)
    conn.transaction = MagicMock(return_value=transaction)
    return conn


@pytest.mark.asyncio
class TestRunMigrations:
    async def test_applies_pending(self, tmp_path):
        (tmp_path / "1_first.sql").write_text("CREATE TABLE a (id INT);")
        (tmp_path / "2_second.sql").write_text("CREATE TABLE b (id INT);")
        conn = _conn(applied=["1"])

        assert await migrations.run_migrations(conn, tmp_path) is True

        executed = [c.args[0] for c in conn.execute.await_args_list]
        assert "CREATE TABLE b (id INT);" in executed
        assert "CREATE TABLE a (id INT);" not in executed
        assert conn.transaction.call_count == 1

    async def test_failure_reported(self, tmp_path):
        (tmp_path / "1_broken.sql").write_text("CREATE TABLE;")
        conn = _conn()
        conn.execute = AsyncMock(side_effect=[None, RuntimeError("syntax error")])

        assert await migrations.run_migrations(conn, tmp_path) is False
