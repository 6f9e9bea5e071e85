"""Tests for the command-line interface."""

import sqlite3

import pytest
from typer.testing import CliRunner

from dbsift import __version__
from dbsift.cli import app
from dbsift.config_file import load_config

runner = CliRunner()


@pytest.fixture
def dump_path(tmp_path):
    return tmp_path / "dump.sql"


def count_rows(script: str, table: str) -> int:
    conn = sqlite3.connect(":memory:")
    try:
        conn.executescript(script)
        return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
    finally:
        conn.close()


class TestVersion:
    def test_version(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert f"dbsift {__version__}" in result.output


class TestDumpCommand:
    """Tests for `dbsift dump`."""

    def test_dump_to_file(self, sqlite_url, dump_path):
        result = runner.invoke(
            app, ["dump", "--from", sqlite_url, "--to", str(dump_path), "--no-progress"]
        )

        assert result.exit_code == 0, result.output
        assert count_rows(dump_path.read_text(), "users") == 20

    def test_dump_to_stdout(self, sqlite_url):
        result = runner.invoke(app, ["dump", "--from", sqlite_url, "--no-progress"])

        assert result.exit_code == 0, result.output
        assert "-- This database was dumped by dbsift" in result.output
        assert 'INSERT INTO "users"' in result.output

    def test_dump_with_config(self, sqlite_url, dump_path, tmp_path):
        config_path = tmp_path / "dbsift.yaml"
        config_path.write_text(
            f"""
source:
  url: {sqlite_url}
destination:
  url: {dump_path}
tables:
  orders:
    subsets:
      - name: first_orders
        sorts:
          id: asc
        limit: 5
        relationships:
          - table: order_items
            foreign_key: order_id
            referenced_table: orders
            referenced_key: id
  audit_log:
    ignore_data: true
"""
        )
        result = runner.invoke(app, ["dump", "--config", str(config_path), "--concurrency", "2"])

        assert result.exit_code == 0, result.output
        assert "Dump Complete" in result.output
        script = dump_path.read_text()
        assert count_rows(script, "orders") == 5
        assert count_rows(script, "order_items") == 10
        assert count_rows(script, "audit_log") == 0

    def test_missing_source(self):
        result = runner.invoke(app, ["dump", "--no-progress"])
        assert result.exit_code == 1
        assert "Source database URL is required" in result.output

    def test_missing_config_file(self, tmp_path):
        result = runner.invoke(app, ["dump", "--config", str(tmp_path / "nope.yaml")])
        assert result.exit_code == 1
        assert "Config Error" in result.output

    def test_unreachable_source(self, tmp_path):
        url = f"sqlite:///{tmp_path}/missing/dir/app.db"
        result = runner.invoke(app, ["dump", "--from", url, "--no-progress"])
        assert result.exit_code == 1
        assert "Connection failed" in result.output

    def test_mistyped_source_file(self, tmp_path, dump_path):
        typo = tmp_path / "typo.db"
        result = runner.invoke(
            app, ["dump", "--from", f"sqlite:///{typo}", "--to", str(dump_path), "--no-progress"]
        )
        assert result.exit_code == 1
        assert "Connection failed" in result.output
        assert not typo.exists()

    def test_unknown_table_in_config(self, sqlite_url, tmp_path):
        config_path = tmp_path / "dbsift.yaml"
        config_path.write_text("tables:\n  invoices:\n    ignore_data: true\n")
        result = runner.invoke(
            app, ["dump", "--config", str(config_path), "--from", sqlite_url, "--no-progress"]
        )
        assert result.exit_code == 1
        assert "Table not found" in result.output

    def test_failed_table_exits_with_error(self, sqlite_url, dump_path, tmp_path):
        config_path = tmp_path / "dbsift.yaml"
        config_path.write_text(
            "tables:\n  orders:\n    subsets:\n      - name: broken\n"
            "        match: no_such_column = 1\n"
        )
        result = runner.invoke(
            app,
            [
                "dump",
                "--config",
                str(config_path),
                "--from",
                sqlite_url,
                "--to",
                str(dump_path),
                "--no-progress",
            ],
        )
        assert result.exit_code == 1
        assert "Failed tables" in result.output
        assert "orders" in result.output
        # The other tables are still dumped
        assert count_rows(dump_path.read_text(), "users") == 20


class TestInitCommand:
    """Tests for `dbsift init`."""

    def test_writes_loadable_config(self, sqlite_url, tmp_path):
        out_file = tmp_path / "dbsift.yaml"
        result = runner.invoke(app, ["init", sqlite_url, "--out-file", str(out_file)])

        assert result.exit_code == 0, result.output
        config = load_config(out_file)
        assert config.source.url == sqlite_url
        users = config.tables["users"].anonymise
        assert users["email"] == "email"
        assert users["password_hash"] == "null"
        assert "id" not in users

    def test_without_detection(self, sqlite_url, tmp_path):
        out_file = tmp_path / "dbsift.yaml"
        result = runner.invoke(
            app, ["init", sqlite_url, "-f", str(out_file), "--no-detect-sensitive"]
        )

        assert result.exit_code == 0, result.output
        assert load_config(out_file).tables == {}

    def test_connection_failure(self, tmp_path):
        url = f"sqlite:///{tmp_path}/missing/dir/app.db"
        result = runner.invoke(app, ["init", url, "-f", str(tmp_path / "out.yaml")])
        assert result.exit_code == 1
        assert "Connection failed" in result.output


class TestInspectCommand:
    """Tests for `dbsift inspect`."""

    def test_lists_tables(self, sqlite_url):
        result = runner.invoke(app, ["inspect", sqlite_url])

        assert result.exit_code == 0, result.output
        assert "Tables (6)" in result.output
        assert "users (id)" in result.output
        assert "audit_log (no PK)" in result.output

    def test_table_details(self, sqlite_url):
        result = runner.invoke(app, ["inspect", sqlite_url, "--table", "users"])

        assert result.exit_code == 0, result.output
        assert "Primary key: id" in result.output
        assert "sensitive: email" in result.output

    def test_unknown_table(self, sqlite_url):
        result = runner.invoke(app, ["inspect", sqlite_url, "--table", "nope"])
        assert result.exit_code == 1
        assert "not found" in result.output
