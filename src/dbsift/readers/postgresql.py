import os
import subprocess
import uuid

import psycopg2
import psycopg2.extras

from dbsift.config import DatabaseType
from dbsift.exceptions import QueryError
from dbsift.logging import get_logger
from dbsift.readers.base import SQLReader

logger = get_logger(__name__)


class PostgreSQLReader(SQLReader):
    """
    PostgreSQL reader using psycopg2.

    Rows are streamed through named (server-side) cursors so a table never
    has to fit in memory. The structure comes from ``pg_dump --schema-only``,
    which must be on PATH.
    """

    db_type = DatabaseType.POSTGRESQL
    driver_error = psycopg2.Error
    relaxed_constraints_sql = ("SET session_replication_role = replica",)

    def _connect(self):
        timeout_ms = int(self.opts.timeout * 1000)
        options = dict(self.config.options)
        extra_options = options.pop("options", "")
        conn = psycopg2.connect(
            host=self.config.host,
            port=self.config.port,
            user=self.config.user,
            password=self.config.password,
            dbname=self.config.database,
            options=f"-c statement_timeout={timeout_ms} {extra_options}".strip(),
            **options,
        )
        conn.autocommit = False
        return conn

    def quote_identifier(self, name: str) -> str:
        return '"' + name.replace('"', '""') + '"'

    def _open_cursor(self, conn, table: str, worker_index: int):
        # Named cursor names must be unique per connection
        cursor = conn.cursor(name=f"dbsift_w{worker_index}_{uuid.uuid4().hex[:12]}")
        cursor.itersize = self.fetch_size
        return cursor

    def _list_tables(self, cursor) -> list[str]:
        cursor.execute(
            """
            SELECT table_name
            FROM information_schema.tables
            WHERE table_schema = current_schema()
              AND table_type = 'BASE TABLE'
            ORDER BY table_name
            """
        )
        return [row[0] for row in cursor.fetchall()]

    def _list_columns(self, cursor, table: str) -> list[str]:
        cursor.execute(
            """
            SELECT column_name
            FROM information_schema.columns
            WHERE table_schema = current_schema()
              AND table_name = %s
            ORDER BY ordinal_position
            """,
            (table,),
        )
        return [row[0] for row in cursor.fetchall()]

    def _list_primary_key(self, cursor, table: str) -> list[str]:
        cursor.execute(
            """
            SELECT a.attname
            FROM pg_index i
            JOIN pg_class c ON c.oid = i.indrelid
            JOIN pg_namespace n ON n.oid = c.relnamespace
            JOIN pg_attribute a ON a.attrelid = i.indrelid AND a.attnum = ANY(i.indkey)
            WHERE i.indisprimary
              AND c.relname = %s
              AND n.nspname = current_schema()
            ORDER BY array_position(i.indkey::int2[], a.attnum)
            """,
            (table,),
        )
        return [row[0] for row in cursor.fetchall()]

    def get_structure(self) -> str:
        command = [
            "pg_dump",
            "--schema-only",
            "--no-owner",
            "--no-privileges",
            "--dbname",
            self.config.database,
        ]
        if self.config.host:
            command += ["--host", self.config.host]
        if self.config.port:
            command += ["--port", str(self.config.port)]
        if self.config.user:
            command += ["--username", self.config.user]

        env = dict(os.environ)
        if self.config.password:
            env["PGPASSWORD"] = self.config.password

        logger.debug("Running pg_dump", database=self.config.database)
        try:
            completed = subprocess.run(
                command, env=env, capture_output=True, text=True, check=False
            )
        except FileNotFoundError:
            raise QueryError("pg_dump was not found on PATH")

        if completed.returncode != 0:
            raise QueryError(f"pg_dump exited with {completed.returncode}: {completed.stderr.strip()}")

        # psql meta-commands (\restrict, \connect, ...) are not SQL
        lines = [line for line in completed.stdout.splitlines() if not line.startswith("\\")]
        return "\n".join(lines) + "\n"

    def execute_script(self, conn, sql: str) -> None:
        super().execute_script(conn, sql)
        # pg_dump output empties search_path for the session
        super().execute_script(conn, "RESET search_path")

    def _adapt_value(self, value):
        if isinstance(value, (dict, list)):
            return psycopg2.extras.Json(value)
        return value
