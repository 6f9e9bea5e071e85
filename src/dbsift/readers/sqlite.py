import json
import sqlite3
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any
from urllib.parse import quote
from uuid import UUID

from dbsift.config import DatabaseType
from dbsift.readers.base import SQLReader


class SQLiteReader(SQLReader):
    """
    SQLite reader.

    A missing database file is an error unless ``create_missing`` is set,
    which get_dumper does for destinations. ``timeout`` is the busy timeout.
    """

    db_type = DatabaseType.SQLITE
    driver_error = sqlite3.Error
    placeholder = "?"
    relaxed_constraints_sql = ("PRAGMA foreign_keys = OFF",)

    def _connect(self):
        database = self.config.database
        if self.opts.create_missing or database == ":memory:":
            return sqlite3.connect(database, timeout=self.opts.timeout, check_same_thread=False)
        # mode=rw refuses to create the file
        return sqlite3.connect(
            f"file:{quote(database)}?mode=rw",
            uri=True,
            timeout=self.opts.timeout,
            check_same_thread=False,
        )

    def quote_identifier(self, name: str) -> str:
        return '"' + name.replace('"', '""') + '"'

    def _list_tables(self, cursor) -> list[str]:
        cursor.execute(
            "SELECT name FROM sqlite_master "
            "WHERE type = 'table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
        )
        return [row[0] for row in cursor.fetchall()]

    def _table_info(self, cursor, table: str) -> list[tuple]:
        cursor.execute(f"PRAGMA table_info({self.quote_identifier(table)})")
        return sorted(cursor.fetchall(), key=lambda info: info[0])

    def _list_columns(self, cursor, table: str) -> list[str]:
        # (cid, name, type, notnull, dflt_value, pk)
        return [info[1] for info in self._table_info(cursor, table)]

    def _list_primary_key(self, cursor, table: str) -> list[str]:
        pk = [(info[5], info[1]) for info in self._table_info(cursor, table) if info[5]]
        return [name for _, name in sorted(pk)]

    def get_structure(self) -> str:
        def query(cursor):
            statements = []
            for kind in ("table", "index"):
                cursor.execute(
                    "SELECT sql FROM sqlite_master "
                    "WHERE type = ? AND sql IS NOT NULL AND name NOT LIKE 'sqlite_%' "
                    "ORDER BY name",
                    (kind,),
                )
                statements.extend(row[0] for row in cursor.fetchall())
            return statements

        return "".join(f"{statement};\n" for statement in self._catalog(query))

    def execute_script(self, conn, sql: str) -> None:
        conn.executescript(sql)

    def _adapt_value(self, value: Any) -> Any:
        if isinstance(value, datetime):
            return value.isoformat(sep=" ")
        if isinstance(value, (date, time)):
            return value.isoformat()
        if isinstance(value, Decimal):
            return str(value)
        if isinstance(value, UUID):
            return str(value)
        if isinstance(value, (dict, list)):
            return json.dumps(value, default=str)
        return value
