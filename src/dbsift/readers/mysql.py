import json
import re

import pymysql
import pymysql.cursors

from dbsift.config import DatabaseType
from dbsift.readers.base import SQLReader

_STATEMENT_END = re.compile(r";\s*\n")


class MySQLReader(SQLReader):
    """
    MySQL reader using PyMySQL.

    Rows are streamed through unbuffered ``SSCursor``s; ``timeout`` becomes
    the socket read timeout of every connection.
    """

    db_type = DatabaseType.MYSQL
    driver_error = pymysql.Error
    relaxed_constraints_sql = ("SET FOREIGN_KEY_CHECKS = 0",)

    def _connect(self):
        timeout = max(1, int(self.opts.timeout))
        return pymysql.connect(
            host=self.config.host or "localhost",
            port=self.config.port,
            user=self.config.user,
            password=self.config.password or "",
            database=self.config.database,
            charset=self.config.options.get("charset", "utf8mb4"),
            connect_timeout=timeout,
            read_timeout=timeout,
            autocommit=False,
        )

    def quote_identifier(self, name: str) -> str:
        return "`" + name.replace("`", "``") + "`"

    def _open_cursor(self, conn, table: str, worker_index: int):
        return conn.cursor(pymysql.cursors.SSCursor)

    def _list_tables(self, cursor) -> list[str]:
        cursor.execute("SHOW FULL TABLES")
        return [row[0] for row in cursor.fetchall() if row[1] == "BASE TABLE"]

    def _list_columns(self, cursor, table: str) -> list[str]:
        cursor.execute(
            """
            SELECT column_name
            FROM information_schema.columns
            WHERE table_schema = DATABASE() AND table_name = %s
            ORDER BY ordinal_position
            """,
            (table,),
        )
        return [row[0] for row in cursor.fetchall()]

    def _list_primary_key(self, cursor, table: str) -> list[str]:
        cursor.execute(
            """
            SELECT column_name
            FROM information_schema.key_column_usage
            WHERE table_schema = DATABASE()
              AND table_name = %s
              AND constraint_name = 'PRIMARY'
            ORDER BY ordinal_position
            """,
            (table,),
        )
        return [row[0] for row in cursor.fetchall()]

    def get_structure(self) -> str:
        def query(cursor):
            statements = []
            for table in self._list_tables(cursor):
                cursor.execute(f"SHOW CREATE TABLE {self.quote_identifier(table)}")
                statements.append(cursor.fetchone()[1])
            return statements

        return "".join(f"{statement};\n\n" for statement in self._catalog(query))

    def execute_script(self, conn, sql: str) -> None:
        # PyMySQL runs one statement per execute() without CLIENT.MULTI_STATEMENTS
        cursor = conn.cursor()
        try:
            for statement in _STATEMENT_END.split(sql + "\n"):
                if statement.strip():
                    cursor.execute(statement)
        finally:
            self._close_cursor(cursor)

    def _adapt_value(self, value):
        if isinstance(value, (dict, list)):
            return json.dumps(value, default=str)
        return value
