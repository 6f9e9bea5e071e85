import json
import math
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from email.utils import format_datetime
from typing import Any, TextIO
from uuid import UUID

from dbsift.config import DatabaseType
from dbsift.dumpers.base import Dumper
from dbsift.exceptions import WriteError
from dbsift.logging import get_logger
from dbsift.models import Row

logger = get_logger(__name__)

_PROLOGUE: dict[DatabaseType, tuple[str, ...]] = {
    DatabaseType.MYSQL: ("SET NAMES utf8;", "SET FOREIGN_KEY_CHECKS = 0;"),
    DatabaseType.POSTGRESQL: ("SET session_replication_role = replica;",),
    DatabaseType.SQLITE: ("PRAGMA foreign_keys = OFF;",),
}

_EPILOGUE: dict[DatabaseType, tuple[str, ...]] = {
    DatabaseType.MYSQL: ("SET FOREIGN_KEY_CHECKS = 1;",),
    DatabaseType.POSTGRESQL: ("SET session_replication_role = DEFAULT;",),
    DatabaseType.SQLITE: ("PRAGMA foreign_keys = ON;",),
}

# pg_dump empties search_path, which would hide the tables from unqualified INSERTs
_AFTER_STRUCTURE: dict[DatabaseType, tuple[str, ...]] = {
    DatabaseType.MYSQL: (),
    DatabaseType.POSTGRESQL: ("RESET search_path;",),
    DatabaseType.SQLITE: (),
}


def quote_identifier(name: str, db_type: DatabaseType) -> str:
    if db_type == DatabaseType.MYSQL:
        return "`" + name.replace("`", "``") + "`"
    return '"' + name.replace('"', '""') + '"'


def quote_string(value: str, db_type: DatabaseType) -> str:
    escaped = value.replace("'", "''")
    if db_type == DatabaseType.MYSQL:
        escaped = escaped.replace("\\", "\\\\")
    return f"'{escaped}'"


def _format_timedelta(value: timedelta, db_type: DatabaseType) -> str:
    seconds = value.total_seconds()
    if db_type == DatabaseType.POSTGRESQL:
        return f"'{seconds:g} seconds'"
    sign = "-" if seconds < 0 else ""
    seconds = abs(seconds)
    hours, rest = divmod(int(seconds), 3600)
    minutes, secs = divmod(rest, 60)
    fraction = seconds - int(seconds)
    text = f"{sign}{hours:02d}:{minutes:02d}:{secs:02d}"
    if fraction:
        text += f".{int(round(fraction * 1_000_000)):06d}"
    return f"'{text}'"


def format_value(value: Any, db_type: DatabaseType) -> str:
    """
    Render a Python value as a SQL literal for ``db_type``.

    Supported type conversions:
    - None -> NULL
    - bool -> TRUE/FALSE (1/0 on SQLite)
    - int, Decimal -> as-is; float -> repr, non-finite floats -> NULL
      ('NaN'/'Infinity' on PostgreSQL)
    - str -> quoted, with quotes (and backslashes on MySQL) escaped
    - date, time, datetime -> quoted ISO 8601
    - timedelta -> interval (PostgreSQL) or quoted HH:MM:SS
    - bytes -> hex literal
    - dict, list -> quoted JSON
    - UUID and anything else -> quoted str()
    """
    if value is None:
        return "NULL"

    if isinstance(value, bool):
        if db_type == DatabaseType.SQLITE:
            return "1" if value else "0"
        return "TRUE" if value else "FALSE"

    if isinstance(value, int):
        return str(value)

    if isinstance(value, float):
        if math.isfinite(value):
            return repr(value)
        if db_type == DatabaseType.POSTGRESQL:
            if math.isnan(value):
                return "'NaN'"
            return "'Infinity'" if value > 0 else "'-Infinity'"
        return "NULL"

    if isinstance(value, Decimal):
        if not value.is_finite():
            return "'NaN'" if db_type == DatabaseType.POSTGRESQL else "NULL"
        return str(value)

    if isinstance(value, str):
        return quote_string(value, db_type)

    if isinstance(value, datetime):
        return quote_string(value.isoformat(sep=" "), db_type)

    if isinstance(value, (date, time)):
        return quote_string(value.isoformat(), db_type)

    if isinstance(value, timedelta):
        return _format_timedelta(value, db_type)

    if isinstance(value, (bytes, bytearray, memoryview)):
        hex_value = bytes(value).hex()
        if db_type == DatabaseType.POSTGRESQL:
            return f"decode('{hex_value}', 'hex')"
        return f"X'{hex_value}'"

    if isinstance(value, (dict, list)):
        return quote_string(json.dumps(value, default=str), db_type)

    if isinstance(value, UUID):
        return quote_string(str(value), db_type)

    return quote_string(str(value), db_type)


class SQLDumper(Dumper):
    """
    Writes a SQL script that recreates the subset when loaded.

    Layout: preamble comment, engine session settings, structure, then one
    ``BEGIN; INSERT ...; COMMIT;`` block per table. A table that fails
    midway ends its block with ``ROLLBACK;`` so loading the script discards
    the partial rows.
    """

    def __init__(
        self,
        stream: TextIO,
        db_type: DatabaseType,
        host: str = "",
        database: str = "",
        close_stream: bool = False,
    ):
        self.stream = stream
        self.db_type = db_type
        self.host = host
        self.database = database
        self.close_stream = close_stream
        self._started = False
        self._closed = False
        self._insert_prefix: dict[tuple, str] = {}

    def _write(self, text: str, table: str | None = None) -> None:
        try:
            self.stream.write(text)
        except (OSError, ValueError) as e:
            raise WriteError(str(e), table=table) from e

    def _start(self) -> None:
        if self._started:
            return
        self._started = True
        dumped_at = format_datetime(datetime.now().astimezone())
        lines = [
            "-- This database was dumped by dbsift",
            "--",
            f"-- Host: {self.host}",
            f"-- Database: {self.database}",
            f"-- Dump date: {dumped_at}",
            "",
            *_PROLOGUE[self.db_type],
            "",
        ]
        self._write("\n".join(lines) + "\n")

    def dump_structure(self, structure: str) -> None:
        self._start()
        structure = structure.strip()
        if structure:
            self._write(structure + "\n\n")
        after = _AFTER_STRUCTURE[self.db_type]
        if after:
            self._write("\n".join(after) + "\n\n")

    def _begin_table(self, table: str) -> None:
        self._start()
        self._write(f"--\n-- Data for table {table}\n--\nBEGIN;\n", table)

    def _insert_sql(self, table: str, row: Row) -> str:
        columns = tuple(row)
        key = (table, columns)
        prefix = self._insert_prefix.get(key)
        if prefix is None:
            column_list = ", ".join(quote_identifier(col, self.db_type) for col in columns)
            prefix = f"INSERT INTO {quote_identifier(table, self.db_type)} ({column_list}) VALUES "
            self._insert_prefix[key] = prefix
        values = ", ".join(format_value(value, self.db_type) for value in row.values())
        return f"{prefix}({values});\n"

    def _write_row(self, table: str, row: Row) -> None:
        self._write(self._insert_sql(table, row), table)

    def _end_table(self, table: str, count: int) -> None:
        self._write("COMMIT;\n\n", table)
        logger.debug("Wrote table block", table=table, rows=count)

    def _abort_table(self, table: str) -> None:
        self._write("ROLLBACK;\n\n", table)
        logger.warning("Rolled back partial table block", table=table)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._start()
            self._write("\n".join(_EPILOGUE[self.db_type]) + "\n")
            self.stream.flush()
        except (OSError, ValueError) as e:
            raise WriteError(str(e)) from e
        finally:
            if self.close_stream:
                self.stream.close()
