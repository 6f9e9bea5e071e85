"""Shared pytest fixtures for dbsift tests."""

import logging
import sqlite3
import threading
import time
from collections.abc import Iterable, Iterator
from pathlib import Path
from typing import Any

import pytest

from dbsift.config import DatabaseType
from dbsift.dumpers.base import Dumper
from dbsift.exceptions import WriteError
from dbsift.models import ConnOpts, ReadTableOpt
from dbsift.readers.base import Reader
from dbsift.readers.sqlite import SQLiteReader

SCHEMA_SQL = """
CREATE TABLE users (
    id INTEGER PRIMARY KEY,
    email TEXT NOT NULL,
    name TEXT,
    password_hash TEXT
);

CREATE TABLE products (
    id INTEGER PRIMARY KEY,
    sku TEXT NOT NULL,
    name TEXT,
    price REAL
);

CREATE TABLE orders (
    id INTEGER PRIMARY KEY,
    user_id INTEGER NOT NULL REFERENCES users(id),
    total REAL,
    status TEXT,
    created_at TEXT
);

CREATE TABLE order_items (
    id INTEGER PRIMARY KEY,
    order_id INTEGER NOT NULL REFERENCES orders(id),
    product_id INTEGER NOT NULL REFERENCES products(id),
    quantity INTEGER NOT NULL
);

CREATE TABLE employees (
    id INTEGER PRIMARY KEY,
    name TEXT NOT NULL,
    manager_id INTEGER REFERENCES employees(id)
);

CREATE TABLE audit_log (
    event TEXT,
    happened_at TEXT
);

CREATE INDEX idx_orders_user_id ON orders(user_id);
"""

USER_COUNT = 20
ORDER_COUNT = 12
ITEMS_PER_ORDER = 2

EMPLOYEES = [
    (1, "Ada", None),
    (2, "Ben", 1),
    (3, "Cy", 1),
    (4, "Di", 2),
    (5, "Ed", 4),
    (6, "Flo", None),
]


def order_user_id(order_id: int) -> int:
    """Owner of an order in the sample database."""
    return order_id % 5 + 1


def populate(conn: sqlite3.Connection) -> None:
    conn.executescript(SCHEMA_SQL)
    conn.executemany(
        "INSERT INTO users (id, email, name, password_hash) VALUES (?, ?, ?, ?)",
        [
            (i, f"user{i}@example.com", f"User {i}", f"hash{i}")
            for i in range(1, USER_COUNT + 1)
        ],
    )
    conn.executemany(
        "INSERT INTO products (id, sku, name, price) VALUES (?, ?, ?, ?)",
        [
            (1, "SKU-001", "Widget", 9.99),
            (2, "SKU-002", "Gadget", 19.99),
            (3, "SKU-003", "O'Reilly Book", 29.5),
        ],
    )
    conn.executemany(
        "INSERT INTO orders (id, user_id, total, status, created_at) VALUES (?, ?, ?, ?, ?)",
        [
            (
                i,
                order_user_id(i),
                i * 10.5,
                "paid" if i % 2 == 0 else "pending",
                f"2024-01-{i:02d}",
            )
            for i in range(1, ORDER_COUNT + 1)
        ],
    )
    conn.executemany(
        "INSERT INTO order_items (id, order_id, product_id, quantity) VALUES (?, ?, ?, ?)",
        [
            (j, (j + 1) // ITEMS_PER_ORDER, j % 3 + 1, j)
            for j in range(1, ORDER_COUNT * ITEMS_PER_ORDER + 1)
        ],
    )
    conn.executemany("INSERT INTO employees (id, name, manager_id) VALUES (?, ?, ?)", EMPLOYEES)
    conn.executemany(
        "INSERT INTO audit_log (event, happened_at) VALUES (?, ?)",
        [("login", "2024-01-01"), ("login", "2024-01-01"), ("logout", "2024-01-02")],
    )
    conn.commit()


def sqlite_url_for(path: Path) -> str:
    return f"sqlite:///{path}"


def query_db(path: Path, sql: str) -> list[tuple]:
    """Run a query against a SQLite file and return every row."""
    conn = sqlite3.connect(str(path))
    try:
        return conn.execute(sql).fetchall()
    finally:
        conn.close()


@pytest.fixture(autouse=True)
def reset_dbsift_logging() -> Iterator[None]:
    """CLI tests attach handlers to streams that are closed afterwards."""
    yield
    root_logger = logging.getLogger("dbsift")
    root_logger.handlers.clear()
    root_logger.propagate = True


@pytest.fixture
def sqlite_path(tmp_path: Path) -> Path:
    """Create a SQLite file with the sample shop schema and data."""
    path = tmp_path / "source.db"
    conn = sqlite3.connect(str(path))
    try:
        populate(conn)
    finally:
        conn.close()
    return path


@pytest.fixture
def sqlite_url(sqlite_path: Path) -> str:
    return sqlite_url_for(sqlite_path)


@pytest.fixture
def sqlite_reader(sqlite_url: str) -> Iterator[SQLiteReader]:
    reader = SQLiteReader(ConnOpts(dsn=sqlite_url, timeout=5.0))
    yield reader
    reader.close()


class MockReader(Reader):
    """
    In-memory Reader for pipeline tests.

    Only the first selection of each table is honoured (rows are returned
    as stored). ``failures`` maps a table to ``(rows_before_failure, error)``;
    ``raise_on`` lists tables whose read raises instead of closing the stream.
    """

    db_type = DatabaseType.SQLITE

    def __init__(
        self,
        data: dict[str, list[dict[str, Any]]],
        failures: dict[str, tuple[int, BaseException]] | None = None,
        raise_on: Iterable[str] = (),
        delay: float = 0.0,
    ):
        self.data = data
        self.failures = failures or {}
        self.raise_on = set(raise_on)
        self.delay = delay
        self.reads: list[str] = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()
        self.closed = False

    def get_structure(self) -> str:
        return "".join(f"CREATE TABLE {table} (id INTEGER);\n" for table in self.data)

    def get_tables(self) -> list[str]:
        return sorted(self.data)

    def get_columns(self, table: str) -> list[str]:
        rows = self.data[table]
        return list(rows[0]) if rows else ["id"]

    def get_primary_key(self, table: str) -> tuple[str, ...]:
        return ("id",)

    def format_column(self, table: str, column: str) -> str:
        return f'"{table}"."{column}"'

    def read_subset(self, table, worker_index, out, opts) -> None:
        with self._lock:
            self.reads.append(table)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if table in self.raise_on:
                raise RuntimeError(f"reader exploded on {table}")
            error = None
            fail_after, fail_error = self.failures.get(table, (None, None))
            try:
                for i, row in enumerate(self.data[table]):
                    if i == fail_after:
                        error = fail_error
                        break
                    if self.delay:
                        time.sleep(self.delay)
                    out.put(dict(row))
            except Exception as e:
                error = e
            out.close(error)
        finally:
            with self._lock:
                self.active -= 1

    def describe(self) -> tuple[str, str]:
        return "localhost", "mock"

    def close(self) -> None:
        self.closed = True


class CollectingDumper(Dumper):
    """
    Dumper that records what it is asked to write.

    ``events`` is the flat write log: ("begin", table), ("row", table, row),
    ("end", table, count) and ("abort", table). ``fail_on`` maps a table to
    the number of rows written before a WriteError is raised.
    """

    def __init__(self, fail_on: dict[str, int] | None = None):
        self.structure: str | None = None
        self.events: list[tuple] = []
        self.fail_on = fail_on or {}
        self.closed = False
        self._rows_in_block = 0

    def dump_structure(self, structure: str) -> None:
        self.structure = structure

    def _begin_table(self, table: str) -> None:
        self._rows_in_block = 0
        self.events.append(("begin", table))

    def _write_row(self, table: str, row) -> None:
        if self.fail_on.get(table) == self._rows_in_block:
            raise WriteError("disk full", table=table)
        self._rows_in_block += 1
        self.events.append(("row", table, row))

    def _end_table(self, table: str, count: int) -> None:
        self.events.append(("end", table, count))

    def _abort_table(self, table: str) -> None:
        self.events.append(("abort", table))

    def close(self) -> None:
        self.closed = True

    def rows(self, table: str) -> list[dict[str, Any]]:
        return [event[2] for event in self.events if event[0] == "row" and event[1] == table]

    def blocks(self) -> list[str]:
        return [event[1] for event in self.events if event[0] == "begin"]


def make_rows(count: int, **extra: Any) -> list[dict[str, Any]]:
    return [{"id": i, **extra} for i in range(1, count + 1)]


def read_opts_for(data: dict[str, list[dict[str, Any]]]) -> dict[str, ReadTableOpt]:
    return {
        table: ReadTableOpt(columns=tuple(rows[0]) if rows else ("id",))
        for table, rows in data.items()
    }


@pytest.fixture
def shop_data() -> dict[str, list[dict[str, Any]]]:
    return {
        "customers": make_rows(5, name="customer"),
        "invoices": make_rows(8, amount=10),
        "payments": make_rows(3, method="card"),
        "refunds": make_rows(2, reason="damaged"),
    }
