import itertools
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterable, Sequence
from typing import TYPE_CHECKING, Any

from dbsift.config import DatabaseType
from dbsift.constants import DEFAULT_FETCH_SIZE
from dbsift.core.subset import plan_selections
from dbsift.exceptions import (
    ConnectionError,
    QueryError,
    ScanError,
    StreamCancelledError,
    TableNotFoundError,
)
from dbsift.logging import get_logger
from dbsift.models import ConnOpts, ReadTableOpt, Row, Selection
from dbsift.utils.connection import DatabaseConfig, parse_database_url, scheme_of
from dbsift.utils.pool import ConnectionPool

if TYPE_CHECKING:
    from dbsift.core.rowstream import RowStream

logger = get_logger(__name__)


class Reader(ABC):
    """
    A source of table structure and rows.

    Readers are shared by every table worker of a dump, so implementations
    must be safe to call from several threads at once.
    """

    db_type: DatabaseType

    max_concurrent_reads: int | None = None
    """Most read_subset calls that can run at once, or None when unbounded."""

    @abstractmethod
    def get_structure(self) -> str:
        """
        Return DDL that recreates every table of the database.

        Raises:
            QueryError: If the catalog cannot be read
        """
        pass

    @abstractmethod
    def get_tables(self) -> list[str]:
        """Return the names of all base tables, sorted."""
        pass

    @abstractmethod
    def get_columns(self, table: str) -> list[str]:
        """
        Return the column names of ``table`` in ordinal order.

        Raises:
            TableNotFoundError: If the table does not exist
        """
        pass

    @abstractmethod
    def get_primary_key(self, table: str) -> tuple[str, ...]:
        """Return the primary key columns of ``table`` (empty if it has none)."""
        pass

    @abstractmethod
    def format_column(self, table: str, column: str) -> str:
        """Return the engine-quoted, table-qualified reference to a column."""
        pass

    @abstractmethod
    def read_subset(
        self, table: str, worker_index: int, out: "RowStream", opts: ReadTableOpt
    ) -> None:
        """
        Stream the rows selected by ``opts`` into ``out``.

        ``out`` is closed exactly once: after the last row, or with the
        error that stopped the read.
        """
        pass

    @abstractmethod
    def describe(self) -> tuple[str, str]:
        """Return ``(host, database)`` for dump preambles."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Release all connections."""
        pass

    def __enter__(self) -> "Reader":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class Driver(ABC):
    """Creates readers for the connection addresses it recognises."""

    name: str

    @abstractmethod
    def is_supported(self, url: str) -> bool:
        pass

    @abstractmethod
    def new_connection(self, opts: ConnOpts) -> Reader:
        """
        Open a reader for ``opts.dsn``.

        Raises:
            ConnectionError: If the database cannot be reached
        """
        pass


class SchemeDriver(Driver):
    """Driver selected by URL scheme, backed by a SQLReader subclass."""

    def __init__(self, name: str, schemes: Iterable[str], reader_class: type["SQLReader"]):
        self.name = name
        self.schemes = frozenset(s.lower() for s in schemes)
        self.reader_class = reader_class

    def is_supported(self, url: str) -> bool:
        return scheme_of(url) in self.schemes

    def new_connection(self, opts: ConnOpts) -> "SQLReader":
        return self.reader_class(opts)

    def __repr__(self) -> str:
        return f"SchemeDriver(name={self.name!r}, schemes={sorted(self.schemes)!r})"


def _hashable(value: Any) -> Any:
    try:
        hash(value)
    except TypeError:
        if isinstance(value, memoryview):
            return bytes(value)
        return repr(value)
    return value


class SQLReader(Reader):
    """
    Reader over a DB-API 2.0 driver.

    Engines provide connection creation, identifier quoting, catalog
    queries and the structure dump. Everything else (pooling, query
    building, batched streaming, error classification, de-duplication and
    the destination-side helpers used by DatabaseDumper) lives here.
    """

    driver_error: type[Exception] = Exception
    """Base class of the exceptions raised by the engine's DB-API module."""

    placeholder = "%s"
    """Parameter placeholder of the DB-API module (paramstyle)."""

    relaxed_constraints_sql: tuple[str, ...] = ()
    """Statements that disable constraint checks while loading a dump."""

    fetch_size = DEFAULT_FETCH_SIZE

    def __init__(self, opts: ConnOpts):
        self.opts = opts
        self.config: DatabaseConfig = parse_database_url(opts.dsn)
        self._columns: dict[str, list[str]] = {}
        self._primary_keys: dict[str, tuple[str, ...]] = {}
        self._catalog_lock = threading.Lock()
        self._closed = False
        self._pool = ConnectionPool(
            self._open_connection,
            max_conns=opts.max_conns,
            max_idle=opts.max_idle_conns,
            max_lifetime=opts.max_conn_lifetime,
            timeout=opts.timeout,
            name=self.config.masked_url,
            reset=self._reset_connection,
        )
        # Fail early on unreachable databases
        conn = self._pool.acquire()
        self._pool.release(conn)
        logger.info(
            "Connected to database",
            db_type=self.db_type.value,
            host=self.config.host or "localhost",
            database=self.config.database,
        )

    @abstractmethod
    def _connect(self) -> Any:
        """Open a new DB-API connection; may raise ``driver_error``."""
        pass

    @abstractmethod
    def quote_identifier(self, name: str) -> str:
        pass

    @abstractmethod
    def _list_tables(self, cursor) -> list[str]:
        pass

    @abstractmethod
    def _list_columns(self, cursor, table: str) -> list[str]:
        pass

    @abstractmethod
    def _list_primary_key(self, cursor, table: str) -> list[str]:
        pass

    def _open_connection(self) -> Any:
        try:
            return self._connect()
        except self.driver_error as e:
            raise ConnectionError(self.opts.dsn, str(e).strip())

    def _reset_connection(self, conn) -> None:
        conn.rollback()

    def _open_cursor(self, conn, table: str, worker_index: int):
        """Cursor used to stream rows. Engines return unbuffered cursors here."""
        return conn.cursor()

    def _close_cursor(self, cursor) -> None:
        try:
            cursor.close()
        except self.driver_error as e:
            logger.debug("Error closing cursor", error=str(e))

    def _adapt_value(self, value: Any) -> Any:
        """Convert a row value into something the driver can bind as a parameter."""
        return value

    def _catalog(self, query, *args):
        """Run a catalog lookup on a pooled connection."""
        with self._pool.connection() as conn:
            cursor = conn.cursor()
            try:
                return query(cursor, *args)
            except self.driver_error as e:
                raise QueryError(str(e).strip())
            finally:
                self._close_cursor(cursor)

    def get_tables(self) -> list[str]:
        return sorted(self._catalog(self._list_tables))

    def get_columns(self, table: str) -> list[str]:
        with self._catalog_lock:
            cached = self._columns.get(table)
        if cached is not None:
            return list(cached)

        columns = list(self._catalog(self._list_columns, table))
        if not columns:
            raise TableNotFoundError(table, self.get_tables())

        with self._catalog_lock:
            self._columns[table] = columns
        return list(columns)

    def get_primary_key(self, table: str) -> tuple[str, ...]:
        with self._catalog_lock:
            cached = self._primary_keys.get(table)
        if cached is not None:
            return cached

        pk = tuple(self._catalog(self._list_primary_key, table))
        with self._catalog_lock:
            self._primary_keys[table] = pk
        return pk

    @property
    def max_concurrent_reads(self) -> int:
        # Each read_subset holds one pooled connection until its stream is drained
        return self.opts.max_conns

    def format_column(self, table: str, column: str) -> str:
        return f"{self.quote_identifier(table)}.{self.quote_identifier(column)}"

    def describe(self) -> tuple[str, str]:
        return self.config.display_host, self.config.database

    def build_query(self, selection: Selection, columns: Sequence[str]) -> str:
        """
        Build the SELECT statement for one selection.

        Propagated selections become ``column IN (SELECT ...)`` semi-joins on
        the query of their anchor. The anchor query is wrapped in a derived
        table so that engines rejecting LIMIT inside IN subqueries accept it.
        """
        return self._selection_sql(selection, columns, itertools.count(1))

    def _selection_sql(self, selection: Selection, columns: Sequence[str], aliases) -> str:
        table = selection.table
        select_list = ", ".join(self.format_column(table, col) for col in columns)
        sql = f"SELECT {select_list} FROM {self.quote_identifier(table)}"

        conditions = []
        if selection.match:
            conditions.append(f"({selection.match})")
        if selection.anchor is not None:
            anchor_sql = self._selection_sql(selection.anchor, [selection.anchor_column], aliases)
            alias = self.quote_identifier(f"sub{next(aliases)}")
            conditions.append(
                f"{self.format_column(table, selection.column)} IN "
                f"(SELECT {alias}.{self.quote_identifier(selection.anchor_column)} "
                f"FROM ({anchor_sql}) AS {alias})"
            )
        if conditions:
            sql += " WHERE " + " AND ".join(conditions)

        order = [
            f"{self.format_column(table, col)} {direction.upper()}"
            for col, direction in selection.sorts
        ]
        if selection.limit:
            # Same driving rows for every query that re-selects this subset
            sorted_columns = {col for col, _ in selection.sorts}
            tiebreak = self.get_primary_key(table) or self.get_columns(table)
            for col in tiebreak:
                if col not in sorted_columns:
                    order.append(f"{self.format_column(table, col)} ASC")
        if order:
            sql += " ORDER BY " + ", ".join(order)
        if selection.limit:
            sql += f" LIMIT {int(selection.limit)}"
        return sql

    def _row_key(self, table: str, columns: Sequence[str]):
        pk = self.get_primary_key(table)
        if pk and all(col in columns for col in pk):
            return lambda row: tuple(_hashable(row[col]) for col in pk)
        return lambda row: tuple(_hashable(value) for value in row.values())

    def read_subset(
        self, table: str, worker_index: int, out: "RowStream", opts: ReadTableOpt
    ) -> None:
        log = logger.with_context(table=table, worker=worker_index)
        rows_read = 0
        error: BaseException | None = None
        try:
            selections = plan_selections(table, opts)
            columns = list(opts.columns)
            key = self._row_key(table, columns) if len(selections) > 1 else None
            seen: set = set()
            # Catalog lookups need a connection of their own, so build before checkout
            queries = [(s.subset, self.build_query(s, columns)) for s in selections]

            with self._pool.connection() as conn:
                for subset, query in queries:
                    log.debug("Executing selection", subset=subset, query=query)
                    rows_read += self._stream_query(
                        conn, table, worker_index, query, out, key, seen, rows_read
                    )
        except StreamCancelledError:
            log.debug("Read cancelled by consumer", rows=rows_read)
        except BaseException as e:
            error = e
            if not isinstance(e, Exception):
                raise
        finally:
            out.close(error)

        if error is None:
            log.debug("Finished reading", rows=rows_read)
        else:
            log.warning("Read failed", rows=rows_read, error=str(error))

    def _stream_query(
        self, conn, table, worker_index, query, out, key, seen, rows_before
    ) -> int:
        count = 0
        cursor = self._open_cursor(conn, table, worker_index)
        try:
            try:
                cursor.execute(query)
            except self.driver_error as e:
                raise QueryError(str(e).strip(), table=table, query=query)

            names = None
            while True:
                try:
                    batch = cursor.fetchmany(self.fetch_size)
                except self.driver_error as e:
                    raise ScanError(str(e).strip(), table, rows_before + count)
                if not batch:
                    break
                if names is None:
                    names = [desc[0] for desc in cursor.description]
                for values in batch:
                    row: Row = dict(zip(names, values))
                    if key is not None:
                        row_key = key(row)
                        if row_key in seen:
                            continue
                        seen.add(row_key)
                    out.put(row)
                    count += 1
        finally:
            self._close_cursor(cursor)
        return count

    def acquire(self) -> Any:
        """Check out a connection for writing (see DatabaseDumper)."""
        return self._pool.acquire()

    def release(self, conn: Any, broken: bool = False) -> None:
        self._pool.release(conn, broken=broken)

    def execute_script(self, conn, sql: str) -> None:
        """Execute a multi-statement SQL script (structure, session settings)."""
        cursor = conn.cursor()
        try:
            cursor.execute(sql)
        finally:
            self._close_cursor(cursor)

    def insert_rows(self, conn, table: str, columns: Sequence[str], rows: list[Row]) -> None:
        """Insert a batch of rows with executemany()."""
        column_list = ", ".join(self.quote_identifier(col) for col in columns)
        placeholders = ", ".join([self.placeholder] * len(columns))
        sql = (
            f"INSERT INTO {self.quote_identifier(table)} ({column_list}) "
            f"VALUES ({placeholders})"
        )
        params = [tuple(self._adapt_value(row.get(col)) for col in columns) for row in rows]
        cursor = conn.cursor()
        try:
            cursor.executemany(sql, params)
        finally:
            self._close_cursor(cursor)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._pool.close()
        logger.debug("Closed reader", database=self.config.database)
