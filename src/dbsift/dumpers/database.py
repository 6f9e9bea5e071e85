from typing import TYPE_CHECKING, Any

from dbsift.constants import DEFAULT_INSERT_BATCH_SIZE
from dbsift.dumpers.base import Dumper
from dbsift.exceptions import ConnectionError, WriteError
from dbsift.logging import get_logger
from dbsift.models import Row

if TYPE_CHECKING:
    from dbsift.readers.base import SQLReader

logger = get_logger(__name__)


class DatabaseDumper(Dumper):
    """
    Loads the dump into a live database of the source engine.

    Each table is inserted in batches inside its own transaction, which is
    rolled back when the table fails.
    """

    def __init__(self, destination: "SQLReader", batch_size: int = DEFAULT_INSERT_BATCH_SIZE):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.destination = destination
        self.batch_size = batch_size
        self._conn: Any = None
        self._columns: tuple[str, ...] | None = None
        self._batch: list[Row] = []
        self._closed = False

    def _acquire(self, table: str | None = None) -> Any:
        try:
            return self.destination.acquire()
        except ConnectionError as e:
            raise WriteError(str(e), table=table) from e

    def _relax_constraints(self, conn, table: str | None = None) -> None:
        if self.destination.relaxed_constraints_sql:
            self._execute_script(conn, ";\n".join(self.destination.relaxed_constraints_sql), table)

    def _execute_script(self, conn, sql: str, table: str | None = None) -> None:
        try:
            self.destination.execute_script(conn, sql)
        except self.destination.driver_error as e:
            raise WriteError(str(e).strip(), table=table) from e

    def dump_structure(self, structure: str) -> None:
        conn = self._acquire()
        broken = False
        try:
            self._relax_constraints(conn)
            if structure.strip():
                self._execute_script(conn, structure)
            conn.commit()
        except BaseException:
            broken = True
            raise
        finally:
            self.destination.release(conn, broken=broken)
        logger.info("Loaded structure into destination")

    def _begin_table(self, table: str) -> None:
        self._conn = self._acquire(table)
        self._columns = None
        self._batch = []
        try:
            self._relax_constraints(self._conn, table)
        except WriteError:
            self._finish(broken=True)
            raise

    def _flush(self, table: str) -> None:
        if not self._batch:
            return
        try:
            self.destination.insert_rows(self._conn, table, self._columns or (), self._batch)
        except self.destination.driver_error as e:
            raise WriteError(str(e).strip(), table=table) from e
        self._batch = []

    def _write_row(self, table: str, row: Row) -> None:
        if self._columns is None:
            self._columns = tuple(row)
        self._batch.append(row)
        if len(self._batch) >= self.batch_size:
            try:
                self._flush(table)
            except WriteError:
                self._rollback(table)
                raise

    def _end_table(self, table: str, count: int) -> None:
        try:
            self._flush(table)
            try:
                self._conn.commit()
            except self.destination.driver_error as e:
                raise WriteError(str(e).strip(), table=table) from e
        except WriteError:
            self._rollback(table)
            raise
        self._finish(broken=False)
        logger.debug("Committed table", table=table, rows=count)

    def _abort_table(self, table: str) -> None:
        self._rollback(table)
        logger.warning("Rolled back table", table=table)

    def _rollback(self, table: str) -> None:
        if self._conn is None:
            return
        broken = False
        try:
            self._conn.rollback()
        except self.destination.driver_error as e:
            logger.warning("Rollback failed", table=table, error=str(e))
            broken = True
        self._finish(broken=broken)

    def _finish(self, broken: bool) -> None:
        conn, self._conn = self._conn, None
        self._batch = []
        if conn is not None:
            self.destination.release(conn, broken=broken)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._conn is not None:
            self._rollback("")
        self.destination.close()
