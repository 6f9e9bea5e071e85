from abc import ABC, abstractmethod
from collections.abc import Iterable

from dbsift.exceptions import WriteError
from dbsift.models import Row


class Dumper(ABC):
    """
    Destination of a dump.

    A dumper is driven by a single thread: the structure first, then one
    dump_table() call per table. Each table is written as one block that is
    either completed or aborted.
    """

    @abstractmethod
    def dump_structure(self, structure: str) -> None:
        """
        Write the DDL captured from the source.

        Raises:
            WriteError: If the destination cannot be written
        """
        pass

    def dump_table(self, table: str, rows: Iterable[Row]) -> int:
        """
        Write every row of ``rows`` as the block of ``table``.

        Errors raised while iterating ``rows`` (reader or transform
        failures) abort the block and propagate unchanged.

        Returns:
            Number of rows written

        Raises:
            WriteError: If the destination cannot be written
        """
        count = 0
        try:
            self._begin_table(table)
            for row in rows:
                self._write_row(table, row)
                count += 1
            self._end_table(table, count)
        except WriteError:
            raise
        except OSError as e:
            raise WriteError(str(e), table=table) from e
        except Exception:
            self._abort_table(table)
            raise
        return count

    @abstractmethod
    def _begin_table(self, table: str) -> None:
        pass

    @abstractmethod
    def _write_row(self, table: str, row: Row) -> None:
        pass

    @abstractmethod
    def _end_table(self, table: str, count: int) -> None:
        pass

    @abstractmethod
    def _abort_table(self, table: str) -> None:
        """Discard the partially written block of ``table``."""
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    def __enter__(self) -> "Dumper":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
