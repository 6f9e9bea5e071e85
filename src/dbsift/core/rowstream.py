import queue
import threading
from collections.abc import Iterator

from dbsift.exceptions import StreamCancelledError, StreamClosedError
from dbsift.models import Row

_END = object()
_POLL_INTERVAL = 0.05  # seconds between cancellation checks while blocked


class RowStream:
    """
    Bounded single-producer, single-consumer queue of rows for one table.

    The producer (a reader) calls put() for every row and close() exactly
    once, passing the error that ended the read, if any. The consumer
    iterates; iteration ends after the last row and re-raises the
    producer's error. A consumer that gives up calls cancel(), which makes
    the producer's next put() raise StreamCancelledError.
    """

    def __init__(self, table: str, maxsize: int):
        if maxsize < 1:
            raise ValueError("maxsize must be at least 1")
        self.table = table
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self._closed = threading.Event()
        self._cancelled = threading.Event()
        self._lock = threading.Lock()
        self._error: BaseException | None = None
        self.rows_put = 0

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def error(self) -> BaseException | None:
        return self._error

    def _offer(self, item) -> None:
        while True:
            if self._cancelled.is_set():
                raise StreamCancelledError(f"Stream for table '{self.table}' was cancelled")
            try:
                self._queue.put(item, timeout=_POLL_INTERVAL)
                return
            except queue.Full:
                continue

    def put(self, row: Row) -> None:
        """
        Hand one row to the consumer, blocking while the buffer is full.

        Raises:
            StreamCancelledError: If the consumer cancelled the stream
            StreamClosedError: If the stream was already closed
        """
        if self._cancelled.is_set():
            raise StreamCancelledError(f"Stream for table '{self.table}' was cancelled")
        if self._closed.is_set():
            raise StreamClosedError(f"Stream for table '{self.table}' is closed")
        self._offer(row)
        self.rows_put += 1

    def close(self, error: BaseException | None = None) -> None:
        """
        Signal end of data, optionally with the error that ended it.

        Raises:
            StreamClosedError: If the stream was already closed
        """
        with self._lock:
            if self._closed.is_set():
                raise StreamClosedError(f"Stream for table '{self.table}' closed twice")
            self._error = error
            self._closed.set()
        try:
            self._offer(_END)
        except StreamCancelledError:
            # Nobody is reading any more
            pass

    def cancel(self) -> None:
        """Stop the producer and drop buffered rows."""
        self._cancelled.set()
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                break

    def __iter__(self) -> Iterator[Row]:
        while True:
            item = self._queue.get()
            if item is _END:
                if self._error is not None:
                    raise self._error
                return
            yield item
