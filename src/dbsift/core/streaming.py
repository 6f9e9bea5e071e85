"""
Concurrent table pipelines.

Every table gets a producer (a reader worker filling a bounded RowStream)
running on a thread pool. A single sink thread owns the dumper and drains
the streams one table at a time, in scheduling order, so every table lands
in the output as one contiguous block. A slot semaphore bounds the number
of tables between scheduling and the end of their block; producers of
tables waiting for the sink block on their full buffer while holding a
source connection, so the slot count never exceeds the reader's
connection limit.
"""

import queue
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from dbsift.constants import DEFAULT_BUFFER_SIZE, DEFAULT_CONCURRENCY
from dbsift.core.rowstream import RowStream
from dbsift.exceptions import StreamCancelledError, TransformError, WriteError
from dbsift.logging import get_logger
from dbsift.models import ReadTableOpt, Row

if TYPE_CHECKING:
    from dbsift.dumpers.base import Dumper
    from dbsift.readers.base import Reader

logger = get_logger(__name__)

Transform = Callable[[str, Row], Row]
ProgressCallback = Callable[[str, str, int, int], None]

_POLL_INTERVAL = 0.05


class TableState(Enum):
    """Lifecycle of one table pipeline. States only move forward."""

    PENDING = "pending"
    CONNECTED = "connected"
    STREAMING = "streaming"
    DRAINING = "draining"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TableState.DONE, TableState.FAILED)


_STATE_ORDER = {state: i for i, state in enumerate(TableState)}


@dataclass
class TableReport:
    """Outcome of one table."""

    table: str
    state: TableState = TableState.PENDING
    rows_written: int = 0
    rows_skipped: int = 0
    error: BaseException | None = None
    duration: float = 0.0  # seconds

    @property
    def failed(self) -> bool:
        return self.state is TableState.FAILED


class TablePipeline:
    """Stream, state and report of one table while it is being dumped."""

    def __init__(self, table: str, worker_index: int, buffer_size: int, opts: ReadTableOpt):
        self.table = table
        self.worker_index = worker_index
        self.opts = opts
        self.stream = RowStream(table, buffer_size)
        self.report = TableReport(table)
        self._lock = threading.Lock()

    @property
    def state(self) -> TableState:
        return self.report.state

    def advance(self, state: TableState) -> bool:
        """
        Move to ``state`` if it is later than the current one.

        Terminal states absorb every later transition. Returns whether the
        state changed.
        """
        with self._lock:
            current = self.report.state
            if current.is_terminal:
                return False
            if state.is_terminal or _STATE_ORDER[state] > _STATE_ORDER[current]:
                self.report.state = state
                return True
            return False

    def fail(self, error: BaseException) -> None:
        with self._lock:
            if self.report.state.is_terminal:
                return
            self.report.state = TableState.FAILED
            self.report.error = error
        self.stream.cancel()


class StreamingPipeline:
    """
    Runs the table pipelines of a dump.

    A failing table is marked FAILED and its siblings carry on, unless
    ``fail_fast`` is set. A WriteError always aborts the run: the remaining
    scheduled tables are cancelled and marked FAILED, tables that were never
    scheduled stay PENDING.
    """

    def __init__(
        self,
        reader: "Reader",
        dumper: "Dumper",
        concurrency: int = DEFAULT_CONCURRENCY,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        transform: Transform | None = None,
        fail_fast: bool = False,
        fail_on_transform_error: bool = False,
        progress_callback: ProgressCallback | None = None,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if buffer_size < 1:
            raise ValueError("buffer_size must be at least 1")
        self.reader = reader
        self.dumper = dumper
        self.concurrency = concurrency
        self.buffer_size = buffer_size
        self.transform = transform
        self.fail_fast = fail_fast
        self.fail_on_transform_error = fail_on_transform_error
        self.progress_callback = progress_callback

        # Producers hold a source connection while they wait for the sink
        self.workers = concurrency
        read_limit = reader.max_concurrent_reads
        if read_limit is not None and read_limit < concurrency:
            logger.warning(
                "Limiting concurrent tables to the source connection limit",
                concurrency=concurrency,
                max_conns=read_limit,
            )
            self.workers = read_limit

        self.abort_error: BaseException | None = None
        self._abort = threading.Event()
        self._abort_lock = threading.Lock()
        self._completed = 0
        self._total = 0

    @property
    def aborted(self) -> bool:
        return self._abort.is_set()

    def _log(self, stage: str, message: str, current: int = 0, total: int = 0) -> None:
        """Send progress update to callback if configured."""
        if self.progress_callback:
            self.progress_callback(stage, message, current, total)

    def _abort_run(self, error: BaseException) -> None:
        with self._abort_lock:
            if self._abort.is_set():
                return
            self.abort_error = error
            self._abort.set()
        logger.error("Aborting dump", error=str(error))

    def run(
        self, tables: list[str], read_opts: Mapping[str, ReadTableOpt]
    ) -> dict[str, TableReport]:
        """
        Dump ``tables`` in order and return one report per table.

        Args:
            tables: Tables to stream, in output order
            read_opts: Read options for every table in ``tables``
        """
        reports = {table: TableReport(table) for table in tables}
        self._total = len(tables)
        self._completed = 0

        slots = threading.BoundedSemaphore(self.workers)
        handoff: queue.Queue[TablePipeline | None] = queue.Queue()
        sink = threading.Thread(
            target=self._sink, args=(handoff, slots), name="dbsift-sink", daemon=True
        )

        logger.info(
            "Starting table pipelines",
            table_count=len(tables),
            concurrency=self.workers,
            buffer_size=self.buffer_size,
        )

        with ThreadPoolExecutor(
            max_workers=self.workers, thread_name_prefix="dbsift-reader"
        ) as executor:
            sink.start()
            try:
                for index, table in enumerate(tables):
                    if not self._acquire_slot(slots):
                        break
                    pipeline = TablePipeline(
                        table, index % self.workers, self.buffer_size, read_opts[table]
                    )
                    reports[table] = pipeline.report
                    try:
                        executor.submit(self._produce, pipeline)
                    except BaseException:
                        slots.release()
                        raise
                    handoff.put(pipeline)
            finally:
                handoff.put(None)
                sink.join()

        failed = sum(1 for report in reports.values() if report.failed)
        logger.info(
            "Table pipelines finished",
            tables=len(tables),
            failed=failed,
            aborted=self.aborted,
        )
        return reports

    def _acquire_slot(self, slots: threading.BoundedSemaphore) -> bool:
        while not self._abort.is_set():
            if slots.acquire(timeout=_POLL_INTERVAL):
                if self._abort.is_set():
                    slots.release()
                    return False
                return True
        return False

    def _produce(self, pipeline: TablePipeline) -> None:
        pipeline.advance(TableState.CONNECTED)
        try:
            self.reader.read_subset(
                pipeline.table, pipeline.worker_index, pipeline.stream, pipeline.opts
            )
        except Exception as e:
            logger.error("Reader raised instead of closing its stream", table=pipeline.table)
            if not pipeline.stream.closed:
                pipeline.stream.close(e)
        else:
            if not pipeline.stream.closed:
                pipeline.stream.close()
        pipeline.advance(TableState.DRAINING)

    def _sink(self, handoff: "queue.Queue[TablePipeline | None]", slots) -> None:
        while True:
            pipeline = handoff.get()
            if pipeline is None:
                return
            try:
                if self._abort.is_set():
                    pipeline.fail(
                        StreamCancelledError(f"Dump aborted: {self.abort_error}")
                    )
                else:
                    self._drain(pipeline)
            finally:
                slots.release()
                self._completed += 1
                report = pipeline.report
                self._log(
                    "table",
                    f"{report.table}: {report.state.value} ({report.rows_written} rows)",
                    self._completed,
                    self._total,
                )

    def _rows(self, pipeline: TablePipeline) -> Iterator[Row]:
        table = pipeline.table
        report = pipeline.report
        for row in pipeline.stream:
            pipeline.advance(TableState.STREAMING)
            if self.transform is not None:
                try:
                    row = self.transform(table, row)
                except TransformError as e:
                    if self.fail_on_transform_error:
                        raise
                    report.rows_skipped += 1
                    logger.warning("Skipping row the transform rejected", table=table, error=str(e))
                    continue
                except Exception as e:
                    if self.fail_on_transform_error:
                        raise TransformError(str(e), table) from e
                    report.rows_skipped += 1
                    logger.warning("Skipping row the transform rejected", table=table, error=str(e))
                    continue
            yield row

    def _drain(self, pipeline: TablePipeline) -> None:
        table = pipeline.table
        report = pipeline.report
        log = logger.with_context(table=table)
        start = time.monotonic()
        log.debug("Draining table stream")
        try:
            written = self.dumper.dump_table(table, self._rows(pipeline))
        except WriteError as e:
            pipeline.fail(e)
            self._abort_run(e)
        except Exception as e:
            pipeline.fail(e)
            log.error("Table failed", error=str(e))
            if self.fail_fast:
                self._abort_run(e)
        else:
            report.rows_written = written
            pipeline.advance(TableState.DONE)
            log.info("Table dumped", rows=written, skipped=report.rows_skipped)
        finally:
            report.duration = time.monotonic() - start
