import time
from dataclasses import dataclass, field

from dbsift.config import DumpConfig
from dbsift.core.streaming import (
    ProgressCallback,
    StreamingPipeline,
    TableReport,
    TableState,
    Transform,
)
from dbsift.core.subset import SubsetResolver
from dbsift.dumpers import get_dumper
from dbsift.exceptions import PipelineError, TableNotFoundError
from dbsift.logging import get_logger
from dbsift.models import ConnOpts, ReadTableOpt
from dbsift.readers import connect
from dbsift.readers.base import Reader
from dbsift.utils.anonymizer import DeterministicAnonymizer

logger = get_logger(__name__)


@dataclass
class DumpResult:
    """
    Outcome of a dump.

    Attributes:
        reports: One report per table with data, in output order
        ignored_tables: Tables dumped as structure only
        aborted: Whether the run stopped before every table was scheduled
        abort_error: The error that aborted the run
        duration: Wall time of the whole dump in seconds
    """

    reports: dict[str, TableReport] = field(default_factory=dict)
    ignored_tables: list[str] = field(default_factory=list)
    aborted: bool = False
    abort_error: BaseException | None = None
    duration: float = 0.0

    def failed_tables(self) -> dict[str, BaseException | None]:
        """Failed tables and their errors."""
        return {
            table: report.error for table, report in self.reports.items() if report.failed
        }

    def pending_tables(self) -> list[str]:
        """Tables that were never scheduled because the run aborted."""
        return [t for t, r in self.reports.items() if r.state is TableState.PENDING]

    def total_rows(self) -> int:
        return sum(report.rows_written for report in self.reports.values())

    def table_count(self) -> int:
        return len(self.reports)

    @property
    def ok(self) -> bool:
        return not self.aborted and not self.failed_tables()

    def raise_for_failures(self) -> None:
        """
        Raises:
            PipelineError: If any table failed or the run was aborted
        """
        failures: dict[str, BaseException] = {}
        for table, error in self.failed_tables().items():
            failures[table] = error if error is not None else RuntimeError("failed")
        if self.aborted and self.abort_error is not None and not failures:
            failures["<run>"] = self.abort_error
        if failures:
            raise PipelineError(failures)


class DumpEngine:
    """
    Copies a subset of the source database to the configured destination.

    Steps:
    1. Connect to the source and list its tables
    2. Build read options from the configured subsets and propagate
       relationship selections to their target tables
    3. Capture the structure and hand it to the dumper
    4. Stream every table through the anonymizer into the dumper
    """

    def __init__(self, config: DumpConfig, progress_callback: ProgressCallback | None = None):
        self.config = config
        self.progress_callback = progress_callback

    def _log(self, stage: str, message: str, current: int = 0, total: int = 0) -> None:
        """Send progress update to callback if configured."""
        if self.progress_callback:
            self.progress_callback(stage, message, current, total)

    def dump(self) -> DumpResult:
        """
        Run the dump.

        Table failures are reported in the result, not raised. Errors that
        make the dump impossible (unreachable source, unknown tables in the
        configuration, unwritable destination) are raised.
        """
        start = time.monotonic()
        self._log("connect", "Connecting to source database...")
        with connect(self.config.source) as reader:
            result = self._dump(reader)
        result.duration = time.monotonic() - start
        logger.info(
            "Dump finished",
            tables=result.table_count(),
            rows=result.total_rows(),
            failed=len(result.failed_tables()),
            duration_ms=int(result.duration * 1000),
        )
        return result

    def _check_configured_tables(self, tables: list[str]) -> None:
        configured = (
            set(self.config.subsets)
            | set(self.config.ignore_data)
            | set(self.config.anonymize_fields)
        )
        for table in sorted(configured):
            if table not in tables:
                raise TableNotFoundError(table, tables)

    def build_read_opts(self, reader: Reader, tables: list[str]) -> dict[str, ReadTableOpt]:
        """Read options of every table with data, relationship selections attached."""
        opts = {
            table: self.config.read_table_opt(table, reader.get_columns(table))
            for table in tables
        }
        resolved = SubsetResolver(tables).propagate(opts)
        return {table: resolved[table] for table in tables if table not in self.config.ignore_data}

    def build_transform(self, reader: Reader, tables: list[str]) -> Transform | None:
        if not self.config.anonymization_enabled:
            return None

        protected: dict[str, set[str]] = {
            table: set(reader.get_primary_key(table)) for table in tables
        }
        for table, subsets in self.config.subsets.items():
            for subset in subsets:
                for rel in subset.relationships:
                    protected.setdefault(rel.table or table, set()).add(rel.foreign_key)
                    protected.setdefault(rel.referenced_table, set()).add(rel.referenced_key)

        anonymizer = DeterministicAnonymizer(
            seed=self.config.anonymization_seed,
            auto=self.config.anonymize,
            protected_columns=protected,
        )
        anonymizer.configure(self.config.anonymize_fields)
        return anonymizer.anonymize_row

    def _dump(self, reader: Reader) -> DumpResult:
        tables = reader.get_tables()
        self._check_configured_tables(tables)
        logger.info("Found tables", count=len(tables))

        read_opts = self.build_read_opts(reader, tables)
        transform = self.build_transform(reader, tables)

        self._log("structure", "Reading structure...")
        with logger.timed_operation("read_structure"):
            structure = reader.get_structure()

        dest_opts = ConnOpts(
            dsn=self.config.destination,
            timeout=self.config.source.timeout,
            max_conns=1,
            max_idle_conns=1,
        )
        dumper = get_dumper(self.config.destination, reader, dest_opts)
        try:
            dumper.dump_structure(structure)
            pipeline = StreamingPipeline(
                reader,
                dumper,
                concurrency=self.config.concurrency,
                buffer_size=self.config.buffer_size,
                transform=transform,
                fail_fast=self.config.fail_fast,
                fail_on_transform_error=self.config.fail_on_transform_error,
                progress_callback=self.progress_callback,
            )
            data_tables = [table for table in tables if table in read_opts]
            reports = pipeline.run(data_tables, read_opts)
        finally:
            dumper.close()

        return DumpResult(
            reports=reports,
            ignored_tables=sorted(self.config.ignore_data),
            aborted=pipeline.aborted,
            abort_error=pipeline.abort_error,
        )


def dump_subset(config: DumpConfig, progress_callback: ProgressCallback | None = None) -> DumpResult:
    """Run a dump with ``config``; see DumpEngine."""
    return DumpEngine(config, progress_callback).dump()
