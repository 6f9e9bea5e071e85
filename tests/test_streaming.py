"""Tests for the concurrent table pipelines."""

import time

import pytest

from dbsift.core.streaming import StreamingPipeline, TablePipeline, TableState
from dbsift.exceptions import ScanError, StreamCancelledError, TransformError, WriteError
from dbsift.models import ConnOpts, ReadTableOpt
from dbsift.readers.sqlite import SQLiteReader
from tests.conftest import (
    ORDER_COUNT,
    USER_COUNT,
    CollectingDumper,
    MockReader,
    make_rows,
    read_opts_for,
)

TABLES = ["customers", "invoices", "payments", "refunds"]


def run_pipeline(data, reader=None, dumper=None, tables=None, **kwargs):
    reader = reader or MockReader(data)
    dumper = dumper or CollectingDumper()
    pipeline = StreamingPipeline(reader, dumper, **kwargs)
    reports = pipeline.run(tables or list(data), read_opts_for(data))
    return pipeline, reports, dumper


def assert_blocks_not_interleaved(dumper: CollectingDumper) -> None:
    current = None
    for event in dumper.events:
        kind, table = event[0], event[1]
        if kind == "begin":
            assert current is None, f"{table} started inside the block of {current}"
            current = table
        else:
            assert table == current, f"{kind} for {table} inside the block of {current}"
            if kind in ("end", "abort"):
                current = None


class TestTablePipeline:
    """Tests for the per-table state machine."""

    def make(self) -> TablePipeline:
        return TablePipeline("users", 0, 10, ReadTableOpt(columns=("id",)))

    def test_starts_pending(self):
        assert self.make().state is TableState.PENDING

    def test_moves_forward(self):
        pipeline = self.make()
        assert pipeline.advance(TableState.CONNECTED)
        assert pipeline.advance(TableState.STREAMING)
        assert pipeline.state is TableState.STREAMING

    def test_never_moves_backward(self):
        pipeline = self.make()
        pipeline.advance(TableState.DRAINING)
        assert not pipeline.advance(TableState.STREAMING)
        assert pipeline.state is TableState.DRAINING

    def test_terminal_state_absorbs_transitions(self):
        pipeline = self.make()
        pipeline.advance(TableState.DONE)
        assert not pipeline.advance(TableState.FAILED)
        pipeline.fail(RuntimeError("late"))
        assert pipeline.state is TableState.DONE
        assert pipeline.report.error is None

    def test_fail_records_error_and_cancels_stream(self):
        pipeline = self.make()
        error = RuntimeError("boom")
        pipeline.fail(error)
        assert pipeline.state is TableState.FAILED
        assert pipeline.report.error is error
        assert pipeline.stream.cancelled


class TestStreamingPipelineSuccess:
    """Tests for runs where every table succeeds."""

    def test_all_tables_done(self, shop_data):
        pipeline, reports, dumper = run_pipeline(shop_data, concurrency=2, buffer_size=2)

        assert list(reports) == TABLES
        for table in TABLES:
            assert reports[table].state is TableState.DONE
            assert reports[table].rows_written == len(shop_data[table])
            assert dumper.rows(table) == shop_data[table]
        assert not pipeline.aborted

    def test_blocks_follow_table_order(self, shop_data):
        _, _, dumper = run_pipeline(shop_data, concurrency=4, buffer_size=1)
        assert dumper.blocks() == TABLES
        assert_blocks_not_interleaved(dumper)

    def test_empty_table(self):
        data = {"empty": [], "full": make_rows(3)}
        _, reports, dumper = run_pipeline(data)
        assert reports["empty"].state is TableState.DONE
        assert reports["empty"].rows_written == 0
        assert ("end", "empty", 0) in dumper.events

    def test_no_tables(self):
        pipeline = StreamingPipeline(MockReader({}), CollectingDumper())
        assert pipeline.run([], {}) == {}

    def test_concurrency_bounds_active_readers(self):
        data = {f"t{i}": make_rows(3) for i in range(6)}
        reader = MockReader(data, delay=0.01)
        _, reports, _ = run_pipeline(data, reader=reader, concurrency=2, buffer_size=1)

        assert sorted(reader.reads) == sorted(data)
        assert reader.max_active <= 2
        assert all(report.state is TableState.DONE for report in reports.values())

    def test_reader_limit_caps_active_tables(self):
        data = {f"t{i}": make_rows(3) for i in range(4)}
        reader = MockReader(data, delay=0.01)
        reader.max_concurrent_reads = 1
        pipeline, reports, _ = run_pipeline(data, reader=reader, concurrency=3, buffer_size=1)

        assert pipeline.workers == 1
        assert reader.max_active == 1
        assert all(report.state is TableState.DONE for report in reports.values())

    def test_fewer_connections_than_tables(self, sqlite_url):
        class SlowOrdersReader(SQLiteReader):
            def read_subset(self, table, worker_index, out, opts):
                if table == "orders":
                    time.sleep(0.3)
                super().read_subset(table, worker_index, out, opts)

        with SlowOrdersReader(ConnOpts(dsn=sqlite_url, timeout=1.0, max_conns=1)) as reader:
            tables = ["orders", "users"]
            read_opts = {
                table: ReadTableOpt(columns=tuple(reader.get_columns(table))) for table in tables
            }
            dumper = CollectingDumper()
            pipeline = StreamingPipeline(reader, dumper, concurrency=2, buffer_size=1)
            reports = pipeline.run(tables, read_opts)

        assert pipeline.workers == 1
        assert reports["orders"].state is TableState.DONE, reports["orders"].error
        assert reports["orders"].rows_written == ORDER_COUNT
        assert reports["users"].rows_written == USER_COUNT

    def test_progress_callback(self, shop_data):
        calls = []
        run_pipeline(
            shop_data,
            progress_callback=lambda stage, message, current, total: calls.append(
                (stage, current, total)
            ),
        )
        assert [call for call in calls if call[0] == "table"] == [
            ("table", i, len(TABLES)) for i in range(1, len(TABLES) + 1)
        ]

    def test_invalid_settings(self):
        with pytest.raises(ValueError, match="concurrency"):
            StreamingPipeline(MockReader({}), CollectingDumper(), concurrency=0)
        with pytest.raises(ValueError, match="buffer_size"):
            StreamingPipeline(MockReader({}), CollectingDumper(), buffer_size=0)


class TestStreamingPipelineFailures:
    """Tests for failure isolation, fail-fast and write errors."""

    def test_reader_failure_is_isolated(self, shop_data):
        error = ScanError("connection reset", "invoices", 3)
        reader = MockReader(shop_data, failures={"invoices": (3, error)})
        pipeline, reports, dumper = run_pipeline(shop_data, reader=reader, concurrency=2)

        assert reports["invoices"].state is TableState.FAILED
        assert reports["invoices"].error is error
        for table in ("customers", "payments", "refunds"):
            assert reports[table].state is TableState.DONE
        assert ("abort", "invoices") in dumper.events
        assert not pipeline.aborted
        assert_blocks_not_interleaved(dumper)

    def test_reader_raising_fails_only_its_table(self, shop_data):
        reader = MockReader(shop_data, raise_on={"payments"})
        _, reports, _ = run_pipeline(shop_data, reader=reader)

        assert reports["payments"].state is TableState.FAILED
        assert isinstance(reports["payments"].error, RuntimeError)
        assert reports["refunds"].state is TableState.DONE

    def test_fail_fast_stops_scheduling(self, shop_data):
        error = ScanError("connection reset", "invoices", 1)
        reader = MockReader(shop_data, failures={"invoices": (1, error)})
        pipeline, reports, dumper = run_pipeline(
            shop_data, reader=reader, concurrency=1, fail_fast=True
        )

        assert pipeline.aborted
        assert pipeline.abort_error is error
        assert reports["customers"].state is TableState.DONE
        assert reports["invoices"].state is TableState.FAILED
        assert reports["payments"].state is TableState.PENDING
        assert reports["refunds"].state is TableState.PENDING
        assert dumper.blocks() == ["customers", "invoices"]

    def test_write_error_aborts_run(self, shop_data):
        dumper = CollectingDumper(fail_on={"invoices": 2})
        pipeline, reports, _ = run_pipeline(shop_data, dumper=dumper, concurrency=1)

        assert pipeline.aborted
        assert isinstance(pipeline.abort_error, WriteError)
        assert reports["invoices"].state is TableState.FAILED
        assert reports["payments"].state is TableState.PENDING
        assert reports["refunds"].state is TableState.PENDING

    def test_write_error_cancels_scheduled_tables(self, shop_data):
        dumper = CollectingDumper(fail_on={"invoices": 0})
        pipeline, reports, _ = run_pipeline(
            shop_data, dumper=dumper, concurrency=4, buffer_size=1
        )

        assert pipeline.aborted
        assert reports["customers"].state is TableState.DONE
        assert reports["invoices"].state is TableState.FAILED
        for table in ("payments", "refunds"):
            report = reports[table]
            assert report.state in (TableState.FAILED, TableState.PENDING)
            if report.state is TableState.FAILED:
                assert isinstance(report.error, StreamCancelledError)
        # Nothing is written after the failed block
        assert dumper.blocks() == ["customers", "invoices"]


class TestStreamingPipelineTransform:
    """Tests for the transform stage between reader and dumper."""

    def test_transform_output_is_written(self, shop_data):
        def transform(table, row):
            return {**row, "table": table}

        _, _, dumper = run_pipeline(shop_data, transform=transform)
        assert all(row["table"] == "refunds" for row in dumper.rows("refunds"))

    def test_rejected_rows_are_skipped(self, shop_data):
        def transform(table, row):
            if table == "customers" and row["id"] == 2:
                raise TransformError("cannot anonymize", table, "name")
            if table == "customers" and row["id"] == 4:
                raise ValueError("unexpected value")
            return row

        _, reports, dumper = run_pipeline(shop_data, transform=transform)

        report = reports["customers"]
        assert report.state is TableState.DONE
        assert report.rows_written == 3
        assert report.rows_skipped == 2
        assert [row["id"] for row in dumper.rows("customers")] == [1, 3, 5]

    def test_fail_on_transform_error(self, shop_data):
        def transform(table, row):
            if table == "invoices" and row["id"] == 3:
                raise ValueError("unexpected value")
            return row

        pipeline, reports, dumper = run_pipeline(
            shop_data, transform=transform, fail_on_transform_error=True
        )

        assert reports["invoices"].state is TableState.FAILED
        assert isinstance(reports["invoices"].error, TransformError)
        assert ("abort", "invoices") in dumper.events
        assert reports["payments"].state is TableState.DONE
        assert not pipeline.aborted
