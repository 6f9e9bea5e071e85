"""
Structured logging infrastructure for dbsift.

Logs always go to stderr because stdout may carry the SQL dump itself.
Table pipelines run on worker threads, so every record carries the name of
the thread that emitted it next to the structured context (table, worker,
row counts, timing).
"""

import json
import logging
import sys
import time
from contextlib import contextmanager
from typing import Any, TextIO

_loggers: dict[str, logging.Logger] = {}


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs one JSON object per line with the fields:
    - timestamp, level, logger, thread, message
    - exception (when present)
    - context: the keyword context given to ContextLogger
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if getattr(record, "context", None):
            log_data["context"] = record.context

        return json.dumps(log_data, default=str)


class HumanReadableFormatter(logging.Formatter):
    """
    Formatter for terminal output:

        [TIMESTAMP] LEVEL thread: message (key=value, ...)
    """

    def format(self, record: logging.LogRecord) -> str:
        timestamp = self.formatTime(record, self.datefmt)
        message = record.getMessage()

        context_str = ""
        if getattr(record, "context", None):
            context_parts = [f"{k}={v}" for k, v in record.context.items()]
            context_str = f" ({', '.join(context_parts)})"

        exc_str = ""
        if record.exc_info:
            exc_str = "\n" + self.formatException(record.exc_info)

        return (
            f"[{timestamp}] {record.levelname} {record.threadName}: "
            f"{message}{context_str}{exc_str}"
        )


def setup_logging(
    verbose: bool = False,
    no_progress: bool = False,
    structured: bool = False,
    stream: TextIO | None = None,
) -> None:
    """
    Configure the ``dbsift`` logger hierarchy.

    Args:
        verbose: Enable DEBUG level logging
        no_progress: Only log warnings and errors
        structured: Emit JSON lines instead of human-readable text
        stream: Where to write logs (default: stderr)
    """
    if verbose:
        level = logging.DEBUG
    elif no_progress:
        level = logging.WARNING
    else:
        level = logging.INFO

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setLevel(level)

    formatter: logging.Formatter
    if structured:
        formatter = StructuredFormatter(datefmt="%Y-%m-%d %H:%M:%S")
    else:
        formatter = HumanReadableFormatter(datefmt="%Y-%m-%d %H:%M:%S")
    handler.setFormatter(formatter)

    root_logger = logging.getLogger("dbsift")
    root_logger.setLevel(logging.DEBUG)  # Capture all, handler filters
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.propagate = False


def get_logger(name: str) -> "ContextLogger":
    """
    Get or create a logger for a module.

    Args:
        name: Logger name (typically __name__ of calling module)
    """
    if name not in _loggers:
        qualified = name if name.startswith("dbsift") else f"dbsift.{name}"
        _loggers[name] = logging.getLogger(qualified)

    return ContextLogger(_loggers[name])


class ContextLogger:
    """
    Logger wrapper that attaches keyword context to every record.

    Instances are cheap and immutable from the caller's point of view:
    with_context() returns a new logger, so a table pipeline can bind
    its table name once and share the logger with its worker thread.
    """

    def __init__(self, logger: logging.Logger, context: dict[str, Any] | None = None):
        self._logger = logger
        self._context: dict[str, Any] = dict(context or {})

    def _log(
        self, level: int, msg: str, context: dict[str, Any] | None = None, exc_info: Any = None
    ):
        if not self._logger.isEnabledFor(level):
            return

        merged_context = {**self._context}
        if context:
            merged_context.update(context)

        extra = {"context": merged_context} if merged_context else {}
        self._logger.log(level, msg, extra=extra, exc_info=exc_info)

    def debug(self, msg: str, **context):
        self._log(logging.DEBUG, msg, context)

    def info(self, msg: str, **context):
        self._log(logging.INFO, msg, context)

    def warning(self, msg: str, **context):
        self._log(logging.WARNING, msg, context)

    def error(self, msg: str, exc_info: Any = None, **context):
        self._log(logging.ERROR, msg, context, exc_info=exc_info)

    def critical(self, msg: str, exc_info: Any = None, **context):
        self._log(logging.CRITICAL, msg, context, exc_info=exc_info)

    def with_context(self, **context) -> "ContextLogger":
        """
        Return a logger that adds ``context`` to every record.

        Example:
            table_logger = logger.with_context(table="orders", worker=2)
            table_logger.info("Streaming rows")  # Includes table and worker
        """
        return ContextLogger(self._logger, {**self._context, **context})

    @contextmanager
    def timed_operation(self, operation: str, **context):
        """
        Log the start and end of an operation with its duration.

        Example:
            with logger.timed_operation("read_structure"):
                structure = reader.get_structure()
        """
        start_time = time.monotonic()
        self.debug(f"Starting {operation}", **context)

        try:
            yield
        except Exception as e:
            elapsed = time.monotonic() - start_time
            self.error(
                f"Failed {operation}",
                duration_ms=int(elapsed * 1000),
                error=str(e),
                **context,
            )
            raise

        elapsed = time.monotonic() - start_time
        self.info(f"Completed {operation}", duration_ms=int(elapsed * 1000), **context)
