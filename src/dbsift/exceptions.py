import re

from dbsift.constants import MAX_SIMILAR_SUGGESTIONS

__all__ = [
    "DbsiftError",
    "UnsupportedSourceError",
    "ConnectionError",
    "InvalidURLError",
    "TableNotFoundError",
    "QueryError",
    "ScanError",
    "TransformError",
    "WriteError",
    "StreamClosedError",
    "StreamCancelledError",
    "PipelineError",
]


def mask_password(url: str) -> str:
    """Mask password in database URL for safe display."""
    # Match password in URL: ://user:password@host
    # Use a greedy match for password up to the LAST @ before the host
    return re.sub(r"(://[^:/]+:)(.+)(@[^@]+)$", r"\1****\3", url)


class DbsiftError(Exception):
    """Base exception for all dbsift errors."""

    pass


class UnsupportedSourceError(DbsiftError):
    """No registered driver accepts the connection address."""

    def __init__(self, url: str, drivers: list[str] | None = None):
        self.url = url
        self.drivers = drivers or []
        msg = f"Unsupported database address {mask_password(url)!r}"
        if self.drivers:
            msg += f". Registered drivers: {', '.join(self.drivers)}"
        super().__init__(msg)


class ConnectionError(DbsiftError):
    """Failed to connect to database."""

    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"Cannot connect to {mask_password(url)}: {reason}")


class InvalidURLError(DbsiftError):
    """Database URL is malformed."""

    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"Invalid database URL: {reason}")


class TableNotFoundError(DbsiftError):
    """Referenced table does not exist in the database."""

    def __init__(self, table: str, available_tables: list[str] | None = None):
        self.table = table
        self.available_tables = available_tables
        msg = f"Table '{table}' not found in database"
        if available_tables:
            suggestions = self._find_similar(table, available_tables)
            if suggestions:
                msg += f". Did you mean: {', '.join(suggestions)}?"
        super().__init__(msg)

    @staticmethod
    def _find_similar(
        target: str, candidates: list[str], max_results: int = MAX_SIMILAR_SUGGESTIONS
    ) -> list[str]:
        """Find similar table names using simple substring matching."""
        target_lower = target.lower()
        similar = []
        for name in candidates:
            name_lower = name.lower()
            if target_lower in name_lower or name_lower in target_lower:
                similar.append(name)
            elif len(set(target_lower) & set(name_lower)) > len(target_lower) // 2:
                similar.append(name)
        return similar[:max_results]


class QueryError(DbsiftError):
    """A row selection could not be executed (bad predicate, missing column, ...)."""

    def __init__(self, reason: str, table: str | None = None, query: str | None = None):
        self.reason = reason
        self.table = table
        self.query = query
        msg = f"Query failed: {reason}"
        if table:
            msg = f"Query failed for table '{table}': {reason}"
        super().__init__(msg)


class ScanError(DbsiftError):
    """A row could not be fetched or decoded while streaming."""

    def __init__(self, reason: str, table: str, rows_read: int = 0):
        self.reason = reason
        self.table = table
        self.rows_read = rows_read
        super().__init__(
            f"Reading table '{table}' failed after {rows_read} row(s): {reason}"
        )


class TransformError(DbsiftError):
    """The transform stage could not produce a row."""

    def __init__(self, reason: str, table: str | None = None, column: str | None = None):
        self.reason = reason
        self.table = table
        self.column = column
        location = ".".join(part for part in (table, column) if part)
        msg = f"Transform failed: {reason}"
        if location:
            msg = f"Transform failed for '{location}': {reason}"
        super().__init__(msg)


class WriteError(DbsiftError):
    """The destination could not be written. Fatal for the whole run."""

    def __init__(self, reason: str, table: str | None = None):
        self.reason = reason
        self.table = table
        msg = f"Write failed: {reason}"
        if table:
            msg = f"Write failed for table '{table}': {reason}"
        super().__init__(msg)


class StreamClosedError(DbsiftError):
    """A row stream was used after it had been closed."""

    pass


class StreamCancelledError(DbsiftError):
    """The consumer of a row stream gave up; the producer must stop."""

    pass


class PipelineError(DbsiftError):
    """One or more table pipelines failed."""

    def __init__(self, failures: dict[str, BaseException]):
        self.failures = failures
        lines = [f"{len(failures)} table(s) failed:"]
        for table, error in failures.items():
            lines.append(f"  {table}: {error}")
        super().__init__("\n".join(lines))
