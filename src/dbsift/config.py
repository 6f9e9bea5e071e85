from dataclasses import dataclass, field
from enum import Enum

from dbsift.constants import (
    DEFAULT_ANONYMIZATION_SEED,
    DEFAULT_BUFFER_SIZE,
    DEFAULT_CONCURRENCY,
)
from dbsift.models import ConnOpts, ReadTableOpt, SubsetOpt


class DatabaseType(Enum):
    """Supported database types."""

    POSTGRESQL = "postgresql"
    MYSQL = "mysql"
    SQLITE = "sqlite"


@dataclass
class DumpConfig:
    """Configuration for a dump operation."""

    source: ConnOpts
    destination: str = "-"  # "-" = stdout, a file path, or a database URL
    subsets: dict[str, tuple[SubsetOpt, ...]] = field(default_factory=dict)
    ignore_data: set[str] = field(default_factory=set)  # structure only
    anonymize: bool = False  # pattern-based detection of sensitive columns
    anonymize_fields: dict[str, dict[str, str]] = field(default_factory=dict)
    anonymization_seed: str = DEFAULT_ANONYMIZATION_SEED
    concurrency: int = DEFAULT_CONCURRENCY
    buffer_size: int = DEFAULT_BUFFER_SIZE
    fail_fast: bool = False
    fail_on_transform_error: bool = False
    verbose: bool = False
    no_progress: bool = False

    def __post_init__(self):
        if self.concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if self.buffer_size < 1:
            raise ValueError("buffer_size must be at least 1")

    @property
    def anonymization_enabled(self) -> bool:
        return self.anonymize or any(self.anonymize_fields.values())

    def read_table_opt(self, table: str, columns: list[str] | tuple[str, ...]) -> ReadTableOpt:
        """Build the read options of ``table`` from its configured subsets."""
        return ReadTableOpt(columns=tuple(columns), subsets=tuple(self.subsets.get(table, ())))
