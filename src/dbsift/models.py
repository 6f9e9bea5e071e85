from dataclasses import dataclass, field
from typing import Any

from dbsift.constants import (
    DEFAULT_MAX_CONNS,
    DEFAULT_MAX_IDLE_CONNS,
    DEFAULT_READ_TIMEOUT,
)

Row = dict[str, Any]
"""One source record: column name -> value, in the column order of the query."""

SORT_DIRECTIONS = ("asc", "desc")


@dataclass(frozen=True)
class ConnOpts:
    """
    Connection options for a source or destination database.

    All durations are in seconds. A ``max_conn_lifetime`` of 0 keeps
    connections open for as long as the pool lives. ``create_missing`` lets
    file-based engines create the database, which only destinations need.
    """

    dsn: str
    timeout: float = DEFAULT_READ_TIMEOUT
    max_conn_lifetime: float = 0.0
    max_conns: int = DEFAULT_MAX_CONNS
    max_idle_conns: int = DEFAULT_MAX_IDLE_CONNS
    create_missing: bool = False

    def __repr__(self) -> str:
        from dbsift.exceptions import mask_password

        return (
            f"ConnOpts(dsn={mask_password(self.dsn)!r}, timeout={self.timeout!r}, "
            f"max_conn_lifetime={self.max_conn_lifetime!r}, max_conns={self.max_conns!r}, "
            f"max_idle_conns={self.max_idle_conns!r}, create_missing={self.create_missing!r})"
        )


@dataclass(frozen=True)
class RelationshipOpt:
    """
    One hop from the rows selected by a subset to related rows.

    ``table`` holds ``foreign_key``, which points at ``referenced_key`` of
    ``referenced_table``. An empty ``table`` stands for the table owning the
    subset.
    """

    table: str
    foreign_key: str
    referenced_table: str
    referenced_key: str


@dataclass(frozen=True)
class SubsetOpt:
    """A named row filter on one table."""

    name: str
    match: str = ""
    sorts: tuple[tuple[str, str], ...] = ()
    limit: int = 0  # 0 = unbounded
    relationships: tuple[RelationshipOpt, ...] = ()

    def __post_init__(self):
        if self.limit < 0:
            raise ValueError(f"Subset {self.name!r}: limit must not be negative")
        for column, direction in self.sorts:
            if direction not in SORT_DIRECTIONS:
                raise ValueError(
                    f"Subset {self.name!r}: invalid sort direction {direction!r} "
                    f"for column {column!r} (use 'asc' or 'desc')"
                )


@dataclass(frozen=True)
class Selection:
    """
    One concrete set of rows to read from a table.

    A base selection filters, orders and bounds the table itself. A
    propagated selection additionally restricts ``column`` to the values of
    ``anchor_column`` in the rows picked by ``anchor``.
    """

    table: str
    subset: str
    match: str = ""
    sorts: tuple[tuple[str, str], ...] = ()
    limit: int = 0
    column: str | None = None
    anchor: "Selection | None" = None
    anchor_column: str | None = None

    @property
    def is_propagated(self) -> bool:
        return self.anchor is not None

    @classmethod
    def from_subset(cls, table: str, subset: SubsetOpt) -> "Selection":
        return cls(
            table=table,
            subset=subset.name,
            match=subset.match,
            sorts=subset.sorts,
            limit=subset.limit,
        )


@dataclass(frozen=True)
class ReadTableOpt:
    """Everything a reader needs to stream one table."""

    columns: tuple[str, ...]
    subsets: tuple[SubsetOpt, ...] = ()
    propagated: tuple[Selection, ...] = field(default_factory=tuple)

