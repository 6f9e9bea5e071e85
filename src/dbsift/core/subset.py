"""
Subset resolution.

A table's configured subsets select its own rows. Each relationship listed
under a subset selects rows of a neighbouring table as a semi-join on the
rows already selected, one hop per relationship entry:

    orders (limit 5)
      -> order_items whose order_id is in the selected orders' id  (children)
      -> users whose id is in the selected orders' user_id         (parents)

The resolver only builds Selection objects; readers turn them into SQL.
"""

import dataclasses
from collections.abc import Iterable, Mapping

from dbsift.constants import DEFAULT_SUBSET_NAME
from dbsift.exceptions import QueryError, TableNotFoundError
from dbsift.logging import get_logger
from dbsift.models import ReadTableOpt, RelationshipOpt, Selection, SubsetOpt

logger = get_logger(__name__)


def plan_selections(table: str, opts: ReadTableOpt) -> list[Selection]:
    """
    Return the selections to read for ``table``, in read order.

    Base selections come first, in subset order, followed by the selections
    propagated to this table from other tables' subsets. A table with
    neither is read in full; a table with only propagated selections reads
    only the related rows.
    """
    selections = [Selection.from_subset(table, subset) for subset in opts.subsets]
    selections.extend(opts.propagated)
    if not selections:
        selections.append(Selection(table=table, subset=DEFAULT_SUBSET_NAME))
    return selections


class SubsetResolver:
    """Attaches relationship-driven selections to the tables they select from."""

    def __init__(self, tables: Iterable[str]):
        self.tables = set(tables)

    def _check_table(self, table: str) -> None:
        if table not in self.tables:
            raise TableNotFoundError(table, sorted(self.tables))

    def resolve_subset(self, table: str, subset: SubsetOpt) -> list[Selection]:
        """
        Build the propagated selections of one subset of ``table``.

        Raises:
            TableNotFoundError: If a relationship names an unknown table
            QueryError: If neither side of a relationship has been selected
                by this subset or an earlier relationship in it
        """
        base = Selection.from_subset(table, subset)
        anchors: dict[str, Selection] = {table: base}
        propagated: list[Selection] = []

        for rel in subset.relationships:
            selection = self._resolve_relationship(table, subset, rel, anchors)
            anchors.setdefault(selection.table, selection)
            propagated.append(selection)

        return propagated

    def _resolve_relationship(
        self,
        table: str,
        subset: SubsetOpt,
        rel: RelationshipOpt,
        anchors: Mapping[str, Selection],
    ) -> Selection:
        fk_table = rel.table or table
        self._check_table(fk_table)
        self._check_table(rel.referenced_table)

        if rel.referenced_table in anchors:
            # Children: rows of fk_table pointing at the selected rows
            return Selection(
                table=fk_table,
                subset=subset.name,
                column=rel.foreign_key,
                anchor=anchors[rel.referenced_table],
                anchor_column=rel.referenced_key,
            )

        if fk_table in anchors:
            # Parents: rows referenced by the selected rows
            return Selection(
                table=rel.referenced_table,
                subset=subset.name,
                column=rel.referenced_key,
                anchor=anchors[fk_table],
                anchor_column=rel.foreign_key,
            )

        raise QueryError(
            f"relationship {fk_table}.{rel.foreign_key} -> "
            f"{rel.referenced_table}.{rel.referenced_key} in subset '{subset.name}' "
            "is not connected to any table selected so far",
            table=table,
        )

    def propagate(self, opts_by_table: Mapping[str, ReadTableOpt]) -> dict[str, ReadTableOpt]:
        """
        Return new read options with every relationship selection attached to
        its target table's ``propagated`` selections.

        Targets without read options of their own get an entry with no
        columns; the caller fills the columns in.
        """
        result = dict(opts_by_table)
        for table, opts in opts_by_table.items():
            for subset in opts.subsets:
                for selection in self.resolve_subset(table, subset):
                    target = result.get(selection.table) or ReadTableOpt(columns=())
                    result[selection.table] = dataclasses.replace(
                        target, propagated=target.propagated + (selection,)
                    )
                    logger.debug(
                        "Propagated selection",
                        source=table,
                        subset=subset.name,
                        target=selection.table,
                        column=selection.column,
                    )
        return result
