"""
Inheritance resolution for tables that ``extends`` a parent.

The same walk backs both rolling (final candidate pool) and the
visualization of inheritance chains, so both agree on where a chain is
truncated.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from ..exceptions import UnknownReferenceError
from ..models import CollectionTable, CompositeTable, Entry, SimpleTable, Table

logger = logging.getLogger("rolldeo")

DEFAULT_MAX_INHERITANCE_DEPTH = 5

TableLookup = Callable[[str], Optional[Table]]


def inheritance_chain(
    table: Table,
    lookup: TableLookup,
    max_depth: int = DEFAULT_MAX_INHERITANCE_DEPTH,
    strict: bool = True,
) -> list[Table]:
    """Walk ``extends`` links starting at ``table``.

    Follows at most ``max_depth`` hops, so the returned chain holds at most
    ``max_depth + 1`` tables with the starting table first. Deep or cyclic
    chains are truncated rather than treated as an error.

    Args:
        table: Table to start from
        lookup: Resolves a table reference to a table
        max_depth: Maximum number of hops to follow
        strict: Raise on a missing parent instead of stopping the walk

    Raises:
        UnknownReferenceError: If a parent is missing and ``strict`` is set
    """
    chain: list[Table] = [table]
    current = table
    while current.extends:
        if len(chain) > max_depth:
            logger.debug(
                f"Inheritance chain of '{table.id}' truncated after {max_depth} hops"
            )
            break
        parent = lookup(current.extends)
        if parent is None:
            if strict:
                raise UnknownReferenceError(
                    current.extends, "table", {"extended_by": current.id}
                )
            break
        chain.append(parent)
        current = parent
    return chain


def merge_entry(parent: Entry, child: Entry) -> Entry:
    """Overlay the fields explicitly set on ``child`` onto ``parent``."""
    overrides = {name: getattr(child, name) for name in child.model_fields_set}
    return parent.model_copy(update=overrides)


def resolve_effective_entries(
    table: Table,
    lookup: TableLookup,
    max_depth: int = DEFAULT_MAX_INHERITANCE_DEPTH,
) -> list[Entry]:
    """Build the effective entry set of a table.

    The child's own entries come first, in declaration order. A child entry
    sharing an id with a parent entry replaces it (fields the child leaves
    unset are inherited). Parent entries the child does not override follow,
    in parent order. Non-simple tables in the chain contribute no entries.

    Args:
        table: Table whose entries are requested
        lookup: Resolves a table reference to a table
        max_depth: Maximum number of ``extends`` hops

    Returns:
        New list of entries; the table definitions are left untouched
    """
    chain = inheritance_chain(table, lookup, max_depth)

    effective: list[Entry] = []
    # Fold from the farthest ancestor down to the table itself
    for level_table in reversed(chain):
        own = level_table.entries if isinstance(level_table, SimpleTable) else []
        if level_table is not table and not isinstance(level_table, SimpleTable):
            logger.debug(
                f"Table '{level_table.id}' is not a simple table; it adds no inherited entries"
            )
        inherited = {entry.id: entry for entry in effective}
        merged = [
            merge_entry(inherited[entry.id], entry) if entry.id in inherited else entry
            for entry in own
        ]
        own_ids = {entry.id for entry in own}
        effective = merged + [entry for entry in effective if entry.id not in own_ids]
    return effective


def resolve_default_sets(
    table: Table,
    lookup: TableLookup,
    max_depth: int = DEFAULT_MAX_INHERITANCE_DEPTH,
) -> dict[str, str]:
    """Merge ``default_sets`` down the chain; nearer tables override."""
    merged: dict[str, str] = {}
    for level_table in reversed(inheritance_chain(table, lookup, max_depth, strict=False)):
        if isinstance(level_table, SimpleTable):
            merged.update(level_table.default_sets)
    return merged


def table_entry_count(
    table: Table,
    lookup: TableLookup,
    max_depth: int = DEFAULT_MAX_INHERITANCE_DEPTH,
) -> int:
    """Number of outcomes a table offers.

    Effective (inherited) entries for simple tables, sources for composite
    tables and members for collection tables. Collection tables use this
    as the selection weight of each member.
    """
    if isinstance(table, SimpleTable):
        return len(resolve_effective_entries(table, lookup, max_depth))
    if isinstance(table, CompositeTable):
        return len(table.sources)
    if isinstance(table, CollectionTable):
        return len(table.collections)
    raise TypeError(f"Unsupported table type: {type(table).__name__}")
