"""
Table resolver: selects one outcome from a table.

Simple tables draw an entry by weight; composite tables draw a source table
by weight and resolve it; collection tables draw a member table weighted by
its entry count and resolve it. The value returned is the raw entry text,
before any ``{{...}}`` expansion.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Collection

from ..exceptions import MaxExpansionDepthExceeded, UnknownReferenceError
from ..models import (
    CollectionTable,
    CompositeTable,
    Entry,
    EntryDescription,
    SimpleTable,
    Table,
    TraceNode,
    TraceNodeType,
)
from .inheritance import (
    DEFAULT_MAX_INHERITANCE_DEPTH,
    TableLookup,
    resolve_default_sets,
    resolve_effective_entries,
    table_entry_count,
)
from .weights import RandomSource, effective_weight, probability, select_weighted, total_weight

DEFAULT_MAX_NESTING = 20


@dataclass
class TableResolution:
    """Outcome of resolving one table.

    Attributes:
        value: Raw value of the selected entry (not yet expanded)
        table: Simple table the entry was drawn from
        entry: The selected entry
        result_type: Entry, leaf table or enclosing table result type
        sets: Placeholder values exported by the entry (raw)
        descriptions: Attributions, enclosing tables first
        path: Table ids from the resolved table down to the leaf
        trace: Trace subtree, only when tracing was requested
    """
    value: str
    table: SimpleTable
    entry: Entry
    result_type: str | None = None
    sets: dict[str, str] = field(default_factory=dict)
    descriptions: list[EntryDescription] = field(default_factory=list)
    path: tuple[str, ...] = ()
    trace: TraceNode | None = None


def resolve_table(
    table: Table,
    lookup: TableLookup,
    rng: RandomSource,
    *,
    exclude_ids: Collection[str] = (),
    max_inheritance_depth: int = DEFAULT_MAX_INHERITANCE_DEPTH,
    max_nesting: int = DEFAULT_MAX_NESTING,
    depth: int = 0,
    path: tuple[str, ...] = (),
    trace: bool = False,
) -> TableResolution:
    """Select one outcome from ``table``.

    Args:
        table: Table to resolve
        lookup: Resolves table references (sources, members, parents)
        rng: Random source for every draw
        exclude_ids: Entry ids that must not be selected
        max_inheritance_depth: ``extends`` hops to follow
        max_nesting: Depth at which composite/collection nesting aborts
        depth: Current expansion depth, recorded on descriptions
        path: References already followed, for diagnostics
        trace: Build a trace subtree

    Raises:
        EmptyPoolError: If no candidate has a positive weight
        UnknownReferenceError: If a source or member table is missing
        MaxExpansionDepthExceeded: On runaway composite/collection nesting
    """
    path = path + (table.id,)
    if depth > max_nesting:
        raise MaxExpansionDepthExceeded(depth, max_nesting, path)

    kwargs = dict(
        exclude_ids=exclude_ids,
        max_inheritance_depth=max_inheritance_depth,
        max_nesting=max_nesting,
        depth=depth,
        path=path,
        trace=trace,
    )
    if isinstance(table, SimpleTable):
        return _resolve_simple(table, lookup, rng, **kwargs)
    if isinstance(table, CompositeTable):
        return _resolve_composite(table, lookup, rng, **kwargs)
    if isinstance(table, CollectionTable):
        return _resolve_collection(table, lookup, rng, **kwargs)
    raise TypeError(f"Unsupported table type: {type(table).__name__}")


def _resolve_simple(
    table: SimpleTable,
    lookup: TableLookup,
    rng: RandomSource,
    *,
    exclude_ids: Collection[str],
    max_inheritance_depth: int,
    max_nesting: int,
    depth: int,
    path: tuple[str, ...],
    trace: bool,
) -> TableResolution:
    entries = resolve_effective_entries(table, lookup, max_inheritance_depth)
    pool = [
        entry for entry in entries
        if effective_weight(entry) > 0 and entry.id not in exclude_ids
    ]
    _, entry = select_weighted(pool, rng, pool_name=table.id)

    sets = {**resolve_default_sets(table, lookup, max_inheritance_depth), **entry.sets}
    description = EntryDescription(
        table_id=table.id,
        table_name=table.display_name,
        rolled_value=entry.value,
        description=entry.description,
        depth=depth,
    )

    node = None
    if trace:
        total = total_weight(pool)
        weight = effective_weight(entry)
        node = TraceNode(
            node_type=TraceNodeType.TABLE_ROLL,
            label=f"Table: {table.display_name}",
            table_id=table.id,
            value=entry.value,
            metadata={"type": "simple"},
            children=[
                TraceNode(
                    node_type=TraceNodeType.ENTRY_SELECT,
                    label=f"Selected: {entry.id}",
                    table_id=table.id,
                    entry_id=entry.id,
                    weight=weight,
                    probability=probability(weight, total),
                    value=entry.value,
                    metadata={
                        "pool_size": len(pool),
                        "total_weight": total,
                        "excluded_ids": sorted(exclude_ids),
                    },
                )
            ],
        )

    return TableResolution(
        value=entry.value,
        table=table,
        entry=entry,
        result_type=entry.result_type or table.result_type,
        sets=sets,
        descriptions=[description],
        path=path,
        trace=node,
    )


def _resolve_composite(
    table: CompositeTable,
    lookup: TableLookup,
    rng: RandomSource,
    *,
    exclude_ids: Collection[str],
    max_inheritance_depth: int,
    max_nesting: int,
    depth: int,
    path: tuple[str, ...],
    trace: bool,
) -> TableResolution:
    _, source = select_weighted(table.sources, rng, pool_name=table.id)
    target = lookup(source.table_id)
    if target is None:
        raise UnknownReferenceError(source.table_id, "table", {"referenced_by": table.id})

    nested = resolve_table(
        target,
        lookup,
        rng,
        exclude_ids=exclude_ids,
        max_inheritance_depth=max_inheritance_depth,
        max_nesting=max_nesting,
        depth=depth + 1,
        path=path,
        trace=trace,
    )

    node = None
    if trace:
        total = total_weight(table.sources)
        weight = effective_weight(source)
        select_node = TraceNode(
            node_type=TraceNodeType.SOURCE_SELECT,
            label=f"Source: {source.table_id}",
            table_id=source.table_id,
            weight=weight,
            probability=probability(weight, total),
            value=source.table_id,
            metadata={
                "sources": [
                    {
                        "table_id": s.table_id,
                        "weight": effective_weight(s),
                        "probability": probability(effective_weight(s), total),
                    }
                    for s in table.sources
                ],
            },
        )
        node = _wrap_trace(table, "composite", nested, select_node)

    return _propagate(table, nested, depth, node)


def _resolve_collection(
    table: CollectionTable,
    lookup: TableLookup,
    rng: RandomSource,
    *,
    exclude_ids: Collection[str],
    max_inheritance_depth: int,
    max_nesting: int,
    depth: int,
    path: tuple[str, ...],
    trace: bool,
) -> TableResolution:
    members: list[tuple[Table, int]] = []
    for member_id in table.collections:
        member = lookup(member_id)
        if member is None:
            raise UnknownReferenceError(member_id, "table", {"referenced_by": table.id})
        members.append((member, table_entry_count(member, lookup, max_inheritance_depth)))

    _, (member, count) = select_weighted(members, rng, weight=lambda m: m[1], pool_name=table.id)

    nested = resolve_table(
        member,
        lookup,
        rng,
        exclude_ids=exclude_ids,
        max_inheritance_depth=max_inheritance_depth,
        max_nesting=max_nesting,
        depth=depth + 1,
        path=path,
        trace=trace,
    )

    node = None
    if trace:
        total_entries = sum(c for _, c in members)
        select_node = TraceNode(
            node_type=TraceNodeType.MEMBER_SELECT,
            label=f"Member: {member.id}",
            table_id=member.id,
            weight=float(count),
            probability=probability(count, total_entries),
            value=member.id,
            metadata={
                "members": [{"table_id": m.id, "entry_count": c} for m, c in members],
                "total_entries": total_entries,
            },
        )
        node = _wrap_trace(table, "collection", nested, select_node)

    return _propagate(table, nested, depth, node)


def _wrap_trace(
    table: Table, kind: str, nested: TableResolution, select_node: TraceNode
) -> TraceNode:
    children = [select_node]
    if nested.trace is not None:
        children.append(nested.trace)
    return TraceNode(
        node_type=TraceNodeType.TABLE_ROLL,
        label=f"Table: {table.display_name}",
        table_id=table.id,
        value=nested.value,
        metadata={"type": kind},
        children=children,
    )


def _propagate(
    table: Table, nested: TableResolution, depth: int, node: TraceNode | None
) -> TableResolution:
    """Pass a nested resolution through an enclosing table unchanged."""
    own = EntryDescription(
        table_id=table.id,
        table_name=table.display_name,
        rolled_value=nested.value,
        description=table.description,
        depth=depth,
    )
    return replace(
        nested,
        result_type=nested.result_type or table.result_type,
        descriptions=[own] + nested.descriptions,
        path=nested.path,
        trace=node,
    )
