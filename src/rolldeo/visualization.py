"""
Read-only statistics for tables: probability distributions, weight stats
and inheritance chains. Nothing here rolls dice or mutates a table.

Simple tables are described through their effective (inherited) entries
so the numbers match what a roll actually draws from.
"""

from __future__ import annotations

from typing import Literal, Union

from pydantic import Field

from .engine.expressions import strip_expressions
from .engine.inheritance import (
    DEFAULT_MAX_INHERITANCE_DEPTH,
    TableLookup,
    inheritance_chain,
    resolve_effective_entries,
    table_entry_count,
)
from .engine.weights import effective_weight, probability
from .models import CollectionTable, CompositeTable, DocumentModel, Entry, SimpleTable, Table

DEFAULT_MAX_ENTRIES = 20
MAX_LABEL_LENGTH = 50


class WeightedEntry(DocumentModel):
    """One entry with its selection chance."""
    id: str
    label: str
    weight: float
    probability: float = Field(description="Selection chance in percent")
    description: str | None = None


class SourceDistribution(DocumentModel):
    """One composite source with its selection chance."""
    table_id: str
    table_name: str
    weight: float
    probability: float = Field(description="Selection chance in percent")
    entry_count: int


class CollectionSource(DocumentModel):
    """One collection member and its share of all member entries."""
    table_id: str
    table_name: str
    entry_count: int
    contribution_percent: float


class InheritanceNode(DocumentModel):
    """One table of an ``extends`` chain; level 0 is the table itself."""
    table_id: str
    table_name: str
    entry_count: int
    level: int


class TableStats(DocumentModel):
    """Summary of a table's weight distribution."""
    entry_count: int = 0
    total_weight: float = 0
    avg_weight: float = 0
    min_weight: float = 0
    max_weight: float = 0
    unique_result_types: list[str] = Field(default_factory=list)


class SimpleTableVisualization(DocumentModel):
    type: Literal["simple"] = "simple"
    table_id: str
    entries: list[WeightedEntry]
    truncated: bool
    total_entries: int
    stats: TableStats
    inheritance: list[InheritanceNode]


class CompositeTableVisualization(DocumentModel):
    type: Literal["composite"] = "composite"
    table_id: str
    sources: list[SourceDistribution]
    stats: TableStats
    inheritance: list[InheritanceNode]


class CollectionTableVisualization(DocumentModel):
    type: Literal["collection"] = "collection"
    table_id: str
    sources: list[CollectionSource]
    total_entries: int
    stats: TableStats
    inheritance: list[InheritanceNode]


TableVisualization = Union[
    SimpleTableVisualization, CompositeTableVisualization, CollectionTableVisualization
]


def format_entry_label(value: str, max_length: int = MAX_LABEL_LENGTH) -> str:
    """Entry value with expressions collapsed to ``[...]``, shortened for display."""
    stripped = strip_expressions(value)
    if len(stripped) <= max_length:
        return stripped
    return stripped[:max_length - 3] + "..."


def build_inheritance_chain(
    table: Table,
    lookup: TableLookup,
    max_depth: int = DEFAULT_MAX_INHERITANCE_DEPTH,
) -> list[InheritanceNode]:
    """Chain of ``extends`` links, truncated exactly like entry resolution.

    Each node counts the entries declared on that level only. A missing
    parent ends the chain instead of raising.
    """
    return [
        InheritanceNode(
            table_id=level_table.id,
            table_name=level_table.display_name,
            entry_count=_own_entry_count(level_table),
            level=level,
        )
        for level, level_table in enumerate(
            inheritance_chain(table, lookup, max_depth, strict=False)
        )
    ]


def _own_entry_count(table: Table) -> int:
    if isinstance(table, SimpleTable):
        return len(table.entries)
    if isinstance(table, CompositeTable):
        return len(table.sources)
    return len(table.collections)


def compute_simple_table_stats(entries: list[Entry]) -> TableStats:
    """Weight statistics over ``entries``; all zeros for an empty list."""
    if not entries:
        return TableStats()

    weights = [effective_weight(entry) for entry in entries]
    total = sum(weights)
    result_types: list[str] = []
    for entry in entries:
        if entry.result_type and entry.result_type not in result_types:
            result_types.append(entry.result_type)

    return TableStats(
        entry_count=len(entries),
        total_weight=total,
        avg_weight=total / len(entries),
        min_weight=min(weights),
        max_weight=max(weights),
        unique_result_types=result_types,
    )


def _weight_stats(weights: list[float]) -> TableStats:
    if not weights:
        return TableStats()
    total = sum(weights)
    return TableStats(
        entry_count=len(weights),
        total_weight=total,
        avg_weight=total / len(weights),
        min_weight=min(weights),
        max_weight=max(weights),
    )


def visualize_simple_table(
    table: SimpleTable,
    lookup: TableLookup,
    max_entries: int = DEFAULT_MAX_ENTRIES,
    max_depth: int = DEFAULT_MAX_INHERITANCE_DEPTH,
) -> SimpleTableVisualization:
    entries = resolve_effective_entries(table, lookup, max_depth)
    stats = compute_simple_table_stats(entries)

    # Stable sort keeps declaration order among equal weights
    ordered = sorted(entries, key=effective_weight, reverse=True)
    shown = [
        WeightedEntry(
            id=entry.id or f"entry-{index}",
            label=format_entry_label(entry.value),
            weight=effective_weight(entry),
            probability=probability(effective_weight(entry), stats.total_weight) * 100,
            description=entry.description,
        )
        for index, entry in enumerate(ordered[:max_entries])
    ]

    return SimpleTableVisualization(
        table_id=table.id,
        entries=shown,
        truncated=len(ordered) > max_entries,
        total_entries=len(entries),
        stats=stats,
        inheritance=build_inheritance_chain(table, lookup, max_depth),
    )


def visualize_composite_table(
    table: CompositeTable,
    lookup: TableLookup,
    max_depth: int = DEFAULT_MAX_INHERITANCE_DEPTH,
) -> CompositeTableVisualization:
    weights = [effective_weight(source) for source in table.sources]
    total = sum(weights)

    distributions = []
    for source, weight in zip(table.sources, weights):
        target = lookup(source.table_id)
        distributions.append(SourceDistribution(
            table_id=source.table_id,
            table_name=target.display_name if target else source.table_id,
            weight=weight,
            probability=probability(weight, total) * 100,
            entry_count=table_entry_count(target, lookup, max_depth) if target else 0,
        ))
    distributions.sort(key=lambda d: d.weight, reverse=True)

    return CompositeTableVisualization(
        table_id=table.id,
        sources=distributions,
        stats=_weight_stats(weights),
        inheritance=build_inheritance_chain(table, lookup, max_depth),
    )


def visualize_collection_table(
    table: CollectionTable,
    lookup: TableLookup,
    max_depth: int = DEFAULT_MAX_INHERITANCE_DEPTH,
) -> CollectionTableVisualization:
    members = []
    for member_id in table.collections:
        member = lookup(member_id)
        count = table_entry_count(member, lookup, max_depth) if member else 0
        members.append((member_id, member.display_name if member else member_id, count))
    total_entries = sum(count for _, _, count in members)

    sources = [
        CollectionSource(
            table_id=member_id,
            table_name=name,
            entry_count=count,
            contribution_percent=probability(count, total_entries) * 100,
        )
        for member_id, name, count in members
    ]
    sources.sort(key=lambda s: s.entry_count, reverse=True)

    # Every member entry counts with weight 1
    stats = TableStats(
        entry_count=total_entries,
        total_weight=total_entries,
        avg_weight=1 if total_entries else 0,
        min_weight=1 if total_entries else 0,
        max_weight=1 if total_entries else 0,
    )

    return CollectionTableVisualization(
        table_id=table.id,
        sources=sources,
        total_entries=total_entries,
        stats=stats,
        inheritance=build_inheritance_chain(table, lookup, max_depth),
    )


def visualize_table(
    table: Table,
    lookup: TableLookup,
    max_entries: int = DEFAULT_MAX_ENTRIES,
    max_depth: int = DEFAULT_MAX_INHERITANCE_DEPTH,
) -> TableVisualization:
    """Probability view of any table variant.

    Args:
        table: Table to describe
        lookup: Resolves referenced tables
        max_entries: Entries listed for simple tables (the rest are counted)
        max_depth: ``extends`` hops followed, as when rolling
    """
    if isinstance(table, SimpleTable):
        return visualize_simple_table(table, lookup, max_entries, max_depth)
    if isinstance(table, CompositeTable):
        return visualize_composite_table(table, lookup, max_depth)
    if isinstance(table, CollectionTable):
        return visualize_collection_table(table, lookup, max_depth)
    raise TypeError(f"Unsupported table type: {type(table).__name__}")
