"""
Helpers for building and summarising roll traces.
"""

from __future__ import annotations

from typing import Any

from ..models import TraceNode, TraceNodeType


def make_node(
    node_type: TraceNodeType,
    label: str,
    *,
    value: str | None = None,
    children: list[TraceNode] | None = None,
    **fields: Any,
) -> TraceNode:
    """Build a trace node; extra keyword arguments become node fields."""
    return TraceNode(
        node_type=node_type,
        label=label,
        value=value,
        children=list(children or []),
        **fields,
    )


def root_node(source_id: str, collection_id: str, value: str, children: list[TraceNode]) -> TraceNode:
    """Root of a roll's trace tree."""
    return make_node(
        TraceNodeType.ROOT,
        f"Roll: {source_id}",
        value=value,
        children=children,
        metadata={"source_id": source_id, "collection_id": collection_id},
    )


def trace_stats(node: TraceNode) -> dict[str, int]:
    """Counts describing a trace tree."""
    return {
        "node_count": node.node_count(),
        "max_depth": node.max_depth(),
        "table_rolls": len(node.find(TraceNodeType.TABLE_ROLL)),
        "dice_rolls": len(node.find(TraceNodeType.DICE_ROLL)),
        "template_refs": len(node.find(TraceNodeType.TEMPLATE_REF)),
    }


def format_trace(node: TraceNode, indent: int = 0) -> str:
    """Render a trace tree as indented text, one node per line."""
    line = "  " * indent + node.label
    if node.probability is not None:
        line += f" ({node.probability * 100:.1f}%)"
    if node.value is not None and node.node_type != TraceNodeType.ROOT:
        line += f" -> {node.value}"
    if node.error:
        line += f" [error: {node.error}]"
    lines = [line]
    for child in node.children:
        lines.append(format_trace(child, indent + 1))
    return "\n".join(lines)
