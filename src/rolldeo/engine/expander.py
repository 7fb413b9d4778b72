"""
Expression expander: replaces ``{{...}}`` expressions with rolled text.

Expansion is recursive. Every followed reference derives a deeper
``ExpansionContext``, so a table or template that (directly or not)
references itself ends with ``MaxExpansionDepthExceeded`` instead of
looping forever.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Collection

from ..exceptions import EmptyPoolError, ExpressionSyntaxError, UnknownReferenceError
from ..models import (
    Conditional,
    EntryDescription,
    SimpleTable,
    Table,
    Template,
    TraceNode,
    TraceNodeType,
)
from .arithmetic import evaluate_math, format_number
from .conditions import evaluate_when
from .context import CaptureItem, ExpansionContext
from .dice import roll_dice
from .expressions import ExpressionToken, TokenKind, parse_pattern
from .inheritance import resolve_effective_entries
from .resolver import TableResolution, resolve_table
from .trace import make_node
from .weights import effective_weight

logger = logging.getLogger("rolldeo")


@dataclass
class Expansion:
    """Expanded text plus the rolls that produced it.

    Attributes:
        text: Text with every expression replaced
        descriptions: Table rolls in left-to-right, depth-first order
        trace: Trace nodes of the expressions, empty when tracing is off
    """
    text: str
    descriptions: list[EntryDescription] = field(default_factory=list)
    trace: list[TraceNode] = field(default_factory=list)

    def extend(self, other: "Expansion") -> None:
        """Append the text, descriptions and trace of ``other``."""
        self.text += other.text
        self.descriptions.extend(other.descriptions)
        self.trace.extend(other.trace)


@dataclass
class TableRoll(Expansion):
    """Expansion of one table roll, with the selected entry.

    ``sets`` holds the expanded placeholders of the entry, ``value`` included.
    """
    entry_id: str | None = None
    result_type: str | None = None
    sets: dict[str, str] = field(default_factory=dict)
    description: str | None = None


def expand(text: str, context: ExpansionContext) -> Expansion:
    """Expand every expression in ``text``.

    Args:
        text: Text that may contain ``{{...}}`` expressions
        context: Current position in the expansion

    Returns:
        Expansion with the final text

    Raises:
        UnknownReferenceError: Unknown table, template, variable or capture
        ExpressionSyntaxError: Malformed expression
        MathEvaluationError: A math expression cannot be computed
        MaxExpansionDepthExceeded: Expansion nested deeper than the ceiling
        EmptyPoolError: A referenced table has nothing to select
    """
    result = Expansion(text="")
    if "{{" not in text:
        result.text = text
        return result

    for token in parse_pattern(text):
        if token.is_literal:
            result.text += token.raw
        else:
            result.extend(_expand_token(token, context))
    return result


def _expand_token(token: ExpressionToken, context: ExpansionContext) -> Expansion:
    if token.kind == TokenKind.DICE:
        return _expand_dice(token, context)
    if token.kind == TokenKind.MATH:
        return _expand_math(token, context)
    if token.kind == TokenKind.VARIABLE:
        return _expand_variable(token, context)
    if token.kind == TokenKind.PLACEHOLDER:
        return _expand_placeholder(token, context)
    if token.kind == TokenKind.AGAIN:
        return _expand_again(token, context)
    if token.kind == TokenKind.INSTANCE:
        return _expand_instance(token, context)
    if token.kind == TokenKind.MULTI_ROLL:
        return _expand_multi_roll(token, context)
    if token.kind == TokenKind.CAPTURE:
        return _expand_capture(token, context)
    if token.kind == TokenKind.CAPTURE_ACCESS:
        return _expand_capture_access(token, context)
    if token.kind == TokenKind.COLLECT:
        return _expand_collect(token, context)
    if token.kind == TokenKind.SWITCH:
        return _expand_switch(token, context)
    return expand_reference(token.reference, context)


def expand_reference(reference: str, context: ExpansionContext) -> Expansion:
    """Roll a table, or expand a template when no table has that id."""
    catalog = context.session.catalog
    found_table = catalog.find_table(reference, context.collection_id)
    if found_table is not None:
        table, collection_id = found_table
        return roll_table(table, collection_id, context)

    found_template = catalog.find_template(reference, context.collection_id)
    if found_template is not None:
        template, collection_id = found_template
        return expand_template(template, collection_id, context)

    raise UnknownReferenceError(
        reference, "table", {"collection_id": context.collection_id, "path": list(context.path)}
    )


def roll_table(
    table: Table,
    collection_id: str,
    context: ExpansionContext,
    exclude_ids: Collection[str] = (),
) -> TableRoll:
    """Resolve ``table`` and expand the selected entry's value."""
    resolution = _resolve(table, collection_id, context, exclude_ids)
    return _expand_resolution(table, collection_id, context, resolution)


def _resolve(
    table: Table, collection_id: str, context: ExpansionContext, exclude_ids: Collection[str]
) -> TableResolution:
    session = context.session
    return resolve_table(
        table,
        session.catalog.lookup_for(collection_id),
        session.rng,
        exclude_ids=exclude_ids,
        max_inheritance_depth=session.max_inheritance_depth,
        max_nesting=session.max_depth,
        depth=context.depth,
        path=context.path,
        trace=session.trace,
    )


def _expand_resolution(
    table: Table, collection_id: str, context: ExpansionContext, resolution: TableResolution
) -> TableRoll:
    session = context.session
    inner = context.descend(
        table.id, collection_id=collection_id, table=table, entry_id=resolution.entry.id
    )
    expanded = expand(resolution.value, inner)

    placeholders = {"value": expanded.text}
    for name, raw in resolution.sets.items():
        value = expand(raw, inner)
        placeholders[name] = value.text
        expanded.trace.extend(value.trace)
    session.placeholders[table.id] = placeholders
    if resolution.table.id != table.id:
        session.placeholders[resolution.table.id] = placeholders

    descriptions = [
        description.model_copy(update={"rolled_value": expanded.text})
        for description in resolution.descriptions
    ]
    trace = []
    if resolution.trace is not None:
        resolution.trace.value = expanded.text
        resolution.trace.children.extend(expanded.trace)
        trace.append(resolution.trace)

    return TableRoll(
        text=expanded.text,
        descriptions=descriptions + expanded.descriptions,
        trace=trace,
        entry_id=resolution.entry.id,
        result_type=resolution.result_type,
        sets=placeholders,
        description=resolution.entry.description,
    )


def expand_template(
    template: Template, collection_id: str, context: ExpansionContext
) -> Expansion:
    """Expand a template's pattern, evaluating its shared variables first."""
    inner = context.descend(template.id, collection_id=collection_id, table=None, entry_id=None)
    result = evaluate_shared(template.shared, inner)
    result.extend(expand(template.pattern, inner))

    if context.session.trace:
        node = make_node(
            TraceNodeType.TEMPLATE_REF,
            f"Template: {template.display_name}",
            value=result.text,
            children=result.trace,
            metadata={"template_id": template.id, "collection_id": collection_id},
        )
        result.trace = [node]
    return result


def evaluate_shared(shared: dict[str, str], context: ExpansionContext) -> Expansion:
    """Evaluate shared variables in declaration order.

    A variable already evaluated during this roll keeps its first value.
    """
    result = Expansion(text="")
    session = context.session
    for name, expression in shared.items():
        if name in session.shared:
            continue
        value = expand(expression, context)
        session.shared[name] = value.text
        result.descriptions.extend(value.descriptions)
        if session.trace:
            result.trace.append(
                make_node(
                    TraceNodeType.VARIABLE,
                    f"Shared: ${name}",
                    value=value.text,
                    children=value.trace,
                    metadata={"name": name, "shared": True},
                )
            )
    return result


def apply_conditionals(
    conditionals: list[Conditional], expansion: Expansion, context: ExpansionContext
) -> Expansion:
    """Apply a collection's conditionals, in order, to a finished expansion.

    Each conditional sees the text as left by the previous one. Values are
    expanded before they are applied.
    """
    session = context.session
    for conditional in conditionals:
        matched = evaluate_when(conditional.when, lambda ref: resolve_value(ref, context))
        if not matched:
            continue

        value = expand(conditional.value, context)
        expansion.descriptions.extend(value.descriptions)
        before = expansion.text
        if conditional.action == "append":
            expansion.text = before + value.text
        elif conditional.action == "prepend":
            expansion.text = value.text + before
        elif conditional.action == "replace":
            if conditional.target:
                expansion.text = re.sub(conditional.target, lambda _: value.text, before)
            else:
                expansion.text = value.text
        elif conditional.target:
            session.shared[conditional.target] = value.text
        else:
            logger.warning(f"Conditional '{conditional.when}' sets a variable but has no target")

        if session.trace:
            expansion.trace.append(
                make_node(
                    TraceNodeType.CONDITIONAL,
                    f"Conditional: {conditional.action}",
                    value=expansion.text,
                    children=value.trace,
                    metadata={"when": conditional.when, "target": conditional.target},
                )
            )
    return expansion


# ---------------------------------------------------------------------------
# Value lookups shared by conditions, math and switch
# ---------------------------------------------------------------------------


def resolve_value(reference: str, context: ExpansionContext) -> str | None:
    """Current text of a ``$variable`` or ``@table[.property]`` reference.

    Variables are looked up in captures, then shared, then static
    variables; ``$found.count`` and ``$found.rarity`` read a capture. Returns
    None when nothing is set under that name.
    """
    session = context.session
    if reference.startswith("$"):
        name, _, prop = reference[1:].partition(".")
        if name in session.captures:
            items = session.captures[name]
            if prop == "count":
                return str(len(items))
            return _join_values([_item_property(item, prop or "value") for item in items], context)
        if prop:
            return None
        if name in session.shared:
            return session.shared[name]
        return session.catalog.variables_for(context.collection_id).get(name)

    name, _, prop = reference.lstrip("@").rpartition(".")
    if not name:
        name, prop = prop, "value"
    values, prop = _placeholder_values(name, prop, context)
    if values is None:
        return None
    return values.get(prop)


def _placeholder_values(
    name: str, prop: str, context: ExpansionContext
) -> tuple[dict[str, str] | None, str]:
    """Placeholders of table ``name``, following qualified names to the table's id.

    ``@core.weapons`` parses as table ``core``, property ``weapons``; when no
    such table was rolled it is retried as table ``core.weapons``.
    """
    placeholders = context.session.placeholders
    if name in placeholders:
        return placeholders[name], prop

    found = context.session.catalog.find_table(name, context.collection_id)
    if found is not None and found[0].id in placeholders:
        return placeholders[found[0].id], prop

    if prop != "value":
        values, _ = _placeholder_values(f"{name}.{prop}", "value", context)
        if values is not None:
            return values, "value"
    return None, prop


def _join_values(values: list[str], context: ExpansionContext) -> str:
    return context.session.config.separator.join(values)


# ---------------------------------------------------------------------------
# Expression kinds
# ---------------------------------------------------------------------------


def _expand_dice(token: ExpressionToken, context: ExpansionContext) -> Expansion:
    session = context.session
    dice = roll_dice(token.dice, session.rng, session.config.max_exploding_dice)
    result = Expansion(text=str(dice.total))
    if session.trace:
        result.trace.append(
            make_node(
                TraceNodeType.DICE_ROLL,
                f"Dice: {dice.expression}",
                value=result.text,
                metadata={
                    "rolls": dice.rolls,
                    "kept": dice.kept,
                    "modifier": dice.modifier,
                    "exploded": dice.exploded,
                    "breakdown": dice.breakdown,
                },
            )
        )
    return result


def _expand_math(token: ExpressionToken, context: ExpansionContext) -> Expansion:
    value = evaluate_math(token.math, lambda ref: resolve_value(ref, context))
    result = Expansion(text=format_number(value))
    if context.session.trace:
        result.trace.append(
            make_node(
                TraceNodeType.MATH,
                f"Math: {token.math}",
                value=result.text,
                metadata={"expression": token.math},
            )
        )
    return result


def _expand_variable(token: ExpressionToken, context: ExpansionContext) -> Expansion:
    session = context.session
    name = token.name
    if name in session.captures:
        value = _join_values([item.value for item in session.captures[name]], context)
        kind = "capture"
    elif name in session.shared:
        value = session.shared[name]
        kind = "shared"
    else:
        variables = session.catalog.variables_for(context.collection_id)
        if name not in variables:
            raise UnknownReferenceError(name, "variable", {"collection_id": context.collection_id})
        value = variables[name]
        kind = "static"

    result = Expansion(text=value)
    if session.trace:
        result.trace.append(
            make_node(
                TraceNodeType.VARIABLE,
                f"Variable: ${name}",
                value=value,
                metadata={"name": name, "kind": kind},
            )
        )
    return result


def _expand_placeholder(token: ExpressionToken, context: ExpansionContext) -> Expansion:
    session = context.session
    values, prop = _placeholder_values(token.name, token.prop or "value", context)
    value = (values or {}).get(prop, "")
    if not value:
        logger.debug(f"Placeholder {token.raw} is not set; using ''")

    result = Expansion(text=value)
    if session.trace:
        result.trace.append(
            make_node(
                TraceNodeType.PLACEHOLDER,
                f"Placeholder: @{token.name}.{token.prop or 'value'}",
                table_id=token.name,
                value=value,
                metadata={"property": prop, "set": values is not None},
            )
        )
    return result


def _expand_again(token: ExpressionToken, context: ExpansionContext) -> Expansion:
    if context.table is None:
        raise ExpressionSyntaxError(
            "{{again}} can only be used inside a table entry", {"path": list(context.path)}
        )
    excluded = [context.entry_id] if context.entry_id else []
    rolls = _repeat_table(
        context.table, context.collection_id, context, token.count, token.unique, excluded
    )
    result = _join(rolls, context.session.config.separator)
    if context.session.trace:
        result.trace = [
            make_node(
                TraceNodeType.AGAIN,
                f"Again: {context.table.id}",
                table_id=context.table.id,
                value=result.text,
                children=result.trace,
                metadata={"excluded_ids": excluded, "count": token.count},
            )
        ]
    return result


def _expand_instance(token: ExpressionToken, context: ExpansionContext) -> Expansion:
    session = context.session
    cached = token.instance in session.instances
    if cached:
        result = Expansion(text=session.instances[token.instance])
    else:
        result = expand_reference(token.reference, context)
        session.instances[token.instance] = result.text

    if session.trace:
        result.trace = [
            make_node(
                TraceNodeType.INSTANCE,
                f"Instance: {token.reference}#{token.instance}",
                value=result.text,
                children=result.trace,
                metadata={"name": token.instance, "cached": cached},
            )
        ]
    return result


def _expand_multi_roll(token: ExpressionToken, context: ExpansionContext) -> Expansion:
    result = _join(_roll_many(token, context), context.session.config.separator)
    if context.session.trace:
        result.trace = [
            make_node(
                TraceNodeType.MULTI_ROLL,
                f"Roll {token.count}x {token.reference}",
                value=result.text,
                children=result.trace,
                metadata={"count": token.count, "unique": token.unique},
            )
        ]
    return result


def _expand_capture(token: ExpressionToken, context: ExpansionContext) -> Expansion:
    session = context.session
    rolls = _roll_many(token, context)
    session.captures[token.name] = [
        CaptureItem(
            value=roll.text,
            sets=dict(roll.sets) if isinstance(roll, TableRoll) else {"value": roll.text},
            description=roll.description if isinstance(roll, TableRoll) else None,
        )
        for roll in rolls
    ]

    result = _join(rolls, session.config.separator)
    if token.silent:
        result.text = ""
    if session.trace:
        result.trace = [
            make_node(
                TraceNodeType.CAPTURE,
                f"Capture {token.count}x {token.reference} >> ${token.name}",
                value=result.text,
                children=result.trace,
                metadata={"name": token.name, "count": len(rolls), "silent": token.silent},
            )
        ]
    return result


def _captured(name: str, context: ExpansionContext) -> list[CaptureItem]:
    items = context.session.captures.get(name)
    if items is None:
        raise UnknownReferenceError(name, "capture", {"collection_id": context.collection_id})
    return items


def _item_property(item: CaptureItem, prop: str) -> str:
    if prop == "value":
        return item.value
    if prop in item.sets:
        return item.sets[prop]
    if prop == "description":
        return item.description or ""
    return ""


def _expand_capture_access(token: ExpressionToken, context: ExpansionContext) -> Expansion:
    items = _captured(token.name, context)
    prop = token.prop or "value"
    if token.index is None:
        if prop == "count":
            value = str(len(items))
        else:
            value = _join_values([_item_property(item, prop) for item in items], context)
    elif -len(items) <= token.index < len(items):
        value = _item_property(items[token.index], prop)
    else:
        logger.debug(f"{token.raw}: index out of range for {len(items)} captured items")
        value = ""

    result = Expansion(text=value)
    if context.session.trace:
        result.trace.append(
            make_node(
                TraceNodeType.CAPTURE_ACCESS,
                f"Capture: {token.raw}",
                value=value,
                metadata={"name": token.name, "index": token.index, "property": prop},
            )
        )
    return result


def _expand_collect(token: ExpressionToken, context: ExpansionContext) -> Expansion:
    values = []
    for item in _captured(token.name, context):
        value = _item_property(item, token.prop)
        if not value or (token.unique and value in values):
            continue
        values.append(value)

    result = Expansion(text=_join_values(values, context))
    if context.session.trace:
        result.trace.append(
            make_node(
                TraceNodeType.COLLECT,
                f"Collect: ${token.name}.{token.prop}",
                value=result.text,
                metadata={"name": token.name, "property": token.prop, "unique": token.unique},
            )
        )
    return result


def _expand_switch(token: ExpressionToken, context: ExpansionContext) -> Expansion:
    subject = resolve_value(token.subject, context) if token.subject else None

    def resolve(reference: str) -> str | None:
        if reference == "$":
            return subject
        return resolve_value(reference, context)

    chosen = None
    for case in token.cases:
        if case.when is None or evaluate_when(case.when, resolve):
            chosen = case
            break

    value = ""
    if chosen is not None:
        value = (resolve(chosen.result) or "") if chosen.is_reference else chosen.result

    result = Expansion(text=value)
    if context.session.trace:
        result.trace.append(
            make_node(
                TraceNodeType.SWITCH,
                f"Switch: {token.subject or '<no subject>'}",
                value=value,
                metadata={
                    "subject": subject,
                    "matched": chosen.when if chosen is not None else None,
                },
            )
        )
    return result


# ---------------------------------------------------------------------------
# Repetition
# ---------------------------------------------------------------------------


def _roll_many(token: ExpressionToken, context: ExpansionContext) -> list[Expansion]:
    """Roll ``token.reference`` ``token.count`` times, table or template."""
    catalog = context.session.catalog
    found_table = catalog.find_table(token.reference, context.collection_id)
    if found_table is not None:
        table, collection_id = found_table
        return _repeat_table(table, collection_id, context, token.count, token.unique)

    found_template = catalog.find_template(token.reference, context.collection_id)
    if found_template is None:
        raise UnknownReferenceError(
            token.reference, "table", {"collection_id": context.collection_id}
        )
    template, collection_id = found_template
    return [expand_template(template, collection_id, context) for _ in range(token.count)]


def _repeat_table(
    table: Table,
    collection_id: str,
    context: ExpansionContext,
    count: int,
    unique: bool,
    excluded: list[str] | None = None,
) -> list[TableRoll]:
    """Roll ``table`` ``count`` times, optionally never repeating an entry.

    With ``unique`` and the ``stop`` overflow policy, running out of entries
    ends the repetition early. Only the selection on ``table`` itself counts
    as running out; errors raised while expanding a selected entry propagate.
    """
    session = context.session
    excluded = list(excluded or [])
    rolls: list[TableRoll] = []
    for _ in range(count):
        try:
            resolution = _resolve(table, collection_id, context, excluded)
        except EmptyPoolError as e:
            exhausted = (
                unique
                and rolls
                and session.config.unique_overflow == "stop"
                and _exhausted_by(e, excluded, collection_id, context)
            )
            if not exhausted:
                raise
            logger.debug(
                f"Unique roll on '{table.id}' exhausted after {len(rolls)} of {count} picks"
            )
            break
        roll = _expand_resolution(table, collection_id, context, resolution)
        rolls.append(roll)
        if unique and roll.entry_id:
            excluded.append(roll.entry_id)
    return rolls


def _exhausted_by(
    error: EmptyPoolError, excluded: list[str], collection_id: str, context: ExpansionContext
) -> bool:
    """Whether ``error`` comes from a table whose live entries are all excluded."""
    lookup = context.session.catalog.lookup_for(collection_id)
    table = lookup(error.table_id)
    if not isinstance(table, SimpleTable):
        return False
    live = [
        entry.id
        for entry in resolve_effective_entries(table, lookup, context.session.max_inheritance_depth)
        if effective_weight(entry) > 0
    ]
    return bool(live) and all(entry_id in excluded for entry_id in live)


def _join(parts: list[Expansion], separator: str) -> Expansion:
    result = Expansion(text=separator.join(part.text for part in parts))
    for part in parts:
        result.descriptions.extend(part.descriptions)
        result.trace.extend(part.trace)
    return result
