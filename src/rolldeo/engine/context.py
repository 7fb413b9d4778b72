"""
Per-roll state shared by the expander and the orchestrator.

A ``RollSession`` holds what one roll call accumulates (named instances,
placeholders, captures, evaluated shared variables). ``ExpansionContext`` is the
immutable position inside the expansion: a new context is derived for every
nested reference, so depth and path can never leak between siblings.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Protocol

from ..config import EngineConfig
from ..exceptions import MaxExpansionDepthExceeded
from ..models import Table, Template
from .inheritance import TableLookup
from .weights import RandomSource


class Catalog(Protocol):
    """Read access to loaded collections, as needed during expansion."""

    def find_table(self, reference: str, collection_id: str) -> tuple[Table, str] | None:
        """Resolve a possibly qualified table reference to (table, owning collection id)."""
        ...

    def find_template(self, reference: str, collection_id: str) -> tuple[Template, str] | None:
        """Resolve a possibly qualified template reference."""
        ...

    def lookup_for(self, collection_id: str) -> TableLookup:
        """Table lookup bound to one collection (and its imports)."""
        ...

    def variables_for(self, collection_id: str) -> dict[str, str]:
        """Static variables of a collection."""
        ...


@dataclass(frozen=True)
class CaptureItem:
    """One roll stored by a ``>> $var`` capture."""
    value: str
    sets: dict[str, str] = field(default_factory=dict)
    description: str | None = None


@dataclass
class RollSession:
    """Mutable state of a single roll call.

    Attributes:
        catalog: Source of tables, templates and variables
        rng: Random source for every draw of this roll
        config: Engine configuration
        max_depth: Expansion ceiling after document overrides
        max_inheritance_depth: ``extends`` hops after document overrides
        trace: Whether trace nodes are recorded
        instances: Named instance results, keyed by instance name
        placeholders: Values set by the latest entry of each table
        shared: Shared variables evaluated so far
        captures: Rolls stored by capture expressions, keyed by variable name
    """
    catalog: Catalog
    rng: RandomSource
    config: EngineConfig
    max_depth: int
    max_inheritance_depth: int
    trace: bool = False
    instances: dict[str, str] = field(default_factory=dict)
    placeholders: dict[str, dict[str, str]] = field(default_factory=dict)
    shared: dict[str, str] = field(default_factory=dict)
    captures: dict[str, list[CaptureItem]] = field(default_factory=dict)


@dataclass(frozen=True)
class ExpansionContext:
    """Immutable position in the expansion tree.

    Attributes:
        session: The roll this context belongs to
        collection_id: Collection against which unqualified references resolve
        depth: Number of nested references followed so far
        path: Those references, outermost first
        table: Table whose entry is being expanded (target of ``again``)
        entry_id: Id of that entry
    """
    session: RollSession
    collection_id: str
    depth: int = 0
    path: tuple[str, ...] = ()
    table: Table | None = None
    entry_id: str | None = None

    def descend(self, reference: str, **changes) -> "ExpansionContext":
        """Context for expanding the result of ``reference``.

        Raises:
            MaxExpansionDepthExceeded: If the new depth is over the ceiling
        """
        depth = self.depth + 1
        path = self.path + (reference,)
        if depth > self.session.max_depth:
            raise MaxExpansionDepthExceeded(depth, self.session.max_depth, path)
        return replace(self, depth=depth, path=path, **changes)

    @property
    def lookup(self) -> TableLookup:
        return self.session.catalog.lookup_for(self.collection_id)
