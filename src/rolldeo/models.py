"""
Data models for random table documents and roll results.

Documents use camelCase keys on the wire (``resultType``, ``defaultSets``);
every model also accepts the snake_case field names so Python callers can
build documents directly.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class DocumentModel(BaseModel):
    """Base for every model that is read from or written to a document."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Tables
# ---------------------------------------------------------------------------


class TableSource(DocumentModel):
    """Attribution for a table copied from a published book or site."""
    title: str | None = Field(default=None, description="Book or site title")
    page: str | None = Field(default=None, description="Page or section reference")
    url: str | None = Field(default=None, description="Link to the original")
    license: str | None = Field(default=None, description="License of the content")


class Entry(DocumentModel):
    """Atomic weighted outcome of a simple table.

    Attributes:
        id: Stable identifier, used by inheritance overrides and unique rolls.
            Filled in as ``{table_id}{index:03d}`` when omitted.
        value: Result text; may contain ``{{...}}`` expressions
        weight: Relative likelihood, defaults to 1 when omitted
        description: Optional explanation shown alongside the result
        result_type: Optional classification of the result (e.g. "item")
        sets: Placeholder values exported when this entry is selected
    """
    id: str | None = Field(default=None, description="Entry identifier")
    value: str = Field(default="", description="Result text, may contain expressions")
    weight: float | None = Field(default=None, ge=0, description="Relative weight (default 1)")
    description: str | None = Field(default=None, description="Entry description")
    result_type: str | None = Field(default=None, description="Result classification")
    sets: dict[str, str] = Field(default_factory=dict, description="Placeholder values")


class CompositeSource(DocumentModel):
    """One weighted table reference of a composite table."""
    table_id: str = Field(description="Referenced table id")
    weight: float | None = Field(default=None, ge=0, description="Relative weight (default 1)")


class TableBase(DocumentModel):
    """Fields shared by every table variant."""
    id: str = Field(description="Table identifier, unique within a document")
    name: str = Field(default="", description="Display name")
    description: str | None = Field(default=None, description="Table description")
    tags: list[str] = Field(default_factory=list, description="Free-form tags")
    hidden: bool = Field(default=False, description="Hide from table listings")
    extends: str | None = Field(default=None, description="Parent table id for inheritance")
    result_type: str | None = Field(default=None, description="Default result classification")
    source: TableSource | None = Field(default=None, description="Attribution")

    @property
    def display_name(self) -> str:
        """Name if set, otherwise the id."""
        return self.name or self.id


class SimpleTable(TableBase):
    """Table of weighted entries."""
    type: Literal["simple"] = "simple"
    entries: list[Entry] = Field(default_factory=list, description="Weighted entries")
    default_sets: dict[str, str] = Field(
        default_factory=dict, description="Placeholder values shared by all entries"
    )

    @model_validator(mode="before")
    @classmethod
    def assign_entry_ids(cls, data: Any) -> Any:
        """Give id-less entries a positional id derived from the table id."""
        if not isinstance(data, dict):
            return data
        table_id = data.get("id")
        entries = data.get("entries")
        if not table_id or not isinstance(entries, list):
            return data

        filled = []
        for index, entry in enumerate(entries):
            generated = f"{table_id}{index:03d}"
            if isinstance(entry, Entry):
                if entry.id is None:
                    entry = entry.model_copy(update={"id": generated})
            elif isinstance(entry, dict) and entry.get("id") is None:
                entry = {**entry, "id": generated}
            filled.append(entry)
        return {**data, "entries": filled}


class CompositeTable(TableBase):
    """Table whose outcomes are other tables, picked by weight."""
    type: Literal["composite"] = "composite"
    sources: list[CompositeSource] = Field(default_factory=list, description="Weighted table references")


class CollectionTable(TableBase):
    """Unweighted aggregate of member tables, picked by entry count."""
    type: Literal["collection"] = "collection"
    collections: list[str] = Field(default_factory=list, description="Member table ids")


Table = Annotated[
    Union[SimpleTable, CompositeTable, CollectionTable],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Templates and documents
# ---------------------------------------------------------------------------


class Template(DocumentModel):
    """Named root pattern with embedded table references."""
    id: str = Field(description="Template identifier")
    name: str = Field(default="", description="Display name")
    pattern: str = Field(default="", description="Text with {{...}} expressions")
    description: str | None = Field(default=None, description="Template description")
    tags: list[str] = Field(default_factory=list, description="Free-form tags")
    result_type: str | None = Field(default=None, description="Result classification")
    shared: dict[str, str] = Field(
        default_factory=dict, description="Variables evaluated once before the pattern"
    )

    @property
    def display_name(self) -> str:
        """Name if set, otherwise the id."""
        return self.name or self.id


class Import(DocumentModel):
    """Makes another collection's tables reachable as ``{{alias.tableId}}``."""
    alias: str = Field(description="Prefix used in references")
    path: str = Field(description="Namespace, collection id or file path of the target")
    description: str | None = None


class Conditional(DocumentModel):
    """Post-processing rule applied to every roll of a collection.

    ``when`` is a condition over placeholders and variables. ``target`` is the
    regular expression replaced by ``replace`` (the whole text when omitted)
    and the variable name assigned by ``setVariable``.
    """
    when: str = Field(description="Condition, e.g. '@creature.size == huge'")
    action: Literal["append", "prepend", "replace", "setVariable"]
    value: str = Field(default="", description="Text to apply, may contain expressions")
    target: str | None = Field(default=None, description="Regex for replace, variable name for setVariable")


class DocumentMetadata(DocumentModel):
    """Collection-level metadata and per-collection limit overrides."""
    name: str = Field(description="Collection name")
    namespace: str | None = Field(default=None, description="Dotted namespace, e.g. 'fantasy.core'")
    version: str | None = Field(default=None, description="Collection version")
    spec_version: str = Field(default="1.0", description="Document format version")
    author: str | None = None
    description: str | None = None
    max_recursion_depth: int | None = Field(default=None, ge=1, description="Expansion depth override")
    max_inheritance_depth: int | None = Field(default=None, ge=0, description="Inheritance depth override")


class RandomTableDocument(DocumentModel):
    """A complete collection: tables, templates and variables."""
    metadata: DocumentMetadata
    imports: list[Import] = Field(default_factory=list)
    tables: list[Table] = Field(default_factory=list)
    templates: list[Template] = Field(default_factory=list)
    variables: dict[str, str] = Field(default_factory=dict, description="Static variables")
    shared: dict[str, str] = Field(
        default_factory=dict, description="Variables evaluated once per roll, in order"
    )
    conditionals: list[Conditional] = Field(
        default_factory=list, description="Rules applied to final results, in order"
    )


# ---------------------------------------------------------------------------
# Roll output
# ---------------------------------------------------------------------------


class EntryDescription(DocumentModel):
    """Attribution of one table roll that contributed to a result."""
    table_id: str
    table_name: str
    rolled_value: str
    description: str | None = None
    depth: int = Field(default=0, description="Expansion depth at which the roll happened")


class TraceNodeType(str, Enum):
    """Kinds of resolution steps recorded in a trace."""
    ROOT = "root"
    TABLE_ROLL = "table_roll"
    ENTRY_SELECT = "entry_select"
    SOURCE_SELECT = "source_select"
    MEMBER_SELECT = "member_select"
    TEMPLATE_REF = "template_ref"
    MULTI_ROLL = "multi_roll"
    INSTANCE = "instance"
    AGAIN = "again"
    DICE_ROLL = "dice_roll"
    VARIABLE = "variable"
    PLACEHOLDER = "placeholder"
    MATH = "math"
    CAPTURE = "capture"
    CAPTURE_ACCESS = "capture_access"
    COLLECT = "collect"
    SWITCH = "switch"
    CONDITIONAL = "conditional"


class TraceNode(DocumentModel):
    """One resolution step; children are the nested steps it triggered."""
    node_type: TraceNodeType
    label: str
    table_id: str | None = None
    entry_id: str | None = None
    weight: float | None = None
    probability: float | None = Field(default=None, description="Chance of this pick (0-1)")
    value: str | None = None
    error: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    children: list[TraceNode] = Field(default_factory=list)

    def node_count(self) -> int:
        """Total number of nodes in this subtree."""
        return 1 + sum(child.node_count() for child in self.children)

    def max_depth(self) -> int:
        """Depth of the deepest node, counting this one as 1."""
        return 1 + max((child.max_depth() for child in self.children), default=0)

    def find(self, node_type: TraceNodeType) -> list[TraceNode]:
        """All nodes of a given type in depth-first order."""
        found = [self] if self.node_type == node_type else []
        for child in self.children:
            found.extend(child.find(node_type))
        return found


class RollMetadata(DocumentModel):
    """Where a roll came from."""
    source_id: str
    collection_id: str
    entry_id: str | None = None
    timestamp: datetime = Field(default_factory=datetime.now)


class RollResult(DocumentModel):
    """Final output of one roll call. Never mutated after creation."""
    value: str
    result_type: str | None = None
    descriptions: list[EntryDescription] = Field(default_factory=list)
    trace: TraceNode | None = None
    placeholders: dict[str, dict[str, str]] = Field(default_factory=dict)
    metadata: RollMetadata


# ---------------------------------------------------------------------------
# Listings
# ---------------------------------------------------------------------------


class TableInfo(DocumentModel):
    """Summary of a table for browsing."""
    id: str
    name: str
    type: Literal["simple", "composite", "collection"]
    description: str | None = None
    tags: list[str] = Field(default_factory=list)
    hidden: bool = False
    entry_count: int | None = None
    result_type: str | None = None


class TemplateInfo(DocumentModel):
    """Summary of a template for browsing."""
    id: str
    name: str
    description: str | None = None
    tags: list[str] = Field(default_factory=list)
    result_type: str | None = None


class CollectionInfo(DocumentModel):
    """Summary of a loaded collection."""
    id: str
    name: str
    namespace: str | None = None
    is_preloaded: bool = False
    table_count: int = 0
    template_count: int = 0


__all__ = [
    "DocumentModel",
    "TableSource",
    "Entry",
    "CompositeSource",
    "TableBase",
    "SimpleTable",
    "CompositeTable",
    "CollectionTable",
    "Table",
    "Template",
    "Import",
    "Conditional",
    "DocumentMetadata",
    "RandomTableDocument",
    "EntryDescription",
    "TraceNodeType",
    "TraceNode",
    "RollMetadata",
    "RollResult",
    "TableInfo",
    "TemplateInfo",
    "CollectionInfo",
]
