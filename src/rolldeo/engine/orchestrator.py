"""
Roll orchestrator: the public entry point of the table engine.

``RandomTableEngine`` keeps a registry of loaded collections and turns a
roll request into a ``RollResult``: it resolves the table or template,
expands the selected text, applies the collection's conditionals and
attaches descriptions, placeholders and an optional trace.
"""

from __future__ import annotations

import json
import logging
import random
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from ..config import EngineConfig
from ..exceptions import CollectionNotFoundError, UnknownReferenceError
from ..models import (
    CollectionInfo,
    RandomTableDocument,
    RollMetadata,
    RollResult,
    Table,
    TableInfo,
    Template,
    TemplateInfo,
)
from ..validation import (
    ValidationIssue,
    ValidationReport,
    ValidationSeverity,
    report_from_schema_error,
    validate_document,
)
from ..visualization import TableVisualization
from ..visualization import visualize_table as build_visualization
from .context import ExpansionContext, RollSession
from .expander import (
    Expansion,
    apply_conditionals,
    evaluate_shared,
    expand,
    expand_template,
    roll_table,
)
from .inheritance import TableLookup, table_entry_count
from .trace import root_node
from .weights import RandomSource

logger = logging.getLogger("rolldeo")


@dataclass
class LoadedCollection:
    """A document registered in the engine."""
    id: str
    document: RandomTableDocument
    is_preloaded: bool = False
    source_path: str | None = None
    tables: dict[str, Table] = field(default_factory=dict)
    templates: dict[str, Template] = field(default_factory=dict)
    import_map: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_document(cls, collection_id: str, document: RandomTableDocument, **kwargs) -> "LoadedCollection":
        return cls(
            id=collection_id,
            document=document,
            tables={table.id: table for table in document.tables},
            templates={template.id: template for template in document.templates},
            **kwargs,
        )

    @property
    def namespace(self) -> str | None:
        return self.document.metadata.namespace


class RandomTableEngine:
    """
    Loads collections and rolls their tables and templates.

    All randomness comes from one random source: the ``rng`` passed in, or
    a ``random.Random`` seeded from ``config.seed``. A roll call given a
    ``seed`` uses its own generator instead, so it is reproducible without
    disturbing the engine's sequence.

    Example:
        engine = RandomTableEngine()
        report = engine.load_from_json(text)
        result = engine.roll_table("treasure", report.collection_id)
    """

    def __init__(self, config: EngineConfig | None = None, rng: RandomSource | None = None):
        self.config = config or EngineConfig()
        self.rng: RandomSource = rng or random.Random(self.config.seed)
        self._collections: dict[str, LoadedCollection] = {}

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def load_collection(
        self,
        document: RandomTableDocument,
        collection_id: str | None = None,
        *,
        is_preloaded: bool = False,
        source_path: str | None = None,
    ) -> str:
        """Register a parsed document and return its collection id.

        The id defaults to the document namespace, then its name. Loading
        under an existing id replaces that collection.
        """
        collection_id = collection_id or document.metadata.namespace or document.metadata.name
        if collection_id in self._collections:
            logger.info(f"Replacing collection '{collection_id}'")
        self._collections[collection_id] = LoadedCollection.from_document(
            collection_id, document, is_preloaded=is_preloaded, source_path=source_path
        )
        logger.debug(
            f"Loaded collection '{collection_id}' "
            f"({len(document.tables)} tables, {len(document.templates)} templates)"
        )
        return collection_id

    def load_from_json(self, content: str, collection_id: str | None = None, **kwargs) -> ValidationReport:
        """Parse, validate and load a JSON document.

        The document is loaded only when the report has no errors; the
        report's ``collection_id`` is set in that case.
        """
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            return self._parse_failure(collection_id, f"Invalid JSON: {e}")
        return self._load_data(data, collection_id, **kwargs)

    def load_from_yaml(self, content: str, collection_id: str | None = None, **kwargs) -> ValidationReport:
        """Parse, validate and load a YAML document. See :meth:`load_from_json`."""
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            return self._parse_failure(collection_id, f"Invalid YAML: {e}")
        return self._load_data(data, collection_id, **kwargs)

    def load_file(self, path: str | Path, collection_id: str | None = None, **kwargs) -> ValidationReport:
        """Load a ``.json``, ``.yaml`` or ``.yml`` file."""
        path = Path(path)
        content = path.read_text(encoding="utf-8")
        kwargs.setdefault("source_path", str(path))
        if path.suffix.lower() in (".yaml", ".yml"):
            return self.load_from_yaml(content, collection_id, **kwargs)
        return self.load_from_json(content, collection_id, **kwargs)

    def _load_data(self, data: Any, collection_id: str | None, **kwargs) -> ValidationReport:
        name = collection_id or "<document>"
        if not isinstance(data, dict):
            return self._parse_failure(collection_id, "Document must be a mapping")
        try:
            document = RandomTableDocument.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Rejected document '{name}': {e.error_count()} schema errors")
            return report_from_schema_error(name, e)

        report = validate_document(document)
        if report.valid:
            report.collection_id = self.load_collection(document, collection_id, **kwargs)
        else:
            logger.warning(f"Rejected document '{report.document_name}': {len(report.errors)} errors")
        return report

    @staticmethod
    def _parse_failure(collection_id: str | None, message: str) -> ValidationReport:
        return ValidationReport(
            document_name=collection_id or "<document>",
            issues=[ValidationIssue(
                severity=ValidationSeverity.ERROR,
                type="parse",
                message=message,
                field="<document>",
            )],
        )

    def update_document(self, collection_id: str, document: RandomTableDocument) -> None:
        """Replace the document of a loaded collection, keeping its id and origin."""
        current = self._require(collection_id)
        self._collections[collection_id] = LoadedCollection.from_document(
            collection_id,
            document,
            is_preloaded=current.is_preloaded,
            source_path=current.source_path,
        )

    def unload_collection(self, collection_id: str) -> bool:
        """Remove a collection. Returns False if it was not loaded."""
        removed = self._collections.pop(collection_id, None)
        if removed is None:
            return False
        for collection in self._collections.values():
            collection.import_map = {
                alias: target for alias, target in collection.import_map.items() if target != collection_id
            }
        return True

    def has_collection(self, collection_id: str) -> bool:
        return collection_id in self._collections

    def get_collection(self, collection_id: str) -> RandomTableDocument | None:
        collection = self._collections.get(collection_id)
        return collection.document if collection else None

    def list_collections(self) -> list[CollectionInfo]:
        return [
            CollectionInfo(
                id=collection.id,
                name=collection.document.metadata.name,
                namespace=collection.namespace,
                is_preloaded=collection.is_preloaded,
                table_count=len(collection.tables),
                template_count=len(collection.templates),
            )
            for collection in self._collections.values()
        ]

    def resolve_imports(self, path_to_id: dict[str, str] | None = None) -> dict[str, dict[str, str]]:
        """Bind every import alias to a loaded collection.

        Args:
            path_to_id: Explicit mapping from import path to collection id;
                unmapped paths are matched against collection ids,
                namespaces and file stems

        Returns:
            Mapping of collection id to its resolved ``{alias: collection_id}``
        """
        path_to_id = path_to_id or {}
        resolved = {}
        for collection in self._collections.values():
            collection.import_map = {}
            for imp in collection.document.imports:
                target = path_to_id.get(imp.path) or self._match_import_path(imp.path)
                if target is None:
                    logger.warning(
                        f"Import '{imp.alias}' of '{collection.id}' points to unknown collection '{imp.path}'"
                    )
                    continue
                collection.import_map[imp.alias] = target
            resolved[collection.id] = dict(collection.import_map)
        return resolved

    def _match_import_path(self, path: str) -> str | None:
        if path in self._collections:
            return path
        stem = Path(path).stem
        for collection in self._collections.values():
            if collection.namespace == path:
                return collection.id
        for collection in self._collections.values():
            if collection.id == stem or (
                collection.source_path and Path(collection.source_path).stem == stem
            ):
                return collection.id
        return None

    def _require(self, collection_id: str) -> LoadedCollection:
        collection = self._collections.get(collection_id)
        if collection is None:
            raise CollectionNotFoundError(collection_id)
        return collection

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_table(self, collection_id: str, table_id: str) -> Table | None:
        collection = self._collections.get(collection_id)
        return collection.tables.get(table_id) if collection else None

    def get_template(self, collection_id: str, template_id: str) -> Template | None:
        collection = self._collections.get(collection_id)
        return collection.templates.get(template_id) if collection else None

    def list_tables(self, collection_id: str, include_hidden: bool = False) -> list[TableInfo]:
        collection = self._require(collection_id)
        lookup = self.lookup_for(collection_id)
        max_depth = self._limits(collection)[1]
        return [
            TableInfo(
                id=table.id,
                name=table.display_name,
                type=table.type,
                description=table.description,
                tags=table.tags,
                hidden=table.hidden,
                entry_count=table_entry_count(table, lookup, max_depth),
                result_type=table.result_type,
            )
            for table in collection.tables.values()
            if include_hidden or not table.hidden
        ]

    def list_templates(self, collection_id: str) -> list[TemplateInfo]:
        collection = self._require(collection_id)
        return [
            TemplateInfo(
                id=template.id,
                name=template.display_name,
                description=template.description,
                tags=template.tags,
                result_type=template.result_type,
            )
            for template in collection.templates.values()
        ]

    def find_table(self, reference: str, collection_id: str) -> tuple[Table, str] | None:
        """Resolve ``id``, ``alias.id`` or ``namespace.id`` from a collection.

        Returns:
            Tuple of (table, id of the collection that owns it), or None
        """
        return self._find(reference, collection_id, "tables")

    def find_template(self, reference: str, collection_id: str) -> tuple[Template, str] | None:
        """Template counterpart of :meth:`find_table`."""
        return self._find(reference, collection_id, "templates")

    def _find(self, reference: str, collection_id: str, kind: str):
        collection = self._require(collection_id)
        items = getattr(collection, kind)
        if reference in items:
            return items[reference], collection_id

        prefix, dot, local = reference.rpartition(".")
        if not dot:
            return None
        for target_id in self._qualified_targets(collection, prefix):
            target = self._collections.get(target_id)
            if target is not None and local in getattr(target, kind):
                return getattr(target, kind)[local], target_id
        return None

    def _qualified_targets(self, collection: LoadedCollection, prefix: str) -> list[str]:
        """Collections a reference prefix may point to: import alias first, then namespace."""
        targets = []
        if prefix in collection.import_map:
            targets.append(collection.import_map[prefix])
        else:
            for imp in collection.document.imports:
                if imp.alias == prefix:
                    match = self._match_import_path(imp.path)
                    if match:
                        targets.append(match)
        if prefix == collection.namespace:
            targets.append(collection.id)
        targets.extend(
            c.id for c in self._collections.values() if c.namespace == prefix and c.id not in targets
        )
        return targets

    def lookup_for(self, collection_id: str) -> TableLookup:
        """Table lookup bound to ``collection_id``, following its imports."""
        def lookup(reference: str) -> Table | None:
            found = self.find_table(reference, collection_id)
            return found[0] if found else None
        return lookup

    def variables_for(self, collection_id: str) -> dict[str, str]:
        return self._require(collection_id).document.variables

    def _limits(self, collection: LoadedCollection) -> tuple[int, int]:
        """Recursion and inheritance limits, after document overrides."""
        metadata = collection.document.metadata
        max_depth = metadata.max_recursion_depth or self.config.max_recursion_depth
        max_inheritance = metadata.max_inheritance_depth
        if max_inheritance is None:
            max_inheritance = self.config.max_inheritance_depth
        return max_depth, max_inheritance

    # ------------------------------------------------------------------
    # Rolling
    # ------------------------------------------------------------------

    def roll_table(
        self,
        table_id: str,
        collection_id: str,
        *,
        trace: bool | None = None,
        seed: int | None = None,
    ) -> RollResult:
        """Roll a table and fully expand the result.

        Args:
            table_id: Table to roll (may be alias- or namespace-qualified)
            collection_id: Collection the table is looked up from
            trace: Record a trace tree; defaults to ``config.trace_enabled``
            seed: Use a dedicated ``random.Random(seed)`` for this call

        Raises:
            CollectionNotFoundError: If the collection is not loaded
            UnknownReferenceError: If the table or anything it references is missing
            EmptyPoolError: If a table on the way has nothing to select
            MaxExpansionDepthExceeded: On runaway recursion
        """
        context = self._start(collection_id, trace, seed)
        found = self.find_table(table_id, collection_id)
        if found is None:
            raise UnknownReferenceError(table_id, "table", {"collection_id": collection_id})
        table, owner_id = found

        shared = self._evaluate_document_shared(context)
        roll = roll_table(table, owner_id, context)
        self._apply_document_conditionals(context, roll)
        return self._finish(context, table_id, shared, roll, roll.result_type, roll.entry_id)

    def roll_template(
        self,
        template_id: str,
        collection_id: str,
        *,
        trace: bool | None = None,
        seed: int | None = None,
    ) -> RollResult:
        """Expand a template. Arguments and errors as for :meth:`roll_table`."""
        context = self._start(collection_id, trace, seed)
        found = self.find_template(template_id, collection_id)
        if found is None:
            raise UnknownReferenceError(template_id, "template", {"collection_id": collection_id})
        template, owner_id = found

        shared = self._evaluate_document_shared(context)
        expansion = expand_template(template, owner_id, context)
        self._apply_document_conditionals(context, expansion)
        return self._finish(context, template_id, shared, expansion, template.result_type)

    def evaluate_pattern(
        self,
        pattern: str,
        collection_id: str,
        *,
        trace: bool | None = None,
        seed: int | None = None,
    ) -> RollResult:
        """Expand an ad-hoc pattern against a collection (live preview)."""
        context = self._start(collection_id, trace, seed)
        shared = self._evaluate_document_shared(context)
        expansion = expand(pattern, context)
        self._apply_document_conditionals(context, expansion)
        return self._finish(context, "<pattern>", shared, expansion)

    def visualize_table(self, table_id: str, collection_id: str, max_entries: int | None = None) -> TableVisualization:
        """Probability view of a table; see :func:`rolldeo.visualization.visualize_table`."""
        collection = self._require(collection_id)
        found = self.find_table(table_id, collection_id)
        if found is None:
            raise UnknownReferenceError(table_id, "table", {"collection_id": collection_id})
        table, owner_id = found
        return build_visualization(
            table,
            self.lookup_for(owner_id),
            max_entries=max_entries or self.config.max_entries_display,
            max_depth=self._limits(collection)[1],
        )

    def _start(self, collection_id: str, trace: bool | None, seed: int | None) -> ExpansionContext:
        collection = self._require(collection_id)
        max_depth, max_inheritance = self._limits(collection)
        session = RollSession(
            catalog=self,
            rng=random.Random(seed) if seed is not None else self.rng,
            config=self.config,
            max_depth=max_depth,
            max_inheritance_depth=max_inheritance,
            trace=self.config.trace_enabled if trace is None else trace,
        )
        return ExpansionContext(session=session, collection_id=collection_id)

    def _evaluate_document_shared(self, context: ExpansionContext) -> Expansion:
        document = self._require(context.collection_id).document
        return evaluate_shared(document.shared, context)

    def _apply_document_conditionals(self, context: ExpansionContext, expansion: Expansion) -> Expansion:
        document = self._require(context.collection_id).document
        return apply_conditionals(document.conditionals, expansion, context)

    @staticmethod
    def _finish(
        context: ExpansionContext,
        source_id: str,
        shared: Expansion,
        expansion: Expansion,
        result_type: str | None = None,
        entry_id: str | None = None,
    ) -> RollResult:
        session = context.session
        trace = None
        if session.trace:
            trace = root_node(
                source_id, context.collection_id, expansion.text, shared.trace + expansion.trace
            )
        return RollResult(
            value=expansion.text,
            result_type=result_type,
            descriptions=shared.descriptions + expansion.descriptions,
            trace=trace,
            placeholders={name: dict(values) for name, values in session.placeholders.items()},
            metadata=RollMetadata(
                source_id=source_id,
                collection_id=context.collection_id,
                entry_id=entry_id,
            ),
        )
