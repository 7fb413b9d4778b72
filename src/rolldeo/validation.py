"""
Structural validation of random table documents.

Schema problems (wrong types, missing required fields) are caught by
pydantic when a document is parsed. This module checks what the schema
cannot: duplicate ids, dangling references and tables that can never
produce a result. Validation never mutates the document.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum

from pydantic import ValidationError

from .exceptions import ExpressionSyntaxError
from .models import CollectionTable, CompositeTable, RandomTableDocument, SimpleTable
from .engine.conditions import parse_when
from .engine.expressions import parse_pattern


# =============================================================================
# Validation Models
# =============================================================================

class ValidationSeverity(Enum):
    """Severity level for validation issues."""
    ERROR = "error"      # Rolling will fail
    WARNING = "warning"  # Suspicious, but rollable
    INFO = "info"        # Informational note


@dataclass
class ValidationIssue:
    """A single problem found in a document."""
    severity: ValidationSeverity
    type: str           # e.g., "duplicate_id", "missing_reference"
    message: str        # Human-readable message
    field: str          # e.g., "tables[2].entries[0].value"
    suggestion: str | None = None


@dataclass
class ValidationReport:
    """
    Validation report for a document.

    A document is valid if it has no ERROR-level issues. When produced by
    the engine's loaders, ``collection_id`` is set once the document has
    been loaded.
    """
    document_name: str
    issues: list[ValidationIssue] = field(default_factory=list)
    collection_id: str | None = None

    @property
    def valid(self) -> bool:
        return not self.errors

    @property
    def errors(self) -> list[ValidationIssue]:
        """Return all ERROR-level issues."""
        return [i for i in self.issues if i.severity == ValidationSeverity.ERROR]

    @property
    def warnings(self) -> list[ValidationIssue]:
        """Return all WARNING-level issues."""
        return [i for i in self.issues if i.severity == ValidationSeverity.WARNING]

    @property
    def info(self) -> list[ValidationIssue]:
        """Return all INFO-level issues."""
        return [i for i in self.issues if i.severity == ValidationSeverity.INFO]

    def __str__(self) -> str:
        """Return a formatted summary of the validation report."""
        lines = [f"Validation Report for {self.document_name}"]
        lines.append(f"Status: {'✓ VALID' if self.valid else '✗ INVALID'}")
        lines.append(f"Issues: {len(self.errors)} errors, {len(self.warnings)} warnings, {len(self.info)} info")

        for title, issues in (("Errors", self.errors), ("Warnings", self.warnings), ("Info", self.info)):
            if not issues:
                continue
            lines.append(f"\n{title}:")
            for issue in issues:
                lines.append(f"  - [{issue.type}] {issue.field}: {issue.message}")
                if issue.suggestion:
                    lines.append(f"    Suggestion: {issue.suggestion}")

        return "\n".join(lines)


def report_from_schema_error(document_name: str, error: ValidationError) -> ValidationReport:
    """Convert a pydantic ``ValidationError`` into a report of ERROR issues."""
    report = ValidationReport(document_name=document_name)
    for detail in error.errors():
        location = ".".join(str(part) for part in detail.get("loc", ())) or "<document>"
        report.issues.append(ValidationIssue(
            severity=ValidationSeverity.ERROR,
            type="schema",
            message=detail.get("msg", "Invalid value"),
            field=location,
        ))
    return report


# =============================================================================
# Document Validator
# =============================================================================

class DocumentValidator:
    """
    Checks a document for problems that would break or skew rolls.

    - ERROR: a roll touching this part will raise (dangling reference,
      duplicate id, malformed expression)
    - WARNING: rollable but probably unintended (all-zero weights, empty
      tables, self-extension)
    """

    def __init__(self, document: RandomTableDocument):
        self.document = document
        self.table_ids = {table.id for table in document.tables}
        self.template_ids = {template.id for template in document.templates}
        self.aliases = {imp.alias for imp in document.imports}
        self.namespace = document.metadata.namespace

    def validate(self) -> ValidationReport:
        """Run every check and collect the issues."""
        report = ValidationReport(document_name=self.document.metadata.name)
        report.issues.extend(self._validate_ids())
        report.issues.extend(self._validate_tables())
        report.issues.extend(self._validate_expressions())
        report.issues.extend(self._validate_conditionals())
        return report

    def _validate_ids(self) -> list[ValidationIssue]:
        issues = []
        seen: set[str] = set()
        for index, table in enumerate(self.document.tables):
            if table.id in seen:
                issues.append(ValidationIssue(
                    severity=ValidationSeverity.ERROR,
                    type="duplicate_id",
                    message=f"Table id '{table.id}' is used more than once.",
                    field=f"tables[{index}].id",
                ))
            seen.add(table.id)

        seen_templates: set[str] = set()
        for index, template in enumerate(self.document.templates):
            if template.id in seen_templates:
                issues.append(ValidationIssue(
                    severity=ValidationSeverity.ERROR,
                    type="duplicate_id",
                    message=f"Template id '{template.id}' is used more than once.",
                    field=f"templates[{index}].id",
                ))
            elif template.id in self.table_ids:
                issues.append(ValidationIssue(
                    severity=ValidationSeverity.WARNING,
                    type="shadowed_template",
                    message=f"Template '{template.id}' has the same id as a table; references resolve to the table.",
                    field=f"templates[{index}].id",
                    suggestion="Rename the template.",
                ))
            seen_templates.add(template.id)
        return issues

    def _validate_tables(self) -> list[ValidationIssue]:
        issues = []
        for index, table in enumerate(self.document.tables):
            prefix = f"tables[{index}]"

            if table.extends:
                if table.extends == table.id:
                    issues.append(ValidationIssue(
                        severity=ValidationSeverity.WARNING,
                        type="self_extension",
                        message=f"Table '{table.id}' extends itself; the link is ignored after the depth limit.",
                        field=f"{prefix}.extends",
                    ))
                elif not self._is_known(table.extends, self.table_ids):
                    issues.append(self._missing(table.extends, f"{prefix}.extends"))

            if isinstance(table, SimpleTable):
                issues.extend(self._validate_entries(table, prefix))
            elif isinstance(table, CompositeTable):
                if not table.sources:
                    issues.append(self._empty(table.id, prefix, "sources"))
                elif all(source.weight == 0 for source in table.sources):
                    issues.append(self._zero_weights(table.id, prefix))
                for s_index, source in enumerate(table.sources):
                    if not self._is_known(source.table_id, self.table_ids):
                        issues.append(self._missing(source.table_id, f"{prefix}.sources[{s_index}].tableId"))
            elif isinstance(table, CollectionTable):
                if not table.collections:
                    issues.append(self._empty(table.id, prefix, "collections"))
                for m_index, member in enumerate(table.collections):
                    if not self._is_known(member, self.table_ids):
                        issues.append(self._missing(member, f"{prefix}.collections[{m_index}]"))
        return issues

    def _validate_entries(self, table: SimpleTable, prefix: str) -> list[ValidationIssue]:
        issues = []
        # Inheriting tables may legitimately declare no entries of their own
        if not table.entries and not table.extends:
            issues.append(self._empty(table.id, prefix, "entries"))
        elif table.entries and all(entry.weight == 0 for entry in table.entries) and not table.extends:
            issues.append(self._zero_weights(table.id, prefix))

        seen: set[str] = set()
        for e_index, entry in enumerate(table.entries):
            if entry.id in seen:
                issues.append(ValidationIssue(
                    severity=ValidationSeverity.ERROR,
                    type="duplicate_id",
                    message=f"Entry id '{entry.id}' appears twice in table '{table.id}'.",
                    field=f"{prefix}.entries[{e_index}].id",
                ))
            seen.add(entry.id)
        return issues

    def _validate_expressions(self) -> list[ValidationIssue]:
        issues = []
        for index, table in enumerate(self.document.tables):
            if isinstance(table, SimpleTable):
                for e_index, entry in enumerate(table.entries):
                    issues.extend(self._check_text(entry.value, f"tables[{index}].entries[{e_index}].value"))
                    for name, value in entry.sets.items():
                        issues.extend(self._check_text(value, f"tables[{index}].entries[{e_index}].sets.{name}"))
        for index, template in enumerate(self.document.templates):
            issues.extend(self._check_text(template.pattern, f"templates[{index}].pattern"))
            for name, value in template.shared.items():
                issues.extend(self._check_text(value, f"templates[{index}].shared.{name}"))
        for name, value in self.document.shared.items():
            issues.extend(self._check_text(value, f"shared.{name}"))
        return issues

    def _validate_conditionals(self) -> list[ValidationIssue]:
        issues = []
        for index, conditional in enumerate(self.document.conditionals):
            prefix = f"conditionals[{index}]"
            try:
                parse_when(conditional.when)
            except ExpressionSyntaxError as e:
                issues.append(ValidationIssue(
                    severity=ValidationSeverity.ERROR,
                    type="syntax",
                    message=e.message,
                    field=f"{prefix}.when",
                ))
            issues.extend(self._check_text(conditional.value, f"{prefix}.value"))

            if conditional.action == "setVariable" and not conditional.target:
                issues.append(ValidationIssue(
                    severity=ValidationSeverity.WARNING,
                    type="missing_target",
                    message="setVariable conditional has no target variable; it does nothing.",
                    field=f"{prefix}.target",
                ))
            elif conditional.action == "replace" and conditional.target:
                try:
                    re.compile(conditional.target)
                except re.error as e:
                    issues.append(ValidationIssue(
                        severity=ValidationSeverity.ERROR,
                        type="syntax",
                        message=f"Invalid replace pattern: {e}",
                        field=f"{prefix}.target",
                    ))
        return issues

    def _check_text(self, text: str, location: str) -> list[ValidationIssue]:
        try:
            tokens = parse_pattern(text)
        except ExpressionSyntaxError as e:
            return [ValidationIssue(
                severity=ValidationSeverity.ERROR,
                type="syntax",
                message=e.message,
                field=location,
            )]

        issues = []
        known = self.table_ids | self.template_ids
        for token in tokens:
            if token.reference and not self._is_known(token.reference, known):
                issues.append(self._missing(token.reference, location))
        return issues

    def _is_known(self, reference: str, local_ids: set[str]) -> bool:
        """Local ids resolve here; qualified references are checked at roll time."""
        if reference in local_ids:
            return True
        prefix, dot, local = reference.rpartition(".")
        if not dot:
            return False
        if prefix == self.namespace:
            return local in local_ids
        return prefix in self.aliases

    @staticmethod
    def _missing(reference: str, location: str) -> ValidationIssue:
        return ValidationIssue(
            severity=ValidationSeverity.ERROR,
            type="missing_reference",
            message=f"Reference '{reference}' does not match any table or template.",
            field=location,
            suggestion="Check the id, or add an import for qualified references.",
        )

    @staticmethod
    def _empty(table_id: str, prefix: str, part: str) -> ValidationIssue:
        return ValidationIssue(
            severity=ValidationSeverity.WARNING,
            type="empty_table",
            message=f"Table '{table_id}' has no {part}; rolling it will fail.",
            field=f"{prefix}.{part}",
        )

    @staticmethod
    def _zero_weights(table_id: str, prefix: str) -> ValidationIssue:
        return ValidationIssue(
            severity=ValidationSeverity.WARNING,
            type="zero_weight",
            message=f"Every option of table '{table_id}' has weight 0; rolling it will fail.",
            field=prefix,
        )


def validate_document(document: RandomTableDocument) -> ValidationReport:
    """Validate a parsed document. See :class:`DocumentValidator`."""
    return DocumentValidator(document).validate()
