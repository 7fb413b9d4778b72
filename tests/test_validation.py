"""Tests for document validation."""

import json

import pytest
from pydantic import ValidationError

from rolldeo.models import RandomTableDocument
from rolldeo.validation import (
    ValidationSeverity,
    report_from_schema_error,
    validate_document,
)


def make_document(tables=(), templates=(), imports=(), namespace=None, conditionals=()):
    return RandomTableDocument.model_validate({
        "metadata": {"name": "Test", "namespace": namespace},
        "imports": list(imports),
        "tables": list(tables),
        "templates": list(templates),
        "conditionals": list(conditionals),
    })


def simple(table_id, *values, **kwargs):
    return {"id": table_id, "type": "simple", "entries": [{"value": v} for v in values], **kwargs}


def issue_types(report):
    return [(issue.severity, issue.type) for issue in report.issues]


class TestValidateDocument:
    """Tests for validate_document."""

    def test_fixture_is_valid(self, fixtures_dir):
        document = RandomTableDocument.model_validate(
            json.loads((fixtures_dir / "fantasy.json").read_text())
        )
        report = validate_document(document)
        assert report.valid
        assert report.issues == []

    def test_duplicate_table_ids(self):
        report = validate_document(make_document([simple("a", "x"), simple("a", "y")]))
        assert not report.valid
        assert report.errors[0].type == "duplicate_id"
        assert report.errors[0].field == "tables[1].id"

    def test_duplicate_entry_ids(self):
        table = {"id": "a", "type": "simple", "entries": [{"id": "e", "value": "x"}, {"id": "e", "value": "y"}]}
        report = validate_document(make_document([table]))
        assert report.errors[0].field == "tables[0].entries[1].id"

    def test_template_shadowed_by_table(self):
        report = validate_document(make_document([simple("a", "x")], [{"id": "a", "pattern": "p"}]))
        assert report.valid
        assert report.warnings[0].type == "shadowed_template"

    def test_missing_extends(self):
        report = validate_document(make_document([simple("a", "x", extends="ghost")]))
        assert issue_types(report) == [(ValidationSeverity.ERROR, "missing_reference")]
        assert report.errors[0].field == "tables[0].extends"

    def test_self_extension_warning(self):
        report = validate_document(make_document([simple("a", "x", extends="a")]))
        assert report.valid
        assert issue_types(report) == [(ValidationSeverity.WARNING, "self_extension")]

    def test_missing_composite_source(self):
        composite = {"id": "c", "type": "composite", "sources": [{"tableId": "ghost"}]}
        report = validate_document(make_document([composite]))
        assert report.errors[0].field == "tables[0].sources[0].tableId"

    def test_missing_collection_member(self):
        collection = {"id": "c", "type": "collection", "collections": ["ghost"]}
        report = validate_document(make_document([collection]))
        assert report.errors[0].field == "tables[0].collections[0]"

    def test_unknown_reference_in_value(self):
        report = validate_document(make_document([simple("a", "{{b}} and {{ghost}}"), simple("b", "x")]))
        assert len(report.errors) == 1
        assert "ghost" in report.errors[0].message
        assert report.errors[0].field == "tables[0].entries[0].value"

    def test_unknown_reference_in_template(self):
        report = validate_document(make_document(templates=[{"id": "t", "pattern": "{{nope}}"}]))
        assert report.errors[0].field == "templates[0].pattern"

    def test_qualified_references(self):
        """Import aliases and the own namespace are accepted; unknown prefixes are not."""
        document = make_document(
            [simple("a", "{{core.x}} {{mine.b}} {{other.y}}"), simple("b", "x")],
            imports=[{"alias": "core", "path": "core.json"}],
            namespace="mine",
        )
        report = validate_document(document)
        assert [e.message for e in report.errors] == [
            "Reference 'other.y' does not match any table or template."
        ]

    def test_syntax_error(self):
        report = validate_document(make_document([simple("a", "{{}}")]))
        assert report.errors[0].type == "syntax"

    def test_empty_table_warning(self):
        report = validate_document(make_document([simple("a")]))
        assert report.valid
        assert report.warnings[0].type == "empty_table"

    def test_inheriting_table_may_be_empty(self):
        report = validate_document(make_document([simple("base", "x"), simple("child", extends="base")]))
        assert report.issues == []

    def test_zero_weight_warning(self):
        table = {"id": "a", "type": "simple", "entries": [{"value": "x", "weight": 0}]}
        report = validate_document(make_document([table]))
        assert report.warnings[0].type == "zero_weight"

    def test_conditionals_checked(self):
        report = validate_document(make_document([simple("beast", "Dragon")], conditionals=[
            {"when": "@beast.size ==", "action": "append", "value": "!"},
            {"when": "@beast", "action": "append", "value": "{{ghost}}"},
            {"when": "@beast", "action": "replace", "target": "(", "value": "x"},
            {"when": "@beast", "action": "setVariable", "value": "x"},
        ]))
        assert [(issue.type, issue.field) for issue in report.issues] == [
            ("syntax", "conditionals[0].when"),
            ("missing_reference", "conditionals[1].value"),
            ("syntax", "conditionals[2].target"),
            ("missing_target", "conditionals[3].target"),
        ]
        assert report.warnings[0].type == "missing_target"

    def test_valid_conditionals(self):
        report = validate_document(make_document([simple("beast", "Dragon")], conditionals=[
            {"when": "@beast.size == huge && $level >= 3", "action": "replace", "target": "Dragon", "value": "{{beast}}"},
            {"when": "@beast", "action": "setVariable", "target": "seen", "value": "yes"},
        ]))
        assert report.issues == []

    def test_new_expression_forms(self):
        report = validate_document(make_document([
            simple("loot", "{{2*gem >> $found|silent}}{{collect:$found}} {{math:$found.count + 1}}"),
            simple("mood", '{{$m.switch[$ == "a":"b"]}}', "{{math:1 +}}"),
        ]))
        assert [(issue.type, issue.field) for issue in report.errors] == [
            ("missing_reference", "tables[0].entries[0].value"),
            ("syntax", "tables[1].entries[1].value"),
        ]


class TestReport:
    """Tests for ValidationReport formatting and schema errors."""

    def test_str(self):
        report = validate_document(make_document([simple("a", "{{ghost}}")]))
        text = str(report)
        assert "✗ INVALID" in text
        assert "[missing_reference]" in text
        assert "Suggestion:" in text

    def test_schema_error(self):
        with pytest.raises(ValidationError) as exc:
            RandomTableDocument.model_validate({"metadata": {}})
        report = report_from_schema_error("broken", exc.value)
        assert not report.valid
        assert report.errors[0].field == "metadata.name"
