"""
Tests for RandomTableEngine: rolling, registry and lookups.

Tests cover:
- Deterministic rolls with seeds and injected random sources
- Inheritance, composite and collection rolls end to end
- Templates, shared variables, instances and placeholders
- Alias and namespace qualified references across collections
- Trace trees
- Loading, validating and unloading collections
"""

import random
import re

import pytest

from rolldeo.config import EngineConfig
from rolldeo.engine import RandomTableEngine
from rolldeo.exceptions import (
    CollectionNotFoundError,
    EmptyPoolError,
    ExpressionSyntaxError,
    MaxExpansionDepthExceeded,
    UnknownReferenceError,
)
from rolldeo.models import DocumentMetadata, RandomTableDocument, TraceNodeType

from conftest import ScriptedRandom


def document(tables=(), templates=(), **metadata):
    return RandomTableDocument.model_validate({
        "metadata": {"name": "Test", **metadata},
        "tables": [{"type": "simple", **table} for table in tables],
        "templates": list(templates),
    })


class TestDeterminism:
    """Tests for reproducible rolls."""

    def test_seeded_roll_repeats(self, fantasy_engine):
        first = fantasy_engine.roll_table("treasure", "fantasy", seed=7)
        second = fantasy_engine.roll_table("treasure", "fantasy", seed=7)
        assert first.value == second.value
        assert first.descriptions == second.descriptions

    def test_engine_seed(self, fixtures_dir):
        """Two engines seeded alike produce the same sequence."""
        sequences = []
        for _ in range(2):
            engine = RandomTableEngine(EngineConfig(seed=3))
            engine.load_file(fixtures_dir / "fantasy.json")
            sequences.append([engine.roll_table("loot", "fantasy").value for _ in range(20)])
        assert sequences[0] == sequences[1]

    def test_injected_random_source(self, fixtures_dir):
        """All draws come from the injected random source."""
        rng = ScriptedRandom([0.0])
        engine = RandomTableEngine(rng=rng)
        engine.load_file(fixtures_dir / "fantasy.json")
        assert engine.roll_table("weapons", "fantasy").value == "Sword"
        assert rng.random_calls == 1

    def test_weighted_frequency(self, fixtures_dir):
        """Sword (weight 3 of 4) comes up 75% of the time, within 2%."""
        engine = RandomTableEngine(rng=random.Random(42))
        engine.load_file(fixtures_dir / "fantasy.json")
        values = [engine.roll_table("weapons", "fantasy").value for _ in range(10_000)]
        assert abs(values.count("Sword") / 10_000 - 0.75) < 0.02
        assert "Broken hilt" not in values


class TestRollTable:
    """Tests for roll_table."""

    def test_nested_expansion(self, fantasy_engine):
        """Entry values are fully expanded."""
        result = fantasy_engine.roll_table("treasure", "fantasy", seed=1)
        match = re.fullmatch(r"(\d+) gold and a (rusty|shiny) (Sword|Axe)", result.value)
        assert match
        assert 2 <= int(match.group(1)) <= 12

    def test_descriptions_depth_first(self, fantasy_engine):
        result = fantasy_engine.roll_table("treasure", "fantasy", seed=1)
        assert [d.table_id for d in result.descriptions] == ["treasure", "adjective", "weapons"]
        assert [d.depth for d in result.descriptions] == [0, 1, 1]
        assert result.descriptions[0].rolled_value == result.value

    def test_inherited_override(self, fantasy_engine):
        """Overridden parent entries never appear; inherited ones do."""
        values = {
            fantasy_engine.roll_table("magic_weapons", "fantasy", seed=seed).value
            for seed in range(200)
        }
        assert values == {"Flaming Sword", "Axe", "Wand"}

    def test_composite(self, fantasy_engine):
        result = fantasy_engine.roll_table("loot", "fantasy", seed=5)
        assert result.value in {"Sword", "Axe", "Leather", "Chain"}
        assert result.descriptions[0].table_id == "loot"
        assert result.descriptions[0].description == "Any piece of equipment"
        assert result.descriptions[1].table_id in {"weapons", "armor"}

    def test_collection_result_type(self, fantasy_engine):
        """Result type comes from the entry, then the leaf table, then the collection."""
        expected = {"Sword": "weapon", "Axe": "item", "Leather": "gear", "Chain": "gear"}
        for seed in range(50):
            result = fantasy_engine.roll_table("gear", "fantasy", seed=seed)
            assert result.result_type == expected[result.value]

    def test_metadata(self, fantasy_engine):
        result = fantasy_engine.roll_table("treasure", "fantasy")
        assert result.metadata.source_id == "treasure"
        assert result.metadata.collection_id == "fantasy"
        assert result.metadata.entry_id == "hoard"

    def test_placeholders(self, fantasy_engine):
        result = fantasy_engine.roll_table("weapons", "fantasy", seed=2)
        damage = {"Sword": "1d8", "Axe": "1d6"}[result.value]
        assert result.placeholders["weapons"] == {"value": result.value, "damage": damage}

    def test_unknown_table(self, fantasy_engine):
        with pytest.raises(UnknownReferenceError) as exc:
            fantasy_engine.roll_table("dragons", "fantasy")
        assert exc.value.reference == "dragons"

    def test_unknown_collection(self, fantasy_engine):
        with pytest.raises(CollectionNotFoundError):
            fantasy_engine.roll_table("weapons", "scifi")

    def test_all_zero_weights(self):
        engine = RandomTableEngine()
        engine.load_collection(document([{"id": "none", "entries": [{"value": "x", "weight": 0}]}]), "t")
        with pytest.raises(EmptyPoolError):
            engine.roll_table("none", "t")

    def test_self_reference(self):
        """A self-referencing table aborts at the default ceiling of 20."""
        engine = RandomTableEngine()
        engine.load_collection(document([{"id": "loop", "entries": [{"value": "x {{loop}}"}]}]), "t")
        with pytest.raises(MaxExpansionDepthExceeded) as exc:
            engine.roll_table("loop", "t")
        assert exc.value.depth == 21
        assert exc.value.limit == 20
        assert set(exc.value.path) == {"loop"}

    def test_document_depth_override(self):
        engine = RandomTableEngine()
        doc = document([{"id": "loop", "entries": [{"value": "{{loop}}"}]}], maxRecursionDepth=5)
        engine.load_collection(doc, "t")
        with pytest.raises(MaxExpansionDepthExceeded) as exc:
            engine.roll_table("loop", "t")
        assert exc.value.limit == 5

    def test_document_inheritance_override(self):
        """maxInheritanceDepth 0 disables extends for the collection."""
        engine = RandomTableEngine()
        doc = document(
            [
                {"id": "parent", "entries": [{"id": "p", "value": "P"}]},
                {"id": "child", "extends": "parent", "entries": [{"id": "c", "value": "C"}]},
            ],
            maxInheritanceDepth=0,
        )
        engine.load_collection(doc, "t")
        values = {engine.roll_table("child", "t", seed=s).value for s in range(30)}
        assert values == {"C"}


class TestTemplates:
    """Tests for roll_template and evaluate_pattern."""

    def test_shared_variable_consistent(self, fantasy_engine):
        """A shared variable has one value throughout the template."""
        for seed in range(20):
            result = fantasy_engine.roll_template("guard", "fantasy", seed=seed)
            match = re.fullmatch(r"A guard with a (\w+) \((\w+)\) dealing (\S+)", result.value)
            assert match
            assert match.group(1) == match.group(2)
            assert match.group(3) == {"Sword": "1d8", "Axe": "1d6"}[match.group(1)]
            assert result.result_type == "npc"

    def test_unique_multi_roll(self, fantasy_engine):
        result = fantasy_engine.roll_template("outfit", "fantasy", seed=4)
        assert result.value in {"Wearing Leather, Chain", "Wearing Chain, Leather"}

    def test_unique_overflow_error(self, fixtures_dir):
        engine = RandomTableEngine(EngineConfig(unique_overflow="error"))
        engine.load_file(fixtures_dir / "fantasy.json")
        with pytest.raises(EmptyPoolError):
            engine.roll_template("outfit", "fantasy")

    def test_unknown_template(self, fantasy_engine):
        with pytest.raises(UnknownReferenceError) as exc:
            fantasy_engine.roll_template("wizard", "fantasy")
        assert exc.value.kind == "template"

    def test_evaluate_pattern(self, fantasy_engine):
        result = fantasy_engine.evaluate_pattern("{{weapons#w}} vs {{weapons#w}} in {{$realm}}", "fantasy")
        left, right = result.value.split(" in ")[0].split(" vs ")
        assert left == right
        assert result.value.endswith(" in Eldoria")
        assert len(result.descriptions) == 1
        assert result.metadata.source_id == "<pattern>"

    def test_again_needs_a_table(self, fantasy_engine):
        with pytest.raises(ExpressionSyntaxError):
            fantasy_engine.evaluate_pattern("{{again}}", "fantasy")

    def test_unset_placeholder(self, fantasy_engine):
        assert fantasy_engine.evaluate_pattern("[{{@weapons.damage}}]", "fantasy").value == "[]"

    def test_document_shared_variables(self):
        engine = RandomTableEngine()
        doc = document([{"id": "name", "entries": [{"value": "Ann"}, {"value": "Bob"}]}])
        doc.shared["hero"] = "{{name}}"
        engine.load_collection(doc, "t")
        for seed in range(10):
            first, second = engine.evaluate_pattern("{{$hero}}/{{$hero}}", "t", seed=seed).value.split("/")
            assert first == second


class TestCrossCollection:
    """Tests for alias and namespace qualified references."""

    @pytest.fixture
    def engine(self, fantasy_engine, fixtures_dir):
        report = fantasy_engine.load_file(fixtures_dir / "names.yaml")
        assert report.collection_id == "names"
        return fantasy_engine

    def test_resolve_imports(self, engine):
        resolved = engine.resolve_imports()
        assert resolved["fantasy"] == {"nm": "names"}
        assert resolved["names"] == {}

    def test_alias_reference(self, engine):
        engine.resolve_imports()
        result = engine.roll_table("hero", "fantasy", seed=3)
        assert re.fullmatch(r"(Aria|Bram|Cora) of Eldoria", result.value)

    def test_alias_without_resolve_imports(self, engine):
        """Aliases are matched against loaded collections on demand."""
        assert engine.roll_table("hero", "fantasy").value.endswith(" of Eldoria")

    def test_namespace_reference(self, engine):
        assert engine.evaluate_pattern("{{names.first}}", "fantasy").value in {"Aria", "Bram", "Cora"}

    def test_template_resolves_in_its_own_collection(self, engine):
        """Unqualified references inside an imported template use its collection."""
        assert engine.evaluate_pattern("{{nm.full_name}}", "fantasy").value.endswith(" the Bold")

    def test_qualified_roll_request(self, engine):
        assert engine.roll_table("nm.first", "fantasy").value in {"Aria", "Bram", "Cora"}

    def test_qualified_placeholder(self, engine):
        """Placeholders of imported tables are addressable by qualified name."""
        first, by_alias, by_property = engine.evaluate_pattern(
            "{{nm.first}}/{{@nm.first}}/{{@nm.first.value}}", "fantasy"
        ).value.split("/")
        assert first in {"Aria", "Bram", "Cora"}
        assert by_alias == by_property == first


class TestConditionals:
    """Tests for collection conditionals applied to roll results."""

    @pytest.fixture
    def engine(self):
        engine = RandomTableEngine()
        doc = RandomTableDocument.model_validate({
            "metadata": {"name": "Beasts"},
            "tables": [
                {"type": "simple", "id": "beast", "entries": [{"value": "Dragon", "sets": {"size": "huge"}}]},
                {"type": "simple", "id": "mouse", "entries": [{"value": "Mouse", "sets": {"size": "tiny"}}]},
            ],
            "templates": [{"id": "encounter", "pattern": "A {{beast}} appears"}],
            "conditionals": [
                {"when": "@beast.size == huge", "action": "append", "value": " (run!)"},
                {"when": "@mouse.size == tiny", "action": "replace", "target": "Mouse", "value": "mouse"},
            ],
        })
        engine.load_collection(doc, "t")
        return engine

    def test_table_roll(self, engine):
        assert engine.roll_table("beast", "t").value == "Dragon (run!)"

    def test_template(self, engine):
        assert engine.roll_template("encounter", "t").value == "A Dragon appears (run!)"

    def test_pattern(self, engine):
        assert engine.evaluate_pattern("{{mouse}} squeaks", "t").value == "mouse squeaks"

    def test_condition_not_met(self, engine):
        assert engine.evaluate_pattern("nothing", "t").value == "nothing"

    def test_trace(self, engine):
        result = engine.roll_table("beast", "t", trace=True)
        assert len(result.trace.find(TraceNodeType.CONDITIONAL)) == 1


class TestTrace:
    """Tests for trace trees on roll results."""

    def test_trace_tree(self, fantasy_engine):
        result = fantasy_engine.roll_table("loot", "fantasy", trace=True, seed=1)
        root = result.trace
        assert root.node_type == TraceNodeType.ROOT
        assert root.value == result.value
        assert len(root.find(TraceNodeType.SOURCE_SELECT)) == 1
        assert len(root.find(TraceNodeType.ENTRY_SELECT)) == 1

    def test_trace_disabled_by_default(self, fantasy_engine):
        assert fantasy_engine.roll_table("loot", "fantasy").trace is None

    def test_trace_from_config(self, fixtures_dir):
        engine = RandomTableEngine(EngineConfig(trace_enabled=True))
        engine.load_file(fixtures_dir / "fantasy.json")
        assert engine.roll_table("weapons", "fantasy").trace is not None
        assert engine.roll_table("weapons", "fantasy", trace=False).trace is None

    def test_template_trace(self, fantasy_engine):
        result = fantasy_engine.roll_template("guard", "fantasy", trace=True)
        template_node = result.trace.children[0]
        assert template_node.node_type == TraceNodeType.TEMPLATE_REF
        assert template_node.children[0].node_type == TraceNodeType.VARIABLE
        assert result.trace.find(TraceNodeType.PLACEHOLDER)


class TestRegistry:
    """Tests for loading, listing and unloading collections."""

    def test_collection_id_defaults(self):
        engine = RandomTableEngine()
        assert engine.load_collection(document(namespace="a.b")) == "a.b"
        assert engine.load_collection(document()) == "Test"

    def test_load_invalid_json(self):
        report = RandomTableEngine().load_from_json("{not json")
        assert not report.valid
        assert report.errors[0].type == "parse"

    def test_load_schema_error(self):
        engine = RandomTableEngine()
        report = engine.load_from_json('{"tables": []}')
        assert not report.valid
        assert report.errors[0].type == "schema"
        assert engine.list_collections() == []

    def test_load_rejects_semantic_errors(self):
        engine = RandomTableEngine()
        report = engine.load_from_yaml(
            "metadata: {name: Broken}\n"
            "tables:\n"
            "  - id: a\n"
            "    type: simple\n"
            "    entries: [{value: '{{missing}}'}]\n"
        )
        assert not report.valid
        assert report.collection_id is None
        assert not engine.has_collection("Broken")

    def test_load_invalid_yaml(self):
        report = RandomTableEngine().load_from_yaml("metadata: [unclosed")
        assert report.errors[0].type == "parse"

    def test_list_collections(self, fantasy_engine):
        [info] = fantasy_engine.list_collections()
        assert info.id == "fantasy"
        assert info.name == "Fantasy Basics"
        assert info.table_count == 8
        assert info.template_count == 2

    def test_list_tables(self, fantasy_engine):
        tables = {info.id: info for info in fantasy_engine.list_tables("fantasy")}
        assert "adjective" not in tables
        assert len(tables) == 7
        assert tables["magic_weapons"].entry_count == 4
        assert tables["loot"].type == "composite"
        assert len(fantasy_engine.list_tables("fantasy", include_hidden=True)) == 8

    def test_list_templates(self, fantasy_engine):
        assert [t.id for t in fantasy_engine.list_templates("fantasy")] == ["guard", "outfit"]

    def test_get_table_and_template(self, fantasy_engine):
        assert fantasy_engine.get_table("fantasy", "loot").type == "composite"
        assert fantasy_engine.get_table("fantasy", "nope") is None
        assert fantasy_engine.get_table("nope", "loot") is None
        assert fantasy_engine.get_template("fantasy", "guard").name == "Guard"

    def test_update_document(self, fantasy_engine):
        fantasy_engine.update_document("fantasy", document([{"id": "only", "entries": [{"value": "x"}]}]))
        assert fantasy_engine.get_table("fantasy", "weapons") is None
        assert fantasy_engine.roll_table("only", "fantasy").value == "x"

    def test_unload(self, fantasy_engine):
        assert fantasy_engine.unload_collection("fantasy")
        assert not fantasy_engine.has_collection("fantasy")
        assert fantasy_engine.get_collection("fantasy") is None
        assert not fantasy_engine.unload_collection("fantasy")

    def test_preloaded_flag(self):
        engine = RandomTableEngine()
        doc = RandomTableDocument(metadata=DocumentMetadata(name="Core"))
        engine.load_collection(doc, "core", is_preloaded=True)
        assert engine.list_collections()[0].is_preloaded

    def test_visualize_table(self, fantasy_engine):
        visualization = fantasy_engine.visualize_table("weapons", "fantasy")
        assert visualization.type == "simple"
        assert visualization.stats.total_weight == 4
