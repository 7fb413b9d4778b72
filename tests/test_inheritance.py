"""Tests for extends-chain resolution."""

import pytest

from rolldeo.engine.inheritance import (
    inheritance_chain,
    merge_entry,
    resolve_default_sets,
    resolve_effective_entries,
    table_entry_count,
)
from rolldeo.exceptions import UnknownReferenceError
from rolldeo.models import CollectionTable, CompositeTable, Entry, SimpleTable


def simple(table_id, entries=(), extends=None, default_sets=None):
    return SimpleTable(
        id=table_id,
        extends=extends,
        entries=list(entries),
        default_sets=default_sets or {},
    )


def lookup_from(*tables):
    index = {table.id: table for table in tables}
    return index.get


class TestInheritanceChain:
    """Tests for inheritance_chain."""

    def test_single_table(self):
        """A table without extends is its own chain."""
        table = simple("a")
        assert inheritance_chain(table, lookup_from(table)) == [table]

    def test_follows_parents(self):
        """The chain lists the table first, then its ancestors."""
        grandparent = simple("g")
        parent = simple("p", extends="g")
        child = simple("c", extends="p")
        chain = inheritance_chain(child, lookup_from(grandparent, parent, child))
        assert [t.id for t in chain] == ["c", "p", "g"]

    def test_truncates_at_max_depth(self):
        """At most max_depth hops are followed."""
        tables = [simple("t0")] + [simple(f"t{i}", extends=f"t{i - 1}") for i in range(1, 9)]
        chain = inheritance_chain(tables[-1], lookup_from(*tables), max_depth=5)
        assert len(chain) == 6
        assert chain[0].id == "t8"
        assert chain[-1].id == "t3"

    def test_zero_depth(self):
        """max_depth 0 ignores extends entirely."""
        parent = simple("p")
        child = simple("c", extends="p")
        assert inheritance_chain(child, lookup_from(parent, child), max_depth=0) == [child]

    def test_cycle_terminates(self):
        """Cyclic chains are truncated instead of looping."""
        a = simple("a", extends="b")
        b = simple("b", extends="a")
        chain = inheritance_chain(a, lookup_from(a, b), max_depth=5)
        assert [t.id for t in chain] == ["a", "b", "a", "b", "a", "b"]

    def test_self_extension_terminates(self):
        """A table extending itself is truncated too."""
        a = simple("a", [Entry(id="x", value="X")], extends="a")
        assert len(inheritance_chain(a, lookup_from(a), max_depth=3)) == 4
        assert [e.id for e in resolve_effective_entries(a, lookup_from(a), 3)] == ["x"]

    def test_missing_parent_raises(self):
        """A dangling extends raises UnknownReferenceError."""
        child = simple("c", extends="ghost")
        with pytest.raises(UnknownReferenceError) as exc:
            inheritance_chain(child, lookup_from(child))
        assert exc.value.reference == "ghost"

    def test_missing_parent_non_strict(self):
        """Non-strict walks stop at a dangling extends."""
        child = simple("c", extends="ghost")
        assert inheritance_chain(child, lookup_from(child), strict=False) == [child]


class TestEffectiveEntries:
    """Tests for resolve_effective_entries."""

    def test_child_overrides_by_id(self):
        """Own entries come first; parent entries not overridden follow."""
        parent = simple("p", [
            Entry(id="a", value="A", weight=2, description="from parent"),
            Entry(id="b", value="B"),
        ])
        child = simple("c", [Entry(id="a", value="A2"), Entry(id="c", value="C")], extends="p")

        effective = resolve_effective_entries(child, lookup_from(parent, child))

        assert [e.id for e in effective] == ["a", "c", "b"]
        assert effective[0].value == "A2"

    def test_unset_fields_inherited(self):
        """Fields the child leaves unset come from the parent entry."""
        parent = simple("p", [Entry(id="a", value="A", weight=2, description="from parent")])
        child = simple("c", [Entry(id="a", value="A2")], extends="p")

        entry = resolve_effective_entries(child, lookup_from(parent, child))[0]

        assert entry.weight == 2
        assert entry.description == "from parent"

    def test_grandparent_entries(self):
        """Entries are inherited across several levels."""
        grandparent = simple("g", [Entry(id="x", value="X"), Entry(id="y", value="Y")])
        parent = simple("p", [Entry(id="y", value="Y2")], extends="g")
        child = simple("c", [Entry(id="z", value="Z")], extends="p")

        effective = resolve_effective_entries(child, lookup_from(grandparent, parent, child))

        assert [(e.id, e.value) for e in effective] == [("z", "Z"), ("y", "Y2"), ("x", "X")]

    def test_definitions_not_mutated(self):
        """Resolution leaves the table definitions untouched."""
        parent = simple("p", [Entry(id="a", value="A", weight=5)])
        child = simple("c", [Entry(id="a", value="A2")], extends="p")
        resolve_effective_entries(child, lookup_from(parent, child))
        assert child.entries[0].weight is None
        assert parent.entries[0].value == "A"

    def test_cycle_returns_entries(self):
        """Cyclic inheritance still yields each entry once."""
        a = simple("a", [Entry(id="a1", value="A")], extends="b")
        b = simple("b", [Entry(id="b1", value="B")], extends="a")
        assert [e.id for e in resolve_effective_entries(a, lookup_from(a, b))] == ["a1", "b1"]

    def test_non_simple_parent_adds_nothing(self):
        """A composite parent contributes no entries."""
        parent = CompositeTable(id="p", sources=[])
        child = simple("c", [Entry(id="x", value="X")], extends="p")
        assert [e.id for e in resolve_effective_entries(child, lookup_from(parent, child))] == ["x"]


class TestDefaultSetsAndCounts:
    """Tests for resolve_default_sets, merge_entry and table_entry_count."""

    def test_default_sets_merge(self):
        """Nearer tables override inherited default sets."""
        parent = simple("p", default_sets={"a": "1", "b": "1"})
        child = simple("c", extends="p", default_sets={"b": "2"})
        assert resolve_default_sets(child, lookup_from(parent, child)) == {"a": "1", "b": "2"}

    def test_merge_entry(self):
        """merge_entry overlays only explicitly set fields."""
        merged = merge_entry(
            Entry(id="a", value="A", weight=3, sets={"k": "v"}),
            Entry(id="a", description="new"),
        )
        assert merged.value == "A"
        assert merged.weight == 3
        assert merged.description == "new"
        assert merged.sets == {"k": "v"}

    def test_entry_counts(self):
        """Counts are entries, sources or members depending on the variant."""
        parent = simple("p", [Entry(id="a", value="A"), Entry(id="b", value="B")])
        child = simple("c", [Entry(id="a", value="A2"), Entry(id="d", value="D")], extends="p")
        composite = CompositeTable(id="comp", sources=[{"tableId": "p"}, {"tableId": "c"}])
        collection = CollectionTable(id="coll", collections=["p", "c", "comp"])
        lookup = lookup_from(parent, child, composite, collection)

        assert table_entry_count(child, lookup) == 3
        assert table_entry_count(composite, lookup) == 2
        assert table_entry_count(collection, lookup) == 3
