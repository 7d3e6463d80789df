"""
Tests for gene-set collections and over-representation testing.
"""

from math import comb

import numpy as np
import pytest

from markerscan.annotation.enrichment import (
    ENRICHMENT_COLUMNS,
    hypergeometric_test,
    run_enrichment,
)
from markerscan.annotation.gene_sets import (
    GeneSetCollection,
    TermHierarchy,
    load_gmt,
    load_term_hierarchy,
    propagate_annotations,
)

UNIVERSE = [f"g{i}" for i in range(100)]


@pytest.fixture
def nested_go():
    """GO:child = g0-g9 sits below GO:parent = g0-g19; GO:other is unrelated."""
    collection = GeneSetCollection.from_dict(
        {
            "GO:child": UNIVERSE[:10],
            "GO:parent": UNIVERSE[:20],
            "GO:other": UNIVERSE[50:70],
        },
        descriptions={"GO:child": "amyloid processing", "GO:parent": "protein metabolism"},
        source="toy",
    )
    hierarchy = TermHierarchy.from_edges([("GO:parent", "GO:child")])
    return collection, hierarchy


class TestHypergeometricTest:
    """Single-term tests."""

    def test_zero_overlap_gives_one(self):
        result = hypergeometric_test(UNIVERSE[:5], UNIVERSE[50:60], UNIVERSE)
        assert result.p_value == 1.0
        assert result.count == 0

    def test_identical_sets(self):
        """Selecting exactly the term's genes has probability 1 / C(N, n)."""
        universe = UNIVERSE[:20]
        result = hypergeometric_test(universe[:5], universe[:5], universe)
        assert result.p_value == pytest.approx(1 / comb(20, 5))
        assert result.odds_ratio == float("inf")

    def test_counts_and_expected(self):
        result = hypergeometric_test(UNIVERSE[:10], UNIVERSE[5:25], UNIVERSE)
        assert result.count == 5
        assert result.size == 20
        assert result.expected == pytest.approx(2.0)
        assert result.enrichment_ratio == pytest.approx(2.5)
        assert result.odds_ratio == pytest.approx((5 * 75) / (5 * 15))

    def test_term_restricted_to_universe(self):
        result = hypergeometric_test(UNIVERSE[:2], UNIVERSE[:2] + ["outside"], UNIVERSE)
        assert result.size == 2

    def test_selected_outside_universe_rejected(self):
        with pytest.raises(ValueError, match="not in the universe"):
            hypergeometric_test(["g1", "x"], UNIVERSE[:5], UNIVERSE)


class TestRunEnrichment:
    """Collection-wide and conditional testing."""

    def test_table_columns_and_order(self, nested_go):
        collection, _ = nested_go
        table = run_enrichment(UNIVERSE[:10], UNIVERSE, collection)

        assert list(table.columns) == ENRICHMENT_COLUMNS
        assert list(table["term"]) == ["GO:child", "GO:parent", "GO:other"]
        assert table.loc[0, "description"] == "amyloid processing"
        assert table.loc[2, "p_value"] == 1.0
        assert (table["adj_p_value"] >= table["p_value"]).all()

    def test_parent_inherits_child_signal(self, nested_go):
        collection, _ = nested_go
        table = run_enrichment(UNIVERSE[:10], UNIVERSE, collection).set_index("term")
        assert table.loc["GO:parent", "p_value"] < 1e-5

    def test_conditional_removes_child_genes(self, nested_go):
        collection, hierarchy = nested_go
        table = run_enrichment(
            UNIVERSE[:10], UNIVERSE, collection, hierarchy=hierarchy, conditional=True
        ).set_index("term")

        assert table.loc["GO:child", "p_value"] < 1e-10
        assert table.loc["GO:parent", "p_value"] == 1.0
        assert table.loc["GO:parent", "size"] == 10

    def test_conditional_keeps_parent_with_own_signal(self, nested_go):
        collection, hierarchy = nested_go
        selected = UNIVERSE[:10] + UNIVERSE[10:18]
        table = run_enrichment(
            selected, UNIVERSE, collection, hierarchy=hierarchy, conditional=True
        ).set_index("term")
        assert table.loc["GO:parent", "count"] == 8
        assert table.loc["GO:parent", "p_value"] < 1e-5

    def test_conditional_needs_hierarchy(self, nested_go):
        collection, _ = nested_go
        with pytest.raises(ValueError, match="hierarchy"):
            run_enrichment(UNIVERSE[:10], UNIVERSE, collection, conditional=True)

    def test_size_limits(self, nested_go):
        collection, _ = nested_go
        table = run_enrichment(UNIVERSE[:10], UNIVERSE, collection, min_size=15, max_size=20)
        assert set(table["term"]) == {"GO:parent", "GO:other"}

    def test_no_testable_terms(self, nested_go):
        collection, _ = nested_go
        table = run_enrichment(UNIVERSE[:10], UNIVERSE, collection, min_size=50)
        assert table.empty
        assert list(table.columns) == ENRICHMENT_COLUMNS


class TestGeneSets:
    """Collections, hierarchies and their file formats."""

    def test_restrict_and_filter(self, nested_go):
        collection, _ = nested_go
        restricted = collection.restrict(UNIVERSE[:15])
        assert len(restricted.genes("GO:parent")) == 15
        assert "GO:other" not in restricted
        assert len(restricted.filter_size(min_size=12)) == 1

    def test_unknown_term(self, nested_go):
        with pytest.raises(KeyError):
            nested_go[0].genes("GO:missing")

    def test_children_first(self):
        hierarchy = TermHierarchy.from_edges([("A", "B"), ("B", "C"), ("A", "D")])
        order = hierarchy.children_first(["A", "B", "C", "D"])
        assert order.index("C") < order.index("B") < order.index("A")
        assert order.index("D") < order.index("A")
        assert hierarchy.descendants("A") == frozenset({"B", "C", "D"})
        assert hierarchy.parents_of("C") == frozenset({"B"})

    def test_cycle_rejected(self):
        with pytest.raises(ValueError, match="cycle"):
            TermHierarchy.from_edges([("A", "B"), ("B", "A")])

    def test_propagate_annotations(self):
        collection = GeneSetCollection.from_dict({"child": ["g1"], "grandchild": ["g2"]})
        hierarchy = TermHierarchy.from_edges([("root", "child"), ("child", "grandchild")])
        propagated = propagate_annotations(collection, hierarchy)
        assert propagated.genes("root") == frozenset({"g1", "g2"})
        assert propagated.genes("child") == frozenset({"g1", "g2"})

    def test_load_gmt(self, tmp_path):
        path = tmp_path / "c5.go.gmt"
        path.write_text(
            "GO_AMYLOID\thttp://example.org/amyloid\t351\t348\t5663\n"
            "GO_SYNAPSE\tsynapse\t6804\t\n"
        )
        collection = load_gmt(path)

        assert collection.source == "c5.go"
        assert collection.genes("GO_AMYLOID") == frozenset({"351", "348", "5663"})
        assert collection.genes("GO_SYNAPSE") == frozenset({"6804"})
        assert collection.describe("GO_SYNAPSE") == "synapse"

    def test_load_gmt_duplicate_term(self, tmp_path):
        path = tmp_path / "dup.gmt"
        path.write_text("T1\td\tg1\nT1\td\tg2\n")
        with pytest.raises(ValueError, match="duplicate"):
            load_gmt(path)

    def test_load_hierarchy(self, tmp_path):
        path = tmp_path / "edges.tsv"
        path.write_text("# parent\tchild\nGO:1\tGO:2\nGO:1\tGO:3\n")
        hierarchy = load_term_hierarchy(path)
        assert hierarchy.children_of("GO:1") == frozenset({"GO:2", "GO:3"})
