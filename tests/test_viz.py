"""
Tests for figures, collections and HTML reports.
"""

import numpy as np
import pandas as pd
import pytest

from markerscan.genetics.haplotype import SlidingWindowResult
from markerscan.genetics.ld import LDResult
from markerscan.genetics.polygenic import roc_analysis
from markerscan.viz import (
    ExpressionVisualizer,
    FigureCollection,
    GeneticsVisualizer,
    decision_sets,
    write_enrichment_report,
)
from markerscan.viz.styles import format_pvalue, italicize_gene


@pytest.fixture
def result_table():
    rng = np.random.default_rng(3)
    lfc = rng.normal(0, 1, size=60)
    p = np.clip(np.exp(-np.abs(lfc) * 4), 1e-12, 1)
    return pd.DataFrame(
        {"log2fc": lfc, "p_value": p, "adj_p_value": np.minimum(p * 5, 1)},
        index=[f"{1000 + i}_s_at" for i in range(60)],
    )


@pytest.fixture
def decisions():
    return pd.DataFrame(
        {"AD_vs_control": [1, 1, 0, -1, 0], "MCI_vs_control": [1, 0, 0, -1, 1]},
        index=["f1", "f2", "f3", "f4", "f5"],
    )


class TestStyles:
    """Formatting helpers."""

    def test_italicize(self):
        assert italicize_gene("APP") == "$\\mathit{APP}$"
        assert italicize_gene("1007_s_at") == "$\\mathit{1007\\_s\\_at}$"

    def test_format_pvalue(self):
        assert format_pvalue(0.0001) == "p < 0.001"
        assert format_pvalue(0.0042) == "p = 0.004"
        assert format_pvalue(0.2) == "p = 0.20"


class TestExpressionFigures:
    """Density, volcano and Venn figures."""

    def test_decision_sets(self, decisions):
        sets = decision_sets(decisions)
        assert sets == {"AD_vs_control": {"f1", "f2", "f4"}, "MCI_vs_control": {"f1", "f4", "f5"}}
        assert decision_sets(decisions, "down") == {"AD_vs_control": {"f4"}, "MCI_vs_control": {"f4"}}

    def test_density(self, expression_matrix, tmp_path):
        normalized = np.log2(expression_matrix.data)
        fig = ExpressionVisualizer().plot_density(expression_matrix, normalized)
        assert fig.metadata["n_samples"] == 12
        path = fig.save(tmp_path / "density.png")
        assert path.exists() and path.stat().st_size > 0
        fig.close()

    def test_volcano_counts(self, result_table, tmp_path):
        fig = ExpressionVisualizer().plot_volcano(result_table, lfc_threshold=1.0, title="AD vs control")
        called = (result_table["adj_p_value"] < 0.05) & (result_table["log2fc"].abs() >= 1.0)
        assert fig.metadata["n_up"] == int((called & (result_table["log2fc"] > 0)).sum())
        assert fig.metadata["n_down"] == int((called & (result_table["log2fc"] < 0)).sum())
        fig.save(tmp_path / "volcano.svg")
        fig.close()

    def test_venn(self, decisions):
        fig = ExpressionVisualizer().plot_venn(decision_sets(decisions))
        assert fig.metadata["shared"] == 2
        fig.close()

    def test_venn_needs_two_or_three_sets(self):
        with pytest.raises(ValueError, match="2 or 3 sets"):
            ExpressionVisualizer().plot_venn({"only": {"f1"}})


class TestGeneticsFigures:
    """LD heatmap, ROC and sliding-window figures."""

    def test_ld_heatmap(self):
        r2 = pd.DataFrame([[1.0, 0.8], [0.8, 1.0]], index=["rs1", "rs2"], columns=["rs1", "rs2"])
        ld = LDResult(d_prime=r2, r2=r2)
        viz = GeneticsVisualizer()
        fig = viz.plot_ld_heatmap(ld, measure="d_prime")
        assert fig.metadata["measure"] == "d_prime"
        assert fig.metadata["n_snps"] == 2
        fig.close()
        with pytest.raises(ValueError, match="Unknown LD measure"):
            viz.plot_ld_heatmap(ld, measure="D")

    def test_roc(self, tmp_path):
        outcome = pd.Series([0, 0, 1, 1, 0, 1], index=list("abcdef"), dtype=float)
        score = pd.Series([0, 1, 2, 3, 2, 1], index=list("abcdef"), dtype=float)
        fig = GeneticsVisualizer().plot_roc(roc_analysis(score, outcome))
        assert 0 <= fig.metadata["auc"] <= 1
        fig.save(tmp_path / "roc.pdf")
        fig.close()

    def test_sliding_window(self):
        windows = pd.DataFrame({
            "start": [0, 1, 0],
            "width": [2, 2, 3],
            "snps": ["rs1-rs2", "rs2-rs3", "rs1-rs2-rs3"],
            "statistic": [20.0, 3.0, 18.0],
            "df": [1, 2, 3],
            "p_asymptotic": [1e-5, 0.2, 4e-4],
            "p_simulated": [0.01, 0.25, 0.01],
        })
        result = SlidingWindowResult(windows=windows, best_window=0, global_p_value=0.01, n_permutations=99)
        fig = GeneticsVisualizer().plot_sliding_window(result, ["rs1", "rs2", "rs3"])
        assert "rs1-rs2" in fig.description
        fig.close()


class TestCollectionsAndReports:
    """FigureCollection and HTML output."""

    def test_collection_order_and_keys(self, decisions, tmp_path):
        viz = ExpressionVisualizer()
        collection = FigureCollection()
        collection.add("venn", viz.plot_venn(decision_sets(decisions)))
        collection.add_table("calls", "Decisions", decisions)
        assert len(collection) == 2
        assert [key for key, _ in collection] == ["venn"]
        with pytest.raises(ValueError, match="already used"):
            collection.add_table("venn", "Clash", decisions)

        paths = collection.save_all(tmp_path / "figures", format="png")
        assert [p.name for p in paths] == ["venn.png"]

        report = collection.to_html_report(tmp_path / "report.html", title="AD <microarray>")
        text = report.read_text()
        assert "AD &lt;microarray&gt;" in text
        assert "data:image/png;base64," in text
        assert "Decisions" in text
        collection.close_all()
        assert len(collection) == 0

    def test_enrichment_report(self, tmp_path):
        table = pd.DataFrame({
            "term": ["GO:1", "GO:2", "GO:3"],
            "description": ["amyloid", "synapse", "immune"],
            "p_value": [1e-6, 1e-3, 0.5],
            "adj_p_value": [3e-6, 1.5e-3, 0.5],
        })
        path = write_enrichment_report(
            {"GO BP: AD_vs_control": table, "GO BP: empty": table.iloc[0:0]},
            tmp_path / "enrichment.html",
            p_threshold=0.01,
        )
        text = path.read_text()
        assert "GO BP: AD_vs_control" in text
        assert "2 terms with adjusted p &lt; 0.01" in text
        assert "immune" not in text
        assert "No rows." in text
