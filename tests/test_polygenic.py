"""
Tests for the screen, stepwise selection and polygenic score.
"""

import numpy as np
import pandas as pd
import pytest

import markerscan.genetics.polygenic as polygenic

CANDIDATES = ["rs1", "rs2", "rs3", "rs4", "rs5", "rs6"]


class TestScreen:
    """Univariate log-additive screen."""

    def test_causal_snp_selected(self, genotypes, outcome):
        screen = polygenic.screen_snps(genotypes, outcome, snps=CANDIDATES)
        assert list(screen.columns) == ["odds_ratio", "p_value", "risk_allele", "selected"]
        assert screen.loc["rs1", "selected"]
        assert screen.loc["rs1", "risk_allele"] == "G"
        assert screen.loc["rs1", "odds_ratio"] > 1

    def test_risk_allele_flips_for_protective_snp(self, genotypes, outcome):
        screen = polygenic.screen_snps(genotypes, 1.0 - outcome, snps=["rs1"])
        assert screen.loc["rs1", "odds_ratio"] < 1
        assert screen.loc["rs1", "risk_allele"] == "A"

    def test_threshold_checked(self, genotypes, outcome):
        with pytest.raises(ValueError, match="threshold"):
            polygenic.screen_snps(genotypes, outcome, threshold=0)


class TestScore:
    """Scoring and its evaluation."""

    def test_score_is_row_sum(self):
        dosages = pd.DataFrame(
            {"a": [0.0, 1.0, 2.0], "b": [1.0, np.nan, 2.0]},
            index=["s1", "s2", "s3"],
        )
        score = polygenic.polygenic_score(dosages)
        assert score.name == "score"
        assert score["s1"] == 1.0
        assert np.isnan(score["s2"])
        assert score["s3"] == 4.0
        assert list(polygenic.polygenic_score(dosages, ["a"])) == [0.0, 1.0, 2.0]

    def test_score_association_with_outcome(self, genotypes, outcome):
        dosage = genotypes.dosage("rs1")
        result = polygenic.score_association(dosage, outcome)
        assert result.odds_ratio > 1.5
        assert result.ci_lower < result.odds_ratio < result.ci_upper
        assert result.p_value < 1e-6
        assert result.n == 400

    def test_roc(self):
        outcome = pd.Series([0, 0, 1, 1], index=list("abcd"), dtype=float)
        perfect = polygenic.roc_analysis(pd.Series([0.1, 0.2, 0.8, 0.9], index=list("abcd")), outcome)
        assert perfect.auc == pytest.approx(1.0)
        assert perfect.n == 4
        assert perfect.fpr[0] == 0 and perfect.tpr[-1] == 1

        reversed_ = polygenic.roc_analysis(pd.Series([0.9, 0.8, 0.2, 0.1], index=list("abcd")), outcome)
        assert reversed_.auc == pytest.approx(0.0)

    def test_roc_single_class(self):
        outcome = pd.Series([1.0, 1.0], index=["a", "b"])
        with pytest.raises(ValueError, match="both outcome classes"):
            polygenic.roc_analysis(pd.Series([0.1, 0.2], index=["a", "b"]), outcome)


class TestPolygenicModel:
    """Full screen, stepwise and score pipeline."""

    def test_build_model(self, genotypes, outcome):
        model = polygenic.build_polygenic_model(genotypes, outcome, snps=CANDIDATES)

        assert model.selected[0] in ("rs1", "rs2")
        assert set(model.risk_alleles) == set(model.selected)
        history = model.stepwise_history
        assert history["aic"].is_monotonic_decreasing
        assert len(history) == len(model.selected) + 1

        assert model.score_test.odds_ratio > 1
        assert model.score_test.p_value < 1e-6
        assert 0.5 < model.roc.auc <= 1.0
        assert model.score.notna().sum() == model.roc.n

    def test_nothing_passes_screen(self, genotypes, outcome):
        with pytest.raises(ValueError, match="No SNP passed"):
            polygenic.build_polygenic_model(genotypes, outcome, threshold=1e-300, snps=["rs6"])

    def test_stepwise_skips_constant_columns(self, genotypes, outcome):
        dosages = genotypes.dosage_matrix(["rs1"]).assign(flat=1.0)
        selected, history = polygenic.forward_stepwise(dosages, outcome)
        assert selected == ["rs1"]
        assert pd.isna(history.iloc[0]["added"])
        assert history.iloc[1]["aic"] < history.iloc[0]["aic"]

    def test_stepwise_max_steps(self, genotypes, outcome):
        dosages = genotypes.dosage_matrix(["rs1", "rs2", "rs6"])
        selected, _ = polygenic.forward_stepwise(dosages, outcome, max_steps=1)
        assert selected in (["rs1"], ["rs2"])
