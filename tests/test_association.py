"""
Tests for inheritance-model association tests and the max-statistic test.
"""

import numpy as np
import pandas as pd
import pytest

from markerscan.genetics.association import (
    InheritanceModel,
    association_scan,
    association_test,
    covariate_matrix,
    encode_genotype,
    encode_outcome,
    fit_inheritance_model,
    max_statistic_test,
    model_column,
)
from markerscan.genetics.genotypes import GenotypeTable

SCAN_COLUMNS = [
    "p_codominant", "p_dominant", "p_recessive", "p_overdominant", "p_log_additive",
    "best_model", "min_p", "maxstat", "p_maxstat", "or_log_additive", "ci_lower",
    "ci_upper", "minor_allele", "maf", "n",
]


class TestEncoding:
    """Genotype and outcome coding."""

    def test_codings(self):
        dosage = pd.Series([0.0, 1.0, 2.0, np.nan], index=list("abcd"))

        codominant = encode_genotype(dosage, "codominant")
        assert list(codominant.columns) == ["het", "hom_minor"]
        np.testing.assert_array_equal(codominant.iloc[:3].to_numpy(), [[0, 0], [1, 0], [0, 1]])
        assert codominant.loc["d"].isna().all()

        assert list(encode_genotype(dosage, "dominant")["carrier"][:3]) == [0, 1, 1]
        assert list(encode_genotype(dosage, "recessive")["hom_minor"][:3]) == [0, 0, 1]
        assert list(encode_genotype(dosage, "overdominant")["het"][:3]) == [0, 1, 0]
        assert list(encode_genotype(dosage, "log-additive")["dosage"][:3]) == [0, 1, 2]

    def test_model_column(self):
        assert model_column(InheritanceModel.LOG_ADDITIVE) == "p_log_additive"
        assert model_column("codominant") == "p_codominant"

    def test_outcome_zero_one(self):
        y = encode_outcome(pd.Series([0, 1, 1, np.nan], name="casecontrol"))
        assert list(y[:3]) == [0.0, 1.0, 1.0]
        assert np.isnan(y.iloc[3])

    def test_outcome_labels(self):
        outcome = pd.Series(["asthma", "control", "asthma"], name="status")
        assert list(encode_outcome(outcome, case="asthma")) == [1.0, 0.0, 1.0]
        assert list(encode_outcome(outcome)) == [0.0, 1.0, 0.0]

    def test_outcome_level_checks(self):
        with pytest.raises(ValueError, match="two levels"):
            encode_outcome(pd.Series(["a", "b", "c"]))
        with pytest.raises(ValueError, match="not among outcome levels"):
            encode_outcome(pd.Series(["a", "b"]), case="c")

    def test_covariate_matrix(self):
        covariates = pd.DataFrame({"sex": ["female", "male", None], "age": [30.0, 40.0, 50.0]})
        coded = covariate_matrix(covariates)
        assert set(coded.columns) == {"age", "sex_male"}
        assert coded.iloc[2].isna().all()
        assert coded.loc[1, "sex_male"] == 1.0

    def test_covariate_matrix_complete_rows(self):
        covariates = pd.DataFrame({"age": [40.0, 51.5, 33.0]}, index=["a", "b", "c"])
        coded = covariate_matrix(covariates)
        assert list(coded.index) == ["a", "b", "c"]
        assert coded["age"].tolist() == [40.0, 51.5, 33.0]
        assert coded.notna().all().all()


class TestInheritanceModels:
    """Logistic fits on the simulated study (rs1 raises risk)."""

    def test_causal_snp_log_additive(self, genotypes, outcome):
        fit = fit_inheritance_model(genotypes.dosage("rs1"), outcome, "log-additive")

        assert fit.df == 1
        assert fit.p_value < 1e-6
        odds = fit.odds_ratios.loc["dosage"]
        assert odds["ci_lower"] > 1.0
        assert odds["ci_lower"] < odds["odds_ratio"] < odds["ci_upper"]

    def test_codominant_has_two_df(self, genotypes, outcome):
        fit = fit_inheritance_model(genotypes.dosage("rs1"), outcome, "codominant")
        assert fit.df == 2
        assert list(fit.odds_ratios.index) == ["het", "hom_minor"]

    def test_adjusted_fit_uses_complete_cases(self, genotypes, outcome, case_control_frame):
        covariates = case_control_frame[["sex", "age"]]
        fit = fit_inheritance_model(genotypes.dosage("rs5"), outcome, "log-additive", covariates)
        assert fit.n == 395

    def test_no_variation_gives_nan(self, genotypes, outcome):
        fit = fit_inheritance_model(genotypes.dosage("rs_het"), outcome, "dominant")
        assert fit.df == 0
        assert np.isnan(fit.p_value)

    def test_long_table(self, genotypes, outcome):
        table = association_test(genotypes.dosage("rs1"), outcome)
        assert set(table["model"]) == {m.value for m in InheritanceModel}
        assert len(table) == 6
        assert table.loc[table["model"] == "codominant", "df"].eq(2).all()


class TestMaxStatistic:

    def test_p_value_in_unit_interval_under_null(self):
        rng = np.random.default_rng(11)
        dosage = rng.binomial(2, 0.3, size=300).astype(float)
        outcome = rng.binomial(1, 0.5, size=300).astype(float)

        result = max_statistic_test(dosage, outcome, n_permutations=200, random_state=1)

        assert 0 < result.p_value <= 1
        assert result.p_value >= 1 / 201
        assert set(result.statistics) == {"dominant", "recessive", "log-additive"}

    def test_calibrated_under_null(self):
        rng = np.random.default_rng(2024)
        n_snps, n = 200, 300
        outcome = rng.binomial(1, 0.5, size=n).astype(float)
        results = [
            max_statistic_test(
                rng.binomial(2, 0.3, size=n).astype(float), outcome, n_permutations=199, random_state=i,
            )
            for i in range(n_snps)
        ]
        corrected = np.array([r.p_value for r in results])
        naive = np.array([r.naive_p_value for r in results])

        # Taking the best of three scores inflates the uncorrected minimum p
        assert 0.01 <= np.mean(corrected < 0.05) <= 0.11
        assert np.mean(naive < 0.05) > np.mean(corrected < 0.05)
        assert corrected.mean() >= naive.mean()

    def test_strong_effect_reaches_permutation_floor(self, genotypes, outcome):
        result = max_statistic_test(genotypes.dosage("rs1"), outcome, n_permutations=199, random_state=0)
        assert result.p_value == pytest.approx(1 / 200)
        assert result.statistic == max(result.statistics.values())

    def test_reproducible(self, genotypes, outcome):
        a = max_statistic_test(genotypes.dosage("rs2"), outcome, n_permutations=100, random_state=5)
        b = max_statistic_test(genotypes.dosage("rs2"), outcome, n_permutations=100, random_state=5)
        assert a.p_value == b.p_value

    def test_missing_dosages_dropped(self):
        dosage = np.array([0, 1, 2, np.nan, 1, 0, 2, 1])
        outcome = np.array([0, 1, 1, 1, 0, 0, 1, 0], dtype=float)
        result = max_statistic_test(dosage, outcome, n_permutations=50, random_state=0)
        assert 0 < result.p_value <= 1

    def test_invalid_permutations(self):
        with pytest.raises(ValueError, match="n_permutations"):
            max_statistic_test(np.zeros(4), np.array([0, 1, 0, 1.0]), n_permutations=0)


class TestAssociationScan:
    """Scan table over several SNPs."""

    def test_scan_table(self, genotypes, outcome, case_control_frame):
        table = association_scan(
            genotypes,
            outcome,
            covariates=case_control_frame[["sex", "age"]],
            snps=["rs1", "rs5", "rs6"],
            n_permutations=199,
            random_state=0,
        )

        assert list(table.columns) == SCAN_COLUMNS
        assert list(table.index) == ["rs1", "rs5", "rs6"]
        assert table.loc["rs1", "p_log_additive"] < 1e-6
        assert table.loc["rs1", "or_log_additive"] > 1.5
        assert table.loc["rs1", "minor_allele"] == "G"
        assert table.loc["rs5", "n"] == 395
        assert table["p_maxstat"].between(0, 1, inclusive="right").all()
        assert (table["min_p"] <= table[[model_column(m) for m in InheritanceModel]].min(axis=1) + 1e-15).all()

    def test_monomorphic_snp_skipped(self):
        calls = pd.DataFrame({
            "rsA": ["AA", "AG", "GG", "AG", "AA", "AA", "AG", "GG"],
            "rsB": ["CC"] * 8,
        }, index=[f"S{i}" for i in range(8)])
        outcome = pd.Series([0, 1, 1, 0, 0, 1, 1, 0], index=calls.index, dtype=float)

        table = association_scan(GenotypeTable(calls), outcome, n_permutations=20, random_state=0)

        assert list(table.index) == ["rsA"]
