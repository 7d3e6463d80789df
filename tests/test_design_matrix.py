"""
Tests for design matrices and contrasts.
"""

import numpy as np
import pandas as pd
import pytest

from markerscan.stats.design_matrix import (
    CovariateTerm,
    build_design_matrix,
    make_contrasts,
)


@pytest.fixture
def phenotypes():
    return pd.DataFrame(
        {
            "disease": ["control", "control", "AD", "AD", "control", "AD"],
            "age": [70.0, 82.0, 77.0, 90.0, 65.0, 85.0],
            "sex": ["F", "M", "F", "M", "M", "F"],
        },
        index=[f"GSM{i}" for i in range(6)],
    )


class TestBuildDesign:
    """Column coding and validation."""

    def test_treatment_coding(self, phenotypes):
        design = build_design_matrix(phenotypes, [CovariateTerm("disease", reference="control")])

        assert design.col_names == ["Intercept", "diseaseAD"]
        np.testing.assert_array_equal(design.X[:, 1], [0, 0, 1, 1, 0, 1])
        assert design.df_residual == 4
        assert design.has_intercept

    def test_default_reference_is_first_sorted_level(self, phenotypes):
        design = build_design_matrix(phenotypes, [CovariateTerm("disease")])
        assert design.col_names == ["Intercept", "diseasecontrol"]

    def test_numeric_standardized(self, phenotypes):
        design = build_design_matrix(
            phenotypes, [CovariateTerm("disease", reference="control"), CovariateTerm("age", kind="numeric")]
        )
        age = design.X[:, design.col_names.index("age")]
        assert age.mean() == pytest.approx(0.0, abs=1e-12)
        assert age.std(ddof=1) == pytest.approx(1.0)

    def test_cell_means_without_intercept(self, phenotypes):
        design = build_design_matrix(phenotypes, [CovariateTerm("disease", reference="control")], intercept=False)
        assert design.col_names == ["diseasecontrol", "diseaseAD"]
        np.testing.assert_array_equal(design.X.sum(axis=1), np.ones(6))

    def test_missing_values_drop_samples(self, phenotypes):
        phenotypes.loc["GSM1", "age"] = np.nan
        design = build_design_matrix(
            phenotypes, [CovariateTerm("disease", reference="control"), CovariateTerm("age", kind="numeric")]
        )
        assert design.n_samples == 5
        assert not design.sample_mask[1]
        assert "GSM1" not in design.sample_ids

    def test_collinear_covariate_rejected(self, phenotypes):
        phenotypes["batch"] = phenotypes["disease"].map({"control": "b1", "AD": "b2"})
        with pytest.raises(ValueError, match="rank-deficient"):
            build_design_matrix(phenotypes, [CovariateTerm("disease"), CovariateTerm("batch")])

    def test_unknown_reference_rejected(self, phenotypes):
        with pytest.raises(ValueError, match="Reference level"):
            build_design_matrix(phenotypes, [CovariateTerm("disease", reference="MCI")])

    def test_missing_column_rejected(self, phenotypes):
        with pytest.raises(ValueError, match="lacks columns"):
            build_design_matrix(phenotypes, [CovariateTerm("braak_stage")])

    def test_no_residual_df_rejected(self, phenotypes):
        with pytest.raises(ValueError, match="Insufficient residual df"):
            build_design_matrix(phenotypes.iloc[[0, 2]], [CovariateTerm("disease")])

    def test_ill_conditioned_warns(self, phenotypes):
        phenotypes["year"] = [2000.0, 2001.0, 2000.5, 2001.5, 2000.2, 2000.9]
        with pytest.warns(UserWarning, match="condition number"):
            build_design_matrix(phenotypes, [CovariateTerm("year", kind="numeric", standardize=False)])

    def test_numeric_reference_rejected(self):
        with pytest.raises(ValueError):
            CovariateTerm("age", kind="numeric", reference="70")


class TestContrasts:
    """Expression and dictionary contrasts."""

    def test_level_difference_with_treatment_coding(self, phenotypes):
        design = build_design_matrix(phenotypes, [CovariateTerm("disease", reference="control")])
        contrasts = make_contrasts(design, {"AD_vs_control": "AD - control"})

        np.testing.assert_array_equal(contrasts.matrix[:, 0], [0.0, 1.0])
        assert contrasts.names == ["AD_vs_control"]

    def test_level_difference_with_cell_means(self, phenotypes):
        design = build_design_matrix(phenotypes, [CovariateTerm("disease", reference="control")], intercept=False)
        contrasts = make_contrasts(design, {"AD_vs_control": "AD - control"})
        np.testing.assert_array_equal(contrasts.matrix[:, 0], [-1.0, 1.0])

    def test_weighted_expression(self, phenotypes):
        design = build_design_matrix(phenotypes, [CovariateTerm("disease", reference="control")])
        contrasts = make_contrasts(design, {"half": "0.5*diseaseAD"})
        np.testing.assert_array_equal(contrasts.matrix[:, 0], [0.0, 0.5])

    def test_dictionary_contrast(self, phenotypes):
        design = build_design_matrix(phenotypes, [CovariateTerm("disease", reference="control")])
        contrasts = make_contrasts(design, {"AD": {"diseaseAD": 1}})
        assert contrasts.to_frame().loc["diseaseAD", "AD"] == 1.0

    def test_absent_level_rejected(self, phenotypes):
        design = build_design_matrix(phenotypes, [CovariateTerm("disease", reference="control")])
        with pytest.raises(ValueError, match="neither a design column nor a level"):
            make_contrasts(design, {"MCI_vs_control": "MCI - control"})

    def test_zero_contrast_rejected(self, phenotypes):
        design = build_design_matrix(phenotypes, [CovariateTerm("disease", reference="control")])
        with pytest.raises(ValueError, match="identically zero"):
            make_contrasts(design, {"nothing": "control"})

    def test_ambiguous_level_needs_term_prefix(self, phenotypes):
        phenotypes["apoe"] = ["control", "e4", "e4", "control", "e4", "control"]
        design = build_design_matrix(
            phenotypes, [CovariateTerm("disease", reference="control"), CovariateTerm("apoe", reference="control")]
        )
        with pytest.raises(ValueError, match="ambiguous"):
            make_contrasts(design, {"x": "AD - control"})
        contrasts = make_contrasts(design, {"x": "AD - disease:control"})
        assert contrasts.to_frame().loc["diseaseAD", "x"] == 1.0


class TestDesignEditing:

    def test_with_surrogates(self, phenotypes):
        design = build_design_matrix(phenotypes, [CovariateTerm("disease", reference="control")])
        sv = np.array([0.3, -0.1, 0.5, -0.7, 0.2, -0.2])

        extended = design.with_surrogates(sv)

        assert extended.col_names[-1] == "SV1"
        assert extended.term_columns["SV"] == (2,)
        assert len(extended.level_vectors[("disease", "AD")]) == 3

    def test_with_no_surrogates_is_identity(self, phenotypes):
        design = build_design_matrix(phenotypes, [CovariateTerm("disease")])
        assert design.with_surrogates(np.zeros((6, 0))) is design

    def test_drop_terms_keeps_intercept(self, phenotypes):
        design = build_design_matrix(
            phenotypes, [CovariateTerm("disease", reference="control"), CovariateTerm("sex")]
        )
        null = design.drop_terms(["disease"])
        assert null.col_names == ["Intercept", "sexM"]

    def test_drop_terms_adds_intercept_to_cell_means(self, phenotypes):
        design = build_design_matrix(phenotypes, [CovariateTerm("disease")], intercept=False)
        null = design.drop_terms(["disease"])
        assert null.col_names == ["Intercept"]
