"""
End-to-end tests of the analysis stages.
"""

import numpy as np
import pandas as pd
import pytest

from markerscan.annotation.gene_sets import GeneSetCollection
from markerscan.annotation.id_mapping import TableIDMapper
from markerscan.core.biomatrix import BioMatrix
from markerscan.pipeline import (
    run_differential_expression,
    run_gene_set_enrichment,
    run_genetic_association,
)
from markerscan.stats.design_matrix import CovariateTerm

DISEASE = [CovariateTerm("disease", reference="control")]
CONTRAST = {"AD_vs_control": "AD - control"}


@pytest.fixture
def de_result(expression_matrix):
    return run_differential_expression(expression_matrix, DISEASE, CONTRAST)


class TestDifferentialExpression:
    """Normalization, fit and moderated tests in one call."""

    def test_recovers_up_regulated_probes(self, de_result, expression_matrix):
        up = de_result.decisions["AD_vs_control"]
        planted = expression_matrix.feature_ids[:30]
        assert (up.loc[planted] == 1).sum() >= 25

        table = de_result.tables["AD_vs_control"]
        assert len(table) == 300
        assert table["p_value"].is_monotonic_increasing
        assert set(table.index[:20]) <= set(planted)

    def test_matrix_is_log_scale(self, de_result):
        assert de_result.matrix.data.max() < 20
        assert de_result.design.n_params == 2
        assert de_result.surrogates.n_sv == 0

    def test_significant(self, de_result):
        calls = de_result.decisions["AD_vs_control"]
        assert list(de_result.significant("AD_vs_control")) == list(calls.index[calls != 0])
        with pytest.raises(ValueError, match="Unknown contrast"):
            de_result.significant("MCI_vs_control")

    def test_surrogate_columns_added(self, expression_matrix):
        result = run_differential_expression(expression_matrix, DISEASE, CONTRAST, n_sv=1)
        assert result.surrogates.n_sv == 1
        assert result.design.n_params == 3
        assert result.surrogates.sv.shape == (12, 1)

    def test_surrogates_recover_batched_probes(self, batched_expression):
        planted = batched_expression.feature_ids[:30]

        def calls(n_sv):
            result = run_differential_expression(batched_expression, DISEASE, CONTRAST, n_sv=n_sv)
            decided = result.decisions["AD_vs_control"] != 0
            return int(decided.loc[planted].sum())

        hits_without = calls(0)
        hits_with = calls(1)

        # Without a surrogate the batch inflates the variance of half the probes
        assert hits_with >= 25
        assert hits_with > hits_without

    def test_hand_sized_example(self, tiny_expression):
        result = run_differential_expression(
            tiny_expression, [CovariateTerm("group")], {"B_vs_A": "B - A"}, normalize=False,
        )
        table = result.tables["B_vs_A"]
        assert table.index[0] == "f1"
        assert table.loc["f1", "log2fc"] == pytest.approx(0.99, abs=0.01)
        assert result.decisions["B_vs_A"].to_dict() == {"f1": 1, "f2": 0, "f3": 0}

    def test_requires_metadata(self, expression_matrix):
        bare = BioMatrix(
            data=expression_matrix.data,
            feature_ids=expression_matrix.feature_ids,
            sample_ids=expression_matrix.sample_ids,
        )
        with pytest.raises(ValueError, match="no sample metadata"):
            run_differential_expression(bare, DISEASE, CONTRAST)


class TestGeneSetEnrichment:
    """Enrichment of significant probes after ID mapping."""

    @pytest.fixture
    def annotation(self, expression_matrix):
        probes = list(expression_matrix.feature_ids)
        table = pd.DataFrame({
            "ID": probes,
            "ENTREZ_GENE_ID": [str(1000 + i) if i % 50 != 49 else np.nan for i in range(len(probes))],
        })
        mapper = TableIDMapper(table, {"probe": "ID", "entrez": "ENTREZ_GENE_ID"})
        collection = GeneSetCollection.from_dict(
            {
                "GO:planted": [str(1000 + i) for i in range(30)],
                "GO:background": [str(1000 + i) for i in range(100, 160)],
            },
            source="toy",
        )
        return mapper, collection

    def test_planted_set_enriched(self, de_result, annotation):
        mapper, collection = annotation
        analysis = run_gene_set_enrichment(de_result, "AD_vs_control", mapper, collection, direction="up")

        # Every 50th probe has no gene
        assert len(analysis.universe) == 294
        assert analysis.selected <= analysis.universe
        table = analysis.table
        assert table.iloc[0]["term"] == "GO:planted"
        assert table.iloc[0]["p_value"] < 1e-10

    def test_unknown_contrast(self, de_result, annotation):
        mapper, collection = annotation
        with pytest.raises(ValueError, match="Unknown contrast"):
            run_gene_set_enrichment(de_result, "nope", mapper, collection)


class TestGeneticAssociation:
    """HWE filter, scan, haplotypes and polygenic score in one call."""

    @pytest.fixture
    def phenotypes(self, case_control_frame):
        return case_control_frame[["casecontrol", "sex", "age"]]

    def test_full_run(self, genotypes, phenotypes):
        result = run_genetic_association(
            genotypes,
            phenotypes,
            "casecontrol",
            covariate_columns=["age"],
            n_permutations=49,
            random_state=0,
            haplotype_snps=["rs1", "rs2", "rs3", "rs4"],
            window_widths=(2, 3),
        )

        assert "rs_het" not in result.genotypes.snps
        assert "passed" in result.hwe.columns
        assert not result.hwe.loc["rs_het", "passed"]

        assert "rs1" in result.scan.index
        assert result.scan.loc["rs1", "p_log_additive"] < 1e-6

        assert list(result.ld.r2.index) == ["rs1", "rs2", "rs3", "rs4"]
        assert result.haplotype_glm.reference == "ACGT"
        assert len(result.sliding_window.windows) == 5
        assert result.polygenic.selected

    def test_optional_stages(self, genotypes, phenotypes):
        result = run_genetic_association(
            genotypes, phenotypes, "casecontrol", n_permutations=19, random_state=0, polygenic=False,
        )
        assert result.haplotype_glm is None
        assert result.sliding_window is None
        assert result.polygenic is None
        assert "rs_het" not in result.ld.r2.index

    def test_column_checks(self, genotypes, phenotypes):
        with pytest.raises(ValueError, match="Outcome column"):
            run_genetic_association(genotypes, phenotypes, "asthma")
        with pytest.raises(ValueError, match="Covariate columns"):
            run_genetic_association(genotypes, phenotypes, "casecontrol", covariate_columns=["bmi"])
