"""
Tests for Hardy-Weinberg equilibrium testing and filtering.
"""

import pytest

from markerscan.genetics.hwe import HWE_COLUMNS, filter_hwe, hwe_chisq_test, hwe_exact_test, hwe_table


class TestHweTests:
    """Exact and chi-square tests on fixed counts."""

    def test_exact_two_individuals(self):
        """With one AA and one BB, P(0 hets | 2 A, 2 B alleles) = 1/3."""
        assert hwe_exact_test(1, 0, 1) == pytest.approx(1 / 3)

    def test_equilibrium_counts(self):
        assert hwe_exact_test(25, 50, 25) > 0.5
        assert hwe_chisq_test(25, 50, 25) == pytest.approx(1.0)

    def test_heterozygote_excess(self):
        assert hwe_exact_test(0, 100, 0) < 1e-20
        assert hwe_chisq_test(0, 100, 0) < 1e-20

    def test_heterozygote_deficit(self):
        assert hwe_exact_test(50, 0, 50) < 1e-20

    def test_symmetric_in_homozygotes(self):
        assert hwe_exact_test(60, 35, 5) == pytest.approx(hwe_exact_test(5, 35, 60))

    def test_monomorphic_and_empty(self):
        assert hwe_exact_test(30, 0, 0) == 1.0
        assert hwe_chisq_test(30, 0, 0) == 1.0
        assert hwe_exact_test(0, 0, 0) == 1.0

    def test_invalid_counts(self):
        with pytest.raises(ValueError, match="non-negative integers"):
            hwe_exact_test(-1, 2, 3)

    def test_p_values_in_unit_interval(self):
        for counts in [(10, 3, 0), (3, 10, 3), (100, 1, 0), (7, 7, 7)]:
            assert 0 < hwe_exact_test(*counts) <= 1


class TestFilterHwe:
    """Filtering on control samples of the simulated study."""

    def test_table(self, genotypes, case_control_frame):
        controls = case_control_frame.index[case_control_frame["casecontrol"] == 0]
        table = hwe_table(genotypes, samples=controls)

        assert list(table.columns) == HWE_COLUMNS
        assert list(table.index) == genotypes.snps
        assert table.loc["rs_het", "n_het"] == len(controls)
        assert table.loc["rs5", "call_rate"] < 1.0

    def test_equilibrium_snps_pass_and_het_snp_fails(self, genotypes, case_control_frame):
        controls = case_control_frame.index[case_control_frame["casecontrol"] == 0]
        kept, table = filter_hwe(genotypes, controls=controls, alpha=0.001)

        assert kept.snps == ["rs1", "rs2", "rs3", "rs4", "rs5", "rs6"]
        assert not table.loc["rs_het", "passed"]
        assert (table.loc[kept.snps, "p_exact"] >= 0.001).all()

    def test_chisq_method(self, genotypes):
        kept, table = filter_hwe(genotypes, method="chisq")
        assert "rs_het" not in kept.snps
        assert "passed" in table.columns

    def test_invalid_alpha(self, genotypes):
        with pytest.raises(ValueError, match="alpha"):
            filter_hwe(genotypes, alpha=1.5)
