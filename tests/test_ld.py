"""
Tests for pairwise linkage disequilibrium.
"""

import numpy as np
import pandas as pd
import pytest

from markerscan.genetics.genotypes import GenotypeTable
from markerscan.genetics.ld import ld_statistics, pairwise_ld


class TestLDStatistics:
    """D' and r^2 from fixed frequencies."""

    def test_complete_association(self):
        d_prime, r2 = ld_statistics(p11=0.3, p=0.3, q=0.3)
        assert d_prime == pytest.approx(1.0)
        assert r2 == pytest.approx(1.0)

    def test_equilibrium(self):
        d_prime, r2 = ld_statistics(p11=0.06, p=0.2, q=0.3)
        assert d_prime == pytest.approx(0.0, abs=1e-12)
        assert r2 == pytest.approx(0.0, abs=1e-12)

    def test_nested_minor_alleles(self):
        """Minor allele at the rarer SNP always on a minor background: D' = 1, r^2 < 1."""
        d_prime, r2 = ld_statistics(p11=0.1, p=0.1, q=0.4)
        assert d_prime == pytest.approx(1.0)
        assert r2 == pytest.approx((0.1 - 0.04) ** 2 / (0.1 * 0.9 * 0.4 * 0.6))

    def test_monomorphic(self):
        assert all(np.isnan(v) for v in ld_statistics(0.0, 0.0, 0.3))


class TestPairwiseLD:
    """LD matrices over the simulated block."""

    def test_block_structure(self, genotypes):
        snps = ["rs1", "rs2", "rs3", "rs5"]
        result = pairwise_ld(genotypes, snps)

        assert list(result.r2.index) == snps
        np.testing.assert_allclose(np.diag(result.r2.to_numpy()), 1.0)
        np.testing.assert_allclose(result.r2.to_numpy(), result.r2.to_numpy().T)

        # rs1 and rs2 always travel together
        assert result.r2.loc["rs1", "rs2"] > 0.95
        assert result.d_prime.loc["rs1", "rs2"] > 0.95
        # rs5 is drawn independently of the block
        assert result.r2.loc["rs1", "rs5"] < 0.05

    def test_monomorphic_snp(self):
        frame = pd.DataFrame(
            {"a": ["AA", "AG", "GG", "AG"], "m": ["CC", "CC", "CC", "CC"]},
            index=["s1", "s2", "s3", "s4"],
        )
        result = pairwise_ld(GenotypeTable.from_frame(frame))
        assert result.r2.loc["a", "a"] == 1.0
        assert np.isnan(result.r2.loc["a", "m"])
        assert np.isnan(result.d_prime.loc["m", "m"])
