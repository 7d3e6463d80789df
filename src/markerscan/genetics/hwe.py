"""
Hardy-Weinberg equilibrium testing.

Genotyping errors show up as departures from HWE among controls, so SNPs
failing the test in controls are removed before any association analysis.
Two tests are provided:

- ``hwe_exact_test``: the exact test of Wigginton, Cutler & Abecasis (2005),
  reliable at small sample sizes and low minor-allele frequency
- ``hwe_chisq_test``: the 1-df chi-square goodness-of-fit test
"""

from __future__ import annotations

import logging
from typing import Iterable, Literal, Optional

import numpy as np
import pandas as pd
from scipy import stats

from markerscan.genetics.genotypes import GenotypeTable

__all__ = [
    'hwe_exact_test',
    'hwe_chisq_test',
    'hwe_table',
    'filter_hwe',
    'HWE_COLUMNS',
]

logger = logging.getLogger(__name__)

HWE_COLUMNS = [
    'n_hom_major', 'n_het', 'n_hom_minor', 'maf', 'call_rate', 'p_exact', 'p_chisq',
]


def _check_counts(n_aa, n_ab, n_bb) -> tuple[int, int, int]:
    counts = []
    for value in (n_aa, n_ab, n_bb):
        if value < 0 or int(value) != value:
            raise ValueError(f"Genotype counts must be non-negative integers, got {(n_aa, n_ab, n_bb)}")
        counts.append(int(value))
    return counts[0], counts[1], counts[2]


def hwe_exact_test(n_aa: int, n_ab: int, n_bb: int) -> float:
    """
    Exact two-sided HWE test.

    The heterozygote count is conditioned on the allele counts; the p-value
    sums the probabilities of all heterozygote counts no more likely than
    the observed one.

    Args:
        n_aa: Homozygous count for one allele
        n_ab: Heterozygous count
        n_bb: Homozygous count for the other allele

    Returns:
        p-value in (0, 1]; 1.0 when there are no genotypes
    """
    n_aa, n_ab, n_bb = _check_counts(n_aa, n_ab, n_bb)
    n = n_aa + n_ab + n_bb
    if n == 0:
        return 1.0

    n_hom_rare = min(n_aa, n_bb)
    n_hom_common = max(n_aa, n_bb)
    n_rare = 2 * n_hom_rare + n_ab
    if n_rare == 0:
        return 1.0

    probs = np.zeros(n_rare + 1)

    # Start at the most likely heterozygote count, same parity as n_rare
    mid = int(n_rare * (2 * n - n_rare) / (2 * n))
    if (n_rare % 2) != (mid % 2):
        mid += 1

    probs[mid] = 1.0
    hets, hom_r, hom_c = mid, (n_rare - mid) // 2, n - mid - (n_rare - mid) // 2
    while hets > 1:
        probs[hets - 2] = probs[hets] * hets * (hets - 1) / (4.0 * (hom_r + 1) * (hom_c + 1))
        hets -= 2
        hom_r += 1
        hom_c += 1

    hets, hom_r, hom_c = mid, (n_rare - mid) // 2, n - mid - (n_rare - mid) // 2
    while hets <= n_rare - 2:
        probs[hets + 2] = probs[hets] * 4.0 * hom_r * hom_c / ((hets + 2.0) * (hets + 1.0))
        hets += 2
        hom_r -= 1
        hom_c -= 1

    probs /= probs.sum()
    observed = probs[n_ab]
    # Relative tolerance guards against rounding in the symmetric case
    p_value = probs[probs <= observed * (1 + 1e-7)].sum()
    return float(min(1.0, p_value))


def hwe_chisq_test(n_aa: int, n_ab: int, n_bb: int) -> float:
    """
    Chi-square goodness-of-fit HWE test (1 df).

    Returns 1.0 for monomorphic SNPs or when there are no genotypes.
    """
    n_aa, n_ab, n_bb = _check_counts(n_aa, n_ab, n_bb)
    n = n_aa + n_ab + n_bb
    if n == 0:
        return 1.0

    p = (2 * n_aa + n_ab) / (2 * n)
    q = 1.0 - p
    if p == 0.0 or p == 1.0:
        return 1.0

    observed = np.array([n_aa, n_ab, n_bb], dtype=float)
    expected = np.array([p * p * n, 2 * p * q * n, q * q * n])
    chi2_stat = np.sum((observed - expected) ** 2 / expected)
    return float(stats.chi2.sf(chi2_stat, df=1))


def hwe_table(
    genotypes: GenotypeTable,
    samples: Optional[Iterable[str]] = None,
) -> pd.DataFrame:
    """
    Per-SNP genotype counts and HWE p-values.

    Args:
        genotypes: Genotype table
        samples: Restrict counting to these samples (normally the controls)

    Returns:
        DataFrame indexed by SNP with HWE_COLUMNS
    """
    if samples is not None:
        samples = list(samples)
        table = genotypes.subset(samples=samples)
    else:
        table = genotypes

    rows = []
    for snp in table.snps:
        n_aa, n_ab, n_bb = table.genotype_counts(snp)
        n = n_aa + n_ab + n_bb
        if not table.is_polymorphic(snp):
            logger.warning(f"SNP {snp} is monomorphic in the tested samples")
        rows.append({
            'snp': snp,
            'n_hom_major': n_aa,
            'n_het': n_ab,
            'n_hom_minor': n_bb,
            'maf': (n_ab + 2 * n_bb) / (2 * n) if n else np.nan,
            'call_rate': table.call_rate(snp),
            'p_exact': hwe_exact_test(n_aa, n_ab, n_bb),
            'p_chisq': hwe_chisq_test(n_aa, n_ab, n_bb),
        })

    if not rows:
        return pd.DataFrame(columns=HWE_COLUMNS)
    return pd.DataFrame(rows).set_index('snp')[HWE_COLUMNS]


def filter_hwe(
    genotypes: GenotypeTable,
    controls: Optional[Iterable[str]] = None,
    alpha: float = 0.001,
    method: Literal['exact', 'chisq'] = 'exact',
) -> tuple[GenotypeTable, pd.DataFrame]:
    """
    Drop SNPs out of HWE among controls.

    Args:
        genotypes: Genotype table
        controls: Control sample ids (all samples when None)
        alpha: SNPs with p < alpha are removed
        method: 'exact' or 'chisq'

    Returns:
        (table of SNPs with p >= alpha, full HWE table with a ``passed`` column)
    """
    if not 0 < alpha < 1:
        raise ValueError(f"alpha must be in (0, 1), got {alpha}")
    if method not in ('exact', 'chisq'):
        raise ValueError(f"Unknown HWE method {method!r}")

    table = hwe_table(genotypes, samples=controls)
    table['passed'] = table[f'p_{method}'] >= alpha
    kept = [snp for snp in genotypes.snps if table.loc[snp, 'passed']]
    n_removed = len(genotypes.snps) - len(kept)
    if n_removed:
        logger.warning(
            f"Removed {n_removed}/{len(genotypes.snps)} SNPs out of HWE "
            f"(p < {alpha}, {method} test): {[s for s in genotypes.snps if s not in kept]}"
        )
    else:
        logger.info(f"All {len(kept)} SNPs in HWE (p >= {alpha})")
    return genotypes.subset(snps=kept), table
