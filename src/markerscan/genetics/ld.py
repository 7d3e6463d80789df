"""
Pairwise linkage disequilibrium.

For two biallelic SNPs with minor-allele frequencies p and q and two-locus
haplotype frequency p11 (minor at both):

    D   = p11 - p q
    D'  = D / Dmax, Dmax = min(p(1-q), (1-p)q) if D > 0 else min(pq, (1-p)(1-q))
    r^2 = D^2 / (p(1-p) q(1-q))

Haplotype frequencies come from two-locus EM, so double heterozygotes and
missing calls are handled without phase information.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np
import pandas as pd

from markerscan.genetics.genotypes import GenotypeTable
from markerscan.genetics.haplotype import estimate_haplotypes

__all__ = ['LDResult', 'ld_statistics', 'pairwise_ld']

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LDResult:
    """
    Symmetric SNP x SNP LD matrices.

    Attributes:
        d_prime: |D'| (1 on the diagonal, NaN for monomorphic SNPs)
        r2: r^2 (1 on the diagonal, NaN for monomorphic SNPs)
    """

    d_prime: pd.DataFrame
    r2: pd.DataFrame


def ld_statistics(p11: float, p: float, q: float) -> tuple[float, float]:
    """
    (|D'|, r^2) from the joint minor-minor frequency and both minor-allele
    frequencies. NaN when either locus is monomorphic.
    """
    if not (0 < p < 1 and 0 < q < 1):
        return np.nan, np.nan
    D = p11 - p * q
    if D > 0:
        d_max = min(p * (1 - q), (1 - p) * q)
    else:
        d_max = min(p * q, (1 - p) * (1 - q))
    d_prime = abs(D) / d_max if d_max > 0 else np.nan
    r2 = D ** 2 / (p * (1 - p) * q * (1 - q))
    return float(min(d_prime, 1.0)), float(min(r2, 1.0))


def pairwise_ld(
    genotypes: GenotypeTable,
    snps: Optional[Sequence[str]] = None,
) -> LDResult:
    """
    D' and r^2 for every SNP pair.

    Args:
        genotypes: Genotype table
        snps: SNPs to include (all by default), in display order

    Returns:
        LDResult
    """
    snps = list(snps) if snps is not None else genotypes.snps
    k = len(snps)
    d_prime = np.full((k, k), np.nan)
    r2 = np.full((k, k), np.nan)

    for i in range(k):
        if genotypes.is_polymorphic(snps[i]):
            d_prime[i, i] = r2[i, i] = 1.0
        else:
            logger.warning(f"SNP {snps[i]} is monomorphic; LD undefined")

    for i in range(k):
        for j in range(i + 1, k):
            if not (genotypes.is_polymorphic(snps[i]) and genotypes.is_polymorphic(snps[j])):
                continue
            est = estimate_haplotypes(genotypes, [snps[i], snps[j]])
            (major_i, minor_i), (major_j, minor_j) = est.alleles
            freqs = est.frequencies
            p11 = float(freqs.get(f"{minor_i}{minor_j}", 0.0))
            p = p11 + float(freqs.get(f"{minor_i}{major_j}", 0.0))
            q = p11 + float(freqs.get(f"{major_i}{minor_j}", 0.0))
            d_prime[i, j], r2[i, j] = ld_statistics(p11, p, q)
            d_prime[j, i], r2[j, i] = d_prime[i, j], r2[i, j]

    return LDResult(
        d_prime=pd.DataFrame(d_prime, index=snps, columns=snps),
        r2=pd.DataFrame(r2, index=snps, columns=snps),
    )
