"""
Haplotype frequency estimation and haplotype association.

Unphased genotypes at several linked SNPs do not reveal which alleles sit
on the same chromosome. For a sample heterozygous at k loci there are
2^(k-1) compatible diplotypes (haplotype pairs); missing calls multiply the
possibilities further. ``estimate_haplotypes`` resolves this by EM over all
compatible diplotypes (Excoffier & Slatkin 1995):

    E-step: P(h1, h2 | G_i) ∝ f(h1) f(h2) (x2 if h1 != h2)
    M-step: f(h) = expected copies of h / 2n

The posteriors then carry phase uncertainty into the association tests:

- ``haplotype_glm``: each sample is expanded into one pseudo-observation per
  compatible diplotype, weighted by its posterior, and a binomial GLM is
  fitted with additive haplotype coding (most frequent haplotype as
  reference, rare haplotypes pooled).
- ``haplotype_score``: score test of expected haplotype counts against the
  outcome (Schaid et al. 2002).
- ``sliding_window_scan``: the score test over windows of several widths,
  with simulated p-values from shared outcome permutations. Scanning many
  windows invalidates asymptotic p-values, so the best window is judged by
  the permutation distribution of the minimum p-value over all windows.

Haplotypes are labelled by their alleles in SNP order, e.g. ``"GAT"``.
"""

from __future__ import annotations

import itertools
import logging
import warnings
from dataclasses import dataclass, field
from typing import Optional, Sequence

import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy import stats

from markerscan.genetics.association import covariate_matrix
from markerscan.genetics.genotypes import GenotypeTable

__all__ = [
    'HaplotypeEstimate',
    'estimate_haplotypes',
    'HaplotypeGLMResult',
    'haplotype_glm',
    'HaplotypeScoreResult',
    'haplotype_score',
    'SlidingWindowResult',
    'sliding_window_scan',
]

logger = logging.getLogger(__name__)

MAX_LOCI = 16
MIN_POSTERIOR = 1e-9
RARE = 'rare'

# Allele pairs compatible with a minor-allele count at one locus (-1 = missing)
_LOCUS_OPTIONS = {
    0: ((0, 0),),
    1: ((0, 1), (1, 0)),
    2: ((1, 1),),
    -1: ((0, 0), (0, 1), (1, 0), (1, 1)),
}


# =============================================================================
# EM estimation
# =============================================================================

@dataclass(frozen=True)
class HaplotypeEstimate:
    """
    EM haplotype frequencies for a block of SNPs.

    Attributes:
        snps: SNPs in haplotype order
        alleles: (major, minor) per SNP
        sample_ids: Samples used (samples with every call missing are left out)
        frequencies: Haplotype label -> frequency, descending; sums to 1
        diplotypes: One row per compatible diplotype: sample, hap1, hap2,
            posterior (posteriors sum to 1 within each sample)
        loglik: Final log-likelihood
        converged: Whether the log-likelihood change fell below tol
        n_iter: EM iterations performed
    """

    snps: tuple
    alleles: tuple
    sample_ids: pd.Index
    frequencies: pd.Series
    diplotypes: pd.DataFrame = field(repr=False)
    loglik: float = np.nan
    converged: bool = False
    n_iter: int = 0

    @property
    def n_samples(self) -> int:
        return len(self.sample_ids)

    def expected_counts(self, haplotypes: Optional[Sequence[str]] = None) -> pd.DataFrame:
        """
        Posterior expected copies (0..2) of each haplotype per sample.

        Args:
            haplotypes: Labels to report (all estimated haplotypes by default)
        """
        haplotypes = list(haplotypes) if haplotypes is not None else list(self.frequencies.index)
        d = self.diplotypes
        sample_pos = self.sample_ids.get_indexer(d['sample'])
        counts = np.zeros((self.n_samples, len(haplotypes)))
        for j, hap in enumerate(haplotypes):
            copies = (d['hap1'].to_numpy() == hap).astype(float) + (d['hap2'].to_numpy() == hap)
            counts[:, j] = np.bincount(sample_pos, weights=copies * d['posterior'].to_numpy(), minlength=self.n_samples)
        return pd.DataFrame(counts, index=self.sample_ids, columns=haplotypes)


def _haplotype_label(code: int, alleles: Sequence[tuple]) -> str:
    parts = []
    for j, (major, minor) in enumerate(alleles):
        allele = minor if (code >> j) & 1 else major
        parts.append(allele if allele is not None else 'N')
    return ''.join(parts)


def _enumerate_diplotypes(codes: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """
    All unordered haplotype pairs compatible with each sample's genotypes.

    Haplotype j-th bit is 1 when it carries the minor allele at locus j.

    Returns:
        (kept sample rows, sample position per diplotype, hap1, hap2)
    """
    n_loci = codes.shape[1]
    bits = [1 << j for j in range(n_loci)]
    kept, sample_pos, h1s, h2s = [], [], [], []
    for i, row in enumerate(codes):
        if np.all(row < 0):
            continue
        pos = len(kept)
        kept.append(i)
        seen = set()
        for combo in itertools.product(*(_LOCUS_OPTIONS[int(c)] for c in row)):
            a = sum(bit for (x, _), bit in zip(combo, bits) if x)
            b = sum(bit for (_, y), bit in zip(combo, bits) if y)
            pair = (a, b) if a <= b else (b, a)
            if pair not in seen:
                seen.add(pair)
                sample_pos.append(pos)
                h1s.append(pair[0])
                h2s.append(pair[1])
    return (
        np.asarray(kept, dtype=int),
        np.asarray(sample_pos, dtype=int),
        np.asarray(h1s, dtype=int),
        np.asarray(h2s, dtype=int),
    )


def _diplotype_probs(freqs: np.ndarray, h1: np.ndarray, h2: np.ndarray) -> np.ndarray:
    return freqs[h1] * freqs[h2] * np.where(h1 == h2, 1.0, 2.0)


def estimate_haplotypes(
    genotypes: GenotypeTable,
    snps: Sequence[str],
    max_iter: int = 1000,
    tol: float = 1e-8,
    samples: Optional[Sequence[str]] = None,
) -> HaplotypeEstimate:
    """
    Estimate haplotype frequencies by EM.

    Args:
        genotypes: Genotype table
        snps: SNP block in chromosome order
        max_iter: Maximum EM iterations
        tol: Convergence threshold on the log-likelihood change
        samples: Restrict to these samples

    Returns:
        HaplotypeEstimate

    Raises:
        ValueError: If no SNPs are given, more than MAX_LOCI, or no sample
            has any called genotype
    """
    snps = list(snps)
    if not snps:
        raise ValueError("At least one SNP is required")
    if len(snps) > MAX_LOCI:
        raise ValueError(f"At most {MAX_LOCI} SNPs per haplotype block, got {len(snps)}")

    table = genotypes.subset(samples=samples, snps=snps) if samples is not None else genotypes.subset(snps=snps)
    alleles = tuple(table.alleles(s) for s in snps)
    codes = table.allele_codes(snps)

    kept, sample_pos, h1, h2 = _enumerate_diplotypes(codes)
    if kept.size == 0:
        raise ValueError(f"No sample has a called genotype at {snps}")
    n = kept.size
    n_haps = 1 << len(snps)

    # Start from linkage equilibrium
    called = codes[kept]
    minor_freq = np.array([
        called[called[:, j] >= 0, j].sum() / (2 * max((called[:, j] >= 0).sum(), 1))
        for j in range(len(snps))
    ])
    freqs = np.ones(n_haps)
    for j in range(len(snps)):
        has_minor = (np.arange(n_haps) >> j) & 1
        freqs *= np.where(has_minor == 1, minor_freq[j], 1.0 - minor_freq[j])

    loglik = -np.inf
    converged = False
    n_iter = 0
    for n_iter in range(1, max_iter + 1):
        probs = _diplotype_probs(freqs, h1, h2)
        totals = np.bincount(sample_pos, weights=probs, minlength=n)
        new_loglik = float(np.log(totals).sum())
        posterior = probs / totals[sample_pos]
        freqs = (
            np.bincount(h1, weights=posterior, minlength=n_haps)
            + np.bincount(h2, weights=posterior, minlength=n_haps)
        ) / (2.0 * n)
        if abs(new_loglik - loglik) < tol:
            loglik = new_loglik
            converged = True
            break
        loglik = new_loglik

    if not converged:
        warnings.warn(
            f"Haplotype EM did not converge in {max_iter} iterations for {snps}",
            UserWarning,
        )
        logger.warning(f"Haplotype EM did not converge in {max_iter} iterations for {snps}")

    probs = _diplotype_probs(freqs, h1, h2)
    totals = np.bincount(sample_pos, weights=probs, minlength=n)
    posterior = probs / totals[sample_pos]
    loglik = float(np.log(totals).sum())

    # Vanishing diplotypes and haplotypes are dropped
    keep = posterior >= MIN_POSTERIOR
    sample_pos, h1, h2, posterior = sample_pos[keep], h1[keep], h2[keep], posterior[keep]
    posterior = posterior / np.bincount(sample_pos, weights=posterior, minlength=n)[sample_pos]

    observed = np.flatnonzero(freqs >= MIN_POSTERIOR)
    labels = [_haplotype_label(int(code), alleles) for code in range(n_haps)]
    frequencies = pd.Series(freqs[observed], index=[labels[c] for c in observed], name='frequency')
    frequencies = frequencies / frequencies.sum()
    frequencies = frequencies.sort_values(ascending=False, kind='mergesort')

    sample_ids = table.sample_ids[kept]
    diplotypes = pd.DataFrame({
        'sample': sample_ids[sample_pos],
        'hap1': [labels[c] for c in h1],
        'hap2': [labels[c] for c in h2],
        'posterior': posterior,
    })

    logger.debug(
        f"Haplotype EM over {len(snps)} SNPs, {n} samples: {len(frequencies)} haplotypes, "
        f"loglik={loglik:.3f}, iterations={n_iter}"
    )
    return HaplotypeEstimate(
        snps=tuple(snps),
        alleles=alleles,
        sample_ids=sample_ids,
        frequencies=frequencies,
        diplotypes=diplotypes,
        loglik=loglik,
        converged=converged,
        n_iter=n_iter,
    )


def _aligned_outcome(genotypes: GenotypeTable, outcome: pd.Series) -> pd.Series:
    outcome = outcome.copy()
    outcome.index = outcome.index.astype(str)
    return outcome.reindex(genotypes.sample_ids).astype(float)


def _pool_rare(frequencies: pd.Series, freq_min: float) -> tuple[list[str], list[str]]:
    common = [h for h in frequencies.index if frequencies[h] >= freq_min]
    rare = [h for h in frequencies.index if frequencies[h] < freq_min]
    return common, rare


# =============================================================================
# Haplotype GLM
# =============================================================================

@dataclass(frozen=True)
class HaplotypeGLMResult:
    """
    Weighted binomial GLM on haplotypes.

    Attributes:
        table: DataFrame indexed by haplotype (and ``"rare"``) with columns
            frequency, odds_ratio, ci_lower, ci_upper, p_value; the reference
            haplotype has odds ratio 1
        reference: Reference haplotype (the most frequent)
        statistic: Global likelihood-ratio statistic against the
            covariate-only model
        df: Haplotype terms in the model
        p_value: Global LRT p-value
        n: Samples in the fit
        estimate: Underlying HaplotypeEstimate
    """

    table: pd.DataFrame
    reference: str
    statistic: float
    df: int
    p_value: float
    n: int
    estimate: HaplotypeEstimate = field(repr=False)


def haplotype_glm(
    genotypes: GenotypeTable,
    snps: Sequence[str],
    outcome: pd.Series,
    covariates: Optional[pd.DataFrame] = None,
    freq_min: float = 0.01,
    max_iter: int = 1000,
    tol: float = 1e-8,
) -> HaplotypeGLMResult:
    """
    Haplotype association under additive haplotype effects.

    Diplotype posteriors come from one EM run on the analysed samples and
    enter the GLM as frequency weights on per-diplotype pseudo-observations.

    Args:
        genotypes: Genotype table
        snps: SNP block
        outcome: 0/1 outcome indexed by sample id
        covariates: Adjustment covariates indexed by sample id
        freq_min: Haplotypes below this frequency are pooled as ``"rare"``

    Returns:
        HaplotypeGLMResult
    """
    y_all = _aligned_outcome(genotypes, outcome)
    usable = y_all.notna()
    cov_all = None
    if covariates is not None:
        covariates = covariates.copy()
        covariates.index = covariates.index.astype(str)
        cov_all = covariate_matrix(covariates.reindex(genotypes.sample_ids))
        usable &= cov_all.notna().all(axis=1)

    est = estimate_haplotypes(
        genotypes, snps, max_iter=max_iter, tol=tol,
        samples=list(genotypes.sample_ids[usable.to_numpy()]),
    )
    freqs = est.frequencies
    reference = freqs.index[0]
    common, rare = _pool_rare(freqs, freq_min)
    terms = [h for h in common if h != reference]

    d = est.diplotypes
    hap1 = d['hap1'].to_numpy()
    hap2 = d['hap2'].to_numpy()
    X_haps = pd.DataFrame(index=d.index)
    for hap in terms:
        X_haps[hap] = (hap1 == hap).astype(float) + (hap2 == hap)
    if rare:
        rare_set = set(rare)
        X_haps[RARE] = np.isin(hap1, list(rare_set)).astype(float) + np.isin(hap2, list(rare_set))
    X_haps = X_haps.loc[:, X_haps.nunique() > 1]

    y_samples = y_all.loc[est.sample_ids]
    X_red = pd.DataFrame({'const': np.ones(est.n_samples)}, index=est.sample_ids)
    if cov_all is not None and cov_all.shape[1]:
        cov = cov_all.loc[est.sample_ids]
        cov = cov.loc[:, cov.nunique() > 1]
        X_red = pd.concat([X_red, cov], axis=1)
    family = sm.families.Binomial()
    fit_red = sm.GLM(y_samples, X_red, family=family).fit()

    X_full = pd.concat([X_red.loc[d['sample']].reset_index(drop=True), X_haps.reset_index(drop=True)], axis=1)
    y_pseudo = y_samples.loc[d['sample']].to_numpy()
    fit_full = sm.GLM(y_pseudo, X_full, family=family, freq_weights=d['posterior'].to_numpy()).fit()

    df = X_haps.shape[1]
    statistic = max(2 * (fit_full.llf - fit_red.llf), 0.0)
    p_value = float(stats.chi2.sf(statistic, df)) if df else np.nan

    ci = fit_full.conf_int(alpha=0.05)
    rows = [{
        'haplotype': reference, 'frequency': freqs[reference],
        'odds_ratio': 1.0, 'ci_lower': np.nan, 'ci_upper': np.nan, 'p_value': np.nan,
    }]
    for hap in X_haps.columns:
        rows.append({
            'haplotype': hap,
            'frequency': freqs[rare].sum() if hap == RARE else freqs[hap],
            'odds_ratio': float(np.exp(fit_full.params[hap])),
            'ci_lower': float(np.exp(ci.loc[hap, 0])),
            'ci_upper': float(np.exp(ci.loc[hap, 1])),
            'p_value': float(fit_full.pvalues[hap]),
        })
    table = pd.DataFrame(rows).set_index('haplotype')

    logger.info(
        f"Haplotype GLM {'-'.join(est.snps)}: {len(terms)} haplotypes + reference {reference}, "
        f"{len(rare)} pooled as rare, global p={p_value:.3g}"
    )
    return HaplotypeGLMResult(
        table=table, reference=reference, statistic=float(statistic), df=df,
        p_value=p_value, n=est.n_samples, estimate=est,
    )


# =============================================================================
# Score statistic and sliding windows
# =============================================================================

@dataclass(frozen=True)
class HaplotypeScoreResult:
    """
    Global and per-haplotype score statistics.

    Attributes:
        statistic: Global score statistic U' V^- U
        df: Rank of V
        p_value: Asymptotic chi-square p-value
        p_simulated: Permutation p-value (NaN without permutations)
        haplotypes: DataFrame indexed by haplotype with frequency and
            score z-statistic
        n: Samples used
    """

    statistic: float
    df: int
    p_value: float
    p_simulated: float
    haplotypes: pd.DataFrame
    n: int


@dataclass
class _ScoreInputs:
    centered: np.ndarray
    v_inverse: np.ndarray
    df: int
    variances: np.ndarray
    labels: list


def _score_inputs(est: HaplotypeEstimate, y: np.ndarray, freq_min: float) -> _ScoreInputs:
    common, rare = _pool_rare(est.frequencies, freq_min)
    counts = est.expected_counts(common)
    if rare:
        counts[RARE] = est.expected_counts(rare).sum(axis=1)
    x = counts.to_numpy()
    centered = x - x.mean(axis=0)
    ybar = y.mean()
    V = ybar * (1.0 - ybar) * (centered.T @ centered)
    df = int(np.linalg.matrix_rank(V)) if V.size else 0
    return _ScoreInputs(
        centered=centered,
        v_inverse=np.linalg.pinv(V) if V.size else V,
        df=df,
        variances=np.diag(V),
        labels=list(counts.columns),
    )


def _score_statistics(inputs: _ScoreInputs, y: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Global statistics and score vectors for y of shape (n,) or (B, n)."""
    U = (y - y.mean(axis=-1, keepdims=True)) @ inputs.centered
    statistic = np.einsum('...i,ij,...j->...', U, inputs.v_inverse, U)
    return statistic, U


def _outcome_frame(genotypes: GenotypeTable, outcome: pd.Series) -> tuple[GenotypeTable, np.ndarray]:
    y_all = _aligned_outcome(genotypes, outcome)
    usable = y_all.notna().to_numpy()
    if not usable.any():
        raise ValueError("No samples with a non-missing outcome")
    y = y_all.to_numpy()[usable]
    if np.unique(y).size < 2:
        raise ValueError("Outcome has a single level")
    return genotypes.subset(samples=usable), y


def haplotype_score(
    genotypes: GenotypeTable,
    snps: Sequence[str],
    outcome: pd.Series,
    freq_min: float = 0.0,
    n_permutations: int = 0,
    random_state: Optional[int | np.random.Generator] = None,
) -> HaplotypeScoreResult:
    """
    Score test of haplotype association with a binary outcome.

    Args:
        genotypes: Genotype table
        snps: SNP block
        outcome: 0/1 outcome indexed by sample id
        freq_min: Haplotypes below this frequency are pooled
        n_permutations: Outcome permutations for a simulated p-value
        random_state: Seed or Generator
    """
    table, y = _outcome_frame(genotypes, outcome)
    est = estimate_haplotypes(table, snps)
    y = y[table.sample_ids.get_indexer(est.sample_ids)]

    inputs = _score_inputs(est, y, freq_min)
    statistic, U = _score_statistics(inputs, y)
    statistic = float(statistic)
    p_value = float(stats.chi2.sf(statistic, inputs.df)) if inputs.df else 1.0

    p_simulated = np.nan
    if n_permutations > 0:
        rng = np.random.default_rng(random_state)
        permuted = rng.permuted(np.tile(y, (n_permutations, 1)), axis=1)
        null, _ = _score_statistics(inputs, permuted)
        p_simulated = (1 + int(np.sum(null >= statistic - 1e-10))) / (n_permutations + 1)

    with np.errstate(invalid='ignore', divide='ignore'):
        z = U / np.sqrt(inputs.variances)
    frequencies = [
        est.frequencies[est.frequencies < freq_min].sum() if h == RARE else est.frequencies[h]
        for h in inputs.labels
    ]
    haplotypes = pd.DataFrame({'frequency': frequencies, 'score': z}, index=inputs.labels)
    return HaplotypeScoreResult(
        statistic=statistic,
        df=inputs.df,
        p_value=p_value,
        p_simulated=p_simulated,
        haplotypes=haplotypes,
        n=est.n_samples,
    )


@dataclass(frozen=True)
class SlidingWindowResult:
    """
    Sliding-window haplotype scan.

    Attributes:
        windows: DataFrame, one row per window: start, width, snps,
            statistic, df, p_asymptotic, p_simulated
        best_window: Row label of the window with the smallest simulated
            p-value (ties broken by the asymptotic p-value)
        global_p_value: Permutation p-value of the minimum p-value across
            all windows
        n_permutations: Permutations shared across windows
    """

    windows: pd.DataFrame
    best_window: int
    global_p_value: float
    n_permutations: int


def sliding_window_scan(
    genotypes: GenotypeTable,
    snps: Sequence[str],
    outcome: pd.Series,
    widths: Sequence[int] = (2, 3, 4),
    n_permutations: int = 1000,
    random_state: Optional[int | np.random.Generator] = None,
    freq_min: float = 0.0,
) -> SlidingWindowResult:
    """
    Haplotype score test over every window of consecutive SNPs.

    The same outcome permutations are applied to every window, so the
    simulated null of the minimum p-value over windows accounts for the
    search.

    Args:
        genotypes: Genotype table
        snps: SNPs in chromosome order
        outcome: 0/1 outcome indexed by sample id
        widths: Window widths; widths longer than the SNP list are skipped
        n_permutations: Shared permutations
        random_state: Seed or Generator
        freq_min: Haplotypes below this frequency are pooled

    Returns:
        SlidingWindowResult
    """
    snps = list(snps)
    if n_permutations < 1:
        raise ValueError(f"n_permutations must be >= 1, got {n_permutations}")
    widths = sorted({int(w) for w in widths if 1 <= int(w) <= len(snps)})
    if not widths:
        raise ValueError(f"No usable window width for {len(snps)} SNPs")

    table, y = _outcome_frame(genotypes, outcome)
    rng = np.random.default_rng(random_state)
    order = rng.permuted(np.tile(np.arange(y.size), (n_permutations, 1)), axis=1)
    y_perm_all = y[order]

    rows = []
    null_min_p = np.ones(n_permutations)
    for width in widths:
        for start in range(len(snps) - width + 1):
            window = snps[start:start + width]
            est = estimate_haplotypes(table, window)
            pos = table.sample_ids.get_indexer(est.sample_ids)
            y_obs = y[pos]
            inputs = _score_inputs(est, y_obs, freq_min)
            observed, _ = _score_statistics(inputs, y_obs)
            null, _ = _score_statistics(inputs, y_perm_all[:, pos])
            observed = float(observed)

            if inputs.df:
                p_asym = float(stats.chi2.sf(observed, inputs.df))
                null_p = stats.chi2.sf(null, inputs.df)
            else:
                p_asym = 1.0
                null_p = np.ones(n_permutations)
            null_min_p = np.minimum(null_min_p, null_p)

            rows.append({
                'start': start,
                'width': width,
                'snps': '-'.join(window),
                'statistic': observed,
                'df': inputs.df,
                'p_asymptotic': p_asym,
                'p_simulated': (1 + int(np.sum(null >= observed - 1e-10))) / (n_permutations + 1),
            })

    windows = pd.DataFrame(rows)
    observed_min_p = windows['p_asymptotic'].min()
    global_p = (1 + int(np.sum(null_min_p <= observed_min_p * (1 + 1e-10)))) / (n_permutations + 1)
    best = int(windows.sort_values(['p_simulated', 'p_asymptotic'], kind='mergesort').index[0])

    logger.info(
        f"Sliding-window scan: {len(windows)} windows over {len(snps)} SNPs, "
        f"best {windows.loc[best, 'snps']} (simulated p={windows.loc[best, 'p_simulated']:.3g}), "
        f"global p={global_p:.3g}"
    )
    return SlidingWindowResult(
        windows=windows,
        best_window=best,
        global_p_value=global_p,
        n_permutations=n_permutations,
    )
