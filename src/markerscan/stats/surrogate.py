"""
Surrogate variable analysis (iteratively re-weighted SVA).

Unmodelled factors such as RNA quality, post-mortem interval or processing
batch leave broad signatures across many probes. Surrogate variables estimate
these signatures from the data so that they can be added to the design as
nuisance covariates.

Algorithm (Leek & Storey 2007, 2008; ``sva::irwsva.build``):
    1. Residualize the data on the full design; the leading right singular
       vectors of the residuals are the first surrogate candidates.
    2. Repeat ``n_iterations`` times:
       a. F-test full + candidates vs null + candidates; the empirical local
          FDR gives p_b = P(probe is associated with the primary variable).
       b. F-test null + candidates vs null; p_gamma = P(probe is associated
          with the candidates).
       c. Weight each probe by p_gamma * (1 - p_b), centre the weighted
          rows and recompute the candidates.
    3. The right singular vectors of the final weighted data are the
       surrogate variables.

The number of surrogates is an input. ``estimate_n_sv`` provides the
permutation estimate of Buja & Eyuboglu (1992) when it is not known.

Singular vectors are sign-normalized (largest absolute loading positive),
so results are deterministic for a given input.

References:
    - Leek & Storey (2007) PLoS Genet 3(9):e161
    - Leek & Storey (2008) PNAS 105(48):18718-18723
    - Storey (2011) qvalue / edge local FDR
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray
from scipy import stats as scipy_stats

from markerscan.stats.design_matrix import DesignMatrix

__all__ = [
    'SurrogateResult',
    'f_pvalue',
    'edge_lfdr',
    'estimate_surrogate_variables',
    'estimate_n_sv',
]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SurrogateResult:
    """Estimated surrogate variables.

    Attributes:
        sv: Surrogate variables (n_samples, n_sv)
        n_sv: Number of surrogate variables
        pprob_gamma: Posterior probability each probe is affected by the
            surrogates (complete probes only)
        pprob_b: Posterior probability each probe is affected by the
            primary variable
        feature_mask: Probes used (complete cases), over the input rows
    """

    sv: NDArray[np.float64]
    n_sv: int
    pprob_gamma: NDArray[np.float64]
    pprob_b: NDArray[np.float64]
    feature_mask: NDArray[np.bool_]


def _residualize(data: NDArray[np.float64], X: NDArray[np.float64]) -> NDArray[np.float64]:
    """Residuals of every row of data regressed on the columns of X."""
    beta, *_ = np.linalg.lstsq(X, data.T, rcond=None)
    return data - (X @ beta).T


def f_pvalue(
    data: NDArray[np.float64],
    full: NDArray[np.float64],
    null: NDArray[np.float64],
) -> NDArray[np.float64]:
    """
    Per-row F-test p-values of nested models.

    Args:
        data: features x samples, complete
        full: Full model matrix (n_samples, df1)
        null: Nested null model matrix (n_samples, df0), df0 < df1
    """
    n = data.shape[1]
    df1, df0 = full.shape[1], null.shape[1]
    if df1 <= df0:
        raise ValueError(f"Full model ({df1} columns) must be larger than null ({df0})")
    if n <= df1:
        raise ValueError(f"Need more samples ({n}) than full model columns ({df1})")

    rss1 = np.sum(_residualize(data, full) ** 2, axis=1)
    rss0 = np.sum(_residualize(data, null) ** 2, axis=1)
    with np.errstate(divide='ignore', invalid='ignore'):
        fstats = ((rss0 - rss1) / (df1 - df0)) / (rss1 / (n - df1))
    p = scipy_stats.f.sf(fstats, df1 - df0, n - df1)
    return np.where(np.isnan(p), 1.0, p)


def _bw_nrd0(x: NDArray[np.float64]) -> float:
    """Silverman's rule of thumb as in R's ``bw.nrd0``."""
    sd = np.std(x, ddof=1)
    iqr = np.subtract(*np.percentile(x, [75, 25]))
    lo = min(sd, iqr / 1.34)
    if lo <= 0:
        lo = sd if sd > 0 else (abs(x[0]) if x[0] != 0 else 1.0)
    return 0.9 * lo * len(x) ** (-0.2)


def edge_lfdr(
    p: NDArray[np.float64],
    lambda_: float = 0.8,
    adjust: float = 1.5,
    eps: float = 1e-8,
) -> NDArray[np.float64]:
    """
    Empirical local false discovery rate of a vector of p-values.

    pi0 is estimated as ``mean(p >= lambda) / (1 - lambda)``, the p-values
    are probit transformed, and their density is estimated with a Gaussian
    kernel (Silverman bandwidth times ``adjust``). The lFDR
    ``pi0 * phi(x) / f(x)`` is truncated at 1 and made monotone in p.
    """
    p = np.asarray(p, dtype=np.float64)
    n = len(p)
    if n < 2:
        return np.ones(n)

    pi0 = min(np.mean(p >= lambda_) / (1 - lambda_), 1.0)
    x = scipy_stats.norm.ppf(np.clip(p, eps, 1 - eps))

    sd = np.std(x, ddof=1)
    if sd == 0:
        return np.full(n, min(pi0, 1.0))
    bandwidth = _bw_nrd0(x) * adjust
    kde = scipy_stats.gaussian_kde(x, bw_method=bandwidth / sd)
    density = np.maximum(kde(x), np.finfo(float).tiny)

    lfdr = np.minimum(pi0 * scipy_stats.norm.pdf(x) / density, 1.0)

    order = np.argsort(p, kind='stable')
    monotone = np.maximum.accumulate(lfdr[order])
    result = np.empty(n)
    result[order] = monotone
    return result


def _sign_normalize(vectors: NDArray[np.float64]) -> NDArray[np.float64]:
    idx = np.argmax(np.abs(vectors), axis=0)
    signs = np.sign(vectors[idx, np.arange(vectors.shape[1])])
    signs[signs == 0] = 1.0
    return vectors * signs


def _right_singular_vectors(data: NDArray[np.float64], k: int) -> NDArray[np.float64]:
    _, _, vt = np.linalg.svd(data, full_matrices=False)
    return _sign_normalize(vt[:k].T)


def _complete_rows(data: NDArray[np.float64]) -> NDArray[np.bool_]:
    mask = ~np.isnan(data).any(axis=1)
    n_dropped = int((~mask).sum())
    if n_dropped:
        logger.warning(f"Surrogate estimation ignores {n_dropped} probes with missing values")
    return mask


def estimate_surrogate_variables(
    data: NDArray[np.float64],
    design: DesignMatrix,
    null_design: DesignMatrix,
    n_sv: int,
    n_iterations: int = 5,
) -> SurrogateResult:
    """
    Iteratively re-weighted surrogate variable estimation.

    Args:
        data: Log expression (features x samples), columns in design order
        design: Full model (primary variable + adjustment covariates)
        null_design: Null model (adjustment covariates only)
        n_sv: Number of surrogate variables to estimate
        n_iterations: Re-weighting iterations

    Returns:
        SurrogateResult; with ``n_sv == 0`` the surrogate matrix has no
        columns and the design is left unchanged by ``with_surrogates``.

    Raises:
        ValueError: If n_sv is negative or too large for the residual df
    """
    data = np.asarray(data, dtype=np.float64)
    n_samples = data.shape[1]
    if n_samples != design.n_samples or n_samples != null_design.n_samples:
        raise ValueError("Data columns must match the rows of both designs")
    if n_sv < 0:
        raise ValueError(f"n_sv must be >= 0, got {n_sv}")

    mask = _complete_rows(data)
    if n_sv == 0:
        return SurrogateResult(
            sv=np.empty((n_samples, 0)),
            n_sv=0,
            pprob_gamma=np.empty(0),
            pprob_b=np.empty(0),
            feature_mask=mask,
        )

    if n_sv >= n_samples - design.n_params:
        raise ValueError(
            f"n_sv={n_sv} leaves no residual df: {n_samples} samples, "
            f"{design.n_params} design columns"
        )

    dat = data[mask]
    X, X0 = design.X, null_design.X

    candidates = _right_singular_vectors(_residualize(dat, X), n_sv)
    pprob_b = np.zeros(dat.shape[0])
    pprob_gamma = np.ones(dat.shape[0])
    weighted = dat

    for iteration in range(n_iterations):
        p_b = f_pvalue(dat, np.hstack([X, candidates]), np.hstack([X0, candidates]))
        pprob_b = 1.0 - edge_lfdr(p_b)
        p_gamma = f_pvalue(dat, np.hstack([X0, candidates]), X0)
        pprob_gamma = 1.0 - edge_lfdr(p_gamma)

        weights = pprob_gamma * (1.0 - pprob_b)
        weighted = dat * weights[:, None]
        weighted = weighted - weighted.mean(axis=1, keepdims=True)
        candidates = _right_singular_vectors(weighted, n_sv)
        logger.debug(
            f"IRW-SVA iteration {iteration + 1}: mean weight {weights.mean():.3f}"
        )

    sv = _right_singular_vectors(weighted, n_sv)
    logger.info(f"Estimated {n_sv} surrogate variables from {dat.shape[0]} probes")
    return SurrogateResult(
        sv=sv,
        n_sv=n_sv,
        pprob_gamma=pprob_gamma,
        pprob_b=pprob_b,
        feature_mask=mask,
    )


def estimate_n_sv(
    data: NDArray[np.float64],
    design: DesignMatrix,
    n_permutations: int = 20,
    alpha: float = 0.1,
    random_state: int | None = None,
) -> int:
    """
    Number of significant residual singular values (Buja-Eyuboglu permutation).

    Each probe's residuals are permuted independently; a singular value is
    significant when its variance share exceeds the permuted shares at level
    ``alpha``. p-values are made monotone so the count is a prefix.
    """
    rng = np.random.default_rng(random_state)
    dat = np.asarray(data, dtype=np.float64)
    dat = dat[_complete_rows(dat)]
    X = design.X
    ndf = X.shape[0] - X.shape[1]
    if ndf < 1:
        return 0

    def shares(matrix):
        s = np.linalg.svd(matrix, compute_uv=False)[:ndf] ** 2
        return s / s.sum()

    residuals = _residualize(dat, X)
    observed = shares(residuals)

    exceed = np.zeros(len(observed))
    for _ in range(n_permutations):
        permuted = rng.permuted(residuals, axis=1)
        null = shares(_residualize(permuted, X))
        exceed += null[:len(observed)] >= observed
    psv = np.maximum.accumulate(exceed / n_permutations)
    n_sv = int(np.sum(psv <= alpha))
    logger.info(f"Permutation estimate: {n_sv} surrogate variables")
    return n_sv
