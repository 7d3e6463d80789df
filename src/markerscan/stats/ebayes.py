"""
Empirical Bayes moderation of per-probe contrast statistics.

With a handful of arrays per group, per-probe variance estimates are noisy:
some probes look significant only because their variance happens to be
underestimated. Following limma, the sample variances are assumed to follow
a scaled inverse chi-square prior

    1 / sigma_g^2 ~ (1 / (d0 s0^2)) chi^2_{d0}

whose hyperparameters (d0, s0^2) are estimated from all probes by moments
of log variances. Each probe's variance is then shrunk to the posterior

    s~_g^2 = (d0 s0^2 + d_g s_g^2) / (d0 + d_g)

and tested with a moderated t statistic on ``d0 + d_g`` degrees of freedom.
When the observed spread of variances is no larger than chi-square sampling
alone explains, d0 is infinite and every probe uses the prior variance.

Also provided: the B statistic (log-odds of differential expression), the
moderated F statistic over all contrasts, and limma-style result tables.

References:
    - Smyth (2004) Stat Appl Genet Mol Biol 3:Article 3
    - Phipson et al. (2016) Ann Appl Stat 10(2):946-963
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal

import numpy as np
import pandas as pd
from numpy.typing import NDArray
from scipy import stats as scipy_stats
from scipy.special import digamma, polygamma

from markerscan.stats.linear_model import LinearModelFit
from markerscan.stats.multiple_testing import adjust_pvalues

__all__ = [
    'trigamma_inverse',
    'fit_f_dist',
    'squeeze_var',
    'EBayesFit',
    'ebayes',
    'top_table',
    'decide_tests',
]

logger = logging.getLogger(__name__)


# =============================================================================
# Prior estimation (limma fitFDist / squeezeVar)
# =============================================================================

def trigamma_inverse(x: float | NDArray[np.float64], tol: float = 1e-8, max_iter: int = 50):
    """
    Inverse of the trigamma function.

    Newton iteration on ``1 / trigamma(y)``, which is convex and nearly
    linear, starting from ``y = 0.5 + 1/x`` (limma's trigammaInverse).

    Args:
        x: Positive target value(s)

    Returns:
        y with trigamma(y) ≈ x; NaN for x <= 0. Scalar in, scalar out.
    """
    scalar = np.isscalar(x)
    x = np.atleast_1d(np.asarray(x, dtype=np.float64))
    y = np.full_like(x, np.nan)

    large = x > 1e7
    small = x < 1e-6
    y[large] = 1.0 / np.sqrt(x[large])
    y[small & (x > 0)] = 1.0 / x[small & (x > 0)]

    todo = (x > 0) & ~large & ~small
    if np.any(todo):
        xt = x[todo]
        yt = 0.5 + 1.0 / xt
        for _ in range(max_iter):
            tri = polygamma(1, yt)
            dif = tri * (1.0 - tri / xt) / polygamma(2, yt)
            yt = yt + dif
            if np.max(-dif / yt) < tol:
                break
        else:
            logger.warning("trigamma_inverse: iteration limit exceeded")
        y[todo] = yt

    return float(y[0]) if scalar else y


def fit_f_dist(
    sigma2: NDArray[np.float64],
    df: float | NDArray[np.float64],
    covariate: NDArray[np.float64] | None = None,
    trend_degree: int = 3,
) -> tuple[float, float | NDArray[np.float64]]:
    """
    Moment estimates of the scaled F prior on sample variances.

    Algorithm (limma fitFDist):
        1. e = log(s²) - digamma(df/2) + log(df/2)
        2. evar = var(e) - mean(trigamma(df/2))
        3. evar > 0:  d0 = 2 trigamma⁻¹(evar),
                      s0² = exp(mean(e) + digamma(d0/2) - log(d0/2))
           otherwise: d0 = inf, s0² = exp(mean(e))

    Args:
        sigma2: Sample variances (n_features,)
        df: Residual df, scalar or per feature
        covariate: Optional per-feature covariate (average expression) for
            an intensity-dependent prior; the mean of e is then a polynomial
            in the covariate
        trend_degree: Polynomial degree of the trend

    Returns:
        (d0, s0²). s0² is per feature when a covariate is given.

    Raises:
        ValueError: If fewer than 2 usable variances are available
    """
    sigma2 = np.asarray(sigma2, dtype=np.float64)
    df = np.broadcast_to(np.asarray(df, dtype=np.float64), sigma2.shape)

    ok = np.isfinite(sigma2) & np.isfinite(df) & (df > 1e-15)
    n_ok = int(ok.sum())
    if n_ok < 2:
        raise ValueError(f"Need at least 2 features with positive df, got {n_ok}")

    x = sigma2[ok]
    d = df[ok]
    median = np.median(x)
    if median == 0:
        logger.warning("More than half of residual variances are exactly zero: eBayes unreliable")
        median = 1.0
    x = np.maximum(x, 1e-5 * median)

    z = np.log(x)
    e = z - digamma(d / 2) + np.log(d / 2)

    if covariate is None:
        emean = float(np.mean(e))
        evar = float(np.sum((e - emean) ** 2) / (n_ok - 1))
    else:
        cov = np.asarray(covariate, dtype=np.float64)[ok]
        degree = int(min(trend_degree, len(np.unique(cov)) - 1, n_ok - 2))
        degree = max(degree, 0)
        coefs = np.polynomial.polynomial.polyfit(cov, e, degree)
        fitted = np.polynomial.polynomial.polyval(cov, coefs)
        evar = float(np.sum((e - fitted) ** 2) / (n_ok - degree - 1))

    evar -= float(np.mean(polygamma(1, d / 2)))

    if evar > 0:
        d0 = 2.0 * trigamma_inverse(evar)
        shift = digamma(d0 / 2) - np.log(d0 / 2)
    else:
        d0 = np.inf
        shift = 0.0

    if covariate is None:
        s0_sq = float(np.exp(emean + shift))
    else:
        full_cov = np.asarray(covariate, dtype=np.float64)
        # Probes outside the fitting set get the trend at their covariate
        s0_sq = np.exp(np.polynomial.polynomial.polyval(np.nan_to_num(full_cov, nan=np.nanmean(full_cov)), coefs) + shift)

    logger.debug(f"fit_f_dist: d0={d0:.4g}, evar={evar:.4g}")
    return float(d0), s0_sq


def squeeze_var(
    sigma2: NDArray[np.float64],
    df: float | NDArray[np.float64],
    d0: float,
    s0_sq: float | NDArray[np.float64],
) -> NDArray[np.float64]:
    """
    Posterior variances shrunk toward the prior (limma squeezeVar).

        s²_post = (d0 s0² + df s²) / (d0 + df)

    With infinite d0 the posterior equals the prior variance s0². With
    d0 = 0 the sample variances are returned unchanged.
    """
    sigma2 = np.asarray(sigma2, dtype=np.float64)
    df = np.asarray(df, dtype=np.float64)
    if np.isinf(d0):
        return np.broadcast_to(np.asarray(s0_sq, dtype=np.float64), sigma2.shape).copy()
    if d0 == 0:
        return sigma2.copy()
    # Features without residual df get the prior
    s2_post = (d0 * s0_sq + np.where(df > 0, df, 0.0) * np.nan_to_num(sigma2)) / (d0 + np.where(df > 0, df, 0.0))
    return np.asarray(s2_post, dtype=np.float64)


def _tmixture_vector(
    tstat: NDArray[np.float64],
    stdev_unscaled: NDArray[np.float64],
    df: NDArray[np.float64],
    proportion: float,
    v0_lim: tuple[float, float] | None,
) -> float:
    """Prior variance of non-zero log fold changes (limma tmixture.vector)."""
    ok = np.isfinite(tstat) & np.isfinite(stdev_unscaled) & np.isfinite(df)
    tstat, stdev_unscaled, df = np.abs(tstat[ok]), stdev_unscaled[ok], df[ok].copy()
    n_total = len(tstat)
    n_target = int(np.ceil(proportion / 2 * n_total))
    if n_target < 1:
        return np.nan

    p = max(n_target / n_total, proportion)
    max_df = np.max(df)
    lower = df < max_df
    if np.any(lower):
        tail = scipy_stats.t.logsf(tstat[lower], df[lower])
        tstat[lower] = scipy_stats.t.isf(np.exp(tail), max_df)
        df[lower] = max_df

    order = np.argsort(-tstat, kind='stable')[:n_target]
    t_top = tstat[order]
    v1 = stdev_unscaled[order] ** 2
    r = np.arange(1, n_target + 1)
    p0 = 2 * scipy_stats.t.sf(t_top, max_df)
    ptarget = ((r - 0.5) / n_total - (1 - p) * p0) / p
    v0 = np.zeros(n_target)
    pos = ptarget > p0
    if np.any(pos):
        qtarget = scipy_stats.t.isf(ptarget[pos] / 2, max_df)
        v0[pos] = v1[pos] * ((t_top[pos] / qtarget) ** 2 - 1)
    if v0_lim is not None:
        v0 = np.clip(v0, v0_lim[0], v0_lim[1])
    return float(np.mean(v0))


# =============================================================================
# Moderated statistics
# =============================================================================

@dataclass(frozen=True)
class EBayesFit:
    """Moderated statistics for every feature and contrast.

    Attributes:
        fit: The (contrast) fit that was moderated
        t: Moderated t statistics (n_features, n_contrasts)
        p_value: Two-sided p-values of t
        lods: B statistics (log-odds of differential expression)
        s2_prior: Prior variance (scalar, or per feature with a trend)
        df_prior: Prior degrees of freedom d0 (may be inf)
        s2_post: Posterior variances (n_features,)
        df_total: min(d0 + df_residual, sum(df_residual)) per feature
        var_prior: Prior variance of non-zero effects, per contrast
        F: Moderated F statistic over all contrasts
        F_p_value: p-value of F
        proportion: Assumed proportion of differentially expressed features
    """

    fit: LinearModelFit
    t: NDArray[np.float64]
    p_value: NDArray[np.float64]
    lods: NDArray[np.float64]
    s2_prior: float | NDArray[np.float64]
    df_prior: float
    s2_post: NDArray[np.float64]
    df_total: NDArray[np.float64]
    var_prior: NDArray[np.float64]
    F: NDArray[np.float64]
    F_p_value: NDArray[np.float64]
    proportion: float

    @property
    def coef_names(self) -> list[str]:
        return self.fit.coef_names

    @property
    def feature_ids(self) -> pd.Index:
        return self.fit.feature_ids


def _moderated_f(
    t: NDArray[np.float64],
    cov_coefficients: NDArray[np.float64],
    df_total: NDArray[np.float64],
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """F = ||t Q||² / r with Q from the eigen-decomposition of the contrast correlation."""
    d = np.sqrt(np.diag(cov_coefficients))
    correlation = cov_coefficients / np.outer(d, d)
    values, vectors = np.linalg.eigh(correlation)
    order = np.argsort(values)[::-1]
    values, vectors = values[order], vectors[:, order]
    r = int(np.sum(values / values[0] > 1e-8))
    Q = vectors[:, :r] / np.sqrt(values[:r]) / np.sqrt(r)
    F = np.sum((np.nan_to_num(t) @ Q) ** 2, axis=1)
    F[np.isnan(t).any(axis=1)] = np.nan
    with np.errstate(invalid='ignore'):
        F_p = scipy_stats.f.sf(F, r, df_total)
    return F, F_p


def ebayes(
    fit: LinearModelFit,
    proportion: float = 0.01,
    trend: bool = False,
    stdev_coef_lim: tuple[float, float] = (0.1, 4.0),
) -> EBayesFit:
    """
    Empirical Bayes moderated t, F and B statistics.

    Args:
        fit: Output of ``lm_fit`` or ``contrasts_fit``
        proportion: Assumed proportion of differentially expressed features
            (used by the B statistic only)
        trend: Let the prior variance depend on average expression
        stdev_coef_lim: Limits for the prior standard deviation of non-zero
            log fold changes, relative to the prior residual sd

    Returns:
        EBayesFit

    Raises:
        ValueError: If no feature has residual degrees of freedom
    """
    if not 0 < proportion < 1:
        raise ValueError(f"proportion must be in (0, 1), got {proportion}")

    df = fit.df_residual
    if not np.any(df > 0):
        raise ValueError("No residual degrees of freedom; cannot estimate variances")

    sigma2 = fit.sigma ** 2
    d0, s0_sq = fit_f_dist(sigma2, df, covariate=fit.amean if trend else None)
    s2_post = squeeze_var(sigma2, df, d0, s0_sq)

    df_pooled = float(np.nansum(df[df > 0]))
    df_total = np.minimum(d0 + df, df_pooled)

    with np.errstate(invalid='ignore', divide='ignore'):
        t = fit.coefficients / fit.stdev_unscaled / np.sqrt(s2_post)[:, None]
        p_value = 2 * scipy_stats.t.sf(np.abs(t), df_total[:, None])
    logger.info(
        f"eBayes: prior df={d0:.3g}, prior var={np.median(np.atleast_1d(s0_sq)):.4g}, "
        f"{fit.n_features} features × {fit.n_coef} contrasts"
    )

    # B statistic
    s2_prior_med = float(np.median(np.atleast_1d(s0_sq)))
    var_prior_lim = (stdev_coef_lim[0] ** 2 / s2_prior_med, stdev_coef_lim[1] ** 2 / s2_prior_med)
    var_prior = np.array([
        _tmixture_vector(t[:, j], fit.stdev_unscaled[:, j], df_total, proportion, var_prior_lim)
        for j in range(fit.n_coef)
    ])
    var_prior = np.where(np.isnan(var_prior), 1.0 / s2_prior_med, var_prior)

    with np.errstate(invalid='ignore', divide='ignore'):
        u2 = fit.stdev_unscaled ** 2
        r = (u2 + var_prior[None, :]) / u2
        t2 = t ** 2
        if d0 > 1e6:
            kernel = t2 * (1 - 1 / r) / 2
        else:
            dft = df_total[:, None]
            kernel = (1 + dft) / 2 * np.log((t2 + dft) / (t2 / r + dft))
        lods = np.log(proportion / (1 - proportion)) - np.log(r) / 2 + kernel

    F, F_p = _moderated_f(t, fit.cov_coefficients, df_total)

    return EBayesFit(
        fit=fit,
        t=t,
        p_value=p_value,
        lods=lods,
        s2_prior=s0_sq,
        df_prior=d0,
        s2_post=s2_post,
        df_total=df_total,
        var_prior=var_prior,
        F=F,
        F_p_value=F_p,
        proportion=proportion,
    )


# =============================================================================
# Result tables
# =============================================================================

def top_table(
    ebfit: EBayesFit,
    contrast: int | str = 0,
    adjust: Literal["BH", "BY", "bonferroni", "holm", "none"] = "BH",
    sort_by: Literal["p", "t", "logfc", "B", "none"] = "p",
    number: int | None = None,
    p_value: float = 1.0,
    lfc: float = 0.0,
) -> pd.DataFrame:
    """
    Table of moderated results for one contrast.

    p-values are adjusted across all features before any filtering.

    Args:
        ebfit: Moderated fit
        contrast: Contrast position or name
        adjust: Multiple-testing method
        sort_by: "p" (ascending), "t" / "logfc" / "B" (descending by
            magnitude) or "none" (input order)
        number: Return at most this many rows (all if None)
        p_value: Keep rows with adjusted p-value <= this
        lfc: Keep rows with |log2fc| >= this

    Returns:
        DataFrame indexed by feature id with columns log2fc, ave_expr, t,
        p_value, adj_p_value, B
    """
    j = ebfit.fit.coef_index(contrast)
    table = pd.DataFrame(
        {
            'log2fc': ebfit.fit.coefficients[:, j],
            'ave_expr': ebfit.fit.amean,
            't': ebfit.t[:, j],
            'p_value': ebfit.p_value[:, j],
            'adj_p_value': adjust_pvalues(ebfit.p_value[:, j], method=adjust),
            'B': ebfit.lods[:, j],
        },
        index=ebfit.feature_ids,
    )

    if sort_by == "p":
        table = table.sort_values('p_value', kind='mergesort', na_position='last')
    elif sort_by == "t":
        table = table.reindex(table['t'].abs().sort_values(ascending=False, kind='mergesort').index)
    elif sort_by == "logfc":
        table = table.reindex(table['log2fc'].abs().sort_values(ascending=False, kind='mergesort').index)
    elif sort_by == "B":
        table = table.sort_values('B', ascending=False, kind='mergesort', na_position='last')
    elif sort_by != "none":
        raise ValueError(f"Unknown sort_by {sort_by!r}")

    if p_value < 1.0:
        table = table[table['adj_p_value'] <= p_value]
    if lfc > 0:
        table = table[table['log2fc'].abs() >= lfc]
    if number is not None:
        table = table.head(number)
    return table


def decide_tests(
    ebfit: EBayesFit,
    p_value: float = 0.05,
    lfc: float = 0.0,
    adjust: Literal["BH", "BY", "bonferroni", "holm", "none"] = "BH",
) -> pd.DataFrame:
    """
    Classify each feature as down (-1), not significant (0) or up (1) per contrast.

    Each contrast is adjusted separately. Used to build Venn diagrams of
    overlapping significant sets.
    """
    calls = np.zeros(ebfit.t.shape, dtype=int)
    for j in range(ebfit.t.shape[1]):
        adjusted = adjust_pvalues(ebfit.p_value[:, j], method=adjust)
        coef = ebfit.fit.coefficients[:, j]
        with np.errstate(invalid='ignore'):
            significant = (adjusted < p_value) & (np.abs(coef) >= lfc)
        calls[significant, j] = np.sign(coef[significant]).astype(int)
    return pd.DataFrame(calls, index=ebfit.feature_ids, columns=ebfit.coef_names)
