"""
Single-SNP association with a binary outcome under inheritance models.

Each SNP is tested by logistic regression (binomial GLM) of case status on a
genotype coding, optionally adjusted for covariates. The p-value is the
likelihood-ratio test against the covariate-only model fitted on the same
samples, so models with different codings stay comparable.

Inheritance models (``m`` = minor allele, ``M`` = major allele):

    =============  ==========================  ====
    model          coding                      df
    =============  ==========================  ====
    codominant     MM (ref) / Mm / mm          2
    dominant       MM (ref) / Mm+mm            1
    recessive      MM+Mm (ref) / mm            1
    overdominant   MM+mm (ref) / Mm            1
    log-additive   0, 1, 2 copies of m         1
    =============  ==========================  ====

Picking the model with the smallest p-value is a multiple comparison. The
scan therefore always reports the max-statistic test alongside it: the
maximum of the trend statistics under dominant, recessive and log-additive
scores, calibrated against its own permutation distribution.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional, Sequence

import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy import stats

from markerscan.genetics.genotypes import GenotypeTable

__all__ = [
    'InheritanceModel',
    'model_column',
    'encode_genotype',
    'encode_outcome',
    'covariate_matrix',
    'ModelFit',
    'fit_inheritance_model',
    'association_test',
    'MaxStatResult',
    'max_statistic_test',
    'association_scan',
]

logger = logging.getLogger(__name__)


class InheritanceModel(str, Enum):
    CODOMINANT = 'codominant'
    DOMINANT = 'dominant'
    RECESSIVE = 'recessive'
    OVERDOMINANT = 'overdominant'
    LOG_ADDITIVE = 'log-additive'


ALL_MODELS = tuple(InheritanceModel)

# Trend scores for the max-statistic test (dosage 0, 1, 2)
MAXSTAT_SCORES = {
    'dominant': (0.0, 1.0, 1.0),
    'recessive': (0.0, 0.0, 1.0),
    'log-additive': (0.0, 1.0, 2.0),
}


def model_column(model: InheritanceModel | str) -> str:
    """Scan-table column holding a model's p-value, e.g. ``p_log_additive``."""
    return 'p_' + InheritanceModel(model).value.replace('-', '_')


def encode_genotype(dosage: pd.Series, model: InheritanceModel | str) -> pd.DataFrame:
    """
    Code a minor-allele dosage under an inheritance model.

    NaN dosages stay NaN in every column.
    """
    model = InheritanceModel(model)
    d = dosage.astype(float)
    missing = d.isna()

    if model is InheritanceModel.CODOMINANT:
        coded = pd.DataFrame({'het': (d == 1).astype(float), 'hom_minor': (d == 2).astype(float)})
    elif model is InheritanceModel.DOMINANT:
        coded = pd.DataFrame({'carrier': (d >= 1).astype(float)})
    elif model is InheritanceModel.RECESSIVE:
        coded = pd.DataFrame({'hom_minor': (d == 2).astype(float)})
    elif model is InheritanceModel.OVERDOMINANT:
        coded = pd.DataFrame({'het': (d == 1).astype(float)})
    else:
        coded = pd.DataFrame({'dosage': d})

    coded.index = dosage.index
    return coded.mask(missing, axis=0)


def encode_outcome(outcome: pd.Series, case=None) -> pd.Series:
    """
    Convert a two-level outcome to 0/1 (1 = case).

    Args:
        outcome: Outcome values; 0/1 numeric columns pass through
        case: Level meaning "case". Defaults to 1 for 0/1 data and to the
            last sorted level otherwise.

    Raises:
        ValueError: If the outcome does not have exactly two levels
    """
    observed = outcome.dropna()
    levels = sorted(observed.unique(), key=str)
    if len(levels) != 2:
        raise ValueError(f"Outcome {outcome.name!r} must have two levels, found {levels}")

    if case is None:
        if set(levels) <= {0, 1}:
            case = 1
        else:
            case = levels[-1]
            logger.info(f"Outcome {outcome.name!r}: treating {case!r} as case")
    elif case not in levels:
        raise ValueError(f"Case level {case!r} not among outcome levels {levels}")

    y = (outcome == case).astype(float)
    y = y.where(outcome.notna())
    return y.rename(outcome.name or 'outcome')


def covariate_matrix(covariates: Optional[pd.DataFrame]) -> pd.DataFrame:
    """Dummy-code categorical covariates (first level as reference)."""
    if covariates is None:
        return pd.DataFrame()
    if covariates.shape[1] == 0:
        return pd.DataFrame(index=covariates.index)
    coded = pd.get_dummies(covariates, drop_first=True, dtype=float)
    # get_dummies leaves NaN rows as all-zero; restore missingness
    coded = coded.mask(covariates.isna().any(axis=1), axis=0)
    return coded.astype(float)


@dataclass(frozen=True)
class ModelFit:
    """
    One inheritance model fitted to one SNP.

    Attributes:
        model: Inheritance model
        n: Complete-case samples
        df: Genotype degrees of freedom in the LRT
        statistic: Likelihood-ratio statistic
        p_value: LRT p-value (NaN when the coding has no variation)
        aic: AIC of the full model
        odds_ratios: DataFrame indexed by genotype term with columns
            odds_ratio, ci_lower, ci_upper
    """

    model: InheritanceModel
    n: int
    df: int
    statistic: float
    p_value: float
    aic: float
    odds_ratios: pd.DataFrame = field(repr=False)


def _glm(y: pd.Series, X: pd.DataFrame, weights=None):
    return sm.GLM(y, X, family=sm.families.Binomial(), freq_weights=weights).fit()


def fit_inheritance_model(
    dosage: pd.Series,
    outcome: pd.Series,
    model: InheritanceModel | str = InheritanceModel.LOG_ADDITIVE,
    covariates: Optional[pd.DataFrame] = None,
) -> ModelFit:
    """
    Logistic regression of a 0/1 outcome on a coded genotype.

    Args:
        dosage: Minor-allele dosage per sample
        outcome: 0/1 outcome (see ``encode_outcome``), same index as dosage
        model: Inheritance model
        covariates: Adjustment covariates indexed like dosage

    Returns:
        ModelFit with LRT p-value against the covariate-only model
    """
    model = InheritanceModel(model)
    coded = encode_genotype(dosage, model)
    cov = covariate_matrix(covariates)
    parts = [outcome.rename('__y__'), coded]
    if cov.shape[1]:
        parts.append(cov)
    frame = pd.concat(parts, axis=1, join='inner').dropna()
    if frame.empty:
        raise ValueError("No complete cases for association test")

    y = frame['__y__']
    genotype_cols = [c for c in coded.columns if frame[c].nunique() > 1]
    cov_cols = [c for c in cov.columns if frame[c].nunique() > 1]
    empty_or = pd.DataFrame(columns=['odds_ratio', 'ci_lower', 'ci_upper'], dtype=float)

    if y.nunique() < 2:
        raise ValueError("Outcome has a single level among complete cases")

    X_red = frame[cov_cols].copy()
    X_red.insert(0, 'const', 1.0)
    fit_red = _glm(y, X_red)

    if not genotype_cols:
        logger.debug(f"{dosage.name}: no genotype variation under {model.value} model")
        return ModelFit(model, len(frame), 0, np.nan, np.nan, float(fit_red.aic), empty_or)

    X_full = pd.concat([X_red, frame[genotype_cols]], axis=1)
    fit_full = _glm(y, X_full)

    llr = max(2 * (fit_full.llf - fit_red.llf), 0.0)
    df = len(genotype_cols)
    p_value = float(stats.chi2.sf(llr, df))

    ci = fit_full.conf_int(alpha=0.05)
    odds = pd.DataFrame({
        'odds_ratio': np.exp(fit_full.params[genotype_cols]),
        'ci_lower': np.exp(ci.loc[genotype_cols, 0]),
        'ci_upper': np.exp(ci.loc[genotype_cols, 1]),
    })
    return ModelFit(model, len(frame), df, float(llr), p_value, float(fit_full.aic), odds)


def association_test(
    dosage: pd.Series,
    outcome: pd.Series,
    covariates: Optional[pd.DataFrame] = None,
    models: Sequence[InheritanceModel | str] = ALL_MODELS,
) -> pd.DataFrame:
    """
    Fit several inheritance models to one SNP.

    Returns:
        Long DataFrame, one row per (model, genotype term), with columns
        model, term, odds_ratio, ci_lower, ci_upper, n, df, statistic,
        p_value, aic
    """
    rows = []
    for model in models:
        fit = fit_inheritance_model(dosage, outcome, model, covariates)
        terms = fit.odds_ratios if not fit.odds_ratios.empty else pd.DataFrame(
            {'odds_ratio': [np.nan], 'ci_lower': [np.nan], 'ci_upper': [np.nan]}, index=['']
        )
        for term, ratio in terms.iterrows():
            rows.append({
                'model': fit.model.value,
                'term': term,
                'odds_ratio': ratio['odds_ratio'],
                'ci_lower': ratio['ci_lower'],
                'ci_upper': ratio['ci_upper'],
                'n': fit.n,
                'df': fit.df,
                'statistic': fit.statistic,
                'p_value': fit.p_value,
                'aic': fit.aic,
            })
    return pd.DataFrame(rows)


# =============================================================================
# Max-statistic test
# =============================================================================

@dataclass(frozen=True)
class MaxStatResult:
    """
    Max-statistic test over trend scores.

    Attributes:
        statistic: Maximum trend statistic across scores
        p_value: Permutation p-value of the maximum, (1 + #{perm >= obs}) / (B + 1)
        statistics: Trend statistic per score
        best_score: Score attaining the maximum
        naive_p_value: Smallest asymptotic per-score p-value (uncorrected,
            for comparison only)
        n_permutations: B
    """

    statistic: float
    p_value: float
    statistics: dict
    best_score: str
    naive_p_value: float
    n_permutations: int


def _trend_statistics(scores: np.ndarray, y: np.ndarray) -> np.ndarray:
    """
    Cochran-Armitage trend statistics N * r^2 for each score column.

    Args:
        scores: (n, k) score matrix
        y: (n,) or (B, n) outcomes

    Returns:
        (k,) or (B, k) statistics; constant scores give 0
    """
    n = scores.shape[0]
    s = scores - scores.mean(axis=0)
    s_norm = np.sqrt((s ** 2).sum(axis=0))
    yc = y - y.mean(axis=-1, keepdims=True)
    y_norm = np.sqrt((yc ** 2).sum(axis=-1, keepdims=True))
    with np.errstate(invalid='ignore', divide='ignore'):
        r = (yc @ s) / (y_norm * s_norm)
    r = np.where(np.isfinite(r), r, 0.0)
    return n * r ** 2


def max_statistic_test(
    dosage: pd.Series | np.ndarray,
    outcome: pd.Series | np.ndarray,
    n_permutations: int = 1000,
    random_state: Optional[int | np.random.Generator] = None,
    batch_size: int = 500,
) -> MaxStatResult:
    """
    Max-statistic test across dominant, recessive and log-additive scores.

    The outcome labels are permuted ``n_permutations`` times; the maximum
    statistic over scores is recomputed for each permutation, so the
    returned p-value accounts for choosing the best score.

    Args:
        dosage: Minor-allele dosage (0/1/2, NaN = missing)
        outcome: 0/1 outcome aligned with dosage
        n_permutations: Number of label permutations
        random_state: Seed or Generator
        batch_size: Permutations evaluated per vectorized batch

    Returns:
        MaxStatResult
    """
    if n_permutations < 1:
        raise ValueError(f"n_permutations must be >= 1, got {n_permutations}")
    d = np.asarray(dosage, dtype=float)
    y = np.asarray(outcome, dtype=float)
    if d.shape != y.shape:
        raise ValueError(f"dosage and outcome lengths differ: {d.shape} vs {y.shape}")
    keep = ~(np.isnan(d) | np.isnan(y))
    d, y = d[keep].astype(int), y[keep]

    names = list(MAXSTAT_SCORES)
    lookup = np.array([MAXSTAT_SCORES[k] for k in names])  # (k, 3)
    scores = lookup[:, d].T if d.size else np.zeros((0, len(names)))

    if d.size < 2 or np.unique(y).size < 2:
        logger.warning("Max-statistic test: fewer than two samples or a single outcome level")
        zeros = {k: 0.0 for k in names}
        return MaxStatResult(0.0, 1.0, zeros, names[0], 1.0, n_permutations)

    observed = _trend_statistics(scores, y)
    max_obs = float(observed.max())

    rng = np.random.default_rng(random_state)
    exceed = 0
    done = 0
    while done < n_permutations:
        b = min(batch_size, n_permutations - done)
        permuted = rng.permuted(np.tile(y, (b, 1)), axis=1)
        max_perm = _trend_statistics(scores, permuted).max(axis=1)
        exceed += int(np.sum(max_perm >= max_obs - 1e-10))
        done += b

    naive = float(stats.chi2.sf(observed, 1).min())
    return MaxStatResult(
        statistic=max_obs,
        p_value=(1 + exceed) / (n_permutations + 1),
        statistics=dict(zip(names, observed.tolist())),
        best_score=names[int(observed.argmax())],
        naive_p_value=naive,
        n_permutations=n_permutations,
    )


def association_scan(
    genotypes: GenotypeTable,
    outcome: pd.Series,
    covariates: Optional[pd.DataFrame] = None,
    snps: Optional[Iterable[str]] = None,
    models: Sequence[InheritanceModel | str] = ALL_MODELS,
    n_permutations: int = 1000,
    random_state: Optional[int | np.random.Generator] = None,
) -> pd.DataFrame:
    """
    Test every SNP under every inheritance model.

    Args:
        genotypes: Genotype table
        outcome: 0/1 outcome indexed by sample id
        covariates: Adjustment covariates indexed by sample id
        snps: SNPs to test (all by default)
        models: Inheritance models
        n_permutations: Permutations for the max-statistic correction
        random_state: Seed or Generator shared across SNPs

    Returns:
        DataFrame indexed by SNP with one ``model_column`` per model, best_model,
        min_p, maxstat, p_maxstat, or_log_additive, ci_lower, ci_upper,
        minor_allele, maf, n. ``min_p`` is uncorrected; use ``p_maxstat``
        for the best-model decision.
    """
    snps = list(snps) if snps is not None else genotypes.snps
    models = [InheritanceModel(m) for m in models]
    outcome = outcome.copy()
    outcome.index = outcome.index.astype(str)
    outcome = outcome.reindex(genotypes.sample_ids)
    if covariates is not None:
        covariates = covariates.copy()
        covariates.index = covariates.index.astype(str)
        covariates = covariates.reindex(genotypes.sample_ids)

    rng = np.random.default_rng(random_state)
    rows = []
    for snp in snps:
        if not genotypes.is_polymorphic(snp):
            logger.warning(f"Skipping monomorphic SNP {snp}")
            continue
        dosage = genotypes.dosage(snp)
        row = {'snp': snp}
        fits = {}
        for model in models:
            fit = fit_inheritance_model(dosage, outcome, model, covariates)
            fits[model] = fit
            row[model_column(model)] = fit.p_value

        p_by_model = {m.value: f.p_value for m, f in fits.items() if np.isfinite(f.p_value)}
        if p_by_model:
            best = min(p_by_model, key=p_by_model.get)
            row['best_model'] = best
            row['min_p'] = p_by_model[best]
        else:
            row['best_model'] = None
            row['min_p'] = np.nan

        maxstat = max_statistic_test(dosage, outcome, n_permutations, random_state=rng)
        row['maxstat'] = maxstat.statistic
        row['p_maxstat'] = maxstat.p_value

        additive = fits.get(InheritanceModel.LOG_ADDITIVE)
        if additive is None:
            additive = fit_inheritance_model(dosage, outcome, InheritanceModel.LOG_ADDITIVE, covariates)
        if 'dosage' in additive.odds_ratios.index:
            row['or_log_additive'] = additive.odds_ratios.loc['dosage', 'odds_ratio']
            row['ci_lower'] = additive.odds_ratios.loc['dosage', 'ci_lower']
            row['ci_upper'] = additive.odds_ratios.loc['dosage', 'ci_upper']
        else:
            row['or_log_additive'] = row['ci_lower'] = row['ci_upper'] = np.nan

        row['minor_allele'] = genotypes.alleles(snp)[1]
        row['maf'] = genotypes.minor_allele_frequency(snp)
        row['n'] = additive.n
        rows.append(row)

    if not rows:
        return pd.DataFrame()
    table = pd.DataFrame(rows).set_index('snp')
    logger.info(
        f"Association scan: {len(table)} SNPs, "
        f"{int((table['p_maxstat'] < 0.05).sum())} with max-statistic p < 0.05"
    )
    return table
