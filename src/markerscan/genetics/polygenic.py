"""
Unweighted polygenic risk score.

Steps:
    1. Screen: log-additive test per SNP, keep p < threshold (lenient, 0.1)
    2. Recode survivors as risk-allele dosages (0/1/2 copies of the allele
       with OR > 1)
    3. Forward stepwise selection under a binomial model by AIC
    4. Score = sum of selected risk dosages
    5. Test the score's association with the outcome (OR per risk allele)
       and its discrimination (ROC / AUC)

Selection and scoring use complete cases over the candidate SNPs, so every
model compared by AIC is fitted on the same samples.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional, Sequence

import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy import stats

from markerscan.genetics.association import (
    InheritanceModel,
    covariate_matrix,
    fit_inheritance_model,
)
from markerscan.genetics.genotypes import GenotypeTable

__all__ = [
    'screen_snps',
    'risk_dosages',
    'forward_stepwise',
    'polygenic_score',
    'ScoreTest',
    'score_association',
    'ROCResult',
    'roc_analysis',
    'PolygenicModel',
    'build_polygenic_model',
]

logger = logging.getLogger(__name__)


def _align(series_or_frame, index: pd.Index):
    if series_or_frame is None:
        return None
    aligned = series_or_frame.copy()
    aligned.index = aligned.index.astype(str)
    return aligned.reindex(index)


def screen_snps(
    genotypes: GenotypeTable,
    outcome: pd.Series,
    covariates: Optional[pd.DataFrame] = None,
    threshold: float = 0.1,
    snps: Optional[Sequence[str]] = None,
) -> pd.DataFrame:
    """
    Univariate log-additive screen.

    Returns:
        DataFrame indexed by SNP with columns odds_ratio, p_value,
        risk_allele, selected (p < threshold)
    """
    if not 0 < threshold <= 1:
        raise ValueError(f"threshold must be in (0, 1], got {threshold}")
    snps = list(snps) if snps is not None else genotypes.snps
    outcome = _align(outcome, genotypes.sample_ids)
    covariates = _align(covariates, genotypes.sample_ids)

    rows = []
    for snp in snps:
        major, minor = genotypes.alleles(snp)
        if minor is None:
            logger.debug(f"Screen: skipping monomorphic SNP {snp}")
            continue
        fit = fit_inheritance_model(genotypes.dosage(snp), outcome, InheritanceModel.LOG_ADDITIVE, covariates)
        odds_ratio = fit.odds_ratios['odds_ratio'].iloc[0] if not fit.odds_ratios.empty else np.nan
        rows.append({
            'snp': snp,
            'odds_ratio': odds_ratio,
            'p_value': fit.p_value,
            'risk_allele': minor if not odds_ratio < 1 else major,
        })

    table = pd.DataFrame(rows, columns=['snp', 'odds_ratio', 'p_value', 'risk_allele']).set_index('snp')
    table['selected'] = table['p_value'] < threshold
    logger.info(f"Screen: {int(table['selected'].sum())}/{len(table)} SNPs with p < {threshold}")
    return table


def risk_dosages(genotypes: GenotypeTable, risk_alleles: dict[str, str]) -> pd.DataFrame:
    """Samples x SNPs copies of each SNP's risk allele (NaN when missing)."""
    return genotypes.dosage_matrix(list(risk_alleles), alleles=risk_alleles)


def _aic(y: pd.Series, X: pd.DataFrame) -> float:
    return float(sm.GLM(y, X, family=sm.families.Binomial()).fit().aic)


def forward_stepwise(
    dosages: pd.DataFrame,
    outcome: pd.Series,
    covariates: Optional[pd.DataFrame] = None,
    max_steps: Optional[int] = None,
) -> tuple[list[str], pd.DataFrame]:
    """
    Forward selection of SNPs by AIC.

    Starts from the intercept (plus covariates) and adds, at each step, the
    SNP that lowers AIC the most; stops when no addition lowers AIC.

    Args:
        dosages: Samples x candidate SNPs
        outcome: 0/1 outcome indexed like dosages
        covariates: Covariates kept in every model
        max_steps: Cap on the number of SNPs added

    Returns:
        (selected SNPs in order of entry, history DataFrame with columns
        step, added, aic)
    """
    cov = covariate_matrix(covariates)
    parts = [outcome.rename('__y__'), dosages]
    if cov.shape[1]:
        parts.append(cov)
    frame = pd.concat(parts, axis=1, join='inner').dropna()
    if frame.empty:
        raise ValueError("No complete cases for stepwise selection")
    n_dropped = len(dosages) - len(frame)
    if n_dropped:
        logger.info(f"Stepwise selection: {n_dropped} samples with missing values excluded")

    y = frame['__y__']
    base = frame[list(cov.columns)].copy()
    base.insert(0, 'const', 1.0)

    current_aic = _aic(y, base)
    history = [{'step': 0, 'added': None, 'aic': current_aic}]
    selected: list[str] = []
    remaining = [c for c in dosages.columns if frame[c].nunique() > 1]
    limit = max_steps if max_steps is not None else len(remaining)

    while remaining and len(selected) < limit:
        candidates = {
            snp: _aic(y, pd.concat([base, frame[selected + [snp]]], axis=1))
            for snp in remaining
        }
        best = min(candidates, key=candidates.get)
        if candidates[best] >= current_aic:
            break
        current_aic = candidates[best]
        selected.append(best)
        remaining.remove(best)
        history.append({'step': len(selected), 'added': best, 'aic': current_aic})
        logger.debug(f"Stepwise: added {best} (AIC {current_aic:.2f})")

    logger.info(f"Stepwise selection kept {len(selected)} SNPs: {selected}")
    return selected, pd.DataFrame(history)


def polygenic_score(dosages: pd.DataFrame, snps: Optional[Sequence[str]] = None) -> pd.Series:
    """Unweighted sum of risk dosages; NaN when any selected call is missing."""
    snps = list(snps) if snps is not None else list(dosages.columns)
    return dosages[snps].sum(axis=1, skipna=False, min_count=len(snps)).rename('score')


@dataclass(frozen=True)
class ScoreTest:
    """Association of the score with the outcome (per risk allele)."""

    odds_ratio: float
    ci_lower: float
    ci_upper: float
    p_value: float
    n: int


def score_association(
    score: pd.Series,
    outcome: pd.Series,
    covariates: Optional[pd.DataFrame] = None,
) -> ScoreTest:
    """
    Logistic regression of the outcome on the score.

    The p-value is the LRT against the intercept (plus covariates) model on
    the same samples.
    """
    cov = covariate_matrix(covariates)
    parts = [outcome.rename('__y__'), score.rename('__score__')]
    if cov.shape[1]:
        parts.append(cov)
    frame = pd.concat(parts, axis=1, join='inner').dropna()
    if frame['__y__'].nunique() < 2:
        raise ValueError("Outcome has a single level among scored samples")

    y = frame['__y__']
    X_red = frame[list(cov.columns)].copy()
    X_red.insert(0, 'const', 1.0)
    X_full = X_red.assign(score=frame['__score__'])

    family = sm.families.Binomial()
    fit_red = sm.GLM(y, X_red, family=family).fit()
    fit_full = sm.GLM(y, X_full, family=family).fit()
    llr = max(2 * (fit_full.llf - fit_red.llf), 0.0)
    ci = fit_full.conf_int(alpha=0.05)
    return ScoreTest(
        odds_ratio=float(np.exp(fit_full.params['score'])),
        ci_lower=float(np.exp(ci.loc['score', 0])),
        ci_upper=float(np.exp(ci.loc['score', 1])),
        p_value=float(stats.chi2.sf(llr, 1)),
        n=len(frame),
    )




@dataclass(frozen=True)
class ROCResult:
    """ROC curve of a score against a 0/1 outcome."""

    fpr: np.ndarray = field(repr=False)
    tpr: np.ndarray = field(repr=False)
    thresholds: np.ndarray = field(repr=False)
    auc: float = np.nan
    n: int = 0


def roc_analysis(score: pd.Series, outcome: pd.Series) -> ROCResult:
    """
    ROC curve and AUC, samples with a missing score or outcome excluded.

    Raises:
        ValueError: If only one outcome class remains
    """
    from sklearn.metrics import roc_auc_score, roc_curve

    frame = pd.concat([score.rename('score'), outcome.rename('outcome')], axis=1, join='inner').dropna()
    if frame['outcome'].nunique() < 2:
        raise ValueError("ROC analysis needs both outcome classes")
    fpr, tpr, thresholds = roc_curve(frame['outcome'], frame['score'])
    auc = float(roc_auc_score(frame['outcome'], frame['score']))
    logger.info(f"ROC: AUC={auc:.3f} over {len(frame)} samples")
    return ROCResult(fpr=fpr, tpr=tpr, thresholds=thresholds, auc=auc, n=len(frame))


@dataclass(frozen=True)
class PolygenicModel:
    """
    Result of the screen / stepwise / score pipeline.

    Attributes:
        screen: Per-SNP screen table (see ``screen_snps``)
        risk_alleles: Selected SNP -> risk allele
        selected: SNPs in the score, in order of stepwise entry
        stepwise_history: AIC path
        score: Score per sample
        score_test: Association of the score with the outcome
        roc: Discrimination of the score
    """

    screen: pd.DataFrame
    risk_alleles: dict
    selected: list
    stepwise_history: pd.DataFrame
    score: pd.Series
    score_test: ScoreTest
    roc: ROCResult


def build_polygenic_model(
    genotypes: GenotypeTable,
    outcome: pd.Series,
    covariates: Optional[pd.DataFrame] = None,
    threshold: float = 0.1,
    snps: Optional[Sequence[str]] = None,
) -> PolygenicModel:
    """
    Run the full polygenic scoring pipeline.

    Raises:
        ValueError: If no SNP passes the screen or stepwise selection keeps
            no SNP
    """
    outcome = _align(outcome, genotypes.sample_ids)
    covariates = _align(covariates, genotypes.sample_ids)

    screen = screen_snps(genotypes, outcome, covariates, threshold=threshold, snps=snps)
    candidates = list(screen.index[screen['selected']])
    if not candidates:
        raise ValueError(f"No SNP passed the screen at p < {threshold}")

    candidate_alleles = {snp: screen.loc[snp, 'risk_allele'] for snp in candidates}
    dosages = risk_dosages(genotypes, candidate_alleles)
    selected, history = forward_stepwise(dosages, outcome, covariates)
    if not selected:
        raise ValueError("Stepwise selection did not keep any SNP")

    score = polygenic_score(dosages, selected)
    score_result = score_association(score, outcome, covariates)
    roc = roc_analysis(score, outcome)
    logger.info(
        f"Polygenic score over {len(selected)} SNPs: OR per allele "
        f"{score_result.odds_ratio:.2f} ({score_result.ci_lower:.2f}-{score_result.ci_upper:.2f}), "
        f"p={score_result.p_value:.3g}, AUC={roc.auc:.3f}"
    )
    return PolygenicModel(
        screen=screen,
        risk_alleles={snp: candidate_alleles[snp] for snp in selected},
        selected=selected,
        stepwise_history=history,
        score=score,
        score_test=score_result,
        roc=roc,
    )
