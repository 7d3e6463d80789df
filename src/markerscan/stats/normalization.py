"""
Quantile normalization and log transformation of microarray intensities.

Array-to-array differences in overall brightness, scanner settings and
hybridization efficiency shift whole intensity distributions. Quantile
normalization removes these by forcing every array onto one reference
distribution (the mean of the sorted arrays), after which intensities are
moved to the log2 scale where the linear model is fitted.

Missing intensities:
    Three policies are available through ``MissingPolicy``:

    - PROPAGATE (default): NaN stays in place and keeps its MISSING_ORIGINAL
      flag. Observed values of each array are mapped by relative rank onto
      the reference quantiles, which are built from every array's observed
      values interpolated onto a common grid.
    - ERROR: any NaN raises ValueError.
    - IMPUTE: as PROPAGATE, then NaN is filled with the feature's median
      normalized value and flagged IMPUTED.

    A warning is logged whenever NaN is present.

Ties:
    Tied values receive the average rank (``scipy.stats.rankdata``), which
    maps them onto the mean of the reference quantiles they span. The
    result does not depend on input order.

References:
    - Bolstad et al. (2003) Bioinformatics 19(2):185-193

Examples:
    >>> from markerscan.stats.normalization import normalize_expression, distributions_match
    >>> normalized = normalize_expression(raw_matrix)
    >>> distributions_match(normalized.data)
    True
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from enum import Enum

import numpy as np
from numpy.typing import NDArray
from scipy.stats import rankdata

from markerscan.core.biomatrix import BioMatrix
from markerscan.core.quality import QualityFlag
from markerscan.core.transform import Transform

__all__ = [
    'MissingPolicy',
    'NormalizationResult',
    'quantile_normalize',
    'log2_transform',
    'QuantileNormalize',
    'Log2Transform',
    'normalize_expression',
    'assess_normalization',
    'distributions_match',
]

logger = logging.getLogger(__name__)


class MissingPolicy(Enum):
    """How quantile normalization treats missing intensities."""

    PROPAGATE = "propagate"
    ERROR = "error"
    IMPUTE = "impute"


@dataclass(frozen=True)
class NormalizationResult:
    """Result of quantile normalization.

    Attributes:
        data: Normalized matrix (features × samples)
        reference: Reference quantiles (length n_features)
        n_missing: NaN count in the input
        imputed_mask: True where a value was filled by the IMPUTE policy
    """

    data: NDArray[np.float64]
    reference: NDArray[np.float64]
    n_missing: int
    imputed_mask: NDArray[np.bool_] = field(repr=False)


def _reference_quantiles(data: NDArray[np.float64]) -> NDArray[np.float64]:
    """Mean of the sorted observed values of each array on a common grid."""
    n_features = data.shape[0]
    grid = np.linspace(0.0, 1.0, n_features)
    columns = []
    for j in range(data.shape[1]):
        observed = np.sort(data[~np.isnan(data[:, j]), j])
        if observed.size == 0:
            continue
        if observed.size == 1:
            columns.append(np.full(n_features, observed[0]))
        elif observed.size == n_features:
            columns.append(observed)
        else:
            columns.append(np.interp(grid, np.linspace(0.0, 1.0, observed.size), observed))

    if not columns:
        raise ValueError("Cannot quantile normalize: every value is missing")
    return np.mean(np.vstack(columns), axis=0)


def quantile_normalize(
    data: NDArray[np.float64],
    missing: MissingPolicy | str = MissingPolicy.PROPAGATE,
) -> NormalizationResult:
    """
    Quantile normalize a features × samples matrix.

    Args:
        data: 2D intensity matrix
        missing: Missing-value policy (see module docstring)

    Returns:
        NormalizationResult. With no missing values every column of
        ``result.data`` is a permutation of ``result.reference`` (up to
        averaging within ties).

    Raises:
        ValueError: If data is not 2D, or contains NaN under
            MissingPolicy.ERROR
    """
    missing = MissingPolicy(missing)
    data = np.asarray(data, dtype=np.float64)
    if data.ndim != 2:
        raise ValueError(f"Expected 2D array, got {data.ndim}D")

    n_features, n_samples = data.shape
    nan_mask = np.isnan(data)
    n_missing = int(nan_mask.sum())

    if n_missing:
        if missing is MissingPolicy.ERROR:
            raise ValueError(
                f"Input contains {n_missing} missing values; "
                f"choose the 'propagate' or 'impute' missing-value policy"
            )
        logger.warning(
            f"Quantile normalization input has {n_missing} missing values "
            f"({100 * n_missing / data.size:.2f}%), policy={missing.value}"
        )

    reference = _reference_quantiles(data)
    grid = np.linspace(0.0, 1.0, n_features)
    normalized = np.full_like(data, np.nan)

    for j in range(n_samples):
        valid = ~nan_mask[:, j]
        n_valid = int(valid.sum())
        if n_valid == 0:
            continue
        if n_valid == 1:
            normalized[valid, j] = np.median(reference)
            continue
        ranks = rankdata(data[valid, j], method='average')
        positions = (ranks - 1.0) / (n_valid - 1.0)
        normalized[valid, j] = np.interp(positions, grid, reference)

    imputed_mask = np.zeros_like(nan_mask)
    if n_missing and missing is MissingPolicy.IMPUTE:
        with warnings.catch_warnings():
            warnings.simplefilter('ignore', RuntimeWarning)
            feature_medians = np.nanmedian(normalized, axis=1)
        fill_rows, fill_cols = np.where(nan_mask)
        fillable = ~np.isnan(feature_medians[fill_rows])
        normalized[fill_rows[fillable], fill_cols[fillable]] = feature_medians[fill_rows[fillable]]
        imputed_mask[fill_rows[fillable], fill_cols[fillable]] = True
        n_unfilled = int((~fillable).sum())
        if n_unfilled:
            logger.warning(f"{n_unfilled} values left missing: feature has no observed values")

    return NormalizationResult(
        data=normalized,
        reference=reference,
        n_missing=n_missing,
        imputed_mask=imputed_mask,
    )


def log2_transform(
    data: NDArray[np.float64],
    pseudocount: float = 0.0,
) -> tuple[NDArray[np.float64], NDArray[np.bool_]]:
    """
    Compute ``log2(data + pseudocount)``.

    Returns:
        Tuple of (log values, nonpositive mask). Entries that are ``<= 0``
        after adding the pseudocount become NaN and are marked in the mask.
    """
    shifted = np.asarray(data, dtype=np.float64) + pseudocount
    nonpositive = shifted <= 0
    result = np.full_like(shifted, np.nan)
    ok = ~nonpositive & ~np.isnan(shifted)
    result[ok] = np.log2(shifted[ok])

    n_bad = int(nonpositive.sum())
    if n_bad:
        logger.warning(f"{n_bad} values <= 0 before log2 transform were set to NaN")
    return result, nonpositive


class QuantileNormalize(Transform):
    """Quantile normalization as a BioMatrix transform."""

    def __init__(self, missing: MissingPolicy | str = MissingPolicy.PROPAGATE):
        self.missing = MissingPolicy(missing)
        super().__init__(name="QuantileNormalize", params={"missing": self.missing.value})

    def validate(self, matrix: BioMatrix) -> list[str]:
        errors = super().validate(matrix)
        if matrix.n_samples < 2:
            errors.append("Quantile normalization needs at least 2 samples")
        return errors

    def apply(self, matrix: BioMatrix) -> BioMatrix:
        result = quantile_normalize(matrix.data, missing=self.missing)
        flags = matrix.quality_flags.copy()
        flags[~np.isnan(matrix.data)] |= int(QualityFlag.QUANTILE_NORMALIZED)
        flags[result.imputed_mask] |= int(QualityFlag.IMPUTED)
        logger.info(f"Quantile normalized {matrix.n_features} features × {matrix.n_samples} samples")
        return matrix.with_data(result.data, quality_flags=flags)


class Log2Transform(Transform):
    """log2(x + pseudocount); nonpositive values become NaN flagged NONPOSITIVE."""

    def __init__(self, pseudocount: float = 0.0):
        if pseudocount < 0:
            raise ValueError(f"pseudocount must be >= 0, got {pseudocount}")
        self.pseudocount = pseudocount
        super().__init__(name="Log2Transform", params={"pseudocount": pseudocount})

    def apply(self, matrix: BioMatrix) -> BioMatrix:
        values, nonpositive = log2_transform(matrix.data, self.pseudocount)
        flags = matrix.quality_flags.copy()
        flags |= int(QualityFlag.LOG_TRANSFORMED)
        flags[nonpositive] |= int(QualityFlag.NONPOSITIVE)
        return matrix.with_data(values, quality_flags=flags)


def normalize_expression(
    matrix: BioMatrix,
    missing: MissingPolicy | str = MissingPolicy.PROPAGATE,
    pseudocount: float = 0.0,
    log_transform: bool = True,
) -> BioMatrix:
    """
    Quantile normalize raw intensities, then log2 transform them.

    Args:
        matrix: Raw (linear scale) intensities
        missing: Missing-value policy
        pseudocount: Added before the log
        log_transform: Skip the log step for data already on the log scale

    Returns:
        New BioMatrix; the input is not modified.
    """
    steps: list[Transform] = [QuantileNormalize(missing=missing)]
    if log_transform:
        steps.append(Log2Transform(pseudocount=pseudocount))

    logger.info("Normalization: " + " -> ".join(str(step) for step in steps))
    for step in steps:
        matrix = step(matrix)
    return matrix


def assess_normalization(
    before: NDArray[np.float64],
    after: NDArray[np.float64],
) -> dict:
    """
    Compare per-sample distributions before and after normalization.

    Returns:
        Dictionary with per-sample medians, the range of sample medians and
        the largest per-quantile spread across samples (at the 5th, 25th,
        50th, 75th and 95th percentiles), each before and after. A good
        quantile normalization drives ``quantile_spread_after`` to ~0.
    """
    probs = [0.05, 0.25, 0.5, 0.75, 0.95]

    def summarize(data):
        medians = np.nanmedian(data, axis=0)
        quantiles = np.nanquantile(data, probs, axis=0)
        return medians, float(np.ptp(medians)), float(np.max(np.ptp(quantiles, axis=1)))

    med_before, range_before, spread_before = summarize(np.asarray(before, dtype=np.float64))
    med_after, range_after, spread_after = summarize(np.asarray(after, dtype=np.float64))

    return {
        "sample_medians_before": med_before.tolist(),
        "sample_medians_after": med_after.tolist(),
        "median_range_before": range_before,
        "median_range_after": range_after,
        "quantile_spread_before": spread_before,
        "quantile_spread_after": spread_after,
    }


def distributions_match(data: NDArray[np.float64], tol: float = 1e-8) -> bool:
    """
    True when every sample has the same empirical distribution.

    Without missing values the sorted columns are compared directly;
    otherwise quantiles of the observed values on a 101-point grid.
    """
    data = np.asarray(data, dtype=np.float64)
    if np.isnan(data).any():
        columns = np.nanquantile(data, np.linspace(0, 1, 101), axis=0).T
    else:
        columns = np.sort(data, axis=0).T
    return bool(np.all(np.abs(columns - columns[0]) <= tol))
