"""
Multiple-testing correction for per-probe and per-term p-values.

Thin layer over ``statsmodels.stats.multitest.multipletests`` that keeps NaN
p-values (features that could not be tested) in place instead of letting them
poison the ranking, and rejects values outside [0, 1].
"""

from __future__ import annotations

from typing import Literal

import numpy as np
import pandas as pd
from numpy.typing import NDArray

__all__ = ['ADJUST_METHODS', 'adjust_pvalues', 'significance_mask']

ADJUST_METHODS = {
    "BH": "fdr_bh",
    "BY": "fdr_by",
    "bonferroni": "bonferroni",
    "holm": "holm",
}


def adjust_pvalues(
    pvalues: NDArray[np.float64] | pd.Series,
    method: Literal["BH", "BY", "bonferroni", "holm", "none"] = "BH",
) -> NDArray[np.float64] | pd.Series:
    """
    Adjust p-values for multiple testing.

    Args:
        pvalues: Raw p-values. NaN entries are excluded from the family and
            returned as NaN.
        method: "BH" (Benjamini-Hochberg FDR), "BY" (Benjamini-Yekutieli),
            "bonferroni", "holm", or "none" (returns a copy)

    Returns:
        Adjusted p-values, same shape and type as the input (a Series keeps
        its index). Adjusted values are never below the raw values and are
        monotone in the order of the raw values.

    Raises:
        ValueError: If a p-value lies outside [0, 1] or the method is unknown
    """
    from statsmodels.stats.multitest import multipletests

    index = pvalues.index if isinstance(pvalues, pd.Series) else None
    values = np.asarray(pvalues, dtype=np.float64)
    shape = values.shape
    values = values.ravel()

    valid = ~np.isnan(values)
    if np.any((values[valid] < 0) | (values[valid] > 1)):
        bad = values[valid][(values[valid] < 0) | (values[valid] > 1)]
        raise ValueError(f"p-values must lie in [0, 1], got e.g. {bad[:3].tolist()}")

    adjusted = np.full_like(values, np.nan)
    if method == "none":
        adjusted[valid] = values[valid]
    elif method not in ADJUST_METHODS:
        raise ValueError(f"Unknown adjustment method {method!r}; choose from {list(ADJUST_METHODS)}")
    elif np.any(valid):
        _, adjusted[valid], _, _ = multipletests(values[valid], method=ADJUST_METHODS[method])

    adjusted = adjusted.reshape(shape)
    if index is not None:
        return pd.Series(adjusted, index=index, name=getattr(pvalues, 'name', None))
    return adjusted


def significance_mask(
    adjusted: NDArray[np.float64] | pd.Series,
    threshold: float = 0.05,
) -> NDArray[np.bool_]:
    """True where the adjusted p-value is below ``threshold`` (NaN is never significant)."""
    if not 0 < threshold <= 1:
        raise ValueError(f"threshold must be in (0, 1], got {threshold}")
    values = np.asarray(adjusted, dtype=np.float64)
    with np.errstate(invalid='ignore'):
        return np.where(np.isnan(values), False, values < threshold)
