"""
Statistical layer of the differential-expression analysis.

Exports core functions for:
- Quantile normalization and log transformation
- Design/contrast matrices and surrogate variable estimation
- Per-probe linear models with empirical Bayes moderation
- Multiple testing correction
"""

from .normalization import (
    MissingPolicy,
    NormalizationResult,
    QuantileNormalize,
    Log2Transform,
    quantile_normalize,
    log2_transform,
    normalize_expression,
    assess_normalization,
    distributions_match,
)
from .design_matrix import (
    CovariateTerm,
    DesignMatrix,
    ContrastMatrix,
    build_design_matrix,
    make_contrasts,
)
from .surrogate import SurrogateResult, estimate_surrogate_variables, estimate_n_sv
from .linear_model import LinearModelFit, lm_fit, contrasts_fit
from .ebayes import EBayesFit, ebayes, top_table, decide_tests, fit_f_dist, squeeze_var
from .multiple_testing import adjust_pvalues, significance_mask

__all__ = [
    "MissingPolicy",
    "NormalizationResult",
    "QuantileNormalize",
    "Log2Transform",
    "quantile_normalize",
    "log2_transform",
    "normalize_expression",
    "assess_normalization",
    "distributions_match",
    "CovariateTerm",
    "DesignMatrix",
    "ContrastMatrix",
    "build_design_matrix",
    "make_contrasts",
    "SurrogateResult",
    "estimate_surrogate_variables",
    "estimate_n_sv",
    "LinearModelFit",
    "lm_fit",
    "contrasts_fit",
    "EBayesFit",
    "ebayes",
    "top_table",
    "decide_tests",
    "fit_f_dist",
    "squeeze_var",
    "adjust_pvalues",
    "significance_mask",
]
