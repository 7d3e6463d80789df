"""
Design and contrast matrices for per-probe linear models.

Designs are built from an explicit list of ``CovariateTerm``s rather than a
formula string, so that every column of X can be traced to a phenotype
column and level:

    X = [intercept | group dummies | covariate columns | surrogate variables]

Coding:
    - With an intercept, categorical terms use treatment coding against a
      reference level (first sorted level unless given).
    - Without an intercept, the first categorical term is coded as cell
      means (one column per level), as in ``model.matrix(~0 + group)``.
    - Numeric covariates are standardized (zero mean, unit variance) unless
      the term asks otherwise.

Samples with a missing value in any term are dropped and reported through
``sample_mask``. Rank-deficient designs raise ValueError; a condition number
above 30 issues a warning.

Contrasts:
    ``make_contrasts`` accepts either weight dictionaries over column names
    or expressions such as ``"AD - control"`` whose tokens are column names
    or levels of a categorical term. Because both codings give every level a
    coefficient vector (zero for a treatment-coding reference), a level
    difference is always the difference of those vectors.

Examples:
    >>> terms = [CovariateTerm("disease_state", reference="control"),
    ...          CovariateTerm("age", kind="numeric")]
    >>> design = build_design_matrix(phenotypes, terms)
    >>> contrasts = make_contrasts(design, {"AD_vs_control": "AD - control"})
"""

from __future__ import annotations

import logging
import re
import warnings
from dataclasses import dataclass, field
from typing import Literal, Mapping, Sequence

import numpy as np
import pandas as pd
from numpy.typing import NDArray

__all__ = [
    'CovariateTerm',
    'DesignMatrix',
    'ContrastMatrix',
    'build_design_matrix',
    'make_contrasts',
]

logger = logging.getLogger(__name__)

INTERCEPT = "Intercept"
CONDITION_NUMBER_WARNING = 30.0
IMBALANCE_WARNING_RATIO = 3.0


@dataclass(frozen=True)
class CovariateTerm:
    """One phenotype column entering the design.

    Attributes:
        name: Column of the phenotype table
        kind: "categorical" or "numeric"
        reference: Reference level for treatment coding (categorical only)
        standardize: Center and scale a numeric covariate
    """

    name: str
    kind: Literal["categorical", "numeric"] = "categorical"
    reference: str | None = None
    standardize: bool = True

    def __post_init__(self):
        if self.kind not in ("categorical", "numeric"):
            raise ValueError(f"Unknown term kind {self.kind!r} for {self.name!r}")
        if self.kind == "numeric" and self.reference is not None:
            raise ValueError(f"Numeric term {self.name!r} cannot have a reference level")


@dataclass(frozen=True)
class DesignMatrix:
    """Full-rank design matrix with column bookkeeping.

    Attributes:
        X: Design matrix (n_samples, n_params)
        col_names: Column names
        sample_ids: Samples kept (rows of X)
        sample_mask: Boolean mask over the input samples, True where kept
        term_columns: Term name -> indices of its columns
        level_vectors: (term, level) -> coefficient vector giving that
            level's effect (all zeros for a treatment-coding reference)
    """

    X: NDArray[np.float64]
    col_names: list[str]
    sample_ids: pd.Index
    sample_mask: NDArray[np.bool_]
    term_columns: dict[str, tuple[int, ...]] = field(default_factory=dict)
    level_vectors: dict[tuple[str, str], NDArray[np.float64]] = field(
        default_factory=dict, repr=False
    )

    @property
    def n_params(self) -> int:
        return self.X.shape[1]

    @property
    def n_samples(self) -> int:
        return self.X.shape[0]

    @property
    def df_residual(self) -> int:
        return self.n_samples - self.n_params

    @property
    def has_intercept(self) -> bool:
        return INTERCEPT in self.col_names

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.X, index=self.sample_ids, columns=self.col_names)

    def with_surrogates(self, sv: NDArray[np.float64], prefix: str = "SV") -> DesignMatrix:
        """
        Append surrogate variables as extra nuisance columns.

        Args:
            sv: Matrix (n_samples, n_sv); zero columns returns self unchanged

        Raises:
            ValueError: If the row count differs or the result is rank deficient
        """
        sv = np.asarray(sv, dtype=np.float64)
        if sv.ndim == 1:
            sv = sv[:, None]
        if sv.shape[0] != self.n_samples:
            raise ValueError(
                f"Surrogate matrix has {sv.shape[0]} rows, design has {self.n_samples} samples"
            )
        if sv.shape[1] == 0:
            return self

        names = [f"{prefix}{i + 1}" for i in range(sv.shape[1])]
        X = np.hstack([self.X, sv])
        _check_rank(X, self.col_names + names)

        start = self.n_params
        term_columns = dict(self.term_columns)
        term_columns[prefix] = tuple(range(start, start + sv.shape[1]))
        level_vectors = {
            key: np.concatenate([vec, np.zeros(sv.shape[1])])
            for key, vec in self.level_vectors.items()
        }
        return DesignMatrix(
            X=X,
            col_names=self.col_names + names,
            sample_ids=self.sample_ids,
            sample_mask=self.sample_mask,
            term_columns=term_columns,
            level_vectors=level_vectors,
        )

    def drop_terms(self, names: Sequence[str]) -> DesignMatrix:
        """
        Design without the columns of the named terms (the null model).

        An intercept column is added when none would remain, so the null
        model always contains at least the grand mean.
        """
        unknown = [n for n in names if n not in self.term_columns]
        if unknown:
            raise ValueError(f"Unknown design terms {unknown}; have {list(self.term_columns)}")

        dropped = {i for n in names for i in self.term_columns[n]}
        keep = [i for i in range(self.n_params) if i not in dropped]
        X = self.X[:, keep]
        col_names = [self.col_names[i] for i in keep]
        remap = {old: new for new, old in enumerate(keep)}
        term_columns = {
            term: tuple(remap[i] for i in cols)
            for term, cols in self.term_columns.items()
            if term not in names
        }

        if INTERCEPT not in col_names:
            X = np.hstack([np.ones((self.n_samples, 1)), X])
            col_names = [INTERCEPT] + col_names
            term_columns = {t: tuple(i + 1 for i in c) for t, c in term_columns.items()}
            term_columns[INTERCEPT] = (0,)

        return DesignMatrix(
            X=X,
            col_names=col_names,
            sample_ids=self.sample_ids,
            sample_mask=self.sample_mask,
            term_columns=term_columns,
            level_vectors={},
        )


@dataclass(frozen=True)
class ContrastMatrix:
    """Named linear combinations of design coefficients.

    Attributes:
        matrix: (n_params, n_contrasts)
        names: Contrast names
        col_names: Design column names (rows of matrix)
    """

    matrix: NDArray[np.float64]
    names: list[str]
    col_names: list[str]

    @property
    def n_contrasts(self) -> int:
        return self.matrix.shape[1]

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.matrix, index=self.col_names, columns=self.names)


def _check_rank(X: NDArray[np.float64], col_names: list[str]) -> None:
    rank = np.linalg.matrix_rank(X)
    if rank < X.shape[1]:
        raise ValueError(
            f"Design matrix is rank-deficient: rank={rank}, n_params={X.shape[1]}. "
            f"Columns: {col_names}. A covariate may be collinear with the "
            f"condition or another covariate."
        )


def build_design_matrix(
    metadata: pd.DataFrame,
    terms: Sequence[CovariateTerm],
    intercept: bool = True,
) -> DesignMatrix:
    """
    Build a design matrix from phenotype columns.

    Args:
        metadata: Phenotype table, one row per sample (index = sample ids)
        terms: Terms in column order. The first categorical term is the
            group of interest for imbalance checks and cell-means coding.
        intercept: Include an intercept. If False the first term must be
            categorical and is coded as cell means.

    Returns:
        DesignMatrix over the samples with complete values

    Raises:
        ValueError: If a column is missing, a reference level is absent,
            the design is rank deficient or leaves no residual df
    """
    import statsmodels.api as sm

    if not terms:
        raise ValueError("At least one term is required")
    missing_cols = [t.name for t in terms if t.name not in metadata.columns]
    if missing_cols:
        raise ValueError(f"Phenotype table lacks columns {missing_cols}")
    if not intercept and terms[0].kind != "categorical":
        raise ValueError("A design without intercept needs a categorical first term")

    columns = [t.name for t in terms]
    valid_mask = ~metadata[columns].isna().any(axis=1).to_numpy()
    n_dropped = int((~valid_mask).sum())
    if n_dropped:
        logger.warning(f"Dropping {n_dropped} samples with missing covariate values")
    kept = metadata.loc[valid_mask, columns]

    parts: list[pd.DataFrame] = []
    term_names: list[str] = []
    level_specs: list[tuple[str, str, str | None]] = []

    for position, term in enumerate(terms):
        series = kept[term.name]
        if term.kind == "numeric":
            values = pd.to_numeric(series, errors='raise').astype(np.float64)
            if term.standardize:
                sigma = values.std(ddof=1)
                if not np.isfinite(sigma) or sigma < 1e-10:
                    raise ValueError(
                        f"Covariate '{term.name}' has zero variance, cannot standardize"
                    )
                values = (values - values.mean()) / sigma
            parts.append(values.to_frame(term.name))
            term_names.append(term.name)
            continue

        labels = series.astype(str)
        levels = sorted(labels.unique())
        reference = term.reference if term.reference is not None else levels[0]
        if reference not in levels:
            raise ValueError(
                f"Reference level {reference!r} not found in '{term.name}' levels {levels}"
            )
        ordered = [reference] + [lv for lv in levels if lv != reference]
        cat = pd.Series(pd.Categorical(labels, categories=ordered), index=kept.index)
        cell_means = not intercept and position == 0
        dummies = pd.get_dummies(cat, prefix=term.name, prefix_sep="", drop_first=not cell_means, dtype=float)
        parts.append(dummies)
        term_names.extend([term.name] * dummies.shape[1])
        for level in ordered:
            col = f"{term.name}{level}"
            level_specs.append((term.name, level, col if col in dummies.columns else None))

        if term is _first_categorical(terms):
            counts = labels.value_counts()
            if len(counts) > 1 and counts.max() / counts.min() > IMBALANCE_WARNING_RATIO:
                logger.warning(
                    f"Unbalanced groups in '{term.name}': {counts.to_dict()}"
                )

    frame = pd.concat(parts, axis=1)
    if intercept:
        frame = sm.add_constant(frame, prepend=True, has_constant='add')
        frame = frame.rename(columns={'const': INTERCEPT})
        term_names = [INTERCEPT] + term_names

    X = frame.to_numpy(dtype=np.float64)
    col_names = [str(c) for c in frame.columns]

    _check_rank(X, col_names)
    if X.shape[0] - X.shape[1] < 1:
        raise ValueError(
            f"Insufficient residual df: {X.shape[0]} samples - {X.shape[1]} params = "
            f"{X.shape[0] - X.shape[1]}. Reduce covariates or increase sample size."
        )

    cond_number = np.linalg.cond(X)
    if cond_number > CONDITION_NUMBER_WARNING:
        warnings.warn(
            f"Design matrix condition number is high ({cond_number:.1f} > "
            f"{CONDITION_NUMBER_WARNING:.0f}). Near-collinearity may cause unstable estimates.",
            UserWarning,
        )

    term_columns: dict[str, tuple[int, ...]] = {}
    for idx, name in enumerate(term_names):
        term_columns.setdefault(name, ())
        term_columns[name] = term_columns[name] + (idx,)

    level_vectors = {}
    for term_name, level, col in level_specs:
        vec = np.zeros(len(col_names))
        if col is not None:
            vec[col_names.index(col)] = 1.0
        level_vectors[(term_name, level)] = vec

    logger.debug(f"Design matrix {X.shape}: {col_names}")
    return DesignMatrix(
        X=X,
        col_names=col_names,
        sample_ids=pd.Index(kept.index.astype(str)),
        sample_mask=valid_mask,
        term_columns=term_columns,
        level_vectors=level_vectors,
    )


def _first_categorical(terms: Sequence[CovariateTerm]) -> CovariateTerm | None:
    for term in terms:
        if term.kind == "categorical":
            return term
    return None


_TOKEN = re.compile(r"\s*([+-])?\s*(?:(\d+(?:\.\d*)?|\.\d+)\s*\*\s*)?([^+\-*\s][^+\-*]*?)\s*(?=[+-]|$)")


def _resolve_token(design: DesignMatrix, token: str) -> NDArray[np.float64]:
    if token in design.col_names:
        vec = np.zeros(design.n_params)
        vec[design.col_names.index(token)] = 1.0
        return vec

    matches = [vec for (term, level), vec in design.level_vectors.items() if level == token]
    if ':' in token:
        term, level = token.split(':', 1)
        if (term, level) in design.level_vectors:
            matches = [design.level_vectors[(term, level)]]
    if len(matches) == 1:
        return matches[0]
    if len(matches) > 1:
        raise ValueError(f"Level {token!r} is ambiguous; write it as 'term:level'")
    raise ValueError(
        f"Contrast token {token!r} is neither a design column nor a level. "
        f"Columns: {design.col_names}"
    )


def _parse_expression(design: DesignMatrix, expression: str) -> NDArray[np.float64]:
    vec = np.zeros(design.n_params)
    pos = 0
    expression = expression.strip()
    while pos < len(expression):
        match = _TOKEN.match(expression, pos)
        if match is None or match.end() == pos:
            raise ValueError(f"Cannot parse contrast expression {expression!r}")
        sign = -1.0 if match.group(1) == '-' else 1.0
        weight = float(match.group(2)) if match.group(2) else 1.0
        vec += sign * weight * _resolve_token(design, match.group(3).strip())
        pos = match.end()
    return vec


def make_contrasts(
    design: DesignMatrix,
    contrasts: Mapping[str, str | Mapping[str, float]],
) -> ContrastMatrix:
    """
    Build a contrast matrix.

    Args:
        design: Design the contrasts refer to
        contrasts: Name -> expression (``"AD - control"``,
            ``"0.5*a + 0.5*b - c"``) or name -> {column: weight}

    Raises:
        ValueError: For unknown columns or levels, or an all-zero contrast
    """
    if not contrasts:
        raise ValueError("At least one contrast is required")

    columns = []
    for name, spec in contrasts.items():
        if isinstance(spec, str):
            vec = _parse_expression(design, spec)
        else:
            vec = np.zeros(design.n_params)
            for col, weight in spec.items():
                if col not in design.col_names:
                    raise ValueError(
                        f"Contrast {name!r} refers to unknown column {col!r}. "
                        f"Columns: {design.col_names}"
                    )
                vec[design.col_names.index(col)] += float(weight)
        if not np.any(vec):
            raise ValueError(f"Contrast {name!r} is identically zero")
        columns.append(vec)

    return ContrastMatrix(
        matrix=np.column_stack(columns),
        names=list(contrasts.keys()),
        col_names=list(design.col_names),
    )
