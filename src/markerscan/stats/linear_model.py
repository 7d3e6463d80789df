"""
Per-probe ordinary least squares fits and contrast re-parameterization.

Every probe gets the same linear model ``y_g = X beta_g + e_g``. Without
missing values all probes are solved at once through one QR decomposition of
X. Probes with missing intensities are refitted one by one on their observed
samples, so each carries its own residual df and unscaled standard
deviations (limma's ``lm.series``).

After fitting, ``contrasts_fit`` turns coefficients into contrasts
``beta_g' C`` together with their unscaled standard deviations, which is the
input of the empirical Bayes step in ``markerscan.stats.ebayes``.

References:
    - Smyth (2004) Stat Appl Genet Mol Biol 3:Article 3
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace

import numpy as np
import pandas as pd
from numpy.typing import NDArray

from markerscan.stats.design_matrix import ContrastMatrix, DesignMatrix

__all__ = [
    'LinearModelFit',
    'lm_fit',
    'contrasts_fit',
    'is_estimable',
]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LinearModelFit:
    """Per-feature linear model fit.

    Attributes:
        coefficients: (n_features, n_coef) estimates, NaN when not estimable
        stdev_unscaled: (n_features, n_coef) sqrt of diag((X'X)^-1)-type terms
        sigma: Residual standard deviation per feature
        df_residual: Residual degrees of freedom per feature
        cov_coefficients: Unscaled covariance of the coefficients for the
            complete design (n_coef, n_coef)
        amean: Average log expression per feature (NaN ignored)
        feature_ids: Row identifiers
        coef_names: Coefficient (or contrast) names
        design: The design matrix that was fitted
        contrasts: Contrast matrix applied, None for raw coefficients
    """

    coefficients: NDArray[np.float64]
    stdev_unscaled: NDArray[np.float64]
    sigma: NDArray[np.float64]
    df_residual: NDArray[np.float64]
    cov_coefficients: NDArray[np.float64]
    amean: NDArray[np.float64]
    feature_ids: pd.Index
    coef_names: list[str]
    design: DesignMatrix
    contrasts: ContrastMatrix | None = None

    @property
    def n_features(self) -> int:
        return self.coefficients.shape[0]

    @property
    def n_coef(self) -> int:
        return self.coefficients.shape[1]

    def coef_index(self, coef: int | str) -> int:
        """Column index of a coefficient given by position or name."""
        if isinstance(coef, str):
            if coef not in self.coef_names:
                raise ValueError(f"Unknown coefficient {coef!r}; have {self.coef_names}")
            return self.coef_names.index(coef)
        if not -self.n_coef <= coef < self.n_coef:
            raise ValueError(f"Coefficient index {coef} out of range for {self.n_coef} coefficients")
        return coef % self.n_coef


def _fit_complete(
    Y: NDArray[np.float64],
    X: NDArray[np.float64],
) -> tuple[NDArray, NDArray, NDArray, NDArray]:
    """Fit all rows of Y (features x samples) on X at once."""
    n, p = X.shape
    Q, R = np.linalg.qr(X)
    R_inv = np.linalg.inv(R)
    coefficients = Y @ Q @ R_inv.T
    fitted = coefficients @ X.T
    residuals = Y - fitted
    df = n - p
    sigma = np.sqrt(np.sum(residuals ** 2, axis=1) / df) if df > 0 else np.full(Y.shape[0], np.nan)
    unscaled = np.sqrt(np.sum(R_inv ** 2, axis=1))
    stdev_unscaled = np.tile(unscaled, (Y.shape[0], 1))
    return coefficients, stdev_unscaled, sigma, np.full(Y.shape[0], float(df))


def _fit_one(
    y: NDArray[np.float64],
    X: NDArray[np.float64],
) -> tuple[NDArray, NDArray, float, float]:
    """Fit one feature on its observed samples; non-estimable coefficients are NaN."""
    p = X.shape[1]
    coef = np.full(p, np.nan)
    su = np.full(p, np.nan)
    obs = ~np.isnan(y)
    n_obs = int(obs.sum())
    if n_obs == 0:
        return coef, su, np.nan, 0.0

    X_obs = X[obs]
    y_obs = y[obs]
    # Drop design columns that are zero on the observed samples
    active = np.any(X_obs != 0, axis=0)
    X_act = X_obs[:, active]
    rank = np.linalg.matrix_rank(X_act) if X_act.size else 0
    if rank < X_act.shape[1]:
        # Keep a maximal independent set of columns, in order
        keep = []
        for j in range(X_act.shape[1]):
            trial = keep + [j]
            if np.linalg.matrix_rank(X_act[:, trial]) == len(trial):
                keep.append(j)
        active_idx = np.flatnonzero(active)[keep]
    else:
        active_idx = np.flatnonzero(active)

    X_use = X_obs[:, active_idx]
    k = X_use.shape[1]
    df = float(n_obs - k)
    if k == 0:
        return coef, su, np.nan, df

    Q, R = np.linalg.qr(X_use)
    R_inv = np.linalg.inv(R)
    beta = R_inv @ (Q.T @ y_obs)
    coef[active_idx] = beta
    su[active_idx] = np.sqrt(np.sum(R_inv ** 2, axis=1))
    if df > 0:
        resid = y_obs - X_use @ beta
        sigma = float(np.sqrt(np.sum(resid ** 2) / df))
    else:
        sigma = np.nan
    return coef, su, sigma, df


def lm_fit(
    data: NDArray[np.float64] | pd.DataFrame,
    design: DesignMatrix,
    feature_ids: pd.Index | None = None,
) -> LinearModelFit:
    """
    Fit the design to every feature by least squares.

    Args:
        data: Log expression (features x samples), columns ordered as
            ``design.sample_ids``. A DataFrame is reindexed to that order.
        design: Full-rank design matrix
        feature_ids: Row identifiers when data is an array

    Returns:
        LinearModelFit with one row per feature

    Raises:
        ValueError: If the sample count does not match the design
    """
    if isinstance(data, pd.DataFrame):
        missing = design.sample_ids.difference(data.columns.astype(str))
        if len(missing) > 0:
            raise ValueError(f"Data lacks design samples {list(missing[:3])}")
        frame = data.copy()
        frame.columns = frame.columns.astype(str)
        feature_ids = pd.Index(frame.index.astype(str))
        Y = frame[design.sample_ids].to_numpy(dtype=np.float64)
    else:
        Y = np.asarray(data, dtype=np.float64)
        if feature_ids is None:
            feature_ids = pd.RangeIndex(Y.shape[0])

    X = design.X
    if Y.ndim != 2 or Y.shape[1] != X.shape[0]:
        raise ValueError(
            f"Data has shape {Y.shape}, expected (n_features, {X.shape[0]}) to match the design"
        )

    nan_rows = np.isnan(Y).any(axis=1)
    n_features, p = Y.shape[0], X.shape[1]

    coefficients = np.empty((n_features, p))
    stdev_unscaled = np.empty((n_features, p))
    sigma = np.empty(n_features)
    df_residual = np.empty(n_features)

    complete = ~nan_rows
    if complete.any():
        (coefficients[complete], stdev_unscaled[complete],
         sigma[complete], df_residual[complete]) = _fit_complete(Y[complete], X)

    if nan_rows.any():
        logger.info(f"Fitting {int(nan_rows.sum())} features with missing values individually")
        for i in np.flatnonzero(nan_rows):
            coefficients[i], stdev_unscaled[i], sigma[i], df_residual[i] = _fit_one(Y[i], X)

    with np.errstate(all='ignore'):
        counts = np.sum(~np.isnan(Y), axis=1)
        amean = np.where(counts > 0, np.nansum(Y, axis=1) / np.maximum(counts, 1), np.nan)

    cov_coefficients = np.linalg.inv(X.T @ X)
    logger.info(f"Fitted {n_features} features on {X.shape[0]} samples, {p} coefficients")

    return LinearModelFit(
        coefficients=coefficients,
        stdev_unscaled=stdev_unscaled,
        sigma=sigma,
        df_residual=df_residual,
        cov_coefficients=cov_coefficients,
        amean=amean,
        feature_ids=pd.Index(feature_ids),
        coef_names=list(design.col_names),
        design=design,
    )


def is_estimable(design: DesignMatrix, contrast: NDArray[np.float64], tol: float = 1e-8) -> bool:
    """True when ``contrast`` lies in the row space of the design matrix."""
    X = design.X
    projected = np.linalg.pinv(X) @ X @ contrast
    return bool(np.allclose(projected, contrast, atol=tol * max(1.0, np.abs(contrast).max())))


def contrasts_fit(fit: LinearModelFit, contrasts: ContrastMatrix) -> LinearModelFit:
    """
    Re-express a coefficient fit as contrasts of the coefficients.

    Args:
        fit: Fit from ``lm_fit`` (raw coefficients)
        contrasts: Contrast matrix built against the same design

    Returns:
        New LinearModelFit whose coefficients are the contrasts

    Raises:
        ValueError: If the fit already holds contrasts, the contrast rows do
            not match the coefficients, the design is rank deficient or a
            contrast is not estimable
    """
    if fit.contrasts is not None:
        raise ValueError("Fit already holds contrasts; apply contrasts to the coefficient fit")
    C = contrasts.matrix
    if C.shape[0] != fit.n_coef or contrasts.col_names != fit.coef_names:
        raise ValueError(
            f"Contrast rows {contrasts.col_names} do not match coefficients {fit.coef_names}"
        )

    X = fit.design.X
    if np.linalg.matrix_rank(X) < X.shape[1]:
        raise ValueError("Design matrix is rank deficient; contrasts are not estimable")
    for j, name in enumerate(contrasts.names):
        if not is_estimable(fit.design, C[:, j]):
            raise ValueError(f"Contrast {name!r} is not estimable from the design")

    coefficients = fit.coefficients @ C
    # A non-estimable coefficient only matters where the contrast uses it
    na_coef = np.isnan(fit.coefficients)
    if na_coef.any():
        filled = np.where(na_coef, 0.0, fit.coefficients)
        coefficients = filled @ C
        uses_na = (na_coef.astype(float) @ (C != 0).astype(float)) > 0
        coefficients[uses_na] = np.nan

    V = fit.cov_coefficients
    cov_contrasts = C.T @ V @ C

    off_diagonal = V - np.diag(np.diag(V))
    orthogonal = np.allclose(off_diagonal, 0.0, atol=1e-12)
    U = np.where(np.isnan(fit.stdev_unscaled), 0.0, fit.stdev_unscaled)
    if orthogonal:
        stdev_unscaled = np.sqrt((U ** 2) @ (C ** 2))
    else:
        d = np.sqrt(np.diag(V))
        correlation = V / np.outer(d, d)
        R = np.linalg.cholesky(correlation).T
        RUC = np.einsum('ab,gb,bk->gak', R, U, C)
        stdev_unscaled = np.sqrt(np.sum(RUC ** 2, axis=1))
    stdev_unscaled[np.isnan(coefficients)] = np.nan

    return replace(
        fit,
        coefficients=coefficients,
        stdev_unscaled=stdev_unscaled,
        cov_coefficients=cov_contrasts,
        coef_names=list(contrasts.names),
        contrasts=contrasts,
    )
