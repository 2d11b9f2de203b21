"""
voom precision weights and limma linear models for RNA-seq counts.

voom turns counts into log2-CPM values and estimates, from the
mean-variance trend, a precision weight for every observation. The weighted
per-gene linear models are then moderated with empirical Bayes
(stats.ebayes) to give moderated t-statistics.

Algorithm (Law et al. 2014):
    1. E = log2((counts + 0.5) / (lib_size + 1) × 1e6), optionally quantile
       normalized between samples
    2. Unweighted least squares per gene: fitted values, residual SD sigma
    3. sx = mean(E) + mean(log2(lib_size + 1)) - log2(1e6)   (mean log count)
       sy = sqrt(sigma)
    4. lowess(sy ~ sx, frac=span) gives the trend f
    5. fitted log count = log2(2^fitted × (lib_size + 1) × 1e-6)
       weight = 1 / f(fitted log count)^4

Genes with zero counts in every sample are left out of the trend fit.

Reference:
    Law, Chen, Shi & Smyth (2014) "voom: precision weights unlock linear
    model analysis tools for RNA-seq read counts" Genome Biology 15:R29
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd
from numpy.typing import NDArray
from statsmodels.nonparametric.smoothers_lowess import lowess

from batchcompare.stats.design_matrix import DesignMatrix
from batchcompare.stats.ebayes import moderated_t
from batchcompare.stats.normalization import (
    NormalizationMethod,
    log_cpm,
    normalize_log_expression,
)

logger = logging.getLogger(__name__)

__all__ = [
    'VoomResult',
    'LinearFit',
    'voom',
    'weighted_lm_fit',
    'limma_moderated_t',
]


@dataclass(frozen=True)
class VoomResult:
    """voom output.

    Attributes:
        E: log2-CPM (genes × samples)
        weights: Precision weights (genes × samples)
        lib_size: Library sizes used
        design: Design matrix used for the trend fit
        trend: Sorted (x, y) lowess trend points
    """

    E: NDArray[np.float64]
    weights: NDArray[np.float64]
    lib_size: NDArray[np.float64]
    design: NDArray[np.float64]
    trend: NDArray[np.float64]


@dataclass(frozen=True)
class LinearFit:
    """Per-gene (weighted) least-squares fit, the lmFit equivalent."""

    coefficients: NDArray[np.float64]
    stdev_unscaled: NDArray[np.float64]
    sigma2: NDArray[np.float64]
    df_residual: int
    Amean: NDArray[np.float64]


def _design_array(X: NDArray[np.float64] | DesignMatrix) -> NDArray[np.float64]:
    if isinstance(X, DesignMatrix):
        return X.X
    X = np.asarray(X, dtype=float)
    if X.ndim != 2:
        raise ValueError(f"Design matrix must be 2D, got {X.ndim}D")
    return X


def voom(
    counts: NDArray[np.float64],
    X: NDArray[np.float64] | DesignMatrix,
    lib_size: NDArray[np.float64] | None = None,
    normalize: NormalizationMethod | str = NormalizationMethod.NONE,
    span: float = 0.5,
) -> VoomResult:
    """
    Compute log-CPM values and voom precision weights.

    Args:
        counts: Raw counts (genes × samples)
        X: Design matrix (samples × params)
        lib_size: Library sizes; column sums when None
        normalize: Between-sample normalization of log-CPM
        span: lowess smoothing fraction

    Returns:
        VoomResult

    Raises:
        ValueError: If shapes disagree or there are no residual df
    """
    counts = np.asarray(counts, dtype=float)
    X = _design_array(X)
    if counts.ndim != 2:
        raise ValueError(f"counts must be 2D, got {counts.ndim}D")
    n_genes, n_samples = counts.shape
    if X.shape[0] != n_samples:
        raise ValueError(f"Design has {X.shape[0]} rows but counts have {n_samples} samples")
    if n_samples - X.shape[1] < 1:
        raise ValueError("voom needs at least one residual degree of freedom")

    if lib_size is None:
        lib_size = counts.sum(axis=0)
    lib_size = np.asarray(lib_size, dtype=float)

    E = normalize_log_expression(log_cpm(counts, lib_size), normalize)

    fit = weighted_lm_fit(E, None, X)
    fitted = fit.coefficients @ X.T

    sx = fit.Amean + np.mean(np.log2(lib_size + 1.0)) - np.log2(1e6)
    sy = np.sqrt(np.sqrt(fit.sigma2))

    expressed = counts.sum(axis=1) > 0
    if expressed.sum() < 2:
        raise ValueError("Need at least two genes with non-zero counts for the voom trend")

    trend = lowess(sy[expressed], sx[expressed], frac=span, return_sorted=True)

    fitted_log_count = np.log2(2.0 ** fitted * (lib_size[np.newaxis, :] + 1.0) * 1e-6)
    predicted = np.interp(fitted_log_count, trend[:, 0], trend[:, 1])
    predicted = np.maximum(predicted, 1e-8)
    weights = 1.0 / predicted ** 4

    logger.debug(
        f"voom: {n_genes} genes, weights in [{weights.min():.3g}, {weights.max():.3g}]"
    )
    return VoomResult(E=E, weights=weights, lib_size=lib_size, design=X, trend=trend)


def weighted_lm_fit(
    E: NDArray[np.float64],
    weights: NDArray[np.float64] | None,
    X: NDArray[np.float64] | DesignMatrix,
) -> LinearFit:
    """
    Per-gene weighted least squares with a shared design.

    Solves (X' W_g X) β_g = X' W_g y_g for all genes in one batched solve.
    With weights=None this is ordinary least squares.

    Returns:
        LinearFit with coefficients (genes × params), unscaled standard
        deviations sqrt(diag((X' W_g X)^-1)), residual variances and the
        residual degrees of freedom.
    """
    E = np.asarray(E, dtype=float)
    X = _design_array(X)
    n_genes, n_samples = E.shape
    n_params = X.shape[1]
    df_residual = n_samples - n_params

    if weights is None:
        XtX_inv = np.linalg.inv(X.T @ X)
        beta = E @ X @ XtX_inv.T
        resid = E - beta @ X.T
        sigma2 = (resid ** 2).sum(axis=1) / max(df_residual, 1)
        stdev_unscaled = np.broadcast_to(np.sqrt(np.diag(XtX_inv)), (n_genes, n_params)).copy()
    else:
        w = np.asarray(weights, dtype=float)
        if w.shape != E.shape:
            raise ValueError(f"weights shape {w.shape} != expression shape {E.shape}")
        XtWX = np.einsum('gn,ni,nj->gij', w, X, X)
        XtWy = np.einsum('gn,ni,gn->gi', w, X, E)
        XtWX_inv = np.linalg.inv(XtWX)
        beta = np.einsum('gij,gj->gi', XtWX_inv, XtWy)
        resid = E - beta @ X.T
        sigma2 = (w * resid ** 2).sum(axis=1) / max(df_residual, 1)
        stdev_unscaled = np.sqrt(np.diagonal(XtWX_inv, axis1=1, axis2=2))

    return LinearFit(
        coefficients=beta,
        stdev_unscaled=stdev_unscaled,
        sigma2=sigma2,
        df_residual=df_residual,
        Amean=E.mean(axis=1),
    )


def limma_moderated_t(
    counts: NDArray[np.float64],
    X: NDArray[np.float64] | DesignMatrix,
    coef: int | str,
    normalize: NormalizationMethod | str = NormalizationMethod.NONE,
    feature_ids: pd.Index | None = None,
    lib_size: NDArray[np.float64] | None = None,
) -> pd.DataFrame:
    """
    voom + lmFit + eBayes for one coefficient.

    Args:
        counts: Raw counts (genes × samples)
        X: Design matrix; a DesignMatrix allows `coef` by column name
        coef: Column index or name of the tested coefficient
        normalize: Between-sample normalization of log-CPM
        feature_ids: Index of the returned table
        lib_size: Library sizes passed to voom

    Returns:
        DataFrame indexed by feature with `coef`, `t`, `p_value`,
        `df_total`, `sigma2`, `sigma2_post`. The prior `d0` and `s0_sq`
        are stored in `DataFrame.attrs`.
    """
    if isinstance(coef, str):
        if not isinstance(X, DesignMatrix):
            raise TypeError("coef given by name requires a DesignMatrix")
        coef_idx = X.column_index(coef)
    else:
        coef_idx = int(coef)

    X_arr = _design_array(X)
    if not 0 <= coef_idx < X_arr.shape[1]:
        raise ValueError(f"coef {coef_idx} out of range for design with {X_arr.shape[1]} columns")

    v = voom(counts, X_arr, lib_size=lib_size, normalize=normalize)
    fit = weighted_lm_fit(v.E, v.weights, X_arr)
    mt = moderated_t(
        fit.coefficients[:, coef_idx],
        fit.stdev_unscaled[:, coef_idx],
        fit.sigma2,
        fit.df_residual,
    )

    index = feature_ids if feature_ids is not None else pd.RangeIndex(len(mt.t))
    result = pd.DataFrame({
        'coef': mt.coef,
        't': mt.t,
        'p_value': mt.p_value,
        'df_total': np.broadcast_to(mt.df_total, mt.t.shape),
        'sigma2': mt.sigma2,
        'sigma2_post': mt.sigma2_post,
    }, index=index)
    result.attrs['d0'] = mt.d0
    result.attrs['s0_sq'] = mt.s0_sq

    logger.debug(f"limma: d0={mt.d0:.2f}, s0²={mt.s0_sq:.4g}")
    return result
