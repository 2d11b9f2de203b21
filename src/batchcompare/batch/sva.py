"""
Surrogate variable analysis (iteratively re-weighted SVA).

SVA estimates latent factors that drive expression heterogeneity beyond the
modelled covariates. The iteratively re-weighted algorithm down-weights
genes associated with the primary covariate and up-weights genes that
follow the current surrogate variables, so the final factors capture
unmodelled structure (here: the sequencing study) rather than the
covariate of interest.

Algorithm (Leek & Storey 2007, 2008):
    1. Residuals R = Y (I - H), H the hat matrix of the full model
    2. Initial SVs: leading eigenvectors of R'R
    3. Repeat n_iterations times:
         pprob_b   = 1 - lfdr(F-test of full+SV vs null+SV)
         pprob_gam = 1 - lfdr(F-test of null+SV vs null)
         weights   = pprob_gam × (1 - pprob_b)
         SVs       = leading eigenvectors of the row-centred weighted data
    4. Final SVs: right singular vectors of the weighted data

Number of SVs (Buja & Eyuboglu 1992):
    Compare the variance fractions of the residual singular values with
    those of row-permuted residuals; count the leading components whose
    permutation p-value stays below alpha.

References:
    - Leek & Storey (2007) PLoS Genetics 3(9):e161
    - Leek & Storey (2008) PNAS 105(48):18718-18723
    - Buja & Eyuboglu (1992) Multivariate Behavioral Research 27(4):509-540
"""

from __future__ import annotations

import logging
import math
import warnings

import numpy as np
import pandas as pd
from numpy.typing import NDArray
from scipy import stats as scipy_stats

from batchcompare.batch.factors import BatchFactors, factor_frame

logger = logging.getLogger(__name__)

__all__ = [
    'f_pvalue',
    'edge_lfdr',
    'num_sv',
    'estimate_surrogate_variables',
]


def _as_design(mod: NDArray[np.float64] | None, n_samples: int) -> NDArray[np.float64]:
    if mod is None:
        return np.ones((n_samples, 1))
    mod = np.asarray(mod, dtype=float)
    if mod.ndim == 1:
        mod = mod[:, np.newaxis]
    if mod.shape[0] != n_samples:
        raise ValueError(f"Model matrix has {mod.shape[0]} rows, data has {n_samples} samples")
    return mod


def _residual_projector(mod: NDArray[np.float64]) -> NDArray[np.float64]:
    """I - X (X'X)^-1 X'."""
    H = mod @ np.linalg.solve(mod.T @ mod, mod.T)
    return np.eye(mod.shape[0]) - H


def f_pvalue(
    data: NDArray[np.float64],
    mod: NDArray[np.float64],
    mod0: NDArray[np.float64] | None = None,
) -> NDArray[np.float64]:
    """
    Per-gene F-test p-values for nested linear models.

        F = ((RSS0 - RSS1) / (df1 - df0)) / (RSS1 / (n - df1))

    Args:
        data: Expression (genes × samples)
        mod: Full model matrix (samples × df1)
        mod0: Nested null model matrix (samples × df0); intercept when None

    Raises:
        ValueError: If the null model is not smaller than the full model
    """
    data = np.asarray(data, dtype=float)
    n = data.shape[1]
    mod = _as_design(mod, n)
    mod0 = _as_design(mod0, n)

    df1 = mod.shape[1]
    df0 = mod0.shape[1]
    if df1 <= df0:
        raise ValueError(f"Full model ({df1} columns) must be larger than null model ({df0})")
    if n - df1 < 1:
        raise ValueError(f"No residual degrees of freedom: n={n}, df1={df1}")

    resid1 = data @ _residual_projector(mod)
    resid0 = data @ _residual_projector(mod0)
    rss1 = (resid1 ** 2).sum(axis=1)
    rss0 = (resid0 ** 2).sum(axis=1)

    with np.errstate(divide='ignore', invalid='ignore'):
        fstats = ((rss0 - rss1) / (df1 - df0)) / (rss1 / (n - df1))
    fstats = np.where(np.isfinite(fstats), np.maximum(fstats, 0.0), 0.0)

    return scipy_stats.f.sf(fstats, df1 - df0, n - df1)


def _bw_nrd0(x: NDArray[np.float64]) -> float:
    """Silverman's rule of thumb as in R's bw.nrd0."""
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
    n_grid: int = 512,
) -> NDArray[np.float64]:
    """
    Local false discovery rates from p-values.

    The p-values are probit transformed; their density is estimated with a
    Gaussian kernel (bandwidth = adjust × bw.nrd0) on a grid and
    interpolated back. lfdr = pi0 × dnorm(x) / f(x), truncated at 1 and made
    monotone non-decreasing in p.

    Args:
        p: P-values
        lambda_: Tuning parameter for pi0 = mean(p >= lambda) / (1 - lambda)
        adjust: Bandwidth multiplier
        eps: Clipping of p away from 0 and 1
        n_grid: Density grid size

    Returns:
        Local FDR per p-value, in [0, 1]
    """
    p = np.asarray(p, dtype=float)
    if p.ndim != 1 or len(p) < 2:
        raise ValueError("edge_lfdr needs a 1D array of at least two p-values")
    if np.isnan(p).any():
        raise ValueError("p-values contain NaN")

    pi0 = min(float(np.mean(p >= lambda_)) / (1.0 - lambda_), 1.0)

    p_clip = np.clip(p, eps, 1.0 - eps)
    x = scipy_stats.norm.ppf(p_clip)

    bw = adjust * _bw_nrd0(x)
    sd = np.std(x, ddof=1)
    if sd > 0:
        kde = scipy_stats.gaussian_kde(x, bw_method=bw / sd)
        grid = np.linspace(x.min() - 3 * bw, x.max() + 3 * bw, n_grid)
        density = np.interp(x, grid, kde(grid))
    else:
        density = np.full_like(x, scipy_stats.norm.pdf(0.0, scale=bw))

    with np.errstate(divide='ignore', invalid='ignore'):
        lfdr = pi0 * scipy_stats.norm.pdf(x) / density
    lfdr = np.where(np.isfinite(lfdr), lfdr, 1.0)
    lfdr = np.minimum(lfdr, 1.0)

    order = np.argsort(p, kind='stable')
    monotone = np.empty_like(lfdr)
    monotone[order] = np.maximum.accumulate(lfdr[order])
    return monotone


def _variance_fractions(res: NDArray[np.float64], ndf: int) -> NDArray[np.float64]:
    d = np.linalg.svd(res, compute_uv=False)[:ndf]
    d2 = d ** 2
    return d2 / d2.sum()


def num_sv(
    data: NDArray[np.float64],
    mod: NDArray[np.float64],
    n_permutations: int = 20,
    alpha: float = 0.1,
    seed: int | None = None,
) -> int:
    """
    Number of surrogate variables by the Buja-Eyuboglu permutation method.

    Args:
        data: Expression (genes × samples)
        mod: Full model matrix
        n_permutations: Permutations of the residual rows
        alpha: Significance level for a component
        seed: Random seed

    Returns:
        Number of significant components, an int in [0, n_samples)
    """
    data = np.asarray(data, dtype=float)
    n = data.shape[1]
    mod = _as_design(mod, n)

    H = mod @ np.linalg.solve(mod.T @ mod, mod.T)
    P = np.eye(n) - H
    res = data @ P
    ndf = n - math.ceil(float(np.trace(H)) - 1e-8)
    if ndf < 1:
        return 0

    dstat = _variance_fractions(res, ndf)

    rng = np.random.default_rng(seed)
    dstat0 = np.empty((n_permutations, ndf))
    for b in range(n_permutations):
        res0 = rng.permuted(res, axis=1) @ P
        dstat0[b] = _variance_fractions(res0, ndf)

    psv = np.mean(dstat0 >= dstat[np.newaxis, :], axis=0)
    psv = np.maximum.accumulate(psv)
    nsv = int(np.sum(psv <= alpha))

    logger.info(f"num_sv: {nsv} significant components ({n_permutations} permutations)")
    return nsv


def _top_eigenvectors(mat: NDArray[np.float64], k: int) -> NDArray[np.float64]:
    """Leading k eigenvectors of the samples × samples cross-product."""
    vals, vecs = np.linalg.eigh(mat.T @ mat)
    order = np.argsort(vals)[::-1][:k]
    return vecs[:, order]


def estimate_surrogate_variables(
    data: NDArray[np.float64],
    mod: NDArray[np.float64],
    mod0: NDArray[np.float64] | None = None,
    n_sv: int | None = None,
    n_iterations: int = 5,
    sample_ids: pd.Index | None = None,
    seed: int | None = None,
) -> BatchFactors:
    """
    Iteratively re-weighted surrogate variable analysis.

    Args:
        data: Log-scale expression (genes × samples)
        mod: Full model matrix with the covariates to protect
        mod0: Null model matrix (intercept when None)
        n_sv: Number of SVs; estimated with num_sv when None
        n_iterations: Re-weighting iterations
        sample_ids: Row labels of the factor frame
        seed: Seed for num_sv permutations

    Returns:
        BatchFactors with columns sva_1..k and diagnostics `pprob_gam`,
        `pprob_b`, `n_sv`. With no significant SV the factor frame is empty.

    Raises:
        ValueError: If n_sv leaves no residual degrees of freedom
    """
    data = np.asarray(data, dtype=float)
    if data.ndim != 2:
        raise ValueError(f"data must be 2D, got {data.ndim}D")
    n_genes, n = data.shape
    mod = _as_design(mod, n)
    mod0 = _as_design(mod0, n)

    if n_sv is None:
        n_sv = num_sv(data, mod, seed=seed)

    if n_sv == 0:
        warnings.warn(
            "No significant surrogate variables; returning an empty factor set",
            UserWarning,
            stacklevel=2,
        )
        return BatchFactors(
            method='sva',
            factors=factor_frame(np.empty((n, 0)), 'sva', sample_ids),
            diagnostics={'n_sv': 0},
        )

    if n_sv < 0 or mod.shape[1] + n_sv >= n:
        raise ValueError(
            f"n_sv={n_sv} with {mod.shape[1]} model columns leaves no residual df for {n} samples"
        )

    logger.info(f"SVA: estimating {n_sv} surrogate variables ({n_iterations} iterations)")

    resid = data @ _residual_projector(mod)
    vectors = _top_eigenvectors(resid, n_sv)

    pprob_gam = np.ones(n_genes)
    pprob_b = np.zeros(n_genes)
    dats = data
    for it in range(n_iterations):
        mod_b = np.column_stack([mod, vectors])
        mod0_b = np.column_stack([mod0, vectors])
        pprob_b = 1.0 - edge_lfdr(f_pvalue(data, mod_b, mod0_b))

        pprob_gam = 1.0 - edge_lfdr(f_pvalue(data, mod0_b, mod0))

        pprob = pprob_gam * (1.0 - pprob_b)
        dats = data * pprob[:, np.newaxis]
        dats = dats - dats.mean(axis=1, keepdims=True)
        vectors = _top_eigenvectors(dats, n_sv)
        logger.debug(f"SVA iteration {it + 1}: mean weight {pprob.mean():.3f}")

    _, _, vt = np.linalg.svd(dats, full_matrices=False)
    sv = vt[:n_sv].T

    return BatchFactors(
        method='sva',
        factors=factor_frame(sv, 'sva', sample_ids),
        diagnostics={
            'n_sv': n_sv,
            'pprob_gam': pprob_gam,
            'pprob_b': pprob_b,
        },
    )
