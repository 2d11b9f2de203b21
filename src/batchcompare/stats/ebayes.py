"""
Empirical Bayes variance moderation (limma-style moderated t-statistics).

The per-gene residual variances of a linear model fit are shrunk toward a
common prior fitted by method of moments. Moderated t-statistics use the
posterior variances and gain the prior degrees of freedom.

References:
    Smyth (2004) "Linear models and empirical Bayes methods for assessing
    differential expression in microarray experiments"
    Statistical Applications in Genetics and Molecular Biology 3(1)
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray
from scipy import stats as scipy_stats
from scipy.special import digamma, polygamma

__all__ = [
    'trigamma_inverse',
    'fit_f_dist',
    'squeeze_var',
    'ModeratedT',
    'moderated_t',
]


def trigamma_inverse(x: float, tol: float = 1e-8, max_iter: int = 50) -> float:
    """
    Solve trigamma(y) = x for y by Newton's method (limma trigammaInverse).

    Initial guess y = 0.5 + 1/x, valid since 1/trigamma(y) > y - 0.5.
    Returns np.inf for non-positive x.
    """
    if x <= 0:
        return np.inf

    if x > 1e7:
        return 1.0 / np.sqrt(x)
    if x < 1e-6:
        return 1.0 / x

    y = 0.5 + 1.0 / x

    for _ in range(max_iter):
        tri = polygamma(1, y)
        tri_deriv = polygamma(2, y)

        if abs(tri_deriv) < 1e-15:
            break
        delta = (tri - x) / tri_deriv
        y_new = y - delta

        if y_new <= 0:
            y = y / 2.0
        else:
            y = y_new

        if abs(delta) < tol * abs(y):
            break

    return float(max(y, 1e-10))


def fit_f_dist(
    sigma2: NDArray[np.float64],
    df: float | NDArray[np.float64],
) -> tuple[float, float]:
    """
    Estimate prior d0 and s0² via method of moments (limma fitFDist).

    Algorithm:
        1. z = log(s²) - digamma(df/2) + log(df/2)
        2. evar = var(z) - mean(trigamma(df/2))
        3. d0 = 2 × trigamma⁻¹(evar)
        4. s0² = exp(mean(z) + digamma(d0/2) - log(d0/2))

    Args:
        sigma2: Sample variances (n_genes,)
        df: Residual degrees of freedom (scalar or per-gene)

    Returns:
        (d0, s0_sq); d0 is np.inf when the variances are no more dispersed
        than expected under a common variance.
    """
    sigma2 = np.asarray(sigma2, dtype=float)
    valid_mask = (sigma2 > 0) & np.isfinite(sigma2)
    sigma2_valid = sigma2[valid_mask]

    if len(sigma2_valid) < 3:
        return np.inf, float(np.median(sigma2_valid)) if len(sigma2_valid) > 0 else 1.0

    if np.isscalar(df):
        df_half = float(df) / 2.0
        mean_trigamma = polygamma(1, df_half)
    else:
        df_half = np.asarray(df, dtype=float)[valid_mask] / 2.0
        mean_trigamma = np.mean(polygamma(1, df_half))

    e = np.log(sigma2_valid) - digamma(df_half) + np.log(df_half)
    emean = np.mean(e)
    evar = np.var(e, ddof=1) - mean_trigamma

    if evar <= 0:
        return np.inf, float(np.exp(emean))

    d0 = 2.0 * trigamma_inverse(evar)
    if d0 > 1e10:
        return np.inf, float(np.exp(emean))

    s0_sq = np.exp(emean + digamma(d0 / 2.0) - np.log(d0 / 2.0))
    return float(d0), float(s0_sq)


def squeeze_var(
    sigma2: NDArray[np.float64],
    df: float | NDArray[np.float64],
    d0: float,
    s0_sq: float,
) -> tuple[NDArray[np.float64], float | NDArray[np.float64]]:
    """
    Posterior variances (limma squeezeVar).

        s²_post = (d0 × s0² + df × s²) / (d0 + df)

    Returns:
        (s2_post, df_total) with df_total = d0 + df. With infinite d0 the
        prior dominates and every gene gets s0².
    """
    df_is_array = isinstance(df, np.ndarray)

    if np.isinf(d0):
        s2_post = np.full_like(np.asarray(sigma2, dtype=float), s0_sq)
        if df_is_array:
            return s2_post, np.full(len(df), np.inf)
        return s2_post, np.inf

    s2_post = (d0 * s0_sq + df * sigma2) / (d0 + df)
    df_total = d0 + df

    if df_is_array:
        return s2_post, df_total.astype(np.float64)
    return s2_post, float(df_total)


@dataclass(frozen=True)
class ModeratedT:
    """Moderated t-statistics for one coefficient across genes."""

    coef: NDArray[np.float64]
    t: NDArray[np.float64]
    p_value: NDArray[np.float64]
    sigma2: NDArray[np.float64]
    sigma2_post: NDArray[np.float64]
    df_total: float | NDArray[np.float64]
    d0: float
    s0_sq: float


def moderated_t(
    coef: NDArray[np.float64],
    stdev_unscaled: NDArray[np.float64],
    sigma2: NDArray[np.float64],
    df_residual: float | NDArray[np.float64],
) -> ModeratedT:
    """
    limma eBayes for a single coefficient.

        t = coef / (stdev_unscaled × sqrt(s²_post))

    P-values are two-sided from a t-distribution with d0 + df_residual
    degrees of freedom (normal when d0 is infinite).
    """
    coef = np.asarray(coef, dtype=float)
    d0, s0_sq = fit_f_dist(sigma2, df_residual)
    sigma2_post, df_total = squeeze_var(sigma2, df_residual, d0, s0_sq)

    se = np.asarray(stdev_unscaled, dtype=float) * np.sqrt(sigma2_post)
    se = np.maximum(se, 1e-12)
    t = coef / se

    if np.isinf(d0):
        p_value = 2 * scipy_stats.norm.sf(np.abs(t))
    else:
        p_value = 2 * scipy_stats.t.sf(np.abs(t), df_total)

    return ModeratedT(
        coef=coef,
        t=t,
        p_value=p_value,
        sigma2=np.asarray(sigma2, dtype=float),
        sigma2_post=sigma2_post,
        df_total=df_total,
        d0=d0,
        s0_sq=s0_sq,
    )
