"""
Shared statistical helpers.

Functions:
    otsu_threshold: bimodal threshold (sex marker scores)
    encode_binary: 0/1 coding of a two-level covariate
    safe_pearson: Pearson r that returns NaN instead of raising on constant input
    bh_adjust: Benjamini-Hochberg adjusted p-values
"""

from __future__ import annotations

import numpy as np
import pandas as pd
from statsmodels.stats.multitest import multipletests


__all__ = [
    'otsu_threshold',
    'encode_binary',
    'safe_pearson',
    'bh_adjust',
]


def otsu_threshold(values: np.ndarray) -> float:
    """
    Compute the bimodal threshold that maximises between-class variance.

    Args:
        values: 1D array of values to threshold. NaN values are excluded.

    Returns:
        Threshold value. For fewer than 10 values the median is returned.

    Example:
        >>> threshold = otsu_threshold(y_scores)
        >>> is_male = y_scores > threshold

    References:
        Otsu, N. (1979). "A Threshold Selection Method from Gray-Level Histograms"
        IEEE Trans. Sys. Man. Cyber. 9 (1): 62-66.
    """
    values = np.asarray(values, dtype=float)
    values = values[~np.isnan(values)]

    if len(values) < 10:
        return float(np.median(values))

    n_bins = min(100, len(values) // 5)
    hist, bin_edges = np.histogram(values, bins=n_bins)
    bin_centers = (bin_edges[:-1] + bin_edges[1:]) / 2
    hist = hist.astype(float) / hist.sum()

    best_threshold = bin_centers[0]
    best_variance = 0.0

    for i in range(1, len(hist)):
        w0 = hist[:i].sum()
        w1 = hist[i:].sum()

        if w0 < 1e-10 or w1 < 1e-10:
            continue

        mu0 = (hist[:i] * bin_centers[:i]).sum() / w0
        mu1 = (hist[i:] * bin_centers[i:]).sum() / w1
        variance = w0 * w1 * (mu0 - mu1) ** 2

        if variance > best_variance:
            best_variance = variance
            # Split between the last bin of class 0 and the first of class 1
            best_threshold = bin_edges[i]

    return float(best_threshold)


def encode_binary(values: pd.Series | np.ndarray) -> np.ndarray:
    """
    Code a two-level covariate as 0/1 (sorted-first level = 0).

    Numeric input is returned as float unchanged. Missing values become NaN.

    Raises:
        ValueError: If a categorical covariate has more than two levels
    """
    series = pd.Series(values)
    if pd.api.types.is_numeric_dtype(series) and not pd.api.types.is_bool_dtype(series):
        return series.to_numpy(dtype=float)

    levels = sorted(series.dropna().unique().tolist())
    if len(levels) > 2:
        raise ValueError(f"Expected at most two levels, got {levels}")

    coded = np.full(len(series), np.nan)
    for code, level in enumerate(levels):
        coded[(series == level).to_numpy()] = code
    return coded


def safe_pearson(x: np.ndarray, y: np.ndarray) -> float:
    """
    Pearson correlation over pairwise-complete observations.

    Returns NaN when fewer than 3 pairs remain or either vector is constant.
    """
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    ok = np.isfinite(x) & np.isfinite(y)
    if ok.sum() < 3:
        return float('nan')

    x = x[ok] - x[ok].mean()
    y = y[ok] - y[ok].mean()
    denom = np.sqrt((x ** 2).sum() * (y ** 2).sum())
    if denom < 1e-300:
        return float('nan')
    return float((x * y).sum() / denom)


def bh_adjust(p_values: np.ndarray) -> np.ndarray:
    """Benjamini-Hochberg FDR; NaN p-values stay NaN."""
    p_values = np.asarray(p_values, dtype=float)
    adjusted = np.full_like(p_values, np.nan)
    valid = np.isfinite(p_values)
    if valid.any():
        adjusted[valid] = multipletests(p_values[valid], method='fdr_bh')[1]
    return adjusted
