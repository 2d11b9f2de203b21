"""
Normalization methods for RNA-seq counts.

Implements the between-sample normalizations used by the batch comparison:
- Upper-quartile scaling of counts (EDASeq betweenLaneNormalization, which="upper")
- Upper-quartile library-size factors (edgeR calcNormFactors, method="upperquartile")
- Quantile normalization of log-CPM (limma normalizeBetweenArrays, method="quantile")
- log2 counts-per-million with a prior count

References:
    - Bullard et al. (2010) BMC Bioinformatics 11:94 (upper-quartile)
    - Bolstad et al. (2003) Bioinformatics 19(2):185-193 (quantile normalization)
    - Robinson & Oshlack (2010) Genome Biology 11:R25 (normalization factors)
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Literal

import numpy as np
from numpy.typing import NDArray
from scipy.stats import rankdata


class NormalizationMethod(Enum):
    """Available normalization methods for log-expression."""

    NONE = "none"
    QUANTILE = "quantile"


@dataclass(frozen=True)
class NormalizationResult:
    """Result of a normalization procedure.

    Attributes:
        data: Normalized matrix (genes × samples)
        method: Normalization method used
        normalization_factors: Per-sample factors applied
        diagnostics: Additional diagnostic information
    """

    data: NDArray[np.float64]
    method: str
    normalization_factors: NDArray[np.float64]
    diagnostics: dict | None = None


def _check_2d(data: NDArray) -> None:
    if data.ndim != 2:
        raise ValueError(f"Expected 2D array, got {data.ndim}D")


def upper_quartile_normalization(
    counts: NDArray[np.float64],
    round_counts: bool = True,
) -> NormalizationResult:
    """
    Scale each sample by its upper quartile relative to the mean upper quartile.

    Mathematical formulation:
        uq_j = quantile(counts[:, j], 0.75)
        normalized[i, j] = counts[i, j] / (uq_j / mean(uq))

    Args:
        counts: Raw counts (genes × samples)
        round_counts: Round to integers so the result remains count-like

    Raises:
        ValueError: If any sample has a zero upper quartile
    """
    _check_2d(counts)

    uq = np.quantile(counts, 0.75, axis=0)
    if np.any(uq <= 0):
        bad = np.where(uq <= 0)[0].tolist()
        raise ValueError(
            f"Samples {bad[:5]} have a zero upper quartile; filter lowly expressed genes first"
        )

    factors = uq / uq.mean()
    normalized = counts / factors[np.newaxis, :]
    if round_counts:
        normalized = np.round(normalized)

    return NormalizationResult(
        data=normalized,
        method="upper_quartile",
        normalization_factors=factors,
        diagnostics={"upper_quartiles": uq.tolist()},
    )


def calc_norm_factors(
    counts: NDArray[np.float64],
    method: Literal["upperquartile", "none"] = "upperquartile",
    p: float = 0.75,
) -> NDArray[np.float64]:
    """
    Library-size normalization factors, scaled to geometric mean 1.

    With method="upperquartile" each factor is the p-th quantile of the
    sample's counts divided by its library size.

    Returns:
        Factors (n_samples,). Effective library size = lib_size * factor.
    """
    _check_2d(counts)
    n_samples = counts.shape[1]

    if method == "none":
        return np.ones(n_samples)
    if method != "upperquartile":
        raise ValueError(f"Unknown normalization factor method: {method}")

    lib_size = counts.sum(axis=0)
    if np.any(lib_size <= 0):
        raise ValueError("All samples must have positive library size")

    scaled = counts / lib_size[np.newaxis, :]
    factors = np.quantile(scaled, p, axis=0)
    if np.any(factors <= 0):
        raise ValueError(
            f"Upper quartile is zero for some samples; filter lowly expressed genes first"
        )

    return factors / np.exp(np.mean(np.log(factors)))


def log_cpm(
    counts: NDArray[np.float64],
    lib_size: NDArray[np.float64] | None = None,
    prior_count: float = 0.5,
) -> NDArray[np.float64]:
    """
    log2 counts per million as computed by voom.

        logCPM[i, j] = log2((counts[i, j] + prior) / (lib_size[j] + 1) * 1e6)
    """
    _check_2d(counts)
    if lib_size is None:
        lib_size = counts.sum(axis=0)
    lib_size = np.asarray(lib_size, dtype=float)
    return np.log2((counts + prior_count) / (lib_size[np.newaxis, :] + 1.0) * 1e6)


def quantile_normalization(data: NDArray[np.float64]) -> NormalizationResult:
    """
    Quantile normalization for complete (NaN-free) log-expression.

    Each column is replaced by the mean sorted column, matched by rank.
    Tied values receive the average of the target quantiles they span,
    interpolated from their average rank.

    Raises:
        ValueError: If data contains NaN
    """
    _check_2d(data)
    if np.isnan(data).any():
        raise ValueError("quantile_normalization expects complete data without NaN")

    n_features, n_samples = data.shape
    target = np.mean(np.sort(data, axis=0), axis=1)
    positions = np.arange(n_features)

    normalized = np.empty_like(data, dtype=float)
    for j in range(n_samples):
        ranks = rankdata(data[:, j], method='average') - 1.0
        normalized[:, j] = np.interp(ranks, positions, target)

    norm_factors = np.median(normalized, axis=0) - np.median(data, axis=0)

    return NormalizationResult(
        data=normalized,
        method="quantile",
        normalization_factors=norm_factors,
        diagnostics={
            "target_distribution_range": (float(target.min()), float(target.max())),
        },
    )


def normalize_log_expression(
    data: NDArray[np.float64],
    method: NormalizationMethod | str = NormalizationMethod.NONE,
) -> NDArray[np.float64]:
    """Dispatch to a between-sample normalization for log-expression."""
    method = NormalizationMethod(method) if isinstance(method, str) else method
    if method is NormalizationMethod.NONE:
        return data
    return quantile_normalization(data).data
