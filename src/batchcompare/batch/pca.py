"""
Principal components as batch factors.

The sample scores of the leading principal axes of the log expression
matrix (samples as observations, genes as variables). When an unmodelled
batch dominates the expression variance, the first component tracks it.
"""

from __future__ import annotations

import logging

import numpy as np
import pandas as pd
from numpy.typing import NDArray

from batchcompare.batch.factors import BatchFactors, factor_frame

logger = logging.getLogger(__name__)

__all__ = ['estimate_principal_components']


def estimate_principal_components(
    log_data: NDArray[np.float64],
    k: int = 2,
    sample_ids: pd.Index | None = None,
    tol: float = 1e-8,
) -> BatchFactors:
    """
    Top-k principal components of genes × samples log expression.

    Scores are scaled to unit length, so the factor columns are the right
    singular vectors of the gene-centred matrix.

    Args:
        log_data: Log-scale expression (genes × samples)
        k: Number of components; clipped to the numerical rank
        sample_ids: Row labels of the factor frame
        tol: Relative singular-value tolerance for the rank

    Returns:
        BatchFactors with columns pc_1..k and diagnostics
        `variance_explained` (fraction per component) and
        `singular_values`.

    Raises:
        ValueError: If k < 1 or data contains non-finite values
    """
    from sklearn.decomposition import PCA

    log_data = np.asarray(log_data, dtype=float)
    if log_data.ndim != 2:
        raise ValueError(f"log_data must be 2D, got {log_data.ndim}D")
    if k < 1:
        raise ValueError(f"k must be >= 1, got {k}")
    if not np.isfinite(log_data).all():
        raise ValueError("log_data contains non-finite values")

    # Transpose: PCA expects (n_samples, n_features)
    n_components = min(log_data.shape)
    pca = PCA(n_components=n_components, svd_solver="full")
    scores = pca.fit_transform(log_data.T)
    d = pca.singular_values_

    rank = int(np.sum(d > tol * (d[0] if len(d) else 0.0)))
    if k > rank:
        logger.warning(f"PCA: requested {k} components but data has rank {rank}; using {rank}")
        k = rank

    explained = np.nan_to_num(pca.explained_variance_ratio_)
    logger.info(
        "PCA: variance explained "
        + ", ".join(f"PC{i + 1}={explained[i]:.1%}" for i in range(k))
    )
    return BatchFactors(
        method='pca',
        factors=factor_frame(scores[:, :k] / d[:k], 'pc', sample_ids),
        diagnostics={
            'variance_explained': explained[:k],
            'singular_values': d[:k],
        },
    )
