"""
Remove Unwanted Variation (RUV) factors for RNA-seq counts.

Both variants estimate unwanted factors W from the left singular vectors of
a samples × genes matrix that should carry no biology, then regress W out
of the log counts:

    Y = log(counts + epsilon)'                      (samples × genes)
    W = U[:, 1+drop : k] from svd(centred source matrix)
    alpha = (W'W)^-1 W' Y
    normalized = round(exp(Y - W alpha) - epsilon), floored at 0

RUVr: the source matrix is the deviance residuals of a first-pass
      negative-binomial GLM on the covariates of interest.
RUVg: the source matrix is the centred log counts of control genes. With no
      spike-ins, empirical controls are the genes least associated with the
      covariate in the first-pass likelihood-ratio test.

First pass (edgeR):
    upper-quartile normalization factors → common and tagwise Cox-Reid
    dispersions → GLM fit → deviance residuals and LRT of the covariate.

Reference:
    Risso, Ngai, Speed & Dudoit (2014) "Normalization of RNA-seq data using
    factor analysis of control genes or samples" Nature Biotechnology 32:896-902
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass

import numpy as np
import pandas as pd
from numpy.typing import NDArray

from batchcompare.batch.factors import BatchFactors, factor_frame
from batchcompare.stats.design_matrix import DesignMatrix
from batchcompare.stats.glm import (
    NBGLMFit,
    deviance_residuals,
    estimate_common_dispersion,
    estimate_tagwise_dispersion,
    fit_nb_glm,
    glm_lrt,
)
from batchcompare.stats.normalization import calc_norm_factors

logger = logging.getLogger(__name__)

__all__ = [
    'FirstPassGLM',
    'first_pass_glm',
    'empirical_control_genes',
    'ruv_residuals',
    'ruv_control_genes',
]


@dataclass(frozen=True)
class FirstPassGLM:
    """First-pass negative-binomial fit shared by RUVr and RUVg.

    Attributes:
        norm_factors: Upper-quartile normalization factors
        common_dispersion: Cox-Reid common dispersion
        tagwise_dispersion: Per-gene dispersions
        fit: GLM fit on the covariate design
        residuals: Deviance residuals (genes × samples)
        lrt: Likelihood-ratio test table of the tested coefficient
    """

    norm_factors: NDArray[np.float64]
    common_dispersion: float
    tagwise_dispersion: NDArray[np.float64]
    fit: NBGLMFit
    residuals: NDArray[np.float64]
    lrt: pd.DataFrame


def first_pass_glm(
    counts: NDArray[np.float64],
    design: DesignMatrix,
    coef: str | None = None,
    feature_ids: pd.Index | None = None,
    prior_df: float = 10.0,
) -> FirstPassGLM:
    """
    edgeR-style first pass: normalization, dispersions, fit, residuals, LRT.

    Args:
        counts: Raw counts (genes × samples) for the design's samples
        design: Design with the covariates of interest
        coef: Column tested by the LRT; the last column when None
        feature_ids: Index of the LRT table
        prior_df: Prior degrees of freedom for tagwise dispersion

    Returns:
        FirstPassGLM
    """
    counts = np.asarray(counts, dtype=float)
    if counts.shape[1] != design.n_samples:
        raise ValueError(
            f"counts have {counts.shape[1]} samples but design has {design.n_samples}"
        )
    coef_idx = design.column_index(coef) if coef is not None else design.n_params - 1

    norm_factors = calc_norm_factors(counts, method="upperquartile")
    offset = np.log(counts.sum(axis=0) * norm_factors)

    common = estimate_common_dispersion(counts, design.X, offset)
    tagwise = estimate_tagwise_dispersion(
        counts, design.X, offset, common_dispersion=common, prior_df=prior_df
    )

    fit = fit_nb_glm(counts, design.X, offset=offset, dispersion=tagwise)
    residuals = deviance_residuals(counts, fit.fitted, tagwise[:, np.newaxis])
    lrt = glm_lrt(
        counts, design.X, coef_idx,
        offset=offset, dispersion=tagwise, feature_ids=feature_ids, full_fit=fit,
    )

    n_sig = int((lrt['fdr'] < 0.05).sum())
    logger.info(
        f"First-pass GLM on '{design.column_names[coef_idx]}': "
        f"{n_sig} genes at FDR < 0.05"
    )
    return FirstPassGLM(
        norm_factors=norm_factors,
        common_dispersion=common,
        tagwise_dispersion=tagwise,
        fit=fit,
        residuals=residuals,
        lrt=lrt,
    )


def empirical_control_genes(
    lrt_table: pd.DataFrame,
    n_exclude: int = 5000,
    min_controls: int = 100,
    p_column: str = 'p_value',
) -> pd.Series:
    """
    Empirical negative controls: every gene outside the top `n_exclude`.

    Genes are ranked by `p_column` (ties keep table order). When fewer than
    `min_controls` genes would remain, the least significant half is used
    instead.

    Returns:
        Boolean Series indexed like `lrt_table`, True for control genes
    """
    if p_column not in lrt_table.columns:
        raise KeyError(f"Column '{p_column}' not in LRT table: {list(lrt_table.columns)}")

    n_genes = len(lrt_table)
    if n_genes == 0:
        raise ValueError("LRT table is empty")

    order = np.argsort(lrt_table[p_column].to_numpy(dtype=float), kind='stable')
    n_controls = n_genes - n_exclude

    if n_controls < min_controls:
        n_controls = n_genes // 2
        warnings.warn(
            f"Excluding {n_exclude} of {n_genes} genes leaves fewer than {min_controls} "
            f"controls; using the {n_controls} least significant genes",
            UserWarning,
            stacklevel=2,
        )

    mask = np.zeros(n_genes, dtype=bool)
    if n_controls > 0:
        mask[order[n_genes - n_controls:]] = True

    logger.info(f"Empirical controls: {int(mask.sum())} of {n_genes} genes")
    return pd.Series(mask, index=lrt_table.index, name='control')


def _log_counts(counts: NDArray[np.float64], epsilon: float) -> NDArray[np.float64]:
    counts = np.asarray(counts, dtype=float)
    if counts.ndim != 2:
        raise ValueError(f"counts must be 2D, got {counts.ndim}D")
    if np.any(counts + epsilon <= 0):
        raise ValueError("counts + epsilon must be positive")
    return np.log(counts + epsilon).T


def _regress_out(
    Y: NDArray[np.float64],
    source: NDArray[np.float64],
    k: int,
    drop: int,
    epsilon: float,
    round_counts: bool,
    tolerance: float,
) -> tuple[NDArray[np.float64], NDArray[np.float64], NDArray[np.float64]]:
    """W from the SVD of `source`, then Y - W alpha back on the count scale."""
    if k < 1:
        raise ValueError(f"k must be >= 1, got {k}")
    if drop >= k:
        raise ValueError(f"drop ({drop}) must be smaller than k ({k})")

    u, d, _ = np.linalg.svd(source, full_matrices=False)
    n_nonzero = int(np.sum(d > tolerance))
    if n_nonzero == 0:
        raise ValueError("Source matrix has no singular value above tolerance")
    if k > n_nonzero:
        logger.warning(f"RUV: k={k} exceeds {n_nonzero} non-zero singular values; using {n_nonzero}")
        k = n_nonzero
    if drop >= k:
        raise ValueError(f"drop ({drop}) leaves no factors after clipping k to {k}")

    W = u[:, drop:k]
    alpha = np.linalg.solve(W.T @ W, W.T @ Y)
    corrected = np.exp(Y - W @ alpha) - epsilon
    if round_counts:
        corrected = np.maximum(np.round(corrected), 0.0)
    return W, alpha, corrected.T


def ruv_residuals(
    counts: NDArray[np.float64],
    residuals: NDArray[np.float64],
    k: int = 1,
    epsilon: float = 1.0,
    center: bool = True,
    control_mask: NDArray[np.bool_] | None = None,
    sample_ids: pd.Index | None = None,
    round_counts: bool = True,
    tolerance: float = 1e-8,
) -> BatchFactors:
    """
    RUVr: unwanted factors from first-pass GLM residuals.

    Args:
        counts: Counts (genes × samples), usually upper-quartile normalized
        residuals: Deviance residuals (genes × samples)
        k: Number of factors
        epsilon: Offset before taking logs
        center: Centre each gene's residuals across samples
        control_mask: Genes used for the SVD (all genes when None)
        sample_ids: Row labels of the factor frame
        round_counts: Round normalized counts

    Returns:
        BatchFactors with columns ruvr_1..k and diagnostics
        `normalized_counts` (genes × samples) and `alpha`.
    """
    Y = _log_counts(counts, epsilon)
    residuals = np.asarray(residuals, dtype=float)
    if residuals.shape != np.asarray(counts).shape:
        raise ValueError(f"residuals shape {residuals.shape} != counts shape {np.asarray(counts).shape}")

    E = residuals.T
    if center:
        E = E - E.mean(axis=0, keepdims=True)
    if control_mask is not None:
        E = E[:, np.asarray(control_mask, dtype=bool)]

    W, alpha, normalized = _regress_out(Y, E, k, 0, epsilon, round_counts, tolerance)
    logger.info(f"RUVr: {W.shape[1]} factors from residuals of {E.shape[1]} genes")
    return BatchFactors(
        method='ruvr',
        factors=factor_frame(W, 'ruvr', sample_ids),
        diagnostics={'normalized_counts': normalized, 'alpha': alpha},
    )


def ruv_control_genes(
    counts: NDArray[np.float64],
    control_mask: NDArray[np.bool_] | pd.Series,
    k: int = 1,
    epsilon: float = 1.0,
    drop: int = 0,
    center: bool = True,
    sample_ids: pd.Index | None = None,
    round_counts: bool = True,
    tolerance: float = 1e-8,
) -> BatchFactors:
    """
    RUVg: unwanted factors from control genes.

    Args:
        counts: Counts (genes × samples), usually upper-quartile normalized
        control_mask: Boolean mask of control genes
        k: Number of factors
        epsilon: Offset before taking logs
        drop: Number of leading singular vectors to skip
        center: Centre each gene's log counts across samples
        sample_ids: Row labels of the factor frame
        round_counts: Round normalized counts

    Returns:
        BatchFactors with columns ruvg_1..(k - drop) and diagnostics
        `normalized_counts`, `alpha`, `n_controls`.

    Raises:
        ValueError: If the mask length is wrong or selects no gene
    """
    Y = _log_counts(counts, epsilon)
    mask = np.asarray(control_mask, dtype=bool)
    if mask.shape != (Y.shape[1],):
        raise ValueError(f"control_mask length {mask.shape} != n_genes {Y.shape[1]}")
    if not mask.any():
        raise ValueError("control_mask selects no genes")

    Yc = Y - Y.mean(axis=0, keepdims=True) if center else Y
    W, alpha, normalized = _regress_out(Y, Yc[:, mask], k, drop, epsilon, round_counts, tolerance)
    logger.info(f"RUVg: {W.shape[1]} factors from {int(mask.sum())} control genes")
    return BatchFactors(
        method='ruvg',
        factors=factor_frame(W, 'ruvg', sample_ids),
        diagnostics={
            'normalized_counts': normalized,
            'alpha': alpha,
            'n_controls': int(mask.sum()),
        },
    )
