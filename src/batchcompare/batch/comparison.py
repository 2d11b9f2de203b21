"""
Agreement between batch estimators and with the known covariates.

Each estimated factor is correlated with the binary-coded study and sex
labels (which factor recovers the sequencing study, and which leaks the
biology) and with every factor of the other methods.
"""

from __future__ import annotations

import logging
from typing import Iterable, Sequence

import numpy as np
import pandas as pd

from batchcompare.batch.factors import BatchFactors
from batchcompare.utils.statistics import encode_binary, safe_pearson

logger = logging.getLogger(__name__)

__all__ = [
    'study_correlations',
    'factor_correlation_matrix',
    'best_study_match',
]


def _non_empty(factor_sets: Iterable[BatchFactors]) -> list[BatchFactors]:
    return [fs for fs in factor_sets if not fs.is_empty]


def study_correlations(
    factor_sets: Iterable[BatchFactors],
    metadata: pd.DataFrame,
    covariates: Sequence[str] = ("study", "sex"),
) -> pd.DataFrame:
    """
    Pearson correlation of every factor with each covariate.

    Two-level covariates are coded 0/1 with the sorted-first level as 0;
    numeric covariates are used as they are.

    Args:
        factor_sets: Estimator results; factor rows are matched to metadata
            by sample id
        metadata: Sample metadata containing `covariates`
        covariates: Covariates to correlate with

    Returns:
        Long DataFrame with columns `method`, `factor`, `covariate`, `r`,
        `abs_r`.

    Raises:
        KeyError: If a covariate is missing from metadata
    """
    missing = [c for c in covariates if c not in metadata.columns]
    if missing:
        raise KeyError(f"Covariates not found in metadata: {missing}")

    rows = []
    for fs in _non_empty(factor_sets):
        meta = metadata.reindex(fs.factors.index)
        coded = {cov: encode_binary(meta[cov]) for cov in covariates}
        for name in fs.names:
            values = fs.factors[name].to_numpy(dtype=float)
            for cov in covariates:
                r = safe_pearson(values, coded[cov])
                rows.append({
                    'method': fs.method,
                    'factor': name,
                    'covariate': cov,
                    'r': r,
                    'abs_r': abs(r),
                })

    return pd.DataFrame(rows, columns=['method', 'factor', 'covariate', 'r', 'abs_r'])


def factor_correlation_matrix(factor_sets: Iterable[BatchFactors]) -> pd.DataFrame:
    """
    Absolute Pearson correlations between all factors of all methods.

    Factors are aligned on their shared samples.

    Returns:
        Square DataFrame indexed and labelled by factor name
    """
    frames = [fs.factors for fs in _non_empty(factor_sets)]
    if not frames:
        return pd.DataFrame()

    combined = pd.concat(frames, axis=1, join='inner')
    names = list(combined.columns)
    values = combined.to_numpy(dtype=float)

    n = len(names)
    corr = np.eye(n)
    for i in range(n):
        for j in range(i + 1, n):
            r = abs(safe_pearson(values[:, i], values[:, j]))
            corr[i, j] = corr[j, i] = r

    return pd.DataFrame(corr, index=names, columns=names)


def best_study_match(corr_table: pd.DataFrame, covariate: str = "study") -> pd.DataFrame:
    """
    Per method, the factor most correlated with a covariate.

    Args:
        corr_table: Output of study_correlations
        covariate: Covariate to match

    Returns:
        DataFrame indexed by method with `factor`, `r`, `abs_r`
    """
    subset = corr_table[corr_table['covariate'] == covariate].dropna(subset=['abs_r'])
    if subset.empty:
        return pd.DataFrame(columns=['factor', 'r', 'abs_r'])

    best = subset.loc[subset.groupby('method', sort=False)['abs_r'].idxmax()]
    best = best.set_index('method')[['factor', 'r', 'abs_r']]

    for method, row in best.iterrows():
        logger.info(f"{method}: {row['factor']} |r({covariate})| = {row['abs_r']:.3f}")
    return best
