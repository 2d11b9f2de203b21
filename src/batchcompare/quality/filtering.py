"""
Gene filtering for count matrices.

Lowly expressed genes carry little information about batch structure and
destabilise the negative-binomial fits, so genes are kept only when their
mean count across samples exceeds a threshold.

Implements the Transform interface for composable pipelines.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Set

import numpy as np

from batchcompare.core.expression import ExpressionMatrix
from batchcompare.core.transform import Transform

logger = logging.getLogger(__name__)

__all__ = ['MeanCountFilter', 'FilterResult']


@dataclass
class FilterResult:
    """Genes passing and failing the filter, with the parameters used."""
    passed_genes: Set[str]
    failed_genes: Set[str]
    parameters: Dict[str, Any] = field(default_factory=dict)

    @property
    def n_passed(self) -> int:
        return len(self.passed_genes)

    @property
    def n_failed(self) -> int:
        return len(self.failed_genes)

    @property
    def pass_rate(self) -> float:
        total = self.n_passed + self.n_failed
        return self.n_passed / total if total > 0 else 0.0


class MeanCountFilter(Transform):
    """
    Keep genes whose mean count across samples is strictly above `min_mean`.

    Params:
        min_mean: Mean count threshold (exclusive).

    Examples:
        >>> expressed = MeanCountFilter(min_mean=5).apply(matrix)
    """

    def __init__(self, min_mean: float = 5.0):
        super().__init__(name="MeanCountFilter", params={"min_mean": min_mean})
        self.min_mean = min_mean

    def _compute_keep_mask(self, matrix: ExpressionMatrix) -> np.ndarray:
        means = matrix.data.mean(axis=1)
        return means > self.min_mean

    def apply(self, matrix: ExpressionMatrix) -> ExpressionMatrix:
        errors = self.validate(matrix)
        if errors:
            raise ValueError(f"Cannot apply {self!r}: {'; '.join(errors)}")

        keep_mask = self._compute_keep_mask(matrix)
        n_kept = int(keep_mask.sum())

        logger.info(
            f"Filtering complete: Kept {n_kept}/{matrix.n_features} genes "
            f"({100 * n_kept / matrix.n_features:.1f}%) with mean count > {self.min_mean}"
        )

        if n_kept == 0:
            raise ValueError(f"No genes have mean count > {self.min_mean}")

        return matrix.select_features(keep_mask)

    def get_passing_genes(self, matrix: ExpressionMatrix) -> FilterResult:
        """Genes passing the filter without subsetting the matrix."""
        keep_mask = self._compute_keep_mask(matrix)
        return FilterResult(
            passed_genes=set(matrix.feature_ids[keep_mask]),
            failed_genes=set(matrix.feature_ids[~keep_mask]),
            parameters=dict(self.params),
        )

    def validate(self, matrix: ExpressionMatrix) -> list[str]:
        errors = super().validate(matrix)
        if np.any(matrix.data < 0):
            errors.append("Matrix contains negative values (expected raw counts)")
        if np.any(~np.isfinite(matrix.data)):
            errors.append("Matrix contains NaN or infinite values")
        return errors
