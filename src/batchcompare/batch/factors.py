"""Container for estimated batch factors shared by all estimators."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Sequence

import numpy as np
import pandas as pd
from numpy.typing import NDArray

__all__ = ['BatchFactors', 'factor_frame']


@dataclass(frozen=True)
class BatchFactors:
    """Latent factors estimated by one method.

    Attributes:
        method: Estimator name ('sva', 'pca', 'ruvr', 'ruvg')
        factors: Samples × k DataFrame with columns such as 'sva_1..k' or 'pc_1..k'
        diagnostics: Method-specific extras (weights, variance explained,
            normalized counts, ...)
    """

    method: str
    factors: pd.DataFrame
    diagnostics: dict[str, Any] = field(default_factory=dict)

    @property
    def k(self) -> int:
        return self.factors.shape[1]

    @property
    def names(self) -> list[str]:
        return [str(c) for c in self.factors.columns]

    @property
    def is_empty(self) -> bool:
        return self.k == 0

    def __repr__(self) -> str:
        return f"BatchFactors(method='{self.method}', k={self.k}, n_samples={len(self.factors)})"


def factor_frame(
    values: NDArray[np.float64],
    prefix: str,
    sample_ids: Sequence[str] | pd.Index | None = None,
) -> pd.DataFrame:
    """Wrap a samples × k array with "<prefix>_i" column names."""
    values = np.asarray(values, dtype=float)
    if values.ndim == 1:
        values = values[:, np.newaxis]
    index = pd.Index(sample_ids) if sample_ids is not None else pd.RangeIndex(values.shape[0])
    if len(index) != values.shape[0]:
        raise ValueError(f"{len(index)} sample ids for {values.shape[0]} factor rows")
    columns = [f"{prefix}_{i + 1}" for i in range(values.shape[1])]
    return pd.DataFrame(values, index=index, columns=columns)
