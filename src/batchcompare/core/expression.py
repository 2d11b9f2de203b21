"""
Core data structure for RNA-seq count matrices.

ExpressionMatrix couples a genes × samples count matrix with the sample
annotations (study, population, sex) that the batch comparison is run
against.

Biological Context:
    - Rows = genes (Ensembl IDs in the ReCount tables)
    - Columns = samples (HapMap individual IDs, e.g. NA06985)
    - Values = read counts, or log-scale expression after transformation

Engineering Design:
    - Immutable: subsetting returns new instances
    - NumPy arrays for data, Pandas for metadata
    - Constructor checks shape and index consistency

Examples:
    >>> import numpy as np
    >>> import pandas as pd
    >>> from batchcompare.core.expression import ExpressionMatrix
    >>>
    >>> data = np.array([[10, 20], [30, 40]])
    >>> feature_ids = pd.Index(["ENSG001", "ENSG002"])
    >>> sample_ids = pd.Index(["NA06985", "NA18486"])
    >>> sample_metadata = pd.DataFrame({'study': ['Montgomery', 'Pickrell']}, index=sample_ids)
    >>> matrix = ExpressionMatrix(data, feature_ids, sample_ids, sample_metadata)
    >>> montgomery = matrix.select_samples(matrix.sample_metadata['study'] == 'Montgomery')
"""

from __future__ import annotations

import numpy as np
import pandas as pd

__all__ = ['ExpressionMatrix']


class ExpressionMatrix:
    """
    Immutable container for a count matrix and its sample annotations.

    Attributes:
        data: Numerical matrix (genes × samples)
        feature_ids: Row identifiers (gene IDs)
        sample_ids: Column identifiers (sample IDs)
        sample_metadata: Sample annotations indexed by sample_ids

    Shape Invariants:
        - data.shape[0] == len(feature_ids)
        - data.shape[1] == len(sample_ids)
        - sample_metadata.index equals sample_ids
    """

    def __init__(
        self,
        data: np.ndarray,
        feature_ids: pd.Index,
        sample_ids: pd.Index,
        sample_metadata: pd.DataFrame | None = None,
    ):
        """
        Initialize ExpressionMatrix with validation.

        Args:
            data: Count or expression matrix (genes × samples)
            feature_ids: Row identifiers
            sample_ids: Column identifiers
            sample_metadata: DataFrame indexed by sample_ids. An empty frame
                is created when None.

        Raises:
            ValueError: If shapes are inconsistent or indices don't match
            TypeError: If data types are incorrect
        """
        if sample_metadata is None:
            sample_metadata = pd.DataFrame(index=sample_ids)

        if not isinstance(data, np.ndarray):
            raise TypeError(f"data must be np.ndarray, got {type(data)}")
        if not isinstance(feature_ids, pd.Index):
            raise TypeError(f"feature_ids must be pd.Index, got {type(feature_ids)}")
        if not isinstance(sample_ids, pd.Index):
            raise TypeError(f"sample_ids must be pd.Index, got {type(sample_ids)}")
        if not isinstance(sample_metadata, pd.DataFrame):
            raise TypeError(f"sample_metadata must be pd.DataFrame, got {type(sample_metadata)}")

        if data.ndim != 2:
            raise ValueError(f"data must be 2D, got shape {data.shape}")

        n_features, n_samples = data.shape

        if len(feature_ids) != n_features:
            raise ValueError(
                f"feature_ids length ({len(feature_ids)}) must match data rows ({n_features})"
            )
        if len(sample_ids) != n_samples:
            raise ValueError(
                f"sample_ids length ({len(sample_ids)}) must match data columns ({n_samples})"
            )
        if not sample_metadata.index.equals(sample_ids):
            raise ValueError(
                "sample_metadata.index must match sample_ids exactly. "
                f"Got {len(sample_metadata.index)} metadata rows for {len(sample_ids)} samples."
            )

        self._data = data
        self._feature_ids = feature_ids
        self._sample_ids = sample_ids
        self._sample_metadata = sample_metadata

    @property
    def data(self) -> np.ndarray:
        """Count matrix (genes × samples)."""
        return self._data

    @property
    def feature_ids(self) -> pd.Index:
        return self._feature_ids

    @property
    def sample_ids(self) -> pd.Index:
        return self._sample_ids

    @property
    def sample_metadata(self) -> pd.DataFrame:
        return self._sample_metadata

    @property
    def shape(self) -> tuple[int, int]:
        return self._data.shape

    @property
    def n_features(self) -> int:
        return self._data.shape[0]

    @property
    def n_samples(self) -> int:
        return self._data.shape[1]

    def to_frame(self) -> pd.DataFrame:
        """Data as a DataFrame (genes × samples)."""
        return pd.DataFrame(self._data, index=self._feature_ids, columns=self._sample_ids)

    def select_samples(self, mask: np.ndarray | pd.Series) -> ExpressionMatrix:
        """
        Subset matrix by samples (columns).

        Args:
            mask: Boolean array/Series indicating which samples to keep.
                If Series, uses values and ignores index.

        Raises:
            ValueError: If mask length doesn't match n_samples
        """
        if isinstance(mask, pd.Series):
            mask = mask.values
        mask = np.asarray(mask, dtype=bool)

        if len(mask) != self.n_samples:
            raise ValueError(
                f"mask length ({len(mask)}) must match n_samples ({self.n_samples})"
            )

        return ExpressionMatrix(
            data=self._data[:, mask],
            feature_ids=self._feature_ids,
            sample_ids=self._sample_ids[mask],
            sample_metadata=self._sample_metadata.loc[self._sample_ids[mask]],
        )

    def select_features(self, mask: np.ndarray | pd.Series) -> ExpressionMatrix:
        """
        Subset matrix by features (rows).

        Raises:
            ValueError: If mask length doesn't match n_features
        """
        if isinstance(mask, pd.Series):
            mask = mask.values
        mask = np.asarray(mask, dtype=bool)

        if len(mask) != self.n_features:
            raise ValueError(
                f"mask length ({len(mask)}) must match n_features ({self.n_features})"
            )

        return ExpressionMatrix(
            data=self._data[mask, :],
            feature_ids=self._feature_ids[mask],
            sample_ids=self._sample_ids,
            sample_metadata=self._sample_metadata,
        )

    def with_metadata(self, sample_metadata: pd.DataFrame) -> ExpressionMatrix:
        """Return a new matrix sharing the data with replaced sample metadata."""
        return ExpressionMatrix(
            data=self._data,
            feature_ids=self._feature_ids,
            sample_ids=self._sample_ids,
            sample_metadata=sample_metadata,
        )

    def copy(self, deep: bool = True) -> ExpressionMatrix:
        """
        Create a copy of this matrix.

        Args:
            deep: If True, copy all arrays. If False, share arrays.
        """
        if deep:
            return ExpressionMatrix(
                data=self._data.copy(),
                feature_ids=self._feature_ids.copy(),
                sample_ids=self._sample_ids.copy(),
                sample_metadata=self._sample_metadata.copy(),
            )
        return ExpressionMatrix(
            data=self._data,
            feature_ids=self._feature_ids,
            sample_ids=self._sample_ids,
            sample_metadata=self._sample_metadata,
        )

    def __repr__(self) -> str:
        if self.n_features == 0 or self.n_samples == 0:
            return f"ExpressionMatrix({self.n_features} features × {self.n_samples} samples)"
        return (
            f"ExpressionMatrix({self.n_features} features × {self.n_samples} samples)\n"
            f"  Features: {self.feature_ids[0]}...{self.feature_ids[-1]}\n"
            f"  Samples: {self.sample_ids[0]}...{self.sample_ids[-1]}\n"
            f"  Metadata columns: {list(self.sample_metadata.columns)}"
        )

    def __str__(self) -> str:
        return self.__repr__()
