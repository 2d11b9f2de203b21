"""
Design matrix construction for the batch comparison models.

Builds treatment-coded design matrices the way R's ``model.matrix`` does:
an intercept column followed by indicator columns for every non-reference
level of each categorical covariate (reference = sorted-first level) and
numeric covariates passed through unchanged. Estimated batch factors are
appended as extra numeric columns.

Design matrix structure:
    X = [intercept | covariate_dummies | numeric_covariates | batch_factors]
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np
import pandas as pd
from numpy.typing import NDArray

__all__ = ['DesignMatrix', 'model_matrix', 'add_factors']


@dataclass(frozen=True)
class DesignMatrix:
    """Model matrix with named columns.

    Attributes:
        X: Design matrix (n_valid_samples, n_params).
        column_names: Human-readable names for all columns.
        sample_mask: Boolean mask (n_original_samples,), True for samples
            with complete covariates.
    """

    X: NDArray[np.float64]
    column_names: list[str]
    sample_mask: NDArray[np.bool_]

    @property
    def n_params(self) -> int:
        return self.X.shape[1]

    @property
    def n_samples(self) -> int:
        return self.X.shape[0]

    @property
    def df_residual(self) -> int:
        return self.n_samples - self.n_params

    def column_index(self, name: str) -> int:
        """Position of a column by name."""
        try:
            return self.column_names.index(name)
        except ValueError:
            raise KeyError(
                f"Column '{name}' not in design. Available: {self.column_names}"
            ) from None

    def drop_column(self, name: str) -> DesignMatrix:
        """Design without one column (reduced model for likelihood-ratio tests)."""
        idx = self.column_index(name)
        keep = [i for i in range(self.n_params) if i != idx]
        return DesignMatrix(
            X=self.X[:, keep],
            column_names=[self.column_names[i] for i in keep],
            sample_mask=self.sample_mask,
        )


def _check_rank(X: NDArray[np.float64], column_names: list[str]) -> None:
    rank = np.linalg.matrix_rank(X)
    if rank < X.shape[1]:
        raise ValueError(
            f"Design matrix is rank deficient (rank {rank} < {X.shape[1]} columns: "
            f"{column_names}). A covariate is constant or collinear."
        )


def model_matrix(
    metadata: pd.DataFrame,
    covariates: Sequence[str] = (),
    intercept: bool = True,
) -> DesignMatrix:
    """
    Build a treatment-coded design matrix from sample metadata.

    Column names follow R: ``sex`` with levels female/male yields the
    indicator column ``sexmale``.

    Args:
        metadata: Sample metadata (one row per sample).
        covariates: Metadata columns to include, in order.
        intercept: Include a leading ``(Intercept)`` column.

    Returns:
        DesignMatrix restricted to samples with complete covariates.

    Raises:
        KeyError: If a covariate column is missing
        ValueError: If no samples remain or the design is rank deficient
    """
    missing = [c for c in covariates if c not in metadata.columns]
    if missing:
        raise KeyError(f"Covariates not found in metadata: {missing}")

    covariates = list(covariates)
    if covariates:
        sample_mask = ~metadata[covariates].isna().any(axis=1).to_numpy()
    else:
        sample_mask = np.ones(len(metadata), dtype=bool)

    if not sample_mask.any():
        raise ValueError(f"No samples with complete covariates {covariates}")

    valid = metadata.loc[sample_mask]
    n = len(valid)

    columns: list[NDArray[np.float64]] = []
    names: list[str] = []

    if intercept:
        columns.append(np.ones(n))
        names.append("(Intercept)")

    for cov in covariates:
        values = valid[cov]
        if pd.api.types.is_numeric_dtype(values) and not pd.api.types.is_bool_dtype(values):
            columns.append(values.to_numpy(dtype=float))
            names.append(cov)
            continue

        levels = sorted(values.astype(str).unique().tolist())
        if len(levels) < 2:
            raise ValueError(
                f"Covariate '{cov}' has a single level {levels} among included samples"
            )
        for level in levels[1:]:
            columns.append((values.astype(str) == level).to_numpy(dtype=float))
            names.append(f"{cov}{level}")

    if not columns:
        raise ValueError("Design matrix has no columns")

    X = np.column_stack(columns)
    _check_rank(X, names)

    return DesignMatrix(X=X, column_names=names, sample_mask=sample_mask)


def add_factors(design: DesignMatrix, factors: pd.DataFrame | NDArray | None) -> DesignMatrix:
    """
    Append estimated batch factors to a design.

    Args:
        design: Base design.
        factors: Samples × k factors for the samples in ``design`` (DataFrame
            columns become column names) or None / empty for no change.

    Raises:
        ValueError: If factor rows don't match the design rows
    """
    if factors is None:
        return design

    if isinstance(factors, pd.DataFrame):
        names = [str(c) for c in factors.columns]
        values = factors.to_numpy(dtype=float)
    else:
        values = np.asarray(factors, dtype=float)
        if values.ndim == 1:
            values = values[:, np.newaxis]
        names = [f"factor_{i + 1}" for i in range(values.shape[1])]

    if values.shape[1] == 0:
        return design

    if values.shape[0] != design.n_samples:
        raise ValueError(
            f"factors have {values.shape[0]} rows but design has {design.n_samples} samples"
        )

    X = np.column_stack([design.X, values])
    column_names = design.column_names + names
    _check_rank(X, column_names)
    return DesignMatrix(X=X, column_names=column_names, sample_mask=design.sample_mask)
