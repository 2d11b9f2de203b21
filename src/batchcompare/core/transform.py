"""
Base transformation for immutable matrix operations.

Transformations take an ExpressionMatrix and return a new one; the input is
never modified. Each instance records its name and parameters; the
pipeline writes those of its gene filter into summary.json.

Examples:
    >>> from batchcompare.core.transform import Transform
    >>>
    >>> class Log2Transform(Transform):
    ...     def __init__(self, pseudocount: float = 1.0):
    ...         super().__init__(name="Log2Transform", params={"pseudocount": pseudocount})
    ...         self.pseudocount = pseudocount
    ...
    ...     def apply(self, matrix):
    ...         import numpy as np
    ...         return ExpressionMatrix(
    ...             np.log2(matrix.data + self.pseudocount),
    ...             matrix.feature_ids, matrix.sample_ids, matrix.sample_metadata,
    ...         )
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, TYPE_CHECKING

if TYPE_CHECKING:
    from batchcompare.core.expression import ExpressionMatrix

__all__ = ['Transform']


class Transform(ABC):
    """
    Abstract base class for all matrix transformations.

    Attributes:
        name: Human-readable transformation name (e.g., "MeanCountFilter")
        params: JSON-serializable parameters used for this transformation
        timestamp: When this transform instance was created
    """

    def __init__(self, name: str, params: dict[str, Any]) -> None:
        self.name = name
        self.params = params
        self.timestamp = datetime.now()

    @abstractmethod
    def apply(self, matrix: ExpressionMatrix) -> ExpressionMatrix:
        """
        Execute transformation and return a new matrix.

        Raises:
            ValueError: If transformation cannot be applied (check validate() first)
        """

    def validate(self, matrix: ExpressionMatrix) -> list[str]:
        """
        Check preconditions before applying transformation.

        Subclasses should override and call super().validate() first.

        Returns:
            List of error messages (empty list = valid)
        """
        errors: list[str] = []

        if matrix.data.size == 0:
            errors.append("Cannot process empty matrix")

        return errors

    def __repr__(self) -> str:
        params_str = ", ".join(f"{k}={v}" for k, v in self.params.items())
        return f"{self.name}({params_str})"
