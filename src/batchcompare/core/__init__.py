"""Core data structures: expression matrix and transformation base."""

from batchcompare.core.expression import ExpressionMatrix
from batchcompare.core.transform import Transform

__all__ = ['ExpressionMatrix', 'Transform']
