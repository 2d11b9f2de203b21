"""
batchcompare - Batch effect estimation comparison for RNA-seq

Downloads the Montgomery/Pickrell HapMap RNA-seq counts and pedigree files,
merges sex and population metadata, and compares surrogate variable
analysis, PCA, RUVr and RUVg against each other and against the known
study covariate.
"""

__version__ = "0.1.0"

from batchcompare.core.expression import ExpressionMatrix
from batchcompare.core.transform import Transform

__all__ = [
    "ExpressionMatrix",
    "Transform",
]
