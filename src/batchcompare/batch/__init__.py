"""
Batch-effect estimators and their comparison.

Modules:
    factors: BatchFactors result container
    sva: iteratively re-weighted surrogate variable analysis
    pca: principal components of log expression
    ruv: RUVr (GLM residuals) and RUVg (empirical control genes)
    comparison: correlations with study/sex and between methods
"""

from batchcompare.batch.factors import BatchFactors, factor_frame
from batchcompare.batch.sva import f_pvalue, edge_lfdr, num_sv, estimate_surrogate_variables
from batchcompare.batch.pca import estimate_principal_components
from batchcompare.batch.ruv import (
    FirstPassGLM,
    first_pass_glm,
    empirical_control_genes,
    ruv_residuals,
    ruv_control_genes,
)
from batchcompare.batch.comparison import (
    study_correlations,
    factor_correlation_matrix,
    best_study_match,
)

__all__ = [
    'BatchFactors',
    'factor_frame',
    'f_pvalue',
    'edge_lfdr',
    'num_sv',
    'estimate_surrogate_variables',
    'estimate_principal_components',
    'FirstPassGLM',
    'first_pass_glm',
    'empirical_control_genes',
    'ruv_residuals',
    'ruv_control_genes',
    'study_correlations',
    'factor_correlation_matrix',
    'best_study_match',
]
