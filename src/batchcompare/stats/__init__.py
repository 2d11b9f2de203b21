"""
Statistical building blocks for the batch comparison.

Modules:
    design_matrix: R-style treatment-coded design matrices
    normalization: upper-quartile, quantile and log-CPM normalization
    glm: negative-binomial GLM, dispersion estimation, likelihood-ratio test
    ebayes: limma empirical Bayes variance moderation
    voom: voom precision weights and moderated t-statistics
    concordance: concordance-at-the-top curves
"""

from batchcompare.stats.design_matrix import DesignMatrix, model_matrix, add_factors
from batchcompare.stats.normalization import (
    NormalizationMethod,
    NormalizationResult,
    upper_quartile_normalization,
    calc_norm_factors,
    log_cpm,
    quantile_normalization,
    normalize_log_expression,
)
from batchcompare.stats.glm import (
    NBGLMFit,
    fit_nb_glm,
    nb_deviance,
    deviance_residuals,
    estimate_common_dispersion,
    estimate_tagwise_dispersion,
    glm_lrt,
)
from batchcompare.stats.ebayes import trigamma_inverse, fit_f_dist, squeeze_var, moderated_t
from batchcompare.stats.voom import VoomResult, voom, weighted_lm_fit, limma_moderated_t
from batchcompare.stats.concordance import CATCurve, cat_curve, cat_table

__all__ = [
    'DesignMatrix',
    'model_matrix',
    'add_factors',
    'NormalizationMethod',
    'NormalizationResult',
    'upper_quartile_normalization',
    'calc_norm_factors',
    'log_cpm',
    'quantile_normalization',
    'normalize_log_expression',
    'NBGLMFit',
    'fit_nb_glm',
    'nb_deviance',
    'deviance_residuals',
    'estimate_common_dispersion',
    'estimate_tagwise_dispersion',
    'glm_lrt',
    'trigamma_inverse',
    'fit_f_dist',
    'squeeze_var',
    'moderated_t',
    'VoomResult',
    'voom',
    'weighted_lm_fit',
    'limma_moderated_t',
    'CATCurve',
    'cat_curve',
    'cat_table',
]
