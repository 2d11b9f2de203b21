"""
Quality control for RNA-seq count matrices.

Components:
    MeanCountFilter: keep genes whose mean count exceeds a threshold
    infer_sex_from_markers: XIST / Y-linked marker sex calls (Otsu threshold)
    check_sex_concordance: recorded vs expression-inferred sex
    SupervisedSexClassifier: logistic regression on pedigree-labelled samples

Quality control workflow:
    1. Check recorded sex against expression and report swaps
    2. Label samples whose pedigree record has no sex
    3. Filter lowly expressed genes before any model fitting
"""

from batchcompare.quality.filtering import MeanCountFilter, FilterResult
from batchcompare.quality.sex_inference import (
    FEMALE_MARKERS,
    MALE_MARKERS,
    SexInferenceResult,
    SexConcordance,
    SupervisedSexResult,
    infer_sex_from_markers,
    check_sex_concordance,
    SupervisedSexClassifier,
)

__all__ = [
    'MeanCountFilter',
    'FilterResult',
    'FEMALE_MARKERS',
    'MALE_MARKERS',
    'SexInferenceResult',
    'SexConcordance',
    'SupervisedSexResult',
    'infer_sex_from_markers',
    'check_sex_concordance',
    'SupervisedSexClassifier',
]
